"""Catalog-wide vulnerability reporting."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..core.registry_client import RegistryClient
from ..exceptions import RegistryError, ScannerError
from ..models import VulnerabilityReport
from ..scanners.base import Scanner

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3600
DEFAULT_WORKERS = 20


@dataclass
class Repository:
    """One repo:tag entry of the index."""

    name: str
    tag: str = ""
    uri: str = ""
    created: Optional[datetime] = None
    vulnerability_report: Optional[VulnerabilityReport] = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "tag": self.tag,
            "uri": self.uri,
            "created": self.created.isoformat() if self.created else None,
        }
        if self.vulnerability_report is not None:
            data["vulnerability"] = self.vulnerability_report.to_dict()
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class AnalysisResult:
    """A generated index: every entry of a registry or of one repository."""

    registry_domain: str
    name: str = ""
    repositories: list[Repository] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "registryDomain": self.registry_domain,
            "name": self.name,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "repositories": [r.to_dict() for r in self.repositories],
        }


class RegistryController:
    """Holds the registry client, the scanner and the latest index.

    Repositories are processed concurrently, at most ``workers`` at a time.
    A failing repository or tag is logged and recorded with ``error`` set; it
    never aborts the rest of the catalog.
    """

    def __init__(
        self,
        client: RegistryClient,
        scanner: Optional[Scanner] = None,
        interval: float = DEFAULT_INTERVAL,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.client = client
        self.scanner = scanner
        self.interval = interval
        self.workers = workers
        self.index: Optional[AnalysisResult] = None
        self._semaphore = asyncio.Semaphore(workers)
        self._lock = asyncio.Lock()
        self._running = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    def _uri(self, repo: str, tag: str = "") -> str:
        uri = f"{self.client.domain}/{repo}"
        if tag and tag != "latest":
            uri += ":" + tag
        return uri

    async def _created(self, repo: str, tag: str) -> Optional[datetime]:
        try:
            return await self.client.image_created(repo, tag)
        except RegistryError as e:
            logger.warning("getting creation time of %s:%s failed: %s", repo, tag, e)
            return None

    async def _scan_tag(self, repo: str, tag: str) -> Repository:
        entry = Repository(
            name=repo,
            tag=tag,
            uri=self._uri(repo, tag),
            created=await self._created(repo, tag),
        )
        if self.scanner is None:
            return entry

        try:
            entry.vulnerability_report = await self.scanner.scan_image(
                self.client, repo, tag
            )
        except RegistryError as e:
            logger.error("vulnerability scanning of %s:%s failed: %s", repo, tag, e)
            entry.error = str(e)
        except Exception as e:
            logger.exception("vulnerability scanning of %s:%s crashed", repo, tag)
            entry.error = f"{type(e).__name__}: {e}"
        return entry

    async def _process_repository(self, repo: str, entries: list[Repository]) -> None:
        async with self._semaphore:
            try:
                tags = await self.client.tags(repo)
            except RegistryError as e:
                logger.warning("getting tags for %s failed: %s", repo, e)
                async with self._lock:
                    entries.append(Repository(name=repo, uri=self._uri(repo), error=str(e)))
                return

            for tag in tags:
                entry = await self._scan_tag(repo, tag)
                async with self._lock:
                    entries.append(entry)

    async def generate_index(self) -> AnalysisResult:
        """Scan every tag of every repository and publish the result.

        Raises:
            RegistryError: If the catalog itself cannot be listed
        """
        repos = await self.client.catalog()
        logger.info("generating index for %d repositories of %s", len(repos), self.client.domain)

        entries: list[Repository] = []
        results = await asyncio.gather(
            *(self._process_repository(r, entries) for r in repos),
            return_exceptions=True,
        )
        for repo, outcome in zip(repos, results):
            if isinstance(outcome, Exception):
                logger.error("processing repository %s failed: %r", repo, outcome)
                entries.append(Repository(name=repo, uri=self._uri(repo), error=str(outcome)))
        # Sorting is stable, so tags keep their registry order within a repo.
        entries.sort(key=lambda r: r.name)

        result = AnalysisResult(
            registry_domain=self.client.domain,
            repositories=entries,
            last_updated=datetime.now().astimezone(),
        )
        self.index = result
        logger.info("generated index with %d entries", len(entries))
        return result

    async def regenerate(self) -> bool:
        """Regenerate the index unless a generation is already running.

        Returns:
            False when the run was skipped
        """
        if self._running:
            logger.warning("skipping timer based generation, a generation is already running")
            return False

        self._running = True
        try:
            await self.generate_index()
        finally:
            self._running = False
        return True

    async def _tick(self) -> None:
        try:
            await self.regenerate()
        except RegistryError as e:
            logger.error("generating index failed: %s", e)

    async def run_periodic(self) -> None:
        """Start a regeneration every ``interval`` seconds until cancelled.

        Ticks do not wait for the previous generation, so a tick that fires
        during a long generation is skipped.
        """
        try:
            while True:
                task = asyncio.create_task(self._tick())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                await asyncio.sleep(self.interval)
        finally:
            for task in list(self._tasks):
                task.cancel()

    async def repository_tags(self, repo: str) -> AnalysisResult:
        """Tags of one repository with their creation times.

        Raises:
            NotFoundError: If the repository does not exist
        """
        tags = await self.client.tags(repo)
        entries = [
            Repository(
                name=repo,
                tag=tag,
                uri=self._uri(repo, tag),
                created=await self._created(repo, tag),
            )
            for tag in tags
        ]
        return AnalysisResult(
            registry_domain=self.client.domain,
            name=repo,
            repositories=entries,
            last_updated=datetime.now().astimezone(),
        )

    async def vulnerabilities(self, repo: str, tag: str) -> VulnerabilityReport:
        """Scan a single repo:tag on demand.

        Raises:
            ScannerError: If no scanner is configured or the scan fails
        """
        if self.scanner is None:
            raise ScannerError("no vulnerability scanner configured")
        return await self.scanner.scan_image(self.client, repo, tag)
