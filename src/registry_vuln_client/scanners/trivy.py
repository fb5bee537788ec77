"""Trivy subprocess scanner."""

import asyncio
import json
import logging
from typing import Any

from ..core.registry_client import RegistryClient
from ..exceptions import ScannerError
from ..models import Feature, Vulnerability, VulnerabilityReport
from ..vulns import build_report
from .base import Scanner, dict_entries

logger = logging.getLogger(__name__)


def to_vulnerability(data: dict[str, Any]) -> Vulnerability:
    """Convert one Trivy finding into a Vulnerability."""
    references = data.get("References") or []
    fixed_version = data.get("FixedVersion", "")
    return Vulnerability(
        name=data.get("VulnerabilityID", ""),
        namespace_name=data.get("PkgName", ""),
        description=data.get("Description") or data.get("Title", ""),
        link=references[0] if references else data.get("PrimaryURL", ""),
        severity=data.get("Severity", ""),
        fixed_by=fixed_version,
        fixed_in=[Feature(name=data.get("PkgName", ""), version=fixed_version)],
    )


def parse_targets(output: bytes) -> list[dict[str, Any]]:
    """Targets from Trivy JSON output.

    Older releases print a bare list of targets, newer ones wrap it in
    ``{"Results": [...]}``. Empty output or ``null`` means nothing was found.

    Raises:
        ScannerError: If the output is not JSON or a target is not an object
    """
    if not output.strip():
        return []
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ScannerError(f"decoding trivy output failed: {e}") from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("Results") or []
    return dict_entries(data, "trivy target")


class TrivyScanner(Scanner):
    """Runs the trivy binary against the fully qualified image reference.

    Trivy authenticates against the registry on its own, so no blob URLs or
    headers are handed over.
    """

    name = "trivy"

    def __init__(self, location: str) -> None:
        self.location = location

    async def _run(self, image: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.location,
                "-q",
                "-f",
                "json",
                image,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ScannerError(f"starting trivy at {self.location} failed: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            raise ScannerError(
                f"trivy scan of {image} exited with {proc.returncode}: {detail}"
            )
        return stdout

    async def scan_image(
        self, client: RegistryClient, repo: str, tag: str
    ) -> VulnerabilityReport:
        image = f"{client.domain}/{repo}:{tag}"
        logger.info("trivy scan starting: %s", image)
        output = await self._run(image)
        logger.info("trivy scan complete: %s", image)

        targets = parse_targets(output)
        logger.debug("trivy.scan_image %d targets found for %s", len(targets), image)

        groups = [
            [
                to_vulnerability(v)
                for v in dict_entries(target.get("Vulnerabilities"), "trivy vulnerability")
            ]
            for target in targets
        ]
        name = targets[-1].get("Target", "") if targets else ""
        return build_report(groups, client.domain, repo, tag, name=name)
