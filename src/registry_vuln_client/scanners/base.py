"""Scanner capability shared by every vulnerability backend."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..core.registry_client import RegistryClient
from ..exceptions import ScannerError
from ..models import VulnerabilityReport

logger = logging.getLogger(__name__)


def dict_entries(value: Any, what: str) -> list[dict[str, Any]]:
    """Entries of a decoded JSON array; ``null`` counts as empty.

    Raises:
        ScannerError: If the value is not an array of objects
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ScannerError(f"expected a list of {what} entries, got {type(value).__name__}")
    for entry in value:
        if not isinstance(entry, dict):
            raise ScannerError(f"malformed {what} entry: {entry!r}")
    return value


class Scanner(ABC):
    """Produces a vulnerability report for one image."""

    name = "scanner"

    @abstractmethod
    async def scan_image(
        self, client: RegistryClient, repo: str, tag: str
    ) -> VulnerabilityReport:
        """Scan ``repo:tag`` from the registry behind ``client``.

        Raises:
            RegistryError: If the scan fails; batch callers catch this per image
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release resources held by the scanner."""

    async def __aenter__(self) -> "Scanner":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def select_scanner(
    trivy_location: str = "",
    clair_url: str = "",
    timeout: float = 60,
    insecure: bool = False,
) -> Optional[Scanner]:
    """Pick the scanner for a controller or command.

    A configured Trivy binary takes precedence over a Clair URL. Returns
    ``None`` when neither is configured.
    """
    # Imported here so the concrete scanners can depend on this module.
    from .clair import ClairScanner
    from .trivy import TrivyScanner

    if trivy_location:
        if clair_url:
            logger.info("both trivy and clair configured, using trivy at %s", trivy_location)
        return TrivyScanner(trivy_location)
    if clair_url:
        return ClairScanner(clair_url, timeout=timeout, insecure=insecure)
    return None
