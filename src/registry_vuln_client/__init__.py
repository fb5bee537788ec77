"""Registry Vuln Client - Async Docker Registry v2 client with vulnerability reporting."""

__version__ = "0.1.0"

from .core.registry_client import RegistryClient
from .core.types import RegistryConfig
from .exceptions import (
    AuthError,
    BasicAuthRequiredError,
    BlobUploadError,
    HTTPStatusError,
    InvalidReferenceError,
    ManifestError,
    NotFoundError,
    RegistryConnectionError,
    RegistryError,
    ScannerError,
    SchemaMismatchError,
    ThresholdExceededError,
    UnexpectedStatusError,
)
from .models import ImageReference, Vulnerability, VulnerabilityReport
from .registry import (
    delete_image,
    get_digest,
    get_manifest,
    list_repositories,
    list_tags,
    scan_image,
)
from .vulns import build_report

__all__ = [
    # Functional API
    "list_repositories",
    "list_tags",
    "get_manifest",
    "get_digest",
    "delete_image",
    "scan_image",
    # Client and models
    "RegistryClient",
    "RegistryConfig",
    "ImageReference",
    "Vulnerability",
    "VulnerabilityReport",
    "build_report",
    "RegistryError",
    "RegistryConnectionError",
    "InvalidReferenceError",
    "HTTPStatusError",
    "AuthError",
    "BasicAuthRequiredError",
    "UnexpectedStatusError",
    "NotFoundError",
    "ManifestError",
    "SchemaMismatchError",
    "BlobUploadError",
    "ScannerError",
    "ThresholdExceededError",
]
