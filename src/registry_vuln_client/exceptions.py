"""Custom exceptions for the registry vulnerability client."""

from typing import Optional


class RegistryError(Exception):
    """Base exception for all registry-related errors."""

    pass


class RegistryConnectionError(RegistryError):
    """Raised when unable to connect to the registry (DNS, TLS, timeouts)."""

    pass


class InvalidReferenceError(RegistryError, ValueError):
    """Raised when an image reference cannot be parsed."""

    pass


class HTTPStatusError(RegistryError):
    """Raised when the registry answers with an unexpected status code.

    Carries the status code and the full response so callers can branch on
    the failure without re-reading raw headers.
    """

    def __init__(self, message: str, status_code: int, response=None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class AuthError(HTTPStatusError):
    """Raised when authentication against the registry fails."""

    def __init__(self, message: str, status_code: int = 0, response=None) -> None:
        super().__init__(message, status_code, response)


class BasicAuthRequiredError(AuthError):
    """Raised when the registry demands HTTP Basic instead of a bearer token."""

    pass


class UnexpectedStatusError(HTTPStatusError):
    """Raised for any non-2xx status that is not handled explicitly."""

    pass


class NotFoundError(HTTPStatusError):
    """Raised when a fetched resource does not exist (404)."""

    def __init__(self, message: str, response=None) -> None:
        super().__init__(message, 404, response)


class ManifestError(RegistryError):
    """Raised when manifest operations fail."""

    pass


class SchemaMismatchError(ManifestError):
    """Raised when a manifest has a different schema version than requested."""

    def __init__(self, expected: int, actual: Optional[int]) -> None:
        super().__init__(
            f"received schema version {actual}, expected {expected}"
        )
        self.expected = expected
        self.actual = actual


class BlobUploadError(RegistryError):
    """Raised when blob upload fails."""

    pass


class ScannerError(RegistryError):
    """Raised when a vulnerability scanner fails to analyse an image."""

    pass


class ThresholdExceededError(RegistryError):
    """Raised when a report has more vulnerabilities than permitted."""

    def __init__(self, message: str, count: int, threshold: int) -> None:
        super().__init__(message)
        self.count = count
        self.threshold = threshold
