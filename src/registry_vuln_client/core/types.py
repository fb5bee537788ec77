"""Core data types shared by the transport chain and the registry client."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from multidict import CIMultiDict

from ..exceptions import RegistryError

PROTOCOL_PATTERN = re.compile(r"^https?://")


@dataclass
class RegistryConfig:
    """Connection settings for a single registry."""

    url: str
    username: str = ""
    password: str = ""
    auth_url: str = ""
    timeout: float = 60
    insecure: bool = False
    non_ssl: bool = False
    skip_ping: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    def _with_scheme(self, url: str) -> str:
        url = url.rstrip("/")
        if PROTOCOL_PATTERN.match(url):
            return url
        scheme = "http" if self.non_ssl else "https"
        return f"{scheme}://{url}"

    @property
    def base_url(self) -> str:
        """Registry URL including the scheme, without a trailing slash."""
        return self._with_scheme(self.url)

    @property
    def domain(self) -> str:
        """Registry host (and port) without the scheme."""
        return PROTOCOL_PATTERN.sub("", self.base_url)

    @property
    def auth_base_url(self) -> str:
        """URL prefix that receives preset Basic credentials."""
        return self._with_scheme(self.auth_url or self.url)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)


@dataclass
class TransportRequest:
    """A single HTTP request travelling down the transport chain."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    data: Optional[bytes] = None
    # Only status and headers are wanted; the body is closed unread.
    discard_body: bool = False

    def copy(self) -> "TransportRequest":
        return TransportRequest(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            data=self.data,
            discard_body=self.discard_body,
        )


@dataclass
class RequestResult:
    """A fully read HTTP response."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=CIMultiDict)
    data: Optional[bytes] = None
    url: str = ""
    token: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.headers, CIMultiDict):
            self.headers = CIMultiDict(self.headers)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            RegistryError: If the body is empty or not valid JSON
        """
        if not self.data:
            raise RegistryError(f"empty response body from {self.url}")
        try:
            return json.loads(self.data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RegistryError(f"invalid JSON from {self.url}: {e}") from e
