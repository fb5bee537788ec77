"""Composable transports that authenticate and normalize registry requests.

The chain built by :func:`build_transport_chain` is, from the outside in::

    CustomHeaderTransport -> ErrorTransport -> BasicTransport
        -> TokenTransport -> SessionTransport

Every layer implements ``round_trip`` and delegates to the transport it wraps.
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from ..exceptions import (
    AuthError,
    BasicAuthRequiredError,
    RegistryConnectionError,
    RegistryError,
    UnexpectedStatusError,
)
from ..models import AuthChallenge
from .challenge import token_demand
from .types import RegistryConfig, RequestResult, TransportRequest

logger = logging.getLogger(__name__)


def basic_auth_header(username: str, password: str) -> str:
    """Value of an HTTP Basic ``Authorization`` header."""
    credentials = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


class Transport(ABC):
    """A single round trip: one request in, one fully read response out."""

    @abstractmethod
    async def round_trip(self, request: TransportRequest) -> RequestResult:
        raise NotImplementedError


class SessionTransport(Transport):
    """Executes requests on a shared aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession) -> None:
        self.session = session

    async def round_trip(self, request: TransportRequest) -> RequestResult:
        try:
            async with self.session.request(
                request.method,
                request.url,
                headers=request.headers,
                data=request.data,
            ) as resp:
                body = None if request.discard_body else await resp.read()
                logger.debug(
                    "%s %s resp.status=%d", request.method, request.url, resp.status
                )
                return RequestResult(
                    status_code=resp.status,
                    headers=resp.headers,
                    data=body,
                    url=str(resp.url),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryConnectionError(
                f"{request.method} {request.url} failed: {e!r}"
            ) from e


class TokenTransport(Transport):
    """Answers bearer challenges by fetching a token and retrying once."""

    def __init__(self, transport: Transport, username: str = "", password: str = "") -> None:
        self.transport = transport
        self.username = username
        self.password = password

    async def round_trip(self, request: TransportRequest) -> RequestResult:
        result = await self.transport.round_trip(request)

        challenge = token_demand(result)
        if challenge is None:
            return result
        if challenge.is_basic:
            raise BasicAuthRequiredError("basic auth required", result.status_code, result)

        token = await fetch_token(self.transport, challenge, self.username, self.password)

        retry = request.copy()
        retry.headers["Authorization"] = f"Bearer {token}"
        result = await self.transport.round_trip(retry)
        result.token = token
        return result


class BasicTransport(Transport):
    """Presets HTTP Basic credentials on requests to the auth URL."""

    def __init__(
        self, transport: Transport, url: str, username: str = "", password: str = ""
    ) -> None:
        self.transport = transport
        self.url = url
        self.username = username
        self.password = password

    async def round_trip(self, request: TransportRequest) -> RequestResult:
        if (
            (self.username or self.password)
            and request.url.startswith(self.url)
            and "Authorization" not in request.headers
        ):
            request = request.copy()
            request.headers["Authorization"] = basic_auth_header(
                self.username, self.password
            )
        return await self.transport.round_trip(request)


class ErrorTransport(Transport):
    """Turns failed responses into typed errors.

    404 is passed through so that callers can decide between "not found"
    and "already gone".
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    async def round_trip(self, request: TransportRequest) -> RequestResult:
        result = await self.transport.round_trip(request)
        if result.status_code < 400 or result.status_code == 404:
            return result

        message = f"{request.method} {request.url}: status {result.status_code}"
        detail = (result.data or b"")[:512].decode("utf-8", "replace").strip()
        if detail:
            message = f"{message}: {detail}"

        if result.status_code in (401, 403):
            raise AuthError(message, result.status_code, result)
        raise UnexpectedStatusError(message, result.status_code, result)


class CustomHeaderTransport(Transport):
    """Adds a static set of headers to every request."""

    def __init__(self, transport: Transport, headers: Optional[dict[str, str]] = None) -> None:
        self.transport = transport
        self.headers = headers or {}

    async def round_trip(self, request: TransportRequest) -> RequestResult:
        if self.headers:
            request = request.copy()
            request.headers.update(self.headers)
        return await self.transport.round_trip(request)


def token_request_url(challenge: AuthChallenge) -> str:
    """Realm URL with the challenge's service and scopes as query parameters."""
    parts = urlsplit(challenge.realm)
    query = [
        (k, v) for k, v in parse_qsl(parts.query) if k not in ("service", "scope")
    ]
    if challenge.service:
        query.append(("service", challenge.service))
    query.extend(("scope", scope) for scope in challenge.scope)
    return urlunsplit(parts._replace(query=urlencode(query)))


async def fetch_token(
    transport: Transport, challenge: AuthChallenge, username: str = "", password: str = ""
) -> str:
    """Exchange credentials for a bearer token at the challenge realm.

    Raises:
        AuthError: If the token endpoint does not answer 200 or returns no token
    """
    url = token_request_url(challenge)
    logger.debug("registry.token realm=%s service=%s", challenge.realm, challenge.service)

    headers = {}
    if username or password:
        headers["Authorization"] = basic_auth_header(username, password)

    result = await transport.round_trip(TransportRequest("GET", url, headers))
    if result.status_code != 200:
        raise AuthError(
            f"getting token failed with status {result.status_code}",
            result.status_code,
            result,
        )

    try:
        data = result.json()
    except RegistryError as e:
        raise AuthError(f"decoding token response failed: {e}", 200, result) from e

    token = ""
    if isinstance(data, dict):
        token = data.get("token") or data.get("access_token") or ""
    if not token:
        raise AuthError("auth token cannot be empty", 200, result)
    return token


def build_transport_chain(
    session: aiohttp.ClientSession, config: RegistryConfig
) -> Transport:
    """Assemble the full authenticated transport chain for a registry."""
    transport: Transport = SessionTransport(session)
    transport = TokenTransport(transport, config.username, config.password)
    transport = BasicTransport(
        transport, config.auth_base_url, config.username, config.password
    )
    transport = ErrorTransport(transport)
    return CustomHeaderTransport(transport, config.headers)
