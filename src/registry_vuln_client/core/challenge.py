"""WWW-Authenticate challenge parsing."""

import re
from typing import Optional

from ..exceptions import AuthError, BasicAuthRequiredError
from ..models import AuthChallenge
from .types import RequestResult

CHALLENGE_PATTERN = re.compile(r"^\s*([A-Za-z][\w-]*)(?:\s+(.*))?$")
PARAM_PATTERN = re.compile(r'([\w-]+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')

# GCR answers 403 without a challenge when credentials are missing.
GCR_PATTERN = re.compile(r"https://([a-z]+\.|)gcr\.io/")


def parse_challenge(header: Optional[str]) -> AuthChallenge:
    """Parse a ``WWW-Authenticate`` header value.

    Raises:
        AuthError: If the header is missing, malformed or uses an
            unsupported scheme
    """
    if not header:
        raise AuthError("missing WWW-Authenticate header in auth challenge")

    match = CHALLENGE_PATTERN.match(header)
    if not match:
        raise AuthError(f"malformed auth challenge header: {header!r}")

    scheme = match.group(1)
    params = {
        key.lower(): quoted or bare
        for key, quoted, bare in PARAM_PATTERN.findall(match.group(2) or "")
    }

    if scheme.lower() == "basic":
        return AuthChallenge(scheme="Basic", realm=params.get("realm", ""))

    if scheme.lower() != "bearer":
        raise AuthError(f"unsupported auth challenge scheme: {scheme!r}")

    realm = params.get("realm", "")
    if not realm.startswith(("http://", "https://")):
        raise AuthError(f"malformed auth challenge realm: {header!r}")

    return AuthChallenge(
        scheme="Bearer",
        realm=realm,
        service=params.get("service", ""),
        scope=tuple(params.get("scope", "").split()),
    )


def token_demand(result: RequestResult) -> Optional[AuthChallenge]:
    """Return the auth challenge carried by a response, if it demands one.

    Raises:
        BasicAuthRequiredError: For GCR's bare 403 responses
        AuthError: If a 401 carries no parseable challenge
    """
    if result.status_code == 403 and GCR_PATTERN.match(result.url):
        raise BasicAuthRequiredError("basic auth required", 403, result)
    if result.status_code != 401:
        return None
    return parse_challenge(result.headers.get("WWW-Authenticate"))
