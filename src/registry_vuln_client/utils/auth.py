"""Credential lookup from explicit options or the docker CLI config file."""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..exceptions import RegistryError

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_REGISTRY = "https://registry-1.docker.io"
DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"
DOCKER_HUB_DOMAINS = ("docker.io", "index.docker.io", "registry-1.docker.io")


@dataclass
class AuthConfig:
    """Username, password and the server they belong to."""

    username: str = ""
    password: str = ""
    server_address: str = ""


def docker_config_path() -> Path:
    """Location of the docker CLI config, honouring ``$DOCKER_CONFIG``."""
    config_dir = os.environ.get("DOCKER_CONFIG") or Path.home() / ".docker"
    return Path(config_dir) / "config.json"


def load_docker_auths(path: Optional[Path] = None) -> dict[str, AuthConfig]:
    """Read the ``auths`` section of a docker config file.

    A missing file yields an empty mapping.

    Raises:
        RegistryError: If the file exists but cannot be parsed
    """
    path = path or docker_config_path()
    if not path.exists():
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise RegistryError(f"loading config file {path} failed: {e}") from e

    auths = {}
    for server, entry in (data.get("auths") or {}).items():
        username = entry.get("username", "")
        password = entry.get("password", "")
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise RegistryError(f"invalid auth entry for {server}: {e}") from e
            username, _, password = decoded.partition(":")
        auths[server] = AuthConfig(username, password, server)
    return auths


def _strip_scheme(address: str) -> str:
    return address.split("://", 1)[-1].rstrip("/")


def get_auth_config(
    username: str = "",
    password: str = "",
    registry: str = "",
    config_path: Optional[Path] = None,
) -> AuthConfig:
    """Resolve credentials for a registry.

    Explicit username, password and registry win. Otherwise the docker config
    file is consulted for the registry (with or without scheme); a registry
    with no stored credentials is used anonymously.

    Raises:
        RegistryError: If nothing identifies a registry to talk to
    """
    if registry in DOCKER_HUB_DOMAINS:
        lookup_key, server = DOCKER_HUB_AUTH_KEY, DEFAULT_DOCKER_REGISTRY
    else:
        lookup_key, server = registry, registry

    if username and password and registry:
        return AuthConfig(username, password, server)

    auths = load_docker_auths(config_path)
    if not auths:
        if registry:
            return AuthConfig(username, password, server)
        raise RegistryError(
            f"no auth was present in {config_path or docker_config_path()}, "
            "please pass a registry, username, and password"
        )

    if registry:
        for key, creds in auths.items():
            if key == lookup_key or _strip_scheme(key) == _strip_scheme(lookup_key):
                logger.debug("using stored credentials for %s", key)
                return AuthConfig(creds.username, creds.password, server)
        return AuthConfig(username, password, server)

    return next(iter(auths.values()))
