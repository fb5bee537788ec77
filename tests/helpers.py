"""Fake registry building blocks shared by the tests."""

import hashlib
import json
from typing import Awaitable, Callable, Optional

from aiohttp import web

from registry_vuln_client.core.registry_client import RegistryClient
from registry_vuln_client.core.types import RegistryConfig
from registry_vuln_client.models import (
    EMPTY_LAYER_DIGEST,
    MEDIA_TYPE_MANIFEST_V1_SIGNED,
    MEDIA_TYPE_MANIFEST_V2,
)

API_VERSION_HEADERS = {"Docker-Distribution-API-Version": "registry/2.0"}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def digest_of(n: int) -> str:
    """Deterministic, well-formed sha256 digest for test blob ``n``."""
    return "sha256:" + hashlib.sha256(str(n).encode()).hexdigest()


def sha256_digest(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()


def server_url(server) -> str:
    return f"http://{server.host}:{server.port}"


def client_for(server, **kwargs) -> RegistryClient:
    """Registry client pointed at a test server; ping skipped unless asked."""
    kwargs.setdefault("skip_ping", True)
    return RegistryClient(RegistryConfig(url=server_url(server), **kwargs))


async def ping(request: web.Request) -> web.Response:
    return web.json_response({}, headers=API_VERSION_HEADERS)


def registry_app(
    routes: list[tuple[str, str, Handler]], with_ping: bool = True
) -> web.Application:
    """Application answering the given ``(method, path, handler)`` routes."""
    app = web.Application()
    if with_ping:
        app.router.add_get("/v2/", ping)
    for method, path, handler in routes:
        if method == "GET":
            app.router.add_get(path, handler, allow_head=False)
        else:
            app.router.add_route(method, path, handler)
    return app


def manifest_v2(layers: list[str], config_digest: Optional[str] = None) -> dict:
    """Schema 2 manifest with base-first ``layers``."""
    return {
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_MANIFEST_V2,
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "size": 100,
            "digest": config_digest or digest_of(1000),
        },
        "layers": [
            {
                "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                "size": 10,
                "digest": d,
            }
            for d in layers
        ],
    }


def manifest_v1(blob_sums: list[str], created: str = "2024-01-01T00:00:00Z") -> dict:
    """Schema 1 manifest with child-first ``blob_sums``."""
    return {
        "schemaVersion": 1,
        "name": "foo",
        "tag": "latest",
        "fsLayers": [{"blobSum": b} for b in blob_sums],
        "history": [
            {"v1Compatibility": json.dumps({"id": str(i), "created": created})}
            for i, _ in enumerate(blob_sums)
        ],
    }


def manifest_response(
    manifest: dict, headers: Optional[dict[str, str]] = None
) -> web.Response:
    """Manifest body served with the content type matching its schema."""
    content_type = (
        MEDIA_TYPE_MANIFEST_V1_SIGNED
        if manifest["schemaVersion"] == 1
        else manifest.get("mediaType", MEDIA_TYPE_MANIFEST_V2)
    )
    return web.Response(
        body=json.dumps(manifest).encode("utf-8"),
        headers={"Content-Type": content_type, **(headers or {})},
    )


def static_manifests(manifests: dict[str, dict]) -> Handler:
    """Handler serving ``manifests[repo]`` for any reference; 404 otherwise."""

    async def handler(request: web.Request) -> web.Response:
        manifest = manifests.get(request.match_info["repo"])
        if manifest is None:
            return web.json_response({"errors": [{"code": "MANIFEST_UNKNOWN"}]}, status=404)
        return manifest_response(manifest)

    return handler


__all__ = [
    "API_VERSION_HEADERS",
    "EMPTY_LAYER_DIGEST",
    "client_for",
    "digest_of",
    "manifest_response",
    "manifest_v1",
    "manifest_v2",
    "registry_app",
    "server_url",
    "sha256_digest",
    "static_manifests",
]
