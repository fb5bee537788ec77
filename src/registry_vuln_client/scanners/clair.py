"""Clair vulnerability database scanner (v3 ancestry API with v1 fallback)."""

import json
import logging
from typing import Any, Optional

import aiohttp

from ..core.registry_client import RegistryClient
from ..core.transport import ErrorTransport, SessionTransport, Transport
from ..core.types import PROTOCOL_PATTERN, TransportRequest
from ..exceptions import HTTPStatusError, NotFoundError, RegistryError, ScannerError
from ..models import Layer, Vulnerability, VulnerabilityReport, is_empty_layer
from ..vulns import build_report, empty_report
from .base import Scanner, dict_entries

logger = logging.getLogger(__name__)

LAYER_FORMAT = "Docker"


def _field(data: dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present key out of the snake_case and PascalCase spellings."""
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


def _link_parents(digests: list[str]) -> list[Layer]:
    """Child-first layers, each pointing at the next (older) one as parent."""
    return [
        Layer(digest=d, parent=digests[i + 1] if i + 1 < len(digests) else None)
        for i, d in enumerate(digests)
    ]


def _ancestry_vulnerability(data: dict[str, Any]) -> Vulnerability:
    metadata = _field(data, "metadata", "Metadata", default={})
    if isinstance(metadata, str):
        metadata = {metadata: ""} if metadata else {}
    return Vulnerability(
        name=_field(data, "name", "Name", default=""),
        namespace_name=_field(data, "namespace_name", "NamespaceName", default=""),
        description=_field(data, "description", "Description", default=""),
        link=_field(data, "link", "Link", default=""),
        severity=_field(data, "severity", "Severity", default=""),
        fixed_by=_field(data, "fixed_by", "FixedBy", default=""),
        metadata=metadata,
    )


def _layer_vulnerability(data: dict[str, Any]) -> Vulnerability:
    dict_entries(data.get("FixedIn"), "clair fixed-in")
    return Vulnerability.from_dict(data)


class ClairScanner(Scanner):
    """Client for a Clair server.

    The v3 ancestry API is tried first; any failure there falls back to the
    legacy per-layer v1 API, so both server generations work unmodified.
    """

    name = "clair"

    def __init__(
        self,
        url: str,
        timeout: float = 60,
        insecure: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        url = url.rstrip("/")
        if not PROTOCOL_PATTERN.match(url):
            url = f"https://{url}"
        self.url = url
        self.timeout = timeout
        self.insecure = insecure
        self.session = session
        self._owns_session = session is None
        self.transport: Optional[Transport] = None

    async def open(self) -> None:
        if self.transport:
            return
        if self.session is None:
            connector = aiohttp.TCPConnector(ssl=False) if self.insecure else None
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        self.transport = ErrorTransport(SessionTransport(self.session))

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None
        self.transport = None

    async def __aenter__(self) -> "ClairScanner":
        await self.open()
        return self

    async def _request(self, method: str, path: str, body: Any = None):
        await self.open()
        url = self.url + path
        data = None
        headers = {}
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        try:
            result = await self.transport.round_trip(
                TransportRequest(method, url, headers, data)
            )
        except HTTPStatusError as e:
            raise ScannerError(f"clair {method} {path} failed: {e}") from e
        logger.debug("clair %s %s resp.status=%d", method, url, result.status_code)
        return result

    @staticmethod
    def _decode(result, what: str) -> dict[str, Any]:
        try:
            data = result.json()
        except RegistryError as e:
            raise ScannerError(f"decoding clair {what} response failed: {e}") from e
        if not isinstance(data, dict):
            raise ScannerError(f"unexpected clair {what} response")

        error = data.get("Error")
        if error:
            message = error.get("Message", "") if isinstance(error, dict) else str(error)
            raise ScannerError(f"clair error: {message}")
        return data

    @classmethod
    def _layer(cls, result) -> dict[str, Any]:
        layer = cls._decode(result, "layer").get("Layer") or {}
        if not isinstance(layer, dict):
            raise ScannerError("unexpected clair layer response")
        return layer

    async def get_layer(
        self, name: str, features: bool = False, vulnerabilities: bool = False
    ) -> dict[str, Any]:
        """Display a layer and optionally its features and vulnerabilities.

        Raises:
            NotFoundError: If Clair does not know the layer
        """
        path = f"/v1/layers/{name}"
        params = []
        if features:
            params.append("features=true")
        if vulnerabilities:
            params.append("vulnerabilities=true")
        if params:
            path += "?" + "&".join(params)
        logger.debug("clair.layers.get url=%s name=%s", self.url + path, name)

        result = await self._request("GET", path)
        if result.status_code == 404:
            raise NotFoundError(f"clair layer {name} not found", result)
        return self._layer(result)

    async def post_layer(self, layer: dict[str, Any]) -> dict[str, Any]:
        """Submit a layer for analysis."""
        logger.debug("clair.layers.post url=%s name=%s", self.url, layer.get("Name"))
        result = await self._request("POST", "/v1/layers", {"Layer": layer})
        if result.status_code not in (200, 201):
            raise ScannerError(
                f"posting layer {layer.get('Name')} failed: status {result.status_code}"
            )
        return self._layer(result)

    async def delete_layer(self, name: str) -> None:
        """Remove a layer from Clair; an unknown layer counts as deleted."""
        logger.debug("clair.layers.delete url=%s name=%s", self.url, name)
        result = await self._request("DELETE", f"/v1/layers/{name}")
        if result.status_code not in (200, 202, 204, 404):
            raise ScannerError(f"deleting layer {name} failed: status {result.status_code}")

    async def post_ancestry(self, name: str, layers: list[dict[str, Any]]) -> None:
        """Submit a whole ancestry, parent layer first, for analysis."""
        logger.debug("clair.ancestry.post url=%s name=%s", self.url, name)
        result = await self._request(
            "POST", "/v3/ancestry", {"ancestry_name": name, "layers": layers}
        )
        if not result.ok:
            raise ScannerError(f"posting ancestry {name} failed: status {result.status_code}")

    async def get_ancestry(
        self, name: str, features: bool = True, vulnerabilities: bool = True
    ) -> dict[str, Any]:
        """Fetch an analysed ancestry with its features and vulnerabilities."""
        logger.debug("clair.ancestry.get url=%s name=%s", self.url, name)
        result = await self._request(
            "GET",
            "/v3/ancestry",
            {
                "ancestry_name": name,
                "with_features": features,
                "with_vulnerabilities": vulnerabilities,
            },
        )
        if result.status_code == 404:
            raise NotFoundError(f"clair ancestry {name} not found", result)
        ancestry = _field(self._decode(result, "ancestry"), "ancestry", "Ancestry")
        if not ancestry:
            raise ScannerError("ancestry response was empty")
        if not isinstance(ancestry, dict):
            raise ScannerError("unexpected clair ancestry response")
        return ancestry

    async def _get_layers(
        self, client: RegistryClient, repo: str, tag: str
    ) -> tuple[list[Layer], str]:
        """Non-empty layers of an image, child-first, and the manifest digest."""
        try:
            m = await client.manifest_v2(repo, tag)
            # Schema 2 lists the base layer first.
            digests = [d.digest for d in reversed(m.layers)]
            digest = m.digest
        except RegistryError as e:
            logger.debug("couldn't retrieve manifest v2, falling back to v1: %s", e)
            m1 = await client.manifest_v1(repo, tag)
            digests = list(m1.fs_layers)
            digest = m1.digest

        return _link_parents([d for d in digests if not is_empty_layer(d)]), digest

    @staticmethod
    def blob_url(client: RegistryClient, repo: str, digest: str) -> str:
        return "/".join([client.url, "v2", repo, "blobs", digest])

    async def vulnerabilities(
        self, client: RegistryClient, repo: str, tag: str
    ) -> VulnerabilityReport:
        """Scan through the legacy per-layer v1 API."""
        layers, _ = await self._get_layers(client, repo, tag)
        if not layers:
            logger.info("no need to analyse image %s:%s, it has no non-empty layer", repo, tag)
            return empty_report(client.domain, repo, tag)

        for layer in reversed(layers):
            path = self.blob_url(client, repo, layer.digest)
            await self.post_layer(
                {
                    "Name": layer.digest,
                    "Path": path,
                    "ParentName": layer.parent or "",
                    "Format": LAYER_FORMAT,
                    "Headers": await client.headers(path),
                }
            )

        top = layers[0].digest
        data = await self.get_layer(top, features=True, vulnerabilities=True)
        groups = [
            [
                _layer_vulnerability(v)
                for v in dict_entries(feature.get("Vulnerabilities"), "clair vulnerability")
            ]
            for feature in dict_entries(data.get("Features"), "clair feature")
        ]
        return build_report(groups, client.domain, repo, tag, name=top)

    async def vulnerabilities_v3(
        self, client: RegistryClient, repo: str, tag: str
    ) -> VulnerabilityReport:
        """Scan through the v3 ancestry API."""
        layers, digest = await self._get_layers(client, repo, tag)
        if not layers:
            logger.info("no need to analyse image %s:%s, it has no non-empty layer", repo, tag)
            return empty_report(client.domain, repo, tag)

        name = digest or layers[0].digest
        posted = []
        for layer in reversed(layers):
            path = self.blob_url(client, repo, layer.digest)
            posted.append(
                {
                    "hash": layer.digest,
                    "path": path,
                    "headers": await client.headers(path),
                }
            )
        await self.post_ancestry(name, posted)

        ancestry = await self.get_ancestry(name)
        groups = []
        layers = dict_entries(_field(ancestry, "layers", "Layers"), "clair ancestry layer")
        for ancestry_layer in layers:
            features = dict_entries(
                _field(ancestry_layer, "detected_features", "DetectedFeatures"),
                "clair feature",
            )
            for feature in features:
                vulns = dict_entries(
                    _field(feature, "vulnerabilities", "Vulnerabilities"),
                    "clair vulnerability",
                )
                groups.append([_ancestry_vulnerability(v) for v in vulns])
        return build_report(groups, client.domain, repo, tag, name=name)

    async def scan_image(
        self, client: RegistryClient, repo: str, tag: str
    ) -> VulnerabilityReport:
        try:
            return await self.vulnerabilities_v3(client, repo, tag)
        except RegistryError as e:
            logger.warning(
                "clair v3 scan of %s:%s failed, falling back to v1 API: %s", repo, tag, e
            )
        return await self.vulnerabilities(client, repo, tag)
