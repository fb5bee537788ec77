"""Docker Registry API v2 async client implementation."""

import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence, Union
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit, parse_qsl

import aiohttp

from ..exceptions import (
    BasicAuthRequiredError,
    BlobUploadError,
    ManifestError,
    NotFoundError,
    RegistryConnectionError,
    RegistryError,
    SchemaMismatchError,
    UnexpectedStatusError,
)
from ..models import (
    MEDIA_TYPE_MANIFEST_LIST,
    MEDIA_TYPE_MANIFEST_V1,
    MEDIA_TYPE_MANIFEST_V1_SIGNED,
    MEDIA_TYPE_MANIFEST_V2,
    MEDIA_TYPE_OCI_INDEX,
    MEDIA_TYPE_OCI_MANIFEST,
    ImageReference,
    Manifest,
    ManifestList,
    ManifestV1,
    ManifestV2,
    parse_manifest,
)
from ..utils.digest import calculate_digest, validate_digest, verify_digest
from ..utils.links import next_link
from .challenge import parse_challenge, token_demand
from .transport import (
    CustomHeaderTransport,
    SessionTransport,
    Transport,
    basic_auth_header,
    build_transport_chain,
    fetch_token,
)
from .types import RegistryConfig, RequestResult, TransportRequest

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "Docker-Distribution-API-Version"
CONTENT_DIGEST_HEADER = "Docker-Content-Digest"

# Registries that never answer the v2 ping, matched by domain suffix.
UNPINGABLE_DOMAINS = ("gcr.io",)


class RegistryClient:
    """Docker Registry API v2 async client.

    Use as an async context manager; entering opens the HTTP session and pings
    the registry unless ``config.skip_ping`` is set::

        async with RegistryClient(RegistryConfig(url="r.j3ss.co")) as client:
            repos = await client.catalog()
    """

    def __init__(
        self,
        config: RegistryConfig,
        connector: Optional[aiohttp.BaseConnector] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry URL, credentials and connection options
            connector: aiohttp connector for connection pooling
        """
        self.config = config
        self.url = config.base_url
        self.domain = config.domain
        self.username = config.username
        self.password = config.password
        self.connector = connector
        self.session: Optional[aiohttp.ClientSession] = None
        self.transport: Optional[Transport] = None
        self._plain_transport: Optional[Transport] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        await self.open()
        try:
            if self.pingable() and not self.config.skip_ping:
                await self.ping()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def open(self) -> None:
        """Create the HTTP session and the transport chain."""
        if self.session:
            return
        connector = self.connector
        if connector is None and self.config.insecure:
            connector = aiohttp.TCPConnector(ssl=False)
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
        )
        self.transport = build_transport_chain(self.session, self.config)
        self._plain_transport = CustomHeaderTransport(
            SessionTransport(self.session), self.config.headers
        )

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _url(self, path_template: str, *args: Any) -> str:
        return self.url + (path_template % args if args else path_template)

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> RequestResult:
        if self.transport is None:
            raise RegistryError("client is not open, use 'async with RegistryClient(...)'")
        return await self.transport.round_trip(
            TransportRequest(method, url, dict(headers or {}), data)
        )

    async def _get_json(
        self, url: str, headers: Optional[dict[str, str]] = None
    ) -> tuple[RequestResult, Any]:
        result = await self._request("GET", url, headers)
        if result.status_code == 404:
            raise NotFoundError(f"GET {url}: not found", result)
        return result, result.json()

    def pingable(self) -> bool:
        """Return False for registries that can never be pinged successfully."""
        host = self.domain.split("/")[0].split(":")[0]
        return not host.endswith(UNPINGABLE_DOMAINS)

    async def ping(self) -> None:
        """Check that the URL serves the Docker Registry v2 API.

        A 401 carrying a parseable auth challenge is accepted even without the
        API version header, since many registries hide it behind auth.

        Raises:
            RegistryConnectionError: If the registry does not look like a v2 registry
        """
        url = self._url("/v2/")
        logger.debug("registry.ping url=%s", url)
        if self._plain_transport is None:
            raise RegistryError("client is not open, use 'async with RegistryClient(...)'")

        result = await self._plain_transport.round_trip(TransportRequest("GET", url))
        version = result.headers.get(API_VERSION_HEADER, "")
        if version.startswith("registry/2."):
            return
        if not version and result.status_code == 401:
            try:
                parse_challenge(result.headers.get("WWW-Authenticate"))
                return
            except RegistryError as e:
                logger.debug("registry.ping unparseable challenge: %s", e)

        raise RegistryConnectionError(
            f"{self.url} does not return http(s) header "
            f"{API_VERSION_HEADER}: registry/2.0"
        )

    async def _paginate(self, url: str, key: str) -> list[str]:
        items: list[str] = []
        seen = set()
        next_url: Optional[str] = url
        while next_url and next_url not in seen:
            seen.add(next_url)
            result, data = await self._get_json(next_url)
            items.extend((data or {}).get(key) or [])
            next_url = next_link(result.headers, self.url)
        return items

    async def catalog(self, cursor: str = "") -> list[str]:
        """List repositories, following every ``rel="next"`` page.

        Args:
            cursor: Optional continuation path or URL to start from

        Returns:
            Repository names in server order
        """
        url = urljoin(self.url + "/", cursor) if cursor else self._url("/v2/_catalog")
        logger.debug("registry.catalog url=%s", url)
        return await self._paginate(url, "repositories")

    async def tags(self, repository: str) -> list[str]:
        """List tags for a repository, following every ``rel="next"`` page."""
        url = self._url("/v2/%s/tags/list", repository)
        logger.debug("registry.tags url=%s repository=%s", url, repository)
        return await self._paginate(url, "tags")

    async def manifest(
        self,
        repository: str,
        ref: str,
        media_types: Optional[Sequence[str]] = None,
    ) -> Manifest:
        """Retrieve and decode a manifest.

        Args:
            repository: Repository name
            ref: Tag or digest reference
            media_types: Accepted media types, schema 2 by default

        Raises:
            NotFoundError: If the manifest does not exist
            ManifestError: If the body cannot be decoded
        """
        url = self._url("/v2/%s/manifests/%s", repository, ref)
        logger.debug(
            "registry.manifests url=%s repository=%s ref=%s", url, repository, ref
        )
        accept = ", ".join(media_types or [MEDIA_TYPE_MANIFEST_V2])
        result = await self._request("GET", url, {"Accept": accept})
        if result.status_code == 404:
            raise NotFoundError(f"manifest {repository}:{ref} not found", result)

        try:
            data = result.json()
        except RegistryError as e:
            raise ManifestError(f"Failed to get manifest: {e}") from e
        if not isinstance(data, dict):
            raise ManifestError(f"Failed to get manifest: unexpected body from {url}")

        digest = result.headers.get(CONTENT_DIGEST_HEADER) or calculate_digest(
            result.data or b""
        )
        return parse_manifest(
            data, result.headers.get("Content-Type", ""), result.data or b"", digest
        )

    async def manifest_v2(self, repository: str, ref: str) -> ManifestV2:
        """Retrieve a schema 2 image manifest.

        Raises:
            SchemaMismatchError: If the registry returned another schema version
        """
        m = await self.manifest(
            repository, ref, [MEDIA_TYPE_MANIFEST_V2, MEDIA_TYPE_OCI_MANIFEST]
        )
        if m.schema_version != 2:
            raise SchemaMismatchError(2, m.schema_version)
        if not isinstance(m, ManifestV2):
            raise ManifestError(f"expected an image manifest, got {m.media_type}")
        return m

    async def manifest_v1(self, repository: str, ref: str) -> ManifestV1:
        """Retrieve a schema 1 manifest.

        Raises:
            SchemaMismatchError: If the registry returned another schema version
        """
        m = await self.manifest(
            repository, ref, [MEDIA_TYPE_MANIFEST_V1_SIGNED, MEDIA_TYPE_MANIFEST_V1]
        )
        if m.schema_version != 1 or not isinstance(m, ManifestV1):
            raise SchemaMismatchError(1, m.schema_version)
        return m

    async def manifest_list(self, repository: str, ref: str) -> ManifestList:
        """Retrieve a manifest list or OCI image index."""
        m = await self.manifest(
            repository, ref, [MEDIA_TYPE_MANIFEST_LIST, MEDIA_TYPE_OCI_INDEX]
        )
        if not isinstance(m, ManifestList):
            raise ManifestError(f"expected a manifest list, got {m.media_type}")
        return m

    async def put_manifest(
        self,
        repository: str,
        ref: str,
        manifest: Union[Manifest, dict],
        media_type: Optional[str] = None,
    ) -> str:
        """Upload a manifest.

        Returns:
            Manifest digest reported by the registry, or computed locally

        Raises:
            ManifestError: If upload fails
        """
        url = self._url("/v2/%s/manifests/%s", repository, ref)
        logger.debug(
            "registry.manifest.put url=%s repository=%s reference=%s",
            url,
            repository,
            ref,
        )
        if isinstance(manifest, Manifest):
            body = manifest.raw or json.dumps(manifest.data).encode("utf-8")
            media_type = media_type or manifest.media_type
        else:
            body = json.dumps(manifest).encode("utf-8")
            media_type = media_type or manifest.get("mediaType", MEDIA_TYPE_MANIFEST_V2)

        result = await self._request(
            "PUT", url, {"Content-Type": media_type or MEDIA_TYPE_MANIFEST_V2}, body
        )
        if not result.ok:
            raise ManifestError(
                f"Failed to upload manifest: status {result.status_code}"
            )
        return result.headers.get(CONTENT_DIGEST_HEADER) or calculate_digest(body)

    def _check_digest_response(self, result: RequestResult, image: ImageReference) -> None:
        if result.status_code == 404:
            raise NotFoundError(f"manifest {image} not found", result)
        if result.status_code != 200:
            raise UnexpectedStatusError(
                f"got status code: {result.status_code}", result.status_code, result
            )

    async def digest(
        self, image: ImageReference, media_types: Optional[Sequence[str]] = None
    ) -> str:
        """Resolve the content digest of an image.

        The ``Docker-Content-Digest`` header of a GET is preferred, then that of
        a HEAD; when neither carries it the digest is computed over the
        manifest payload.
        """
        if image.digest:
            return image.digest

        url = self._url("/v2/%s/manifests/%s", image.path, image.tag)
        logger.debug(
            "registry.manifests.get url=%s repository=%s ref=%s",
            url,
            image.path,
            image.tag,
        )
        headers = {"Accept": ", ".join(media_types or [MEDIA_TYPE_MANIFEST_V2])}

        result = await self._request("GET", url, headers)
        self._check_digest_response(result, image)
        digest = result.headers.get(CONTENT_DIGEST_HEADER)
        if digest:
            return digest

        head = await self._request("HEAD", url, headers)
        self._check_digest_response(head, image)
        digest = head.headers.get(CONTENT_DIGEST_HEADER)
        if digest:
            return digest

        if not result.data:
            raise ManifestError(f"no digest and no manifest payload for {image}")
        logger.debug("registry.digest computing digest from payload for %s", image)
        return calculate_digest(result.data)

    async def download_layer(self, repository: str, digest: str) -> bytes:
        """Download a blob by digest.

        Raises:
            NotFoundError: If the blob does not exist
            RegistryError: If the content does not match the digest
        """
        url = self._url("/v2/%s/blobs/%s", repository, digest)
        logger.debug(
            "registry.layer.download url=%s repository=%s digest=%s",
            url,
            repository,
            digest,
        )
        result = await self._request("GET", url)
        if result.status_code == 404:
            raise NotFoundError(f"blob {repository}@{digest} not found", result)

        content = result.data or b""
        if validate_digest(digest) and not verify_digest(content, digest):
            raise RegistryError(f"blob {repository}@{digest} does not match its digest")
        return content

    async def _initiate_upload(self, repository: str) -> tuple[str, Optional[str]]:
        url = self._url("/v2/%s/blobs/uploads/", repository)
        logger.debug("registry.layer.initiate-upload url=%s repository=%s", url, repository)

        result = await self._request(
            "POST", url, {"Content-Type": "application/octet-stream"}
        )
        location = result.headers.get("Location", "")
        if result.status_code != 202 or not location:
            raise BlobUploadError(
                f"Failed to initiate upload: status {result.status_code}"
            )
        if not location.startswith("http"):
            location = urljoin(self.url, location)
        return location, result.token

    async def upload_layer(self, repository: str, digest: str, content: bytes) -> str:
        """Upload a blob in a single PUT.

        Raises:
            ValueError: If the digest is malformed
            BlobUploadError: If the upload fails
        """
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest format: {digest}")

        location, token = await self._initiate_upload(repository)
        parts = urlsplit(location)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "digest"]
        query.append(("digest", digest))
        upload_url = urlunsplit(parts._replace(query=urlencode(query)))
        logger.debug(
            "registry.layer.upload url=%s repository=%s digest=%s",
            upload_url,
            repository,
            digest,
        )

        headers = {"Content-Type": "application/octet-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        result = await self._request("PUT", upload_url, headers, content)
        if not result.ok:
            raise BlobUploadError(f"Failed to upload blob: status {result.status_code}")
        return result.headers.get(CONTENT_DIGEST_HEADER) or digest

    async def has_layer(self, repository: str, digest: str) -> bool:
        """Check if a blob exists in the registry."""
        url = self._url("/v2/%s/blobs/%s", repository, digest)
        logger.debug(
            "registry.layer.check url=%s repository=%s digest=%s", url, repository, digest
        )
        result = await self._request("HEAD", url)
        return result.status_code == 200

    async def delete(self, repository: str, ref: str) -> None:
        """Delete a manifest reference.

        A 404 counts as success: the reference is already gone.

        Raises:
            UnexpectedStatusError: For any status other than 202 or 404
        """
        url = self._url("/v2/%s/manifests/%s", repository, ref)
        logger.debug(
            "registry.manifests.delete url=%s repository=%s ref=%s", url, repository, ref
        )
        result = await self._request("DELETE", url)
        if result.status_code == 202:
            return
        if result.status_code == 404:
            logger.debug("registry.manifests.delete %s:%s already gone", repository, ref)
            return
        raise UnexpectedStatusError(
            f"Got status code: {result.status_code}", result.status_code, result
        )

    async def token(self, url: str) -> str:
        """Fetch a bearer token for a resource URL.

        Returns an empty string when the resource needs no authentication.

        Raises:
            BasicAuthRequiredError: If the registry wants HTTP Basic instead
        """
        logger.debug("registry.token url=%s", url)
        if self._plain_transport is None:
            raise RegistryError("client is not open, use 'async with RegistryClient(...)'")

        result = await self._plain_transport.round_trip(
            TransportRequest("GET", url, discard_body=True)
        )
        challenge = token_demand(result)
        if challenge is None:
            return ""
        if challenge.is_basic:
            raise BasicAuthRequiredError("basic auth required", result.status_code, result)
        return await fetch_token(
            self._plain_transport, challenge, self.username, self.password
        )

    async def headers(self, url: str) -> dict[str, str]:
        """Authorization headers a third party needs to fetch ``url``."""
        try:
            token = await self.token(url)
        except BasicAuthRequiredError:
            return {"Authorization": basic_auth_header(self.username, self.password)}

        if not token:
            logger.debug("got empty token for %s", url)
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def image_created(self, repository: str, ref: str) -> Optional[datetime]:
        """Creation time of an image, read from its config blob."""
        try:
            m = await self.manifest_v2(repository, ref)
        except (SchemaMismatchError, ManifestError):
            return (await self.manifest_v1(repository, ref)).created()

        if m.config is None:
            return None
        blob = await self.download_layer(repository, m.config.digest)
        try:
            config = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestError(f"invalid image config {m.config.digest}: {e}") from e
        if not isinstance(config, dict):
            return None
        created = config.get("created")
        if not created:
            return None
        try:
            return datetime.fromisoformat(created.replace("Z", "+00:00"))
        except ValueError:
            return None
