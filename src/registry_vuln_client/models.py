"""Data models for registry objects and vulnerability reports."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

MEDIA_TYPE_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
MEDIA_TYPE_MANIFEST_V1_SIGNED = (
    "application/vnd.docker.distribution.manifest.v1+prettyjws"
)
MEDIA_TYPE_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_MANIFEST_LIST = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"

LIST_MEDIA_TYPES = (MEDIA_TYPE_MANIFEST_LIST, MEDIA_TYPE_OCI_INDEX)

# Blob sum of the empty tar layer that docker emits for metadata-only steps.
EMPTY_LAYER_DIGEST = (
    "sha256:a3ed95caeb02ffe68cdd9fd84406680ae93d633cb16422d00e8a7c22955b46d4"
)


def is_empty_layer(digest: str) -> bool:
    """Check whether a digest is the well-known empty layer."""
    return digest == EMPTY_LAYER_DIGEST


@dataclass(frozen=True)
class ImageReference:
    """A parsed image name: domain, repository path and tag or digest."""

    domain: str
    path: str
    tag: str = ""
    digest: str = ""

    def reference(self) -> str:
        """Return the digest if set, otherwise the tag."""
        return self.digest or self.tag

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(self.domain, self.path, "", digest)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.domain}/{self.path}@{self.digest}"
        return f"{self.domain}/{self.path}:{self.tag}"


@dataclass(frozen=True)
class AuthChallenge:
    """A parsed WWW-Authenticate challenge."""

    scheme: str
    realm: str = ""
    service: str = ""
    scope: tuple[str, ...] = ()

    @property
    def is_bearer(self) -> bool:
        return self.scheme.lower() == "bearer"

    @property
    def is_basic(self) -> bool:
        return self.scheme.lower() == "basic"


@dataclass
class Descriptor:
    """Content descriptor from a v2 manifest or manifest list."""

    media_type: str
    size: int
    digest: str
    platform: Optional[dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Descriptor":
        return cls(
            media_type=data.get("mediaType", ""),
            size=data.get("size", 0),
            digest=data.get("digest", ""),
            platform=data.get("platform"),
        )


@dataclass
class Layer:
    """An image layer as handed to a scanner."""

    digest: str
    parent: Optional[str] = None
    size: int = 0
    media_type: str = ""


@dataclass
class Manifest:
    """Base class for decoded manifests."""

    schema_version: int
    media_type: str
    data: dict[str, Any]
    raw: bytes = b""
    digest: str = ""

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.data, indent=indent)


@dataclass
class ManifestV1(Manifest):
    """Schema 1 (signed) manifest with per-layer v1 compatibility history."""

    name: str = ""
    tag: str = ""
    fs_layers: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)

    @property
    def layers(self) -> list[Layer]:
        """Layers child-first, each linked to its parent blob."""
        result = []
        for i, blob_sum in enumerate(self.fs_layers):
            parent = self.fs_layers[i + 1] if i + 1 < len(self.fs_layers) else None
            result.append(Layer(digest=blob_sum, parent=parent))
        return result

    def created(self) -> Optional[datetime]:
        """Creation time of the top layer from the v1 compatibility history."""
        if not self.history:
            return None
        try:
            created = json.loads(self.history[0]).get("created", "")
            return datetime.fromisoformat(created.replace("Z", "+00:00"))
        except (json.JSONDecodeError, ValueError, AttributeError):
            return None


@dataclass
class ManifestV2(Manifest):
    """Schema 2 image manifest (Docker v2 or OCI image manifest)."""

    config: Optional[Descriptor] = None
    layers: list[Descriptor] = field(default_factory=list)


@dataclass
class ManifestList(Manifest):
    """Multi-architecture manifest list or OCI image index."""

    manifests: list[Descriptor] = field(default_factory=list)


def parse_manifest(
    data: dict[str, Any], content_type: str = "", raw: bytes = b"", digest: str = ""
) -> Manifest:
    """Build the matching manifest variant from a decoded manifest body."""
    schema_version = data.get("schemaVersion")
    media_type = data.get("mediaType") or content_type.split(";")[0].strip()

    if schema_version == 1:
        return ManifestV1(
            schema_version=1,
            media_type=media_type or MEDIA_TYPE_MANIFEST_V1,
            data=data,
            raw=raw,
            digest=digest,
            name=data.get("name", ""),
            tag=data.get("tag", ""),
            fs_layers=[fs.get("blobSum", "") for fs in data.get("fsLayers") or []],
            history=[h.get("v1Compatibility", "") for h in data.get("history") or []],
        )

    if media_type in LIST_MEDIA_TYPES or "manifests" in data:
        return ManifestList(
            schema_version=schema_version or 2,
            media_type=media_type,
            data=data,
            raw=raw,
            digest=digest,
            manifests=[Descriptor.from_dict(m) for m in data.get("manifests") or []],
        )

    config = data.get("config")
    return ManifestV2(
        schema_version=schema_version or 0,
        media_type=media_type,
        data=data,
        raw=raw,
        digest=digest,
        config=Descriptor.from_dict(config) if config else None,
        layers=[Descriptor.from_dict(layer) for layer in data.get("layers") or []],
    )


@dataclass
class Feature:
    """A package detected by a scanner."""

    name: str = ""
    namespace_name: str = ""
    version: str = ""
    version_format: str = ""
    added_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "Name": self.name,
                "NamespaceName": self.namespace_name,
                "VersionFormat": self.version_format,
                "Version": self.version,
                "AddedBy": self.added_by,
            }
        )


@dataclass
class Vulnerability:
    """A single vulnerability, normalized regardless of the scanner."""

    name: str = ""
    namespace_name: str = ""
    description: str = ""
    link: str = ""
    severity: str = ""
    fixed_by: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    fixed_in: list[Feature] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Vulnerability":
        """Build from the PascalCase JSON shape used by Clair."""
        metadata = data.get("Metadata") or {}
        if isinstance(metadata, str):
            metadata = {metadata: ""}
        return cls(
            name=data.get("Name", ""),
            namespace_name=data.get("NamespaceName", ""),
            description=data.get("Description", ""),
            link=data.get("Link", ""),
            severity=data.get("Severity", ""),
            fixed_by=data.get("FixedBy", ""),
            metadata=metadata,
            fixed_in=[
                Feature(
                    name=f.get("Name", ""),
                    namespace_name=f.get("NamespaceName", ""),
                    version=f.get("Version", ""),
                )
                for f in data.get("FixedIn") or []
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "Name": self.name,
                "NamespaceName": self.namespace_name,
                "Description": self.description,
                "Link": self.link,
                "Severity": self.severity,
                "Metadata": self.metadata,
                "FixedBy": self.fixed_by,
                "FixedIn": [f.to_dict() for f in self.fixed_in],
            }
        )


@dataclass
class VulnerabilityReport:
    """Result of a vulnerability scan of one repo:tag."""

    registry_url: str
    repo: str
    tag: str
    name: str = ""
    generated_at: datetime = field(default_factory=lambda: datetime.now().astimezone())
    vulns: list[Vulnerability] = field(default_factory=list)
    vulns_by_severity: dict[str, list[Vulnerability]] = field(default_factory=dict)
    bad_vulns: int = 0

    @property
    def date(self) -> str:
        """Generation time in RFC 1123 format."""
        return self.generated_at.strftime("%a, %d %b %Y %H:%M:%S %Z").strip()

    @property
    def fixable(self) -> list[Vulnerability]:
        """Vulnerabilities for which a fixed version is known."""
        return [v for v in self.vulns if v.fixed_by]

    def to_dict(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "RegistryURL": self.registry_url,
            "Repo": self.repo,
            "Tag": self.tag,
            "Date": self.date,
            "Vulns": [v.to_dict() for v in self.vulns],
            "VulnsBySeverity": {
                sev: [v.to_dict() for v in vulns]
                for sev, vulns in self.vulns_by_severity.items()
            },
            "BadVulns": self.bad_vulns,
        }


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v not in ("", None, [], {})}
