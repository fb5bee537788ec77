"""Image reference parsing."""

import re

from ..exceptions import InvalidReferenceError
from ..models import ImageReference
from .digest import validate_digest

DEFAULT_DOMAIN = "docker.io"
DEFAULT_TAG = "latest"
OFFICIAL_REPO_PREFIX = "library/"

PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")


def split_domain(name: str) -> tuple[str, str]:
    """Split a name into its registry domain and repository path.

    The first component is a domain only if it looks like a host: it contains
    a dot or a port, or it is ``localhost``.
    """
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        domain, path = first, rest
    else:
        domain, path = DEFAULT_DOMAIN, name

    if domain in ("index.docker.io", "registry-1.docker.io"):
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in path:
        path = OFFICIAL_REPO_PREFIX + path
    return domain, path


def parse_image(name: str) -> ImageReference:
    """Parse an image name such as ``alpine``, ``r.j3ss.co/reg:v1`` or
    ``localhost:5000/app@sha256:...``.

    When a reference carries both a tag and a digest, the digest wins.

    Raises:
        InvalidReferenceError: If the name is not a valid reference
    """
    if not name or name.strip() != name:
        raise InvalidReferenceError(f"invalid reference: {name!r}")

    remainder, _, digest = name.partition("@")
    if digest and not validate_digest(digest):
        raise InvalidReferenceError(f"invalid digest in reference: {name!r}")

    tag = ""
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1 :]
        if not TAG_PATTERN.match(tag):
            raise InvalidReferenceError(f"invalid tag in reference: {name!r}")

    domain, path = split_domain(remainder)
    if not path or not all(PATH_COMPONENT.match(c) for c in path.split("/")):
        raise InvalidReferenceError(f"invalid repository name: {name!r}")

    if digest:
        return ImageReference(domain=domain, path=path, digest=digest)
    return ImageReference(domain=domain, path=path, tag=tag or DEFAULT_TAG)


def parse_repository_tag(repo_tag: str) -> tuple[str, str]:
    """Split ``repo[:tag|@digest]`` into repository and reference.

    Unlike :func:`parse_image` the repository is returned as written, without
    domain normalization.

    Examples:
        parse_repository_tag("nginx:alpine")  # ("nginx", "alpine")
        parse_repository_tag("localhost:5000/app")  # ("localhost:5000/app", "latest")
    """
    if "@" in repo_tag:
        repo, digest = repo_tag.split("@", 1)
        return repo, digest

    last_slash = repo_tag.rfind("/")
    colon = repo_tag.rfind(":")
    if colon > last_slash:
        repo, tag = repo_tag[:colon], repo_tag[colon + 1 :]
        return repo, tag or DEFAULT_TAG

    return repo_tag, DEFAULT_TAG
