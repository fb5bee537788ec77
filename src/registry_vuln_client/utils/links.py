"""Link header parsing for paginated registry endpoints."""

import re
from typing import Mapping, Optional
from urllib.parse import unquote, urljoin

LINK_PATTERN = re.compile(r"<([^>]*)>\s*((?:;\s*[^;,]+)*)")
REL_PATTERN = re.compile(r";\s*rel\s*=\s*\"?([^\";]+)\"?")


def parse_link_header(value: str) -> dict[str, str]:
    """Map each ``rel`` of a Link header to its (unescaped) target."""
    links: dict[str, str] = {}
    for target, params in LINK_PATTERN.findall(value or ""):
        rel = REL_PATTERN.search(params)
        if rel:
            for name in rel.group(1).split():
                links.setdefault(name, unquote(target))
    return links


def next_link(headers: Mapping[str, str], base_url: str) -> Optional[str]:
    """Return the absolute URL of the ``rel="next"`` page, if any."""
    target = parse_link_header(headers.get("Link", "")).get("next")
    if not target:
        return None
    return urljoin(base_url + "/", target)
