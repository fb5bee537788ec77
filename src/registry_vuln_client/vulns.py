"""Aggregation of scanner output into vulnerability reports."""

import logging
from dataclasses import replace
from typing import Iterable, Optional, Union

from .exceptions import ThresholdExceededError
from .models import Vulnerability, VulnerabilityReport

logger = logging.getLogger(__name__)

SEVERITIES = ("Unknown", "Negligible", "Low", "Medium", "High", "Critical", "Defcon1")
BAD_SEVERITIES = ("High", "Critical", "Defcon1")
DEFAULT_BAD_THRESHOLD = 10

_SEVERITY_LOOKUP = {s.lower(): s for s in SEVERITIES}

VulnerabilityGroups = Iterable[Union[Vulnerability, Iterable[Vulnerability]]]


def normalize_severity(severity: str) -> str:
    """Map a scanner severity label onto the canonical vocabulary.

    Matching is case-insensitive (``HIGH`` becomes ``High``); labels outside
    the vocabulary are returned unchanged.
    """
    return _SEVERITY_LOOKUP.get((severity or "").strip().lower(), severity)


def flatten(groups: VulnerabilityGroups) -> list[Vulnerability]:
    """Flatten per-layer or per-target lists, keeping first-seen order."""
    flat: list[Vulnerability] = []
    for group in groups:
        if isinstance(group, Vulnerability):
            flat.append(group)
        else:
            flat.extend(group)
    return flat


def dedupe(vulns: Iterable[Vulnerability]) -> list[Vulnerability]:
    """Drop repeated vulnerability names, keeping the first occurrence.

    Vulnerabilities without a name are never merged.
    """
    seen = set()
    result = []
    for v in vulns:
        if v.name:
            if v.name in seen:
                continue
            seen.add(v.name)
        result.append(v)
    return result


def group_by_severity(vulns: Iterable[Vulnerability]) -> dict[str, list[Vulnerability]]:
    """Bucket vulnerabilities by severity, preserving order within a bucket.

    Canonical severities come first in vocabulary order, ad hoc labels after
    them in the order they were first seen.
    """
    buckets: dict[str, list[Vulnerability]] = {}
    for v in vulns:
        buckets.setdefault(v.severity, []).append(v)

    ordered = {s: buckets[s] for s in SEVERITIES if s in buckets}
    ordered.update((s, vs) for s, vs in buckets.items() if s not in ordered)
    return ordered


def count_bad(vulns_by_severity: dict[str, list[Vulnerability]]) -> int:
    return sum(len(vulns_by_severity.get(s, [])) for s in BAD_SEVERITIES)


def build_report(
    groups: VulnerabilityGroups,
    registry_url: str,
    repo: str,
    tag: str,
    name: str = "",
) -> VulnerabilityReport:
    """Build a report from raw scanner output.

    The input is never mutated, so building twice from the same vulnerabilities
    yields equal reports apart from the generation time.

    Args:
        groups: Vulnerabilities, flat or nested per layer/target
        registry_url: Registry domain the image lives in
        repo: Repository name
        tag: Image tag or digest
        name: Name of the scanned artifact (top layer or scan target)
    """
    vulns = [
        replace(v, severity=normalize_severity(v.severity))
        for v in dedupe(flatten(groups))
    ]
    by_severity = group_by_severity(vulns)
    report = VulnerabilityReport(
        registry_url=registry_url,
        repo=repo,
        tag=tag,
        name=name,
        vulns=vulns,
        vulns_by_severity=by_severity,
        bad_vulns=count_bad(by_severity),
    )
    logger.debug(
        "vulns.report repo=%s tag=%s vulns=%d bad=%d",
        repo,
        tag,
        len(vulns),
        report.bad_vulns,
    )
    return report


def empty_report(registry_url: str, repo: str, tag: str) -> VulnerabilityReport:
    return build_report([], registry_url, repo, tag)


def check_thresholds(
    report: VulnerabilityReport,
    bad_threshold: Optional[int] = DEFAULT_BAD_THRESHOLD,
    fixable_threshold: Optional[int] = None,
) -> None:
    """Fail when a report has more vulnerabilities than permitted.

    A threshold of ``None`` disables that check.

    Raises:
        ThresholdExceededError: If either count is above its threshold
    """
    fixable = len(report.fixable)
    if fixable_threshold is not None and fixable > fixable_threshold:
        raise ThresholdExceededError(
            f"{fixable} fixable vulnerabilities found", fixable, fixable_threshold
        )
    if bad_threshold is not None and report.bad_vulns > bad_threshold:
        raise ThresholdExceededError(
            f"{report.bad_vulns} bad vulnerabilities found",
            report.bad_vulns,
            bad_threshold,
        )


def format_report(report: VulnerabilityReport) -> str:
    """Plain-text rendering used by the CLI and the HTTP surface."""
    lines = []
    for severity, vulns in report.vulns_by_severity.items():
        for v in vulns:
            label = f"{severity} - Fixable" if v.fixed_by else severity
            lines.append(f"{v.name}: [{label}] ")
            if v.description:
                lines.append(v.description)
            if v.link:
                lines.append(v.link)
            if v.fixed_by:
                lines.append(f"Fixed by: {v.fixed_by}")
            lines.append("-----------------------------------------")

    for severity, vulns in report.vulns_by_severity.items():
        lines.append(f"{severity}: {len(vulns)}")
    lines.append(f"Fixable: {len(report.fixable)}")
    lines.append(f"Bad: {report.bad_vulns}")
    return "\n".join(lines) + "\n"
