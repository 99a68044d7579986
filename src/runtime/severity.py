from __future__ import annotations

from typing import Any, Iterable

from src.runtime.types import SeverityCounts


_BUCKETS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")


def _trivy_severities(report: Any) -> Iterable[str]:
    if not isinstance(report, dict):
        return
    for result in report.get("Results") or []:
        if not isinstance(result, dict):
            continue
        for vuln in result.get("Vulnerabilities") or []:
            if isinstance(vuln, dict):
                yield str(vuln.get("Severity") or "UNKNOWN")


def _grype_severities(report: Any) -> Iterable[str]:
    if not isinstance(report, dict):
        return
    for match in report.get("matches") or []:
        if not isinstance(match, dict):
            continue
        vuln = match.get("vulnerability")
        severity = vuln.get("severity") if isinstance(vuln, dict) else None
        yield str(severity or "Unknown")


# Scanner name -> extractor of per-finding severities from that scanner's report shape.
SEVERITY_EXTRACTORS = {
    "trivy": _trivy_severities,
    "grype": _grype_severities,
}


def calculate_severity_counts(reports: dict[str, Any]) -> SeverityCounts:
    """Sum critical/high/medium/low findings across every known report shape.

    Findings from different scanners are added up, not de-duplicated.
    """
    totals = dict.fromkeys(_BUCKETS, 0)
    for scanner, report in (reports or {}).items():
        extract = SEVERITY_EXTRACTORS.get(scanner)
        if extract is None or not report:
            continue
        for severity in extract(report):
            key = severity.upper()
            if key in totals:
                totals[key] += 1
    return SeverityCounts(
        critical=totals["CRITICAL"],
        high=totals["HIGH"],
        medium=totals["MEDIUM"],
        low=totals["LOW"],
    )
