"""
Reporting Module

Renders a ScanResult as a human-readable terminal report, and exports it as
JSON (the full result) or CSV (one row per Check).
"""

from __future__ import annotations

import csv
import json
from pathlib import Path

from ..core.types import Check, ScanResult, Severity, Status

SEPARATOR = "=" * 72

CSV_FIELDS = ["id", "name", "category", "status", "severity",
              "message", "details", "evidence", "recommendation"]

_COLOURS = {
    Status.PASSED:  "\033[32m",
    Status.WARNING: "\033[33m",
    Status.FAILED:  "\033[31m",
    Status.INFO:    "\033[36m",
    Status.ERROR:   "\033[35m",
}
_RESET = "\033[0m"

_MARKERS = {
    Status.PASSED:  "[OK]",
    Status.WARNING: "[~]",
    Status.FAILED:  "[!]",
    Status.INFO:    "[i]",
    Status.ERROR:   "[x]",
}

CATEGORY_ORDER = ["DNS", "SSL/TLS", "Headers", "Server", "Vulnerabilities", "System"]


def _section(title: str) -> str:
    return f"\n{SEPARATOR}\n  {title}\n{SEPARATOR}"


def _marker(status: Status, use_colour: bool) -> str:
    marker = _MARKERS[status]
    if use_colour:
        return f"{_COLOURS[status]}{marker}{_RESET}"
    return marker


def _format_check(check: Check, use_colour: bool) -> list[str]:
    lines = [f"  {_marker(check.status, use_colour):<6} {check.name}: {check.message}"]
    if check.status in (Status.WARNING, Status.FAILED) and check.severity is not Severity.INFO:
        lines[0] += f"  {check.severity.emoji} {check.severity.value}"
    if check.evidence:
        lines.append(f"         evidence: {check.evidence}")
    if check.recommendation and check.status is not Status.PASSED:
        lines.append(f"         fix: {check.recommendation}")
    return lines


def terminal_report(result: ScanResult, use_colour: bool = False) -> str:
    """Return the full human-readable report as a string."""
    parts = [
        f"\n{'#' * 72}\n"
        f"  ShieldScan — Security Report for {result.url}\n"
        f"  Generated: {result.timestamp}   Duration: {result.duration_ms:.0f} ms\n"
        f"{'#' * 72}"
    ]

    categories = sorted(
        {c.category for c in result.checks},
        key=lambda cat: CATEGORY_ORDER.index(cat) if cat in CATEGORY_ORDER else len(CATEGORY_ORDER),
    )
    for category in categories:
        parts.append(_section(category.upper()))
        for check in result.checks:
            if check.category == category:
                parts.extend(_format_check(check, use_colour))

    if result.ssl is not None and result.ssl.inspected:
        parts.append(f"\n  SSL grade: {result.ssl.grade}   protocol: {result.ssl.protocol}"
                     f"   expires in {result.ssl.days_until_expiry} days")
    if result.headers is not None and result.headers.fetched:
        parts.append(f"  Headers grade: {result.headers.grade} ({result.headers.score}/100)")

    found = sorted((v for v in result.vulnerabilities if v.found),
                   key=lambda v: v.severity.rank, reverse=True)
    if found:
        parts.append(_section("RISKS"))
        for vuln in found:
            parts.append(f"  {vuln.severity.emoji} {vuln.type}: {vuln.details}")

    s = result.summary
    parts.append(_section("OVERALL SUMMARY"))
    parts.append(f"\n  Score: {result.score}/100   Grade: {result.grade}")
    parts.append(f"  Passed: {s.passed}   Warnings: {s.warnings}   "
                 f"Failed: {s.failed}   Total: {s.total}")
    parts.append(f"\n{SEPARATOR}\n")
    return "\n".join(parts)


def save_json(result: ScanResult, path: str | Path) -> Path:
    """Serialize the full result to a JSON file for programmatic consumption."""
    out = Path(path)
    out.write_text(json.dumps(result.to_dict(), indent=2, default=str), encoding="utf-8")
    return out


def save_csv(result: ScanResult, path: str | Path) -> Path:
    """Write one row per Check."""
    out = Path(path)
    with out.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for check in result.checks:
            writer.writerow({
                "id":             check.id,
                "name":           check.name,
                "category":       check.category,
                "status":         check.status.value,
                "severity":       check.severity.value,
                "message":        check.message,
                "details":        check.details or "",
                "evidence":       check.evidence or "",
                "recommendation": check.recommendation or "",
            })
    return out
