"""
Score Aggregator / Grader

Folds the ordered Check list of one scan into summary counts, an overall
0-100 score and a letter grade, and builds the final ScanResult.

Only passed / warning / failed checks are counted; info and error checks are
kept for display but never scored:

    score = round((passed*100 + warnings*50) / total)      (0 when total == 0)

The letter scale here is deliberately different from the SSL and header
sub-grades; each grader owns its own threshold table.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .types import (Check, DNSResult, HeadersResult, ScanResult, SSLResult,
                    Status, Summary, VulnerabilityResult)

GRADE_THRESHOLDS: list[tuple[int, str]] = [
    (90, "A+"),
    (80, "A"),
    (70, "B"),
    (60, "C"),
    (50, "D"),
]


def summarize(checks: Iterable[Check]) -> Summary:
    passed = warnings = failed = 0
    for check in checks:
        if check.status is Status.PASSED:
            passed += 1
        elif check.status is Status.WARNING:
            warnings += 1
        elif check.status is Status.FAILED:
            failed += 1
    return Summary(passed=passed, warnings=warnings, failed=failed,
                   total=passed + warnings + failed)


def overall_score(summary: Summary) -> int:
    if summary.total <= 0:
        return 0
    # int(x + 0.5) rounds halves up; round() would round them to even
    return int((summary.passed * 100 + summary.warnings * 50) / summary.total + 0.5)


def overall_grade(score: int) -> str:
    for threshold, letter in GRADE_THRESHOLDS:
        if score >= threshold:
            return letter
    return "F"


def aggregate(url: str,
              timestamp: str,
              checks: Sequence[Check],
              *,
              dns: Optional[DNSResult] = None,
              ssl: Optional[SSLResult] = None,
              headers: Optional[HeadersResult] = None,
              vulnerabilities: Sequence[VulnerabilityResult] = (),
              duration_ms: float = 0.0,
              scan_id: Optional[str] = None) -> ScanResult:
    """Build the immutable ScanResult for one scan."""
    summary = summarize(checks)
    score   = overall_score(summary)
    return ScanResult(
        url=url,
        timestamp=timestamp,
        score=score,
        grade=overall_grade(score),
        checks=tuple(checks),
        summary=summary,
        dns=dns,
        ssl=ssl,
        headers=headers,
        vulnerabilities=tuple(vulnerabilities),
        duration_ms=round(duration_ms, 1),
        scan_id=scan_id,
    )
