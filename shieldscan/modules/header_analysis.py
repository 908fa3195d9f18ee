"""
HTTP Security Header Analysis Module

Fetches the target's response headers the way a browser would and scores ten
security headers against fixed per-header rules:

    header                          weight
    ──────────────────────────────  ──────
    Content-Security-Policy            25
    Strict-Transport-Security          20
    X-Frame-Options                    15
    X-Content-Type-Options             10
    Referrer-Policy                    10
    Permissions-Policy                 10
    X-XSS-Protection                    5
    Cross-Origin-Opener-Policy          5
    Cross-Origin-Resource-Policy        5
    Cross-Origin-Embedder-Policy        5
                                      ───
                                      110  → normalized to 0-100

The fetch is the only retried operation in the engine: up to
`header_retries` attempts, each with a longer timeout, separated by a linear
backoff.  Redirects are followed by hand with a hard hop cap; each hop spends
part of the remaining timeout budget.

Server / X-Powered-By headers also feed a small technology fingerprint.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urljoin, urlsplit

import requests

from ..core.config import Config
from ..core.fetch import lower_headers
from ..core.types import (HeaderAnalysis, HeadersResult, ServerInfo, Severity,
                          Status, VulnerabilityResult)
from .base import BaseModule

logger = logging.getLogger(__name__)

MAX_RAW_SCORE   = 110
MIN_HOP_TIMEOUT = 1.0

HEADER_GRADE_THRESHOLDS: list[tuple[int, str]] = [
    (95, "A+"),
    (85, "A"),
    (75, "B"),
    (60, "C"),
    (40, "D"),
]

SAFE_REFERRER_POLICIES = (
    "no-referrer",
    "no-referrer-when-downgrade",
    "strict-origin",
    "strict-origin-when-cross-origin",
)

TECH_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "WordPress":   [re.compile(r"wp-content", re.I), re.compile(r"wp-includes", re.I),
                    re.compile(r"wordpress", re.I)],
    "Drupal":      [re.compile(r"drupal", re.I), re.compile(r"sites/default", re.I)],
    "Joomla":      [re.compile(r"joomla", re.I), re.compile(r"com_content", re.I)],
    "Shopify":     [re.compile(r"shopify", re.I)],
    "Wix":         [re.compile(r"wix\.com", re.I), re.compile(r"wixsite", re.I)],
    "Squarespace": [re.compile(r"squarespace", re.I), re.compile(r"sqsp", re.I)],
    "Next.js":     [re.compile(r"_next/", re.I), re.compile(r"__next", re.I),
                    re.compile(r"next\.js", re.I)],
}

SERVER_TECH = [
    (re.compile(r"nginx", re.I),  "Nginx"),
    (re.compile(r"apache", re.I), "Apache"),
    (re.compile(r"iis", re.I),    "Microsoft IIS"),
]

POWERED_BY_TECH = [
    (re.compile(r"php", re.I),     "PHP"),
    (re.compile(r"asp", re.I),     "ASP.NET"),
    (re.compile(r"express", re.I), "Express.js"),
]


# ── per-header rules ──────────────────────────────────────────────────────────

def _absent(status: Status, recommendation: str) -> HeaderAnalysis:
    return HeaderAnalysis(present=False, value=None, status=status, score=0,
                          recommendation=recommendation)


def analyze_csp(value: Optional[str]) -> HeaderAnalysis:
    if not value:
        return _absent(Status.FAILED, HEADERS["content-security-policy"].recommendation)

    score   = 25
    status  = Status.PASSED
    details = []
    if "'unsafe-inline'" in value:
        score -= 10
        status = Status.WARNING
        details.append("Uses 'unsafe-inline' which weakens CSP")
    if "'unsafe-eval'" in value:
        score -= 10
        status = Status.WARNING
        details.append("Uses 'unsafe-eval' which allows code execution")
    if "default-src" in value:
        score += 5
    if "upgrade-insecure-requests" in value:
        score += 2
    if "frame-ancestors" in value:
        score += 3

    return HeaderAnalysis(present=True, value=value, status=status,
                          score=min(25, max(0, score)),
                          details="; ".join(details) or None)


def analyze_hsts(value: Optional[str]) -> HeaderAnalysis:
    if not value:
        return _absent(Status.FAILED, HEADERS["strict-transport-security"].recommendation)

    score   = 15
    status  = Status.PASSED
    details = []
    lowered = value.lower()

    match = re.search(r"max-age=(\d+)", value, re.I)
    if match:
        max_age = int(match.group(1))
        if max_age >= 31536000:
            score += 5
        elif max_age >= 15768000:
            score += 3
        elif max_age < 86400:
            score -= 5
            status = Status.WARNING
            details.append("max-age is too short (less than 1 day)")

    if "includesubdomains" in lowered:
        score += 3
    else:
        details.append("Consider adding includeSubDomains")
    if "preload" in lowered:
        score += 2

    return HeaderAnalysis(present=True, value=value, status=status,
                          score=min(20, max(0, score)),
                          details="; ".join(details) or None)


def analyze_xfo(value: Optional[str]) -> HeaderAnalysis:
    if not value:
        return _absent(Status.FAILED, HEADERS["x-frame-options"].recommendation)

    upper = value.strip().upper()
    if upper in ("DENY", "SAMEORIGIN"):
        score, status = 15, Status.PASSED
    elif upper.startswith("ALLOW-FROM"):
        score, status = 10, Status.WARNING
    else:
        score, status = 5, Status.WARNING
    return HeaderAnalysis(present=True, value=value, status=status, score=score)


def analyze_xcto(value: Optional[str]) -> HeaderAnalysis:
    if not value:
        return _absent(Status.FAILED, HEADERS["x-content-type-options"].recommendation)
    ok = value.strip().lower() == "nosniff"
    return HeaderAnalysis(present=True, value=value,
                          status=Status.PASSED if ok else Status.WARNING,
                          score=10 if ok else 5)


def analyze_referrer(value: Optional[str]) -> HeaderAnalysis:
    if not value:
        return _absent(Status.FAILED, HEADERS["referrer-policy"].recommendation)
    ok = value.strip().lower() in SAFE_REFERRER_POLICIES
    return HeaderAnalysis(present=True, value=value,
                          status=Status.PASSED if ok else Status.WARNING,
                          score=10 if ok else 5)


def analyze_xxp(value: Optional[str]) -> HeaderAnalysis:
    # Deprecated in modern browsers; CSP is preferred, so absence is informational
    if not value:
        return _absent(Status.INFO, HEADERS["x-xss-protection"].recommendation)
    return HeaderAnalysis(present=True, value=value,
                          status=Status.PASSED if "1" in value else Status.WARNING,
                          score=5 if "mode=block" in value else 3)


def _flat(key: str, points: int, absent_status: Status) -> Callable[[Optional[str]], HeaderAnalysis]:
    def analyze(value: Optional[str]) -> HeaderAnalysis:
        if not value:
            return _absent(absent_status, HEADERS[key].recommendation)
        return HeaderAnalysis(present=True, value=value, status=Status.PASSED, score=points)
    return analyze


@dataclass(frozen=True)
class HeaderSpec:
    title:           str
    weight:          int
    recommendation:  str
    absent_severity: Severity
    analyze:         Callable[[Optional[str]], HeaderAnalysis]


HEADERS: dict[str, HeaderSpec] = {
    "content-security-policy": HeaderSpec(
        "Content-Security-Policy", 25,
        "Add Content-Security-Policy header to prevent XSS attacks. "
        "Start with: default-src 'self'; script-src 'self'",
        Severity.HIGH, analyze_csp),
    "strict-transport-security": HeaderSpec(
        "Strict-Transport-Security", 20,
        "Add HSTS header: Strict-Transport-Security: max-age=31536000; includeSubDomains",
        Severity.MEDIUM, analyze_hsts),
    "x-frame-options": HeaderSpec(
        "X-Frame-Options", 15,
        "Add X-Frame-Options: DENY or SAMEORIGIN to prevent clickjacking",
        Severity.MEDIUM, analyze_xfo),
    "x-content-type-options": HeaderSpec(
        "X-Content-Type-Options", 10,
        "Add X-Content-Type-Options: nosniff to prevent MIME type sniffing",
        Severity.LOW, analyze_xcto),
    "referrer-policy": HeaderSpec(
        "Referrer-Policy", 10,
        "Add Referrer-Policy: strict-origin-when-cross-origin",
        Severity.LOW, analyze_referrer),
    "permissions-policy": HeaderSpec(
        "Permissions-Policy", 10,
        "Add Permissions-Policy to control browser features",
        Severity.LOW, _flat("permissions-policy", 10, Status.FAILED)),
    "x-xss-protection": HeaderSpec(
        "X-XSS-Protection", 5,
        "Add X-XSS-Protection: 1; mode=block (note: deprecated in modern browsers)",
        Severity.INFO, analyze_xxp),
    "cross-origin-opener-policy": HeaderSpec(
        "Cross-Origin-Opener-Policy", 5,
        "Add Cross-Origin-Opener-Policy: same-origin for additional isolation",
        Severity.INFO, _flat("cross-origin-opener-policy", 5, Status.INFO)),
    "cross-origin-resource-policy": HeaderSpec(
        "Cross-Origin-Resource-Policy", 5,
        "Add Cross-Origin-Resource-Policy: same-origin",
        Severity.INFO, _flat("cross-origin-resource-policy", 5, Status.INFO)),
    "cross-origin-embedder-policy": HeaderSpec(
        "Cross-Origin-Embedder-Policy", 5,
        "Add Cross-Origin-Embedder-Policy: require-corp for additional isolation",
        Severity.INFO, _flat("cross-origin-embedder-policy", 5, Status.INFO)),
}


def analyze_headers(headers: dict[str, str]) -> dict[str, HeaderAnalysis]:
    """Run every header rule over a lower-cased header map."""
    analysis = {}
    for key, spec in HEADERS.items():
        value = headers.get(key)
        if key == "permissions-policy" and not value:
            value = headers.get("feature-policy")
        analysis[key] = spec.analyze(value)
    return analysis


def headers_score(analysis: dict[str, HeaderAnalysis]) -> int:
    raw = sum(a.score for a in analysis.values())
    return min(100, int(raw / MAX_RAW_SCORE * 100 + 0.5))


def headers_grade(score: int) -> str:
    for threshold, letter in HEADER_GRADE_THRESHOLDS:
        if score >= threshold:
            return letter
    return "F"


def detect_technology(headers: dict[str, str]) -> tuple[str, ...]:
    text = " ".join(f"{k}: {v}" for k, v in headers.items())
    tech: list[str] = []
    for name, patterns in TECH_PATTERNS.items():
        if any(p.search(text) for p in patterns):
            tech.append(name)

    server     = headers.get("server", "")
    powered_by = headers.get("x-powered-by", "")
    tech += [name for pattern, name in SERVER_TECH if pattern.search(server)]
    tech += [name for pattern, name in POWERED_BY_TECH if pattern.search(powered_by)]
    return tuple(dict.fromkeys(tech))


def server_info(headers: dict[str, str]) -> ServerInfo:
    server = headers.get("server")
    return ServerInfo(
        server=server,
        powered_by=headers.get("x-powered-by"),
        technology=detect_technology(headers),
        server_exposed=bool(server and re.search(r"\d", server)),
    )


def header_risks(result: HeadersResult) -> list[VulnerabilityResult]:
    """Risk entries implied by missing headers (reported, not scored)."""
    if not result.fetched:
        return []
    risks = []
    if not result.analysis["content-security-policy"].present:
        risks.append(VulnerabilityResult(
            type="XSS Risk", found=True, severity=Severity.HIGH,
            details="No Content-Security-Policy header; injected scripts are not restricted",
        ))
    if not result.analysis["x-frame-options"].present:
        risks.append(VulnerabilityResult(
            type="Clickjacking Risk", found=True, severity=Severity.MEDIUM,
            details="No X-Frame-Options header; the page can be framed by other sites",
        ))
    return risks


# ── fetching ──────────────────────────────────────────────────────────────────

def fetch_once(url: str, timeout: float, config: Config) -> tuple[str, dict[str, str]]:
    """
    One GET with manual redirect handling → (final url, lower-cased headers).
    The body is never read.
    """
    current = url
    budget  = timeout
    for _ in range(config.max_redirects + 1):
        with requests.get(current,
                          headers=config.browser_headers,
                          timeout=budget,
                          allow_redirects=False,
                          stream=True,
                          verify=False) as resp:
            location = resp.headers.get("location")
            if 300 <= resp.status_code < 400 and location:
                logger.debug("redirect %s → %s", current, location)
                current = urljoin(current, location)
                budget  = max(MIN_HOP_TIMEOUT, budget - config.redirect_budget_step)
                continue
            return current, lower_headers(resp.headers)
    raise requests.TooManyRedirects(f"Exceeded {config.max_redirects} redirects")


async def fetch_headers(url: str, config: Config) -> tuple[str, dict[str, str]]:
    attempts = max(1, config.header_retries)
    for attempt in range(attempts):
        timeout = config.timeout + attempt * config.retry_timeout_step
        try:
            return await asyncio.to_thread(fetch_once, url, timeout, config)
        except requests.RequestException as exc:
            logger.debug("header fetch attempt %d/%d for %s failed: %s",
                         attempt + 1, attempts, url, exc)
            if attempt == attempts - 1:
                raise
            await asyncio.sleep(config.retry_backoff * (attempt + 1))


class HeaderAnalysisModule(BaseModule):
    key         = "headers"
    name        = "Security Headers"
    category    = "Headers"
    description = "Fetches response headers and scores ten HTTP security headers."

    async def run(self, url: str, config: Config):
        try:
            final_url, raw = await fetch_headers(url, config)
        except requests.RequestException as exc:
            logger.info("could not fetch headers from %s: %s", url, exc)
            analysis = {
                key: _absent(Status.FAILED, spec.recommendation)
                for key, spec in HEADERS.items()
            }
            result = HeadersResult(
                url=url,
                fetched=False,
                analysis=analysis,
                score=0,
                grade="F",
                recommendations=(f"Error fetching headers: {exc}",),
                errors=(f"{type(exc).__name__}: {exc}",),
            )
            return self._result(result, self.checks_for(result))

        analysis = analyze_headers(raw)
        score    = headers_score(analysis)
        result   = HeadersResult(
            url=final_url,
            fetched=True,
            raw=raw,
            analysis=analysis,
            score=score,
            grade=headers_grade(score),
            recommendations=tuple(a.recommendation for a in analysis.values()
                                  if not a.present and a.recommendation),
            server=server_info(raw),
        )
        logger.info("headers %s: score=%d grade=%s", final_url, score, result.grade)
        return self._result(result, self.checks_for(result, https=_is_https(url)))

    # ── checks ────────────────────────────────────────────────────────────────

    def checks_for(self, result: HeadersResult, https: bool = True):
        if not result.fetched:
            return [self._check(
                "headers-fetch", "Security Headers", Status.FAILED, Severity.HIGH,
                "Could not fetch HTTP headers",
                details="; ".join(result.errors) or None,
                recommendation="Ensure the site responds to HTTP GET requests",
            )]

        checks = []
        for key, analysis in result.analysis.items():
            spec   = HEADERS[key]
            status = analysis.status
            if key == "strict-transport-security" and not https and not analysis.present:
                # HSTS is only honored over HTTPS
                status = Status.INFO

            if status is Status.FAILED:
                severity = spec.absent_severity
            elif status is Status.WARNING:
                severity = Severity.LOW
            else:
                severity = Severity.INFO

            if analysis.present:
                message = f"{spec.title} is set"
                if analysis.details:
                    message += f" ({analysis.details})"
            else:
                message = f"{spec.title} header is missing"

            checks.append(self._check(
                f"header-{key}", spec.title, status, severity, message,
                details=analysis.details,
                evidence=analysis.value,
                recommendation=analysis.recommendation,
            ))

        checks.append(self._check(
            "headers-grade", "Security Headers Grade",
            self._grade_status(result.grade), self._grade_severity(result.grade),
            f"Security headers score {result.score}/100 (grade {result.grade})",
        ))

        server = result.server
        if server.server_exposed:
            checks.append(self._check(
                "server-exposure", "Server Version Exposure", Status.WARNING, Severity.LOW,
                f"Server version exposed: {server.server}",
                details="Hide server version to reduce attack surface",
                category="Server",
            ))
        else:
            checks.append(self._passed(
                "server-exposure", "Server Version Exposure",
                "Server version is hidden", category="Server",
            ))
        return checks


def _is_https(url: str) -> bool:
    return urlsplit(url).scheme == "https"
