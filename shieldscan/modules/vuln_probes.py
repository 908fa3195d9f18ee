"""
Passive Vulnerability Probes

Two side-effect-free GET requests against the target:

  • Reflection test — a unique nonce (shieldscan_test_<ms timestamp>) is sent
    as the `q` and `search` parameters; if the literal nonce comes back in the
    body, input is echoed without encoding.
  • SQL-error test — a lone quote is sent as `id=1'`; the body is matched
    against database error signatures.  The first matching signature wins.

Neither probe sends a payload that could execute, neither retries, and every
response body is read only up to `max_body_bytes`.  A probe that cannot
complete reports found=False with an explanatory detail and its error.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time

import requests

from ..core.config import Config
from ..core.fetch import get_capped, with_query
from ..core.types import Severity, Status, VulnerabilityResult
from .base import BaseModule

logger = logging.getLogger(__name__)

NONCE_PREFIX = "shieldscan_test_"

SQL_ERROR_PATTERNS = [
    re.compile(r"sql syntax", re.I),
    re.compile(r"mysql_", re.I),
    re.compile(r"mysqli_", re.I),
    re.compile(r"pg_query", re.I),
    re.compile(r"sqlite_", re.I),
    re.compile(r"ORA-\d{5}", re.I),
    re.compile(r"SQL Server", re.I),
    re.compile(r"ODBC Driver", re.I),
    re.compile(r"syntax error", re.I),
    re.compile(r"unclosed quotation", re.I),
    re.compile(r"quoted string not properly terminated", re.I),
]

REFLECTION = "Reflected Input"
SQL_ERROR  = "SQL Injection Risk"


def make_nonce() -> str:
    return f"{NONCE_PREFIX}{int(time.time() * 1000)}"


def find_reflection(body: str, nonce: str) -> bool:
    return nonce in body


def match_sql_error(body: str):
    """Return the first matching error signature, or None."""
    for pattern in SQL_ERROR_PATTERNS:
        if pattern.search(body):
            return pattern
    return None


def _fetch(url: str, config: Config):
    return get_capped(url,
                      user_agent=config.user_agent,
                      timeout=config.probe_timeout,
                      limit=config.max_body_bytes,
                      max_redirects=config.max_redirects)


async def reflection_probe(url: str, config: Config) -> VulnerabilityResult:
    nonce = make_nonce()
    try:
        page = await asyncio.to_thread(_fetch, with_query(url, q=nonce, search=nonce), config)
    except requests.RequestException as exc:
        logger.debug("reflection probe against %s failed: %s", url, exc)
        return VulnerabilityResult(
            type=REFLECTION, found=False, severity=Severity.MEDIUM,
            details="Could not complete XSS test", error=str(exc),
        )

    if find_reflection(page.body, nonce):
        return VulnerabilityResult(
            type=REFLECTION, found=True, severity=Severity.MEDIUM,
            details="Input parameters may be reflected in the page without proper encoding",
            evidence=nonce,
        )
    return VulnerabilityResult(
        type=REFLECTION, found=False, severity=Severity.MEDIUM,
        details="No input reflection detected",
    )


async def sql_error_probe(url: str, config: Config) -> VulnerabilityResult:
    try:
        page = await asyncio.to_thread(_fetch, with_query(url, id="1'"), config)
    except requests.RequestException as exc:
        logger.debug("SQL error probe against %s failed: %s", url, exc)
        return VulnerabilityResult(
            type=SQL_ERROR, found=False, severity=Severity.CRITICAL,
            details="Could not complete SQLi test", error=str(exc),
        )

    pattern = match_sql_error(page.body)
    if pattern is not None:
        return VulnerabilityResult(
            type=SQL_ERROR, found=True, severity=Severity.CRITICAL,
            details="SQL error messages detected in response - "
                    "possible SQL injection vulnerability",
            evidence=pattern.pattern,
        )
    return VulnerabilityResult(
        type=SQL_ERROR, found=False, severity=Severity.CRITICAL,
        details="No SQL error patterns detected",
    )


class VulnerabilityProbesModule(BaseModule):
    key         = "vulns"
    name        = "Vulnerability Probes"
    category    = "Vulnerabilities"
    description = "Safe reflected-input and SQL-error detection probes."

    async def run(self, url: str, config: Config):
        results = list(await asyncio.gather(
            reflection_probe(url, config),
            sql_error_probe(url, config),
        ))
        return self._result(results, self.checks_for(results))

    def checks_for(self, results: list[VulnerabilityResult]):
        checks = []
        for vuln in results:
            if vuln.type == REFLECTION:
                check_id, name = "xss-reflection", "XSS Reflection Test"
                found_status   = Status.WARNING
                recommendation = "Encode all user input before rendering it in HTML"
            else:
                check_id, name = "sqli-test", "SQL Injection Test"
                found_status   = Status.FAILED
                recommendation = ("Use parameterized queries and do not expose "
                                  "database errors to users")

            if vuln.error:
                checks.append(self._info(check_id, name, vuln.details, details=vuln.error))
            elif vuln.found:
                checks.append(self._check(
                    check_id, name, found_status, vuln.severity, vuln.details,
                    evidence=vuln.evidence, recommendation=recommendation,
                ))
            else:
                checks.append(self._passed(check_id, name, vuln.details))
        return checks
