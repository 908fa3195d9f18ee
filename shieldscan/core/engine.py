"""
Async Engine — orchestrates one scan.

Stages run in dependency order:

    normalize target ─▶ DNS ─┬─▶ TLS      ─┬─▶ probes ─▶ aggregate ─▶ sinks
                             └─▶ headers  ─┘

DNS must resolve before TLS or HTTP is attempted.  TLS and headers are
independent and run concurrently; the passive probes need a working HTTP
path so they only run once the header fetch succeeded.

Each analyzer runs inside asyncio.wait_for() so a slow or hanging analyzer
cannot stall the scan, and anything that escapes an analyzer becomes an
error Check instead of an exception.  The overall scan deadline is checked
before every stage: once it has passed no further stage is started.

Progress is reported through an optional callback so CLI and embedding
applications can both use it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from ..modules.base import BaseModule
from ..modules.dns_analysis import DNSAnalysisModule
from ..modules.header_analysis import HeaderAnalysisModule, header_risks
from ..modules.tls_analysis import TLSAnalysisModule
from ..modules.vuln_probes import VulnerabilityProbesModule
from .config import Config
from .scoring import aggregate
from .sinks import ResultSink
from .types import (Check, InvalidTargetError, ModuleResult, ScanResult,
                    Severity, Status)

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


def normalize_target(target: str) -> tuple[str, str]:
    """
    Canonicalize user input into (url, hostname).

    A missing scheme defaults to https.  Raises InvalidTargetError for input
    that cannot be an http(s) URL; no network I/O happens here.
    """
    raw = (target or "").strip()
    if not raw:
        raise InvalidTargetError("Target is empty")
    if not _SCHEME.match(raw):
        raw = f"https://{raw}"

    parts  = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidTargetError(f"Unsupported scheme: {parts.scheme!r}")
    if not parts.hostname or any(c.isspace() for c in parts.netloc):
        raise InvalidTargetError(f"Invalid hostname in {target!r}")
    try:
        parts.port
    except ValueError as exc:
        raise InvalidTargetError(f"Invalid port in {target!r}") from exc

    url = urlunsplit((scheme, parts.netloc, parts.path or "/", parts.query, ""))
    return url, parts.hostname


def https_missing_check() -> Check:
    return Check(
        id="ssl-missing",
        name="HTTPS Not Enabled",
        category="SSL/TLS",
        status=Status.FAILED,
        severity=Severity.CRITICAL,
        message="Site is served over plain HTTP; traffic is not encrypted",
        recommendation="Serve the site over HTTPS and redirect HTTP to HTTPS",
    )


class Engine:
    """
    Drives the full scan lifecycle:

        engine = Engine(config, sinks=[Storage("shieldscan.db")])
        result = await engine.scan("example.com", progress=print)

    Analyzers and sinks are injected; defaults are the real analyzers and no
    sinks.
    """

    def __init__(self,
                 config: Config,
                 *,
                 dns: Optional[BaseModule] = None,
                 tls: Optional[BaseModule] = None,
                 headers: Optional[BaseModule] = None,
                 probes: Optional[BaseModule] = None,
                 sinks: Iterable[ResultSink] = ()) -> None:
        self.config  = config
        self.dns     = dns or DNSAnalysisModule()
        self.tls     = tls or TLSAnalysisModule()
        self.headers = headers or HeaderAnalysisModule()
        self.probes  = probes or VulnerabilityProbesModule()
        self.sinks   = list(sinks)

    # ── execution ─────────────────────────────────────────────────────────────

    async def scan(self,
                   target: str,
                   progress: Optional[ProgressFn] = None) -> ScanResult:
        url, hostname = normalize_target(target)
        https = urlsplit(url).scheme == "https"
        port  = urlsplit(url).port

        start    = time.monotonic()
        deadline = start + self.config.scan_deadline
        ts       = datetime.now(timezone.utc).isoformat()

        def _emit(msg: str) -> None:
            if progress and not self.config.quiet:
                progress(msg)

        logger.info("scan started: %s", url)
        checks: list[Check] = []
        ssl_result = headers_result = None
        vulnerabilities = []

        # ── stage 1: DNS ──────────────────────────────────────────────────────
        dns_mod = await self._run_module(self.dns, _emit, hostname, self.config)
        checks += dns_mod.checks
        dns_result = dns_mod.result
        resolved   = dns_result is not None and dns_result.resolved

        if not https:
            checks.append(https_missing_check())

        # ── stage 2: TLS ∥ headers ────────────────────────────────────────────
        if not resolved:
            logger.info("%s did not resolve; skipping TLS, header and probe stages", hostname)
        elif self._past(deadline):
            checks.append(self._deadline_check("TLS and header analysis"))
        else:
            stage = [self._run_module(self.headers, _emit, url, self.config)]
            if https:
                stage.insert(0, self._run_module(
                    self.tls, _emit, hostname, self.config, port))
            results = await asyncio.gather(*stage)
            if https:
                ssl_mod, headers_mod = results
                checks += ssl_mod.checks
                ssl_result = ssl_mod.result
            else:
                (headers_mod,) = results
            checks += headers_mod.checks
            headers_result = headers_mod.result

        # ── stage 3: passive probes ───────────────────────────────────────────
        if headers_result is not None and headers_result.fetched:
            vulnerabilities += header_risks(headers_result)
            if self._past(deadline):
                checks.append(self._deadline_check("vulnerability probes"))
            else:
                probe_mod = await self._run_module(self.probes, _emit, url, self.config)
                checks += probe_mod.checks
                vulnerabilities += probe_mod.result or []

        # ── stage 4: aggregate ────────────────────────────────────────────────
        result = aggregate(
            url, ts, checks,
            dns=dns_result,
            ssl=ssl_result,
            headers=headers_result,
            vulnerabilities=vulnerabilities,
            duration_ms=(time.monotonic() - start) * 1000,
            scan_id=uuid.uuid4().hex,
        )
        logger.info("scan finished: %s score=%d grade=%s (%.0f ms)",
                    url, result.score, result.grade, result.duration_ms)

        await self._publish(result)
        return result

    async def _run_module(self,
                          module: BaseModule,
                          emit: ProgressFn,
                          *args) -> ModuleResult:
        emit(f"\n{'─'*60}")
        emit(f"▶  Starting: {module.name}")
        start = time.monotonic()
        try:
            result: ModuleResult = await asyncio.wait_for(
                module.run(*args), timeout=self.config.module_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.0fs", module.name, self.config.module_timeout)
            result = self._error_result(
                module, f"Timed out after {self.config.module_timeout:.0f}s", "timeout")
        except Exception as exc:
            logger.exception("%s crashed", module.name)
            result = self._error_result(module, f"Analyzer crashed: {exc}", str(exc))

        result.duration_ms = round((time.monotonic() - start) * 1000, 1)
        emit(f"✔  Done: {module.name}  ({result.duration_ms:.0f} ms)  "
             f"checks={len(result.checks)}")
        return result

    @staticmethod
    def _error_result(module: BaseModule, message: str, error: str) -> ModuleResult:
        check = Check(
            id=f"{module.key}-error",
            name=f"{module.name} Error",
            category=module.category,
            status=Status.ERROR,
            severity=Severity.INFO,
            message=message,
        )
        return ModuleResult(module_name=module.name, checks=[check], error=error)

    @staticmethod
    def _past(deadline: float) -> bool:
        return time.monotonic() >= deadline

    def _deadline_check(self, stage: str) -> Check:
        logger.warning("scan deadline of %.0fs reached; skipping %s",
                       self.config.scan_deadline, stage)
        return Check(
            id="scan-deadline",
            name="Scan Deadline",
            category="System",
            status=Status.ERROR,
            severity=Severity.INFO,
            message=f"Scan deadline of {self.config.scan_deadline:.0f}s reached; "
                    f"{stage} skipped",
        )

    async def _publish(self, result: ScanResult) -> None:
        for sink in self.sinks:
            try:
                await sink.publish(result)
            except Exception:
                logger.exception("result sink %s failed", type(sink).__name__)
