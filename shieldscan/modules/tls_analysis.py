"""
TLS / Certificate Analysis Module

Inspects the certificate and protocol configuration of an HTTPS endpoint.

Techniques
----------
1. Unverified inspection handshake
   Connect with chain validation disabled so that expired, self-signed or
   otherwise broken certificates can still be read and reported.  The leaf
   (and, where the interpreter exposes it, the presented chain) is parsed
   with cryptography; the negotiated protocol and cipher are recorded.

2. Verified handshake
   A second connection with the platform's default trust store yields the
   `valid` verdict and the verification error, if any.

3. Protocol-version probing
   Independent connections pinned to a single version each
   (TLSv1.3, TLSv1.2, TLSv1.1, TLSv1.0, SSLv3).  A negotiated TLSv1.3 is
   taken as evidence that TLSv1.2 is also available.  Versions the local
   OpenSSL build cannot offer are reported as unsupported.

4. Vulnerability table + SSL grade
   Deterministic rules over the version list and the cipher string, folded
   into a 0-100 score and the SSL letter scale (95 / 85 / 75 / 60 / 40).
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import ssl
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from ..core.config import Config
from ..core.types import (CertificateInfo, Severity, SSLResult,
                          SSLVulnerability, Status, TLSVersionInfo)
from .base import BaseModule

logger = logging.getLogger(__name__)

MAX_CHAIN_DEPTH = 10

WEAK_CIPHERS = ["RC4", "DES", "3DES", "MD5", "NULL", "EXPORT",
                "ANON", "RC2", "IDEA", "SEED", "CAMELLIA128"]
PFS_CIPHERS  = ["ECDHE", "DHE"]

SECURE_VERSIONS = ("TLSv1.3", "TLSv1.2")

# Probe order; the label is what ssl.SSLObject.version() reports
TLS_VERSIONS: list[tuple[str, ssl.TLSVersion]] = [
    ("TLSv1.3", ssl.TLSVersion.TLSv1_3),
    ("TLSv1.2", ssl.TLSVersion.TLSv1_2),
    ("TLSv1.1", ssl.TLSVersion.TLSv1_1),
    ("TLSv1",   ssl.TLSVersion.TLSv1),
    ("SSLv3",   ssl.TLSVersion.SSLv3),
]

# Reported label for each negotiated version string
VERSION_LABELS = {"TLSv1": "TLSv1.0"}

NAME_FIELDS = [
    ("CN", NameOID.COMMON_NAME),
    ("O",  NameOID.ORGANIZATION_NAME),
    ("OU", NameOID.ORGANIZATIONAL_UNIT_NAME),
    ("C",  NameOID.COUNTRY_NAME),
    ("ST", NameOID.STATE_OR_PROVINCE_NAME),
    ("L",  NameOID.LOCALITY_NAME),
]

SSL_GRADE_THRESHOLDS: list[tuple[int, str]] = [
    (95, "A+"),
    (85, "A"),
    (75, "B"),
    (60, "C"),
    (40, "D"),
]

VULN_PENALTY = {
    Severity.CRITICAL: 25,
    Severity.HIGH:     15,
    Severity.MEDIUM:   10,
    Severity.LOW:      5,
}


# ── certificate helpers ───────────────────────────────────────────────────────

def format_name(name: x509.Name) -> str:
    parts = []
    for label, oid in NAME_FIELDS:
        attrs = name.get_attributes_for_oid(oid)
        if attrs:
            parts.append(f"{label}={attrs[0].value}")
    return ", ".join(parts) if parts else "Unknown"


def fingerprint(cert: x509.Certificate) -> str:
    """SHA-256 fingerprint as colon-separated upper-case hex."""
    return cert.fingerprint(hashes.SHA256()).hex(":").upper()


def describe(cert: x509.Certificate) -> CertificateInfo:
    return CertificateInfo(
        subject=format_name(cert.subject),
        issuer=format_name(cert.issuer),
        valid_from=cert.not_valid_before_utc.isoformat(),
        valid_to=cert.not_valid_after_utc.isoformat(),
        serial_number=format(cert.serial_number, "X"),
        fingerprint=fingerprint(cert),
    )


def days_until(not_after: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left before *not_after*; negative once expired."""
    now = now or datetime.now(timezone.utc)
    return math.floor((not_after - now).total_seconds() / 86400)


def walk_chain(presented: list[x509.Certificate]) -> list[x509.Certificate]:
    """
    Order the presented certificates leaf-first by following issuer links.
    Stops at a self-issued certificate, a missing issuer, or MAX_CHAIN_DEPTH.
    """
    if not presented:
        return []
    by_subject: dict[x509.Name, x509.Certificate] = {}
    for cert in presented:
        by_subject.setdefault(cert.subject, cert)

    chain:   list[x509.Certificate] = []
    current: Optional[x509.Certificate] = presented[0]
    depth = 0
    while current is not None and depth < MAX_CHAIN_DEPTH:
        chain.append(current)
        issuer = by_subject.get(current.issuer)
        if issuer is None or fingerprint(issuer) == fingerprint(current):
            break
        current = issuer
        depth += 1
    return chain


def is_self_signed(leaf: x509.Certificate,
                   presented: list[x509.Certificate]) -> bool:
    if format_name(leaf.issuer) == format_name(leaf.subject):
        return True
    claimed = next((c for c in presented if c.subject == leaf.issuer), None)
    return claimed is not None and fingerprint(claimed) == fingerprint(leaf)


# ── vulnerability table & grade ───────────────────────────────────────────────

def detect_vulnerabilities(versions: list[TLSVersionInfo],
                           cipher: str) -> list[SSLVulnerability]:
    supported = {v.version for v in versions if v.supported}
    vulns: list[SSLVulnerability] = []

    if "SSLv3" in supported:
        vulns.append(SSLVulnerability(
            "SSLv3 Enabled (POODLE)", True, Severity.CRITICAL,
            "SSLv3 is vulnerable to POODLE attack and should be disabled."))
    if "TLSv1.0" in supported:
        vulns.append(SSLVulnerability(
            "TLS 1.0 Enabled", True, Severity.HIGH,
            "TLS 1.0 is deprecated and has known vulnerabilities. "
            "Upgrade to TLS 1.2 or higher."))
    if "TLSv1.1" in supported:
        vulns.append(SSLVulnerability(
            "TLS 1.1 Enabled", True, Severity.MEDIUM,
            "TLS 1.1 is deprecated. Consider using only TLS 1.2 and TLS 1.3."))

    upper = cipher.upper()
    # first listed match wins, so NULL-MD5 rates as MD5 (high)
    for weak in WEAK_CIPHERS:
        if weak in upper:
            vulns.append(SSLVulnerability(
                f"Weak Cipher: {weak}", True,
                Severity.CRITICAL if weak in ("NULL", "EXPORT") else Severity.HIGH,
                f"Weak cipher {weak} is being used. Use strong ciphers only."))
            break

    if cipher != "unknown" and not any(p in upper for p in PFS_CIPHERS):
        vulns.append(SSLVulnerability(
            "No Perfect Forward Secrecy", True, Severity.MEDIUM,
            "Perfect Forward Secrecy (PFS) is not enabled. "
            "Use ECDHE or DHE cipher suites."))

    if "TLSv1.3" in supported:
        vulns.append(SSLVulnerability(
            "TLS 1.3 Supported", False, Severity.INFO,
            "TLS 1.3 is supported, providing the best security and performance."))

    return vulns


def ssl_score(result: SSLResult) -> int:
    score = 100

    if not result.valid:
        score -= 40
    if result.self_signed:
        score -= 30

    days = result.days_until_expiry
    if days < 0:
        score -= 50
    elif days < 7:
        score -= 30
    elif days < 30:
        score -= 15
    elif days < 60:
        score -= 5

    if not result.supports("TLSv1.2") and not result.supports("TLSv1.3"):
        score -= 30
    if result.supports("TLSv1.0"):
        score -= 15
    if result.supports("SSLv3"):
        score -= 30

    for vuln in result.vulnerabilities:
        if vuln.vulnerable:
            score -= VULN_PENALTY.get(vuln.severity, 0)

    if result.supports("TLSv1.3"):
        score += 5

    return max(0, min(100, score))


def ssl_grade(result: SSLResult) -> str:
    score = ssl_score(result)
    for threshold, letter in SSL_GRADE_THRESHOLDS:
        if score >= threshold:
            return letter
    return "F"


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


# ── connections ───────────────────────────────────────────────────────────────

def _unverified_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode    = ssl.CERT_NONE
    return ctx


def _inspection_context() -> ssl.SSLContext:
    """Unverified context that still accepts legacy protocols and non-PFS suites."""
    ctx = _unverified_context()
    try:
        ctx.minimum_version = ssl.TLSVersion.TLSv1
    except (ValueError, ssl.SSLError) as exc:
        logger.debug("local OpenSSL keeps its protocol floor: %s", exc)
    try:
        ctx.set_ciphers("ALL:@SECLEVEL=0")
    except (ValueError, ssl.SSLError) as exc:
        logger.debug("local OpenSSL keeps its default cipher list: %s", exc)
    return ctx


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=2.0)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("TLS close did not complete cleanly: %s", exc)


async def _connect(host: str, port: int, ctx: ssl.SSLContext, timeout: float):
    return await asyncio.wait_for(
        asyncio.open_connection(host, port, ssl=ctx, server_hostname=host),
        timeout=timeout,
    )


async def verify_handshake(host: str, port: int, timeout: float) -> tuple[bool, str]:
    """Handshake against the default trust store → (valid, reason)."""
    try:
        _, writer = await _connect(host, port, ssl.create_default_context(), timeout)
    except ssl.SSLCertVerificationError as exc:
        return False, exc.verify_message or str(exc)
    except (OSError, asyncio.TimeoutError) as exc:
        return False, f"{type(exc).__name__}: {exc}"
    await _close(writer)
    return True, ""


async def probe_version(host: str, port: int,
                        label: str, version: ssl.TLSVersion,
                        timeout: float) -> bool:
    ctx = _inspection_context()
    try:
        ctx.minimum_version = version
        ctx.maximum_version = version
    except (ValueError, ssl.SSLError) as exc:
        logger.debug("local OpenSSL cannot offer %s: %s", label, exc)
        return False

    try:
        _, writer = await _connect(host, port, ctx, timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    try:
        negotiated = writer.get_extra_info("ssl_object").version()
    finally:
        await _close(writer)
    return negotiated == label


async def probe_versions(host: str, port: int, timeout: float) -> list[TLSVersionInfo]:
    legacy = [(label, v) for label, v in TLS_VERSIONS if label != "TLSv1.2"]
    results = await asyncio.gather(*(
        probe_version(host, port, label, v, timeout) for label, v in legacy
    ))
    supported = dict(zip((label for label, _ in legacy), results))

    if supported["TLSv1.3"]:
        supported["TLSv1.2"] = True
    else:
        supported["TLSv1.2"] = await probe_version(
            host, port, "TLSv1.2", ssl.TLSVersion.TLSv1_2, timeout)

    return [
        TLSVersionInfo(
            version=VERSION_LABELS.get(label, label),
            supported=supported[label],
            secure=VERSION_LABELS.get(label, label) in SECURE_VERSIONS,
        )
        for label, _ in TLS_VERSIONS
    ]


class TLSAnalysisModule(BaseModule):
    key         = "ssl"
    name        = "SSL/TLS Analysis"
    category    = "SSL/TLS"
    description = (
        "Inspects the certificate chain, expiry, supported protocol versions "
        "and cipher strength, and computes an SSL grade."
    )

    async def run(self, hostname: str, config: Config, port: Optional[int] = None):
        port    = port or config.tls_port
        timeout = config.timeout

        try:
            leaf, presented, protocol, cipher = await self._inspect(
                hostname, port, timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.info("TLS inspection of %s:%d failed: %s", hostname, port, exc)
            result = SSLResult(errors=(f"TLS connection failed: {type(exc).__name__}: {exc}",))
            return self._result(result, self.checks_for(result))
        except ValueError as exc:
            logger.info("certificate from %s:%d could not be parsed: %s", hostname, port, exc)
            result = SSLResult(errors=(f"Could not parse certificate: {exc}",))
            return self._result(result, self.checks_for(result))

        (valid, reason), versions = await asyncio.gather(
            verify_handshake(hostname, port, timeout),
            probe_versions(hostname, port, timeout),
        )

        errors = (f"Certificate verification failed: {reason}",) if not valid else ()
        info   = describe(leaf)
        result = SSLResult(
            valid=valid,
            issuer=info.issuer,
            subject=info.subject,
            valid_from=info.valid_from,
            valid_to=info.valid_to,
            days_until_expiry=days_until(leaf.not_valid_after_utc),
            protocol=protocol,
            cipher=cipher,
            self_signed=is_self_signed(leaf, presented),
            chain=tuple(describe(c) for c in walk_chain(presented)),
            tls_versions=tuple(versions),
            vulnerabilities=tuple(detect_vulnerabilities(versions, cipher)),
            errors=errors,
        )
        result = replace(result, grade=ssl_grade(result))
        logger.info("TLS %s:%d: grade=%s valid=%s protocol=%s",
                    hostname, port, result.grade, valid, protocol)
        return self._result(result, self.checks_for(result))

    @staticmethod
    async def _inspect(host: str, port: int, timeout: float):
        """Unverified handshake → (leaf, presented chain, protocol, cipher)."""
        _, writer = await _connect(host, port, _inspection_context(), timeout)
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            leaf_der   = ssl_object.getpeercert(binary_form=True)
            if not leaf_der:
                raise ssl.SSLError("server presented no certificate")

            ders = [leaf_der]
            get_chain = getattr(ssl_object, "get_unverified_chain", None)
            if get_chain is not None:
                ders += [d for d in (get_chain() or [])[1:] if isinstance(d, bytes)]

            protocol = ssl_object.version() or "unknown"
            negotiated = ssl_object.cipher()
            cipher = f"{negotiated[0]} ({negotiated[1]})" if negotiated else "unknown"
        finally:
            await _close(writer)

        presented = [x509.load_der_x509_certificate(d) for d in ders]
        return presented[0], presented, protocol, cipher

    # ── checks ────────────────────────────────────────────────────────────────

    def checks_for(self, result: SSLResult):
        if not result.inspected:
            return [self._check(
                "ssl-valid", "SSL Certificate", Status.FAILED, Severity.CRITICAL,
                "; ".join(result.errors) or "No certificate could be retrieved",
                recommendation="Ensure HTTPS is reachable on port 443 with a valid certificate",
            )]

        checks = []
        if result.valid:
            checks.append(self._passed(
                "ssl-valid", "SSL Certificate",
                f"Valid certificate issued by {result.issuer}",
            ))
        else:
            checks.append(self._check(
                "ssl-valid", "SSL Certificate", Status.FAILED, Severity.CRITICAL,
                "Certificate is not trusted",
                details="; ".join(result.errors) or None,
                recommendation="Install a certificate issued by a trusted CA",
            ))

        days = result.days_until_expiry
        if days < 0:
            checks.append(self._check(
                "ssl-expiry", "Certificate Expiry", Status.FAILED, Severity.CRITICAL,
                f"Certificate expired {abs(days)} days ago",
                evidence=result.valid_to,
                recommendation="Renew the certificate immediately",
            ))
        elif days < 7:
            checks.append(self._check(
                "ssl-expiry", "Certificate Expiry", Status.WARNING, Severity.HIGH,
                f"Certificate expires in {days} days",
                evidence=result.valid_to,
                recommendation="Renew the certificate now",
            ))
        elif days < 30:
            checks.append(self._check(
                "ssl-expiry", "Certificate Expiry", Status.WARNING, Severity.MEDIUM,
                f"Certificate expires in {days} days",
                evidence=result.valid_to,
                recommendation="Schedule certificate renewal",
            ))
        else:
            checks.append(self._passed(
                "ssl-expiry", "Certificate Expiry",
                f"Certificate valid for {days} more days",
            ))

        if result.self_signed:
            checks.append(self._check(
                "ssl-self-signed", "Self-Signed Certificate", Status.WARNING, Severity.MEDIUM,
                "Certificate is self-signed",
                evidence=result.issuer,
                recommendation="Use a certificate from a trusted certificate authority",
            ))

        if result.protocol in SECURE_VERSIONS:
            checks.append(self._passed(
                "ssl-protocol", "TLS Protocol", f"Using {result.protocol}",
                evidence=result.cipher,
            ))
        else:
            checks.append(self._check(
                "ssl-protocol", "TLS Protocol", Status.FAILED, Severity.HIGH,
                f"Outdated protocol negotiated: {result.protocol}",
                evidence=result.cipher,
                recommendation="Disable legacy protocols and enable TLS 1.2 and 1.3",
            ))

        if result.supports("TLSv1.3"):
            checks.append(self._passed("tls-13", "TLS 1.3 Support", "TLS 1.3 is supported"))

        for vuln in result.vulnerabilities:
            if not vuln.vulnerable:
                continue
            status = (Status.FAILED if vuln.severity in (Severity.CRITICAL, Severity.HIGH)
                      else Status.WARNING)
            checks.append(self._check(
                f"ssl-vuln-{_slug(vuln.name)}", vuln.name, status, vuln.severity,
                vuln.description,
            ))

        checks.append(self._check(
            "ssl-grade", "SSL Grade",
            self._grade_status(result.grade), self._grade_severity(result.grade),
            f"SSL configuration graded {result.grade}",
        ))
        return checks
