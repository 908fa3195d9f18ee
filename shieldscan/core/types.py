"""
Shared data types for the entire ShieldScan engine.

Every analyzer produces Check objects plus one typed sub-result, wrapped in a
ModuleResult.  The aggregator folds all Checks into a ScanResult.  This single
contract lets the engine, storage, and report layers remain completely
decoupled from analyzer internals.

Result records are frozen: they are built once per scan and never mutated
afterwards, so they can be handed to persistence / UI collaborators safely.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class InvalidTargetError(ValueError):
    """The scan target could not be normalized into an http(s) URL."""


class Severity(str, Enum):
    """How serious a Check or vulnerability is."""
    CRITICAL = "critical"
    HIGH     = "high"
    MEDIUM   = "medium"
    LOW      = "low"
    INFO     = "info"

    @property
    def rank(self) -> int:
        return {
            Severity.INFO:     0,
            Severity.LOW:      1,
            Severity.MEDIUM:   2,
            Severity.HIGH:     3,
            Severity.CRITICAL: 4,
        }[self]

    @property
    def emoji(self) -> str:
        return {
            Severity.INFO:     "ℹ️",
            Severity.LOW:      "🟡",
            Severity.MEDIUM:   "🟠",
            Severity.HIGH:     "🔴",
            Severity.CRITICAL: "🚨",
        }[self]


class Status(str, Enum):
    """Outcome of a single Check."""
    PASSED  = "passed"
    WARNING = "warning"
    FAILED  = "failed"
    INFO    = "info"
    ERROR   = "error"

    @property
    def countable(self) -> bool:
        """info / error checks are displayed but never scored."""
        return self in (Status.PASSED, Status.WARNING, Status.FAILED)


class LookupStatus(str, Enum):
    PRESENT = "present"
    ABSENT  = "absent"
    ERROR   = "error"


# ── checks ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Check:
    """
    A single discrete observation produced by an analyzer.

    Attributes:
        id             — stable key used by UIs for fix-suggestion lookup
        name           — short human-readable label
        category       — DNS / SSL/TLS / Headers / Server / Vulnerabilities / System
        status         — scoring bucket (passed / warning / failed) or info / error
        severity       — how serious this is
        message        — one-line explanation
        details        — longer explanation, if any
        evidence       — matched pattern, reflected token, raw header value …
        recommendation — how to fix it
    """
    id:             str
    name:           str
    category:       str
    status:         Status
    severity:       Severity
    message:        str
    details:        Optional[str] = None
    evidence:       Optional[str] = None
    recommendation: Optional[str] = None


@dataclass(frozen=True)
class Summary:
    passed:   int = 0
    warnings: int = 0
    failed:   int = 0
    total:    int = 0


# ── DNS ───────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RecordLookup:
    """
    Outcome of one DNS query: present-with-data, absent, or a non-fatal error.
    """
    name:    str
    rdtype:  str
    status:  LookupStatus
    records: tuple[str, ...] = ()
    error:   str = ""

    @property
    def present(self) -> bool:
        return self.status is LookupStatus.PRESENT and bool(self.records)


@dataclass(frozen=True)
class MXRecord:
    exchange: str
    priority: int


@dataclass(frozen=True)
class SPFResult:
    present: bool
    valid:   bool = False
    record:  Optional[str] = None
    policy:  Optional[str] = None          # reject / softfail / neutral / pass
    lookup_mechanisms: int = 0
    issues:  tuple[str, ...] = ()


@dataclass(frozen=True)
class DMARCResult:
    present: bool
    valid:   bool = False
    record:  Optional[str] = None
    policy:  Optional[str] = None          # none / quarantine / reject
    issues:  tuple[str, ...] = ()


@dataclass(frozen=True)
class DKIMResult:
    present:   bool
    selectors: tuple[str, ...] = ()


@dataclass(frozen=True)
class BIMIResult:
    present:  bool
    record:   Optional[str] = None
    logo_url: Optional[str] = None


@dataclass(frozen=True)
class EmailSecurity:
    spf:   SPFResult
    dmarc: DMARCResult
    dkim:  DKIMResult
    bimi:  BIMIResult


@dataclass(frozen=True)
class SubdomainRisk:
    subdomain: str
    risk:      str                          # takeover / exposed / misconfigured
    severity:  Severity
    details:   str


@dataclass(frozen=True)
class DNSResult:
    hostname:       str
    resolved:       bool
    ipv4:           tuple[str, ...] = ()
    ipv6:           tuple[str, ...] = ()
    mx:             tuple[MXRecord, ...] = ()
    ns:             tuple[str, ...] = ()
    txt:            tuple[str, ...] = ()
    cname:          tuple[str, ...] = ()
    caa:            tuple[str, ...] = ()
    has_cdn:        bool = False
    cdn_provider:   Optional[str] = None
    has_dnssec:     bool = False
    email_security: Optional[EmailSecurity] = None
    subdomain_risks: tuple[SubdomainRisk, ...] = ()
    lookups:        tuple[RecordLookup, ...] = ()
    errors:         tuple[str, ...] = ()


# ── TLS ───────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CertificateInfo:
    subject:       str
    issuer:        str
    valid_from:    str
    valid_to:      str
    serial_number: str
    fingerprint:   str


@dataclass(frozen=True)
class TLSVersionInfo:
    version:   str
    supported: bool
    secure:    bool


@dataclass(frozen=True)
class SSLVulnerability:
    name:        str
    vulnerable:  bool
    severity:    Severity
    description: str


@dataclass(frozen=True)
class SSLResult:
    valid:             bool = False
    grade:             str = "F"
    issuer:            str = ""
    subject:           str = ""
    valid_from:        str = ""
    valid_to:          str = ""
    days_until_expiry: int = 0
    protocol:          str = ""
    cipher:            str = ""
    self_signed:       bool = False
    chain:             tuple[CertificateInfo, ...] = ()
    tls_versions:      tuple[TLSVersionInfo, ...] = ()
    vulnerabilities:   tuple[SSLVulnerability, ...] = ()
    errors:            tuple[str, ...] = ()

    @property
    def inspected(self) -> bool:
        """True when a certificate was actually retrieved."""
        return bool(self.subject or self.issuer)

    def supports(self, version: str) -> bool:
        return any(v.version == version and v.supported for v in self.tls_versions)


# ── HTTP headers ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HeaderAnalysis:
    present:        bool
    value:          Optional[str]
    status:         Status
    score:          int
    recommendation: Optional[str] = None
    details:        Optional[str] = None


@dataclass(frozen=True)
class ServerInfo:
    server:         Optional[str] = None
    powered_by:     Optional[str] = None
    technology:     tuple[str, ...] = ()
    server_exposed: bool = False


@dataclass(frozen=True)
class HeadersResult:
    url:             str
    fetched:         bool
    raw:             dict[str, str] = field(default_factory=dict)
    analysis:        dict[str, HeaderAnalysis] = field(default_factory=dict)
    score:           int = 0
    grade:           str = "F"
    recommendations: tuple[str, ...] = ()
    server:          ServerInfo = field(default_factory=ServerInfo)
    errors:          tuple[str, ...] = ()


# ── passive probes ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VulnerabilityResult:
    type:     str
    found:    bool
    severity: Severity
    details:  str
    evidence: Optional[str] = None
    error:    Optional[str] = None    # set when the probe could not complete


# ── module / scan envelopes ───────────────────────────────────────────────────

@dataclass
class ModuleResult:
    """
    Output from a single analyzer: its Checks plus its typed sub-result.
    Only the engine touches this; it is not part of the public ScanResult.
    """
    module_name: str
    checks:      list[Check] = field(default_factory=list)
    result:      Any = None
    duration_ms: float = 0.0
    error:       str = ""


@dataclass(frozen=True)
class ScanResult:
    """Complete output of one scan.  JSON-serializable via to_dict()."""
    url:             str
    timestamp:       str
    score:           int
    grade:           str
    checks:          tuple[Check, ...]
    summary:         Summary
    dns:             Optional[DNSResult]
    ssl:             Optional[SSLResult]
    headers:         Optional[HeadersResult]
    vulnerabilities: tuple[VulnerabilityResult, ...]
    duration_ms:     float
    scan_id:         Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
