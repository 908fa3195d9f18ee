"""
Central configuration dataclass.

One Config object is created from CLI arguments (or by the embedding
application) and passed to every module.  Modules must not read sys.argv or
environment variables directly — they receive everything they need through
Config.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


USER_AGENT = "ShieldScan Security Scanner/2.0"

# Browser-like request headers so naive WAFs do not block the header fetch
BROWSER_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,image/apng,*/*;q=0.8"
    ),
    "Accept-Language":           "en-US,en;q=0.9",
    "Accept-Encoding":           "gzip, deflate",
    "Cache-Control":             "no-cache",
    "Sec-Fetch-Dest":            "document",
    "Sec-Fetch-Mode":            "navigate",
    "Sec-Fetch-Site":            "none",
    "Upgrade-Insecure-Requests": "1",
}

DKIM_SELECTORS = [
    "default", "dkim", "selector1", "selector2", "s1", "s2",
    "google", "k1", "mail", "email", "smtp",
]


@dataclass
class Config:
    # ── timeouts (seconds) ────────────────────────────────────────────────────
    timeout:        float = 15.0     # TLS connect / header fetch base timeout
    dns_timeout:    float = 5.0      # lifetime of each DNS lookup
    probe_timeout:  float = 10.0     # each passive vulnerability probe
    module_timeout: float = 60.0     # asyncio.wait_for bound per analyzer
    scan_deadline:  float = 120.0    # no new stage is started past this

    # ── tls options ───────────────────────────────────────────────────────────
    tls_port: int = 443

    # ── header fetch options ──────────────────────────────────────────────────
    header_retries:       int   = 3
    retry_timeout_step:   float = 5.0
    retry_backoff:        float = 1.0
    max_redirects:        int   = 5
    redirect_budget_step: float = 5.0
    browser_headers: dict[str, str] = field(
        default_factory=lambda: dict(BROWSER_HEADERS))

    # ── probe options ─────────────────────────────────────────────────────────
    user_agent:     str = USER_AGENT
    max_body_bytes: int = 100_000

    # ── dns options ───────────────────────────────────────────────────────────
    dkim_selectors: list[str] = field(
        default_factory=lambda: list(DKIM_SELECTORS))
    nameservers: Optional[list[str]] = None      # None → system resolver

    # ── storage / sinks ───────────────────────────────────────────────────────
    db_path:     Optional[Path] = field(default_factory=lambda: Path("shieldscan.db"))
    webhook_url: Optional[str] = None

    # ── output ────────────────────────────────────────────────────────────────
    json_output: Optional[Path] = None
    csv_output:  Optional[Path] = None
    quiet:       bool = False
    verbose:     bool = False

    @classmethod
    def from_args(cls, args) -> "Config":
        """Build a Config from parsed argparse Namespace."""
        cfg = cls()

        if getattr(args, "timeout", None):
            cfg.timeout = float(args.timeout)
        if getattr(args, "deadline", None):
            cfg.scan_deadline = float(args.deadline)
        if getattr(args, "nameserver", None):
            cfg.nameservers = list(args.nameserver)

        cfg.quiet   = getattr(args, "quiet", False)
        cfg.verbose = getattr(args, "verbose", False)

        if getattr(args, "json", None):
            cfg.json_output = Path(args.json)
        if getattr(args, "csv", None):
            cfg.csv_output = Path(args.csv)

        if getattr(args, "no_db", False):
            cfg.db_path = None
        elif getattr(args, "db", None):
            cfg.db_path = Path(args.db)

        cfg.webhook_url = getattr(args, "webhook", None)
        return cfg
