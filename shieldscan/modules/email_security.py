"""
Email Authentication Analysis

Evaluates the DNS-published email-sender posture of a domain:

  SPF   — TXT record on the domain starting with  v=spf1
  DMARC — TXT record at  _dmarc.<domain>
  DKIM  — TXT records at  <selector>._domainkey.<domain>  for common selectors
  BIMI  — TXT record at  default._bimi.<domain>

The parsers are pure functions over record text so they can be tested without
a resolver.  The lookups (DMARC, every DKIM selector, BIMI) have no ordering
dependency and are issued concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Iterable, Optional

from ..core.types import (BIMIResult, DKIMResult, DMARCResult, EmailSecurity,
                          LookupStatus, RecordLookup, SPFResult)

logger = logging.getLogger(__name__)

Lookup = Callable[[str, str], Awaitable[RecordLookup]]

# Mechanisms that cost a DNS lookup when a receiver evaluates the record
SPF_LOOKUP_MECHANISMS = re.compile(r"\b(include:|a:|mx:|ptr:|ip4:|ip6:|exists:)", re.I)
SPF_LOOKUP_LIMIT      = 10

# "+all" or a bare trailing "all" (implicit + qualifier)
SPF_PASS_ALL = re.compile(r"(?:^|\s)\+?all(?:\s|$)", re.I)

DMARC_POLICIES = ("none", "quarantine", "reject")


def parse_tags(record: str) -> dict[str, str]:
    """Split a  k=v; k=v  record (DMARC, BIMI) into a lower-cased tag map."""
    tags: dict[str, str] = {}
    for part in record.split(";"):
        key, sep, value = part.partition("=")
        if sep:
            tags[key.strip().lower()] = value.strip()
    return tags


# ── SPF ───────────────────────────────────────────────────────────────────────

def analyze_spf(txt_records: Iterable[str]) -> SPFResult:
    record = next((r for r in txt_records if r.lower().startswith("v=spf1")), None)
    if record is None:
        return SPFResult(
            present=False,
            issues=("No SPF record found. Email spoofing is possible.",),
        )

    issues: list[str] = []
    valid   = True
    lowered = record.lower()

    if SPF_PASS_ALL.search(lowered):
        issues.append("SPF uses +all which allows any server to send email")
        valid = False

    if "?all" in lowered:
        issues.append("SPF uses ?all (neutral) which provides weak protection")

    mechanisms = len(SPF_LOOKUP_MECHANISMS.findall(record))
    if mechanisms > SPF_LOOKUP_LIMIT:
        issues.append(
            f"SPF has {mechanisms} mechanisms, may exceed DNS lookup limit "
            f"of {SPF_LOOKUP_LIMIT}"
        )

    if "-all" not in lowered and "~all" not in lowered:
        issues.append("SPF should end with -all (hard fail) or ~all (soft fail)")

    if "-all" in lowered:
        policy: Optional[str] = "reject"
    elif "~all" in lowered:
        policy = "softfail"
    elif "?all" in lowered:
        policy = "neutral"
    elif SPF_PASS_ALL.search(lowered):
        policy = "pass"
    else:
        policy = None

    return SPFResult(
        present=True,
        valid=valid,
        record=record,
        policy=policy,
        lookup_mechanisms=mechanisms,
        issues=tuple(issues),
    )


# ── DMARC ─────────────────────────────────────────────────────────────────────

def analyze_dmarc(lookup: RecordLookup) -> DMARCResult:
    if lookup.status is LookupStatus.ERROR:
        return DMARCResult(
            present=False,
            issues=(f"Could not retrieve DMARC record ({lookup.error})",),
        )

    record = next((r for r in lookup.records if r.upper().startswith("V=DMARC1")), None)
    if record is None:
        return DMARCResult(
            present=False,
            issues=("No DMARC record found. Email authentication is incomplete.",),
        )

    tags   = parse_tags(record)
    issues: list[str] = []
    valid  = True

    policy: Optional[str] = tags.get("p", "").lower() or None
    if policy not in DMARC_POLICIES:
        issues.append("DMARC policy (p=) not specified")
        valid  = False
        policy = None
    elif policy == "none":
        issues.append("DMARC policy is set to none (monitoring only, no enforcement)")

    if "rua" not in tags:
        issues.append("No aggregate report address (rua=) configured")

    if "sp" not in tags:
        issues.append("No subdomain policy (sp=) specified, inherits parent policy")

    return DMARCResult(
        present=True,
        valid=valid,
        record=record,
        policy=policy,
        issues=tuple(issues),
    )


# ── BIMI ──────────────────────────────────────────────────────────────────────

def analyze_bimi(lookup: RecordLookup) -> BIMIResult:
    record = next((r for r in lookup.records if r.upper().startswith("V=BIMI1")), None)
    if record is None:
        return BIMIResult(present=False)
    logo = parse_tags(record).get("l") or None
    return BIMIResult(present=True, record=record, logo_url=logo)


# ── orchestration ─────────────────────────────────────────────────────────────

async def probe_dkim(domain: str,
                     selectors: Iterable[str],
                     lookup: Lookup) -> DKIMResult:
    selectors = list(selectors)
    lookups   = await asyncio.gather(*(
        lookup(f"{sel}._domainkey.{domain}", "TXT") for sel in selectors
    ))
    found = tuple(sel for sel, res in zip(selectors, lookups) if res.present)
    return DKIMResult(present=bool(found), selectors=found)


async def analyze_email_security(domain: str,
                                 txt_records: Iterable[str],
                                 lookup: Lookup,
                                 selectors: Iterable[str]) -> EmailSecurity:
    dmarc_lookup, dkim, bimi_lookup = await asyncio.gather(
        lookup(f"_dmarc.{domain}", "TXT"),
        probe_dkim(domain, selectors, lookup),
        lookup(f"default._bimi.{domain}", "TXT"),
    )
    result = EmailSecurity(
        spf=analyze_spf(txt_records),
        dmarc=analyze_dmarc(dmarc_lookup),
        dkim=dkim,
        bimi=analyze_bimi(bimi_lookup),
    )
    logger.debug("email security for %s: spf=%s dmarc=%s dkim=%s bimi=%s",
                 domain, result.spf.present, result.dmarc.present,
                 result.dkim.selectors, result.bimi.present)
    return result
