"""
DNS Analysis Module

Resolves every record type of interest for the target hostname concurrently
(A, AAAA, MX, NS, TXT, CNAME, CAA, DNSKEY) and derives:

  • resolution status  — resolved iff at least one A or AAAA address exists
  • CDN detection      — NS / CNAME / TXT text and the hostname are matched
                         against a fixed provider table; first provider wins
  • DNSSEC indicator   — a DNSKEY record is published for the name
  • email posture      — SPF / DMARC / DKIM / BIMI (see email_security.py)
  • subdomain risks    — dangling CNAMEs, especially to claimable services

Every lookup is independent.  A failed lookup is recorded as absent or as a
non-fatal error on the RecordLookup; it never aborts the analysis.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from ..core.config import Config
from ..core.types import (DNSResult, LookupStatus, MXRecord, RecordLookup,
                          Severity, Status, SubdomainRisk)
from .base import BaseModule
from .email_security import Lookup, analyze_email_security

logger = logging.getLogger(__name__)

RECORD_TYPES = ("A", "AAAA", "MX", "NS", "TXT", "CNAME", "CAA", "DNSKEY")

# Provider → patterns.  Table order is the tie-break.
CDN_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "Cloudflare":          [re.compile(r"cloudflare", re.I), re.compile(r"cf-ray", re.I)],
    "AWS CloudFront":      [re.compile(r"cloudfront", re.I), re.compile(r"x-amz-cf", re.I)],
    "Fastly":              [re.compile(r"fastly", re.I), re.compile(r"x-served-by.*cache", re.I)],
    "Akamai":              [re.compile(r"akamai", re.I), re.compile(r"x-akamai", re.I)],
    "Google Cloud CDN":    [re.compile(r"google", re.I), re.compile(r"gws", re.I)],
    "Microsoft Azure CDN": [re.compile(r"azure", re.I), re.compile(r"x-ms-ref", re.I)],
    "Vercel":              [re.compile(r"vercel", re.I), re.compile(r"x-vercel", re.I)],
    "Netlify":             [re.compile(r"netlify", re.I)],
}

# CNAME target suffix → service whose resources can be re-registered by anyone
TAKEOVER_SERVICES: dict[str, str] = {
    ".s3.amazonaws.com":       "AWS S3",
    ".cloudfront.net":         "AWS CloudFront",
    ".elasticbeanstalk.com":   "AWS Elastic Beanstalk",
    ".azurewebsites.net":      "Azure App Service",
    ".blob.core.windows.net":  "Azure Blob Storage",
    ".cloudapp.azure.com":     "Azure Virtual Machine",
    ".trafficmanager.net":     "Azure Traffic Manager",
    ".azureedge.net":          "Azure CDN",
    ".herokuapp.com":          "Heroku",
    ".herokudns.com":          "Heroku",
    ".github.io":              "GitHub Pages",
    ".netlify.app":            "Netlify",
    ".myshopify.com":          "Shopify",
    ".ghost.io":               "Ghost",
    ".surge.sh":               "Surge.sh",
    ".bitbucket.io":           "Bitbucket",
    ".pantheonsite.io":        "Pantheon",
    ".zendesk.com":            "Zendesk",
    ".readme.io":              "ReadMe",
}


# ── lookups ───────────────────────────────────────────────────────────────────

def _render(rdtype: str, rdata) -> str:
    if rdtype in ("A", "AAAA"):
        return rdata.address
    if rdtype == "MX":
        return f"{rdata.preference} {rdata.exchange.to_text().rstrip('.')}"
    if rdtype in ("NS", "CNAME"):
        return rdata.target.to_text().rstrip(".")
    if rdtype == "TXT":
        return b"".join(rdata.strings).decode("utf-8", errors="replace")
    return rdata.to_text()


async def resolve_record(resolver: dns.asyncresolver.Resolver,
                         name: str,
                         rdtype: str) -> RecordLookup:
    """Query one record type; never raises."""
    try:
        answer = await resolver.resolve(name, rdtype)
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return RecordLookup(name=name, rdtype=rdtype, status=LookupStatus.ABSENT)
    except (dns.exception.DNSException, OSError) as exc:
        logger.debug("%s lookup for %s failed: %s", rdtype, name, exc)
        return RecordLookup(name=name, rdtype=rdtype, status=LookupStatus.ERROR,
                            error=f"{type(exc).__name__}: {exc}")

    records = tuple(_render(rdtype, rdata) for rdata in answer)
    status  = LookupStatus.PRESENT if records else LookupStatus.ABSENT
    return RecordLookup(name=name, rdtype=rdtype, status=status, records=records)


def make_lookup(config: Config) -> Lookup:
    resolver = dns.asyncresolver.Resolver()
    if config.nameservers:
        resolver.nameservers = list(config.nameservers)
    resolver.lifetime = config.dns_timeout
    return functools.partial(resolve_record, resolver)


# ── derived analysis ──────────────────────────────────────────────────────────

def detect_cdn(hostname: str, records: list[str]) -> Optional[str]:
    """Return the first provider whose pattern matches the records or hostname."""
    text = " ".join(records)
    for provider, patterns in CDN_PATTERNS.items():
        for pattern in patterns:
            if pattern.search(text) or pattern.search(hostname):
                return provider
    return None


def parse_mx(records: tuple[str, ...]) -> tuple[MXRecord, ...]:
    parsed = []
    for rec in records:
        priority, _, exchange = rec.partition(" ")
        try:
            parsed.append(MXRecord(exchange=exchange, priority=int(priority)))
        except ValueError:
            continue
    return tuple(sorted(parsed, key=lambda m: m.priority))


def takeover_service(target: str) -> Optional[str]:
    target = target.lower().rstrip(".")
    for suffix, service in TAKEOVER_SERVICES.items():
        if target.endswith(suffix):
            return service
    return None


class DNSAnalysisModule(BaseModule):
    key         = "dns"
    name        = "DNS Analysis"
    category    = "DNS"
    description = (
        "Resolves A/AAAA/MX/NS/TXT/CNAME/CAA records, detects CDNs, and audits "
        "SPF, DMARC, DKIM and BIMI email authentication."
    )

    def __init__(self, lookup: Optional[Lookup] = None) -> None:
        self._lookup = lookup

    async def run(self, hostname: str, config: Config):
        lookup = self._lookup or make_lookup(config)

        lookups = await asyncio.gather(*(lookup(hostname, t) for t in RECORD_TYPES))
        by_type: dict[str, RecordLookup] = dict(zip(RECORD_TYPES, lookups))

        def records(rdtype: str) -> tuple[str, ...]:
            res = by_type[rdtype]
            return res.records if res.status is LookupStatus.PRESENT else ()

        ipv4, ipv6 = records("A"), records("AAAA")
        ns, txt, cname = records("NS"), records("TXT"), records("CNAME")

        email = await analyze_email_security(
            hostname, txt, lookup, config.dkim_selectors)
        risks = await self._subdomain_risks(hostname, cname, lookup)
        cdn   = detect_cdn(hostname, [*ns, *cname, *txt])

        errors = tuple(f"{l.rdtype}: {l.error}" for l in lookups
                       if l.status is LookupStatus.ERROR)

        result = DNSResult(
            hostname=hostname,
            resolved=bool(ipv4 or ipv6),
            ipv4=ipv4,
            ipv6=ipv6,
            mx=parse_mx(records("MX")),
            ns=ns,
            txt=txt,
            cname=cname,
            caa=records("CAA"),
            has_cdn=cdn is not None,
            cdn_provider=cdn,
            has_dnssec=bool(records("DNSKEY")),
            email_security=email,
            subdomain_risks=risks,
            lookups=tuple(lookups),
            errors=errors,
        )
        logger.info("DNS %s: resolved=%s v4=%d v6=%d cdn=%s errors=%d",
                    hostname, result.resolved, len(ipv4), len(ipv6), cdn, len(errors))
        return self._result(result, self.checks_for(result))

    # ── subdomain takeover ────────────────────────────────────────────────────

    async def _subdomain_risks(self,
                               hostname: str,
                               cname: tuple[str, ...],
                               lookup: Lookup) -> tuple[SubdomainRisk, ...]:
        risks: list[SubdomainRisk] = []
        for target in cname:
            v4, v6 = await asyncio.gather(lookup(target, "A"), lookup(target, "AAAA"))
            dangling = (v4.status is LookupStatus.ABSENT
                        and v6.status is LookupStatus.ABSENT)
            if not dangling:
                continue
            service = takeover_service(target)
            if service:
                risks.append(SubdomainRisk(
                    subdomain=hostname,
                    risk="takeover",
                    severity=Severity.HIGH,
                    details=(
                        f"{hostname} is a CNAME for {target} ({service}), which "
                        f"no longer resolves. Anyone who claims that {service} "
                        f"resource can serve content on {hostname}."
                    ),
                ))
            else:
                risks.append(SubdomainRisk(
                    subdomain=hostname,
                    risk="misconfigured",
                    severity=Severity.MEDIUM,
                    details=f"{hostname} is a CNAME for {target}, which does not resolve.",
                ))
        return tuple(risks)

    # ── checks ────────────────────────────────────────────────────────────────

    def checks_for(self, dns_result: DNSResult):
        checks = []

        if dns_result.resolved:
            checks.append(self._passed(
                "dns-resolution", "DNS Resolution",
                f"Domain resolves to {len(dns_result.ipv4)} IPv4 and "
                f"{len(dns_result.ipv6)} IPv6 address(es)",
                evidence=", ".join((*dns_result.ipv4, *dns_result.ipv6)),
            ))
        else:
            checks.append(self._check(
                "dns-resolution", "DNS Resolution", Status.FAILED, Severity.CRITICAL,
                "Domain could not be resolved",
                details="; ".join(dns_result.errors) or None,
            ))

        if dns_result.has_cdn:
            checks.append(self._passed(
                "cdn-detection", "CDN Protection",
                f"Protected by {dns_result.cdn_provider}",
            ))

        email = dns_result.email_security
        if email is not None:
            checks.append(self._spf_check(email.spf))
            checks.append(self._dmarc_check(email.dmarc))
            if email.dkim.present:
                checks.append(self._passed(
                    "dns-dkim", "DKIM Record",
                    f"DKIM key published for selector(s): {', '.join(email.dkim.selectors)}",
                ))
            else:
                checks.append(self._info(
                    "dns-dkim", "DKIM Record",
                    "No DKIM key found under common selectors",
                    recommendation="Sign outgoing mail with DKIM and publish the selector key",
                ))

        if dns_result.caa:
            checks.append(self._passed(
                "dns-caa", "CAA Record",
                f"{len(dns_result.caa)} CAA record(s) restrict certificate issuance",
                evidence="; ".join(dns_result.caa),
            ))
        else:
            checks.append(self._check(
                "dns-caa", "CAA Record", Status.INFO, Severity.LOW,
                "No CAA record; any certificate authority may issue certificates",
                recommendation='Add a CAA record, e.g. 0 issue "letsencrypt.org"',
            ))

        if dns_result.has_dnssec:
            checks.append(self._passed("dns-dnssec", "DNSSEC", "DNSKEY record published"))
        else:
            checks.append(self._info("dns-dnssec", "DNSSEC", "No DNSKEY record published"))

        for risk in dns_result.subdomain_risks:
            checks.append(self._check(
                f"subdomain-{risk.risk}", "Subdomain Risk", Status.FAILED, risk.severity,
                f"{risk.subdomain}: {risk.risk}",
                details=risk.details,
                recommendation="Remove or repoint the dangling CNAME record",
            ))

        if dns_result.errors:
            checks.append(self._check(
                "dns-lookup-errors", "DNS Lookup Errors", Status.ERROR, Severity.INFO,
                f"{len(dns_result.errors)} DNS lookup(s) failed",
                details="; ".join(dns_result.errors),
            ))

        return checks

    def _spf_check(self, spf):
        if not spf.present:
            return self._check(
                "dns-spf", "SPF Record", Status.FAILED, Severity.MEDIUM,
                "No SPF record found",
                recommendation="Add an SPF record to prevent email spoofing",
            )
        if not spf.valid:
            return self._check(
                "dns-spf", "SPF Record", Status.FAILED, Severity.HIGH,
                f"SPF record is unsafe (Policy: {spf.policy or 'unknown'})",
                details="; ".join(spf.issues), evidence=spf.record,
                recommendation=spf.issues[0] if spf.issues else None,
            )
        if spf.issues:
            return self._check(
                "dns-spf", "SPF Record", Status.WARNING, Severity.LOW,
                f"SPF record found with issues (Policy: {spf.policy or 'unknown'})",
                details="; ".join(spf.issues), evidence=spf.record,
                recommendation=spf.issues[0],
            )
        return self._passed(
            "dns-spf", "SPF Record",
            f"SPF record found (Policy: {spf.policy})", evidence=spf.record,
        )

    def _dmarc_check(self, dmarc):
        if not dmarc.present:
            return self._check(
                "dns-dmarc", "DMARC Record", Status.FAILED, Severity.MEDIUM,
                "No DMARC record found",
                details="; ".join(dmarc.issues) or None,
                recommendation="Add a DMARC record for email authentication",
            )
        if not dmarc.valid or dmarc.policy == "none":
            return self._check(
                "dns-dmarc", "DMARC Record", Status.WARNING, Severity.LOW,
                f"DMARC record found (Policy: {dmarc.policy or 'missing'})",
                details="; ".join(dmarc.issues), evidence=dmarc.record,
                recommendation=dmarc.issues[0] if dmarc.issues else None,
            )
        return self._passed(
            "dns-dmarc", "DMARC Record",
            f"DMARC record found (Policy: {dmarc.policy})",
            details="; ".join(dmarc.issues) or None, evidence=dmarc.record,
        )
