import asyncio

from shieldscan.core.fetch import with_query
from shieldscan.core.types import Severity, Status
from shieldscan.modules.vuln_probes import (NONCE_PREFIX, REFLECTION, SQL_ERROR,
                                            VulnerabilityProbesModule,
                                            make_nonce, match_sql_error,
                                            reflection_probe, sql_error_probe)


def _probe(probe, url, config):
    return asyncio.run(probe(url, config))


# ── reflection ────────────────────────────────────────────────────────────────

def test_reflected_nonce_is_found(http_server, config):
    vuln = _probe(reflection_probe, f"{http_server}/echo", config)
    assert vuln.type == REFLECTION
    assert vuln.found
    assert vuln.severity is Severity.MEDIUM
    assert vuln.evidence.startswith(NONCE_PREFIX)
    assert vuln.error is None


def test_encoded_output_is_not_a_reflection(http_server, config):
    vuln = _probe(reflection_probe, f"{http_server}/encoded", config)
    assert not vuln.found
    assert vuln.details == "No input reflection detected"


def test_nonce_format():
    nonce = make_nonce()
    assert nonce.startswith(NONCE_PREFIX)
    assert nonce[len(NONCE_PREFIX):].isdigit()


# ── SQL errors ────────────────────────────────────────────────────────────────

def test_sql_error_is_found(http_server, config):
    vuln = _probe(sql_error_probe, f"{http_server}/sql", config)
    assert vuln.type == SQL_ERROR
    assert vuln.found
    assert vuln.severity is Severity.CRITICAL
    assert vuln.evidence == "sql syntax"


def test_harmless_page_has_no_sql_error(http_server, config):
    vuln = _probe(sql_error_probe, f"{http_server}/plain", config)
    assert not vuln.found
    assert vuln.error is None


def test_body_beyond_cap_is_not_inspected(http_server, config):
    vuln = _probe(sql_error_probe, f"{http_server}/big", config)
    assert not vuln.found


def test_match_sql_error_first_signature_wins():
    assert match_sql_error("ORA-01756: quoted string not properly terminated").pattern == r"ORA-\d{5}"
    assert match_sql_error("Warning: mysql_fetch_array()").pattern == "mysql_"
    assert match_sql_error("all good") is None


def test_with_query_replaces_existing_keys():
    assert with_query("http://example.com/p?a=1&q=old", q="new") == "http://example.com/p?a=1&q=new"
    assert with_query("http://example.com/", id="1'") == "http://example.com/?id=1%27"


# ── module ────────────────────────────────────────────────────────────────────

def test_module_reports_both_probes(http_server, config):
    mod = asyncio.run(VulnerabilityProbesModule().run(f"{http_server}/echo", config))
    assert [v.type for v in mod.result] == [REFLECTION, SQL_ERROR]
    checks = {c.id: c for c in mod.checks}
    assert checks["xss-reflection"].status is Status.WARNING
    assert checks["xss-reflection"].category == "Vulnerabilities"
    assert checks["sqli-test"].status is Status.PASSED


def test_module_on_sql_endpoint(http_server, config):
    mod = asyncio.run(VulnerabilityProbesModule().run(f"{http_server}/sql", config))
    checks = {c.id: c for c in mod.checks}
    assert checks["xss-reflection"].status is Status.PASSED
    assert checks["sqli-test"].status is Status.FAILED
    assert checks["sqli-test"].severity is Severity.CRITICAL
    assert checks["sqli-test"].recommendation


def test_unreachable_target_degrades_to_info(config):
    mod = asyncio.run(VulnerabilityProbesModule().run("http://127.0.0.1:1/", config))
    for vuln in mod.result:
        assert not vuln.found
        assert vuln.error
        assert vuln.details.startswith("Could not complete")
    assert {c.status for c in mod.checks} == {Status.INFO}
