import asyncio
import ipaddress
import ssl
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from shieldscan.core.types import Severity, SSLResult, Status, TLSVersionInfo
from shieldscan.modules.tls_analysis import (MAX_CHAIN_DEPTH, TLSAnalysisModule,
                                             days_until, detect_vulnerabilities,
                                             format_name, is_self_signed,
                                             ssl_grade, ssl_score, walk_chain)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _name(cn, org=None):
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, cn)]
    if org:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, org))
    return x509.Name(attrs)


def _cert(cn, issuer=None, days=90, san=None, key=None):
    """Issue a certificate for *cn*, signed by *issuer* (cert, key) or itself."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    issuer_name = issuer[0].subject if issuer else _name(cn)
    signing_key = issuer[1] if issuer else key
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(cn))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
    )
    if san:
        builder = builder.add_extension(x509.SubjectAlternativeName(san), critical=False)
    return builder.sign(signing_key, hashes.SHA256()), key


def _versions(*supported):
    labels = ["TLSv1.3", "TLSv1.2", "TLSv1.1", "TLSv1.0", "SSLv3"]
    return tuple(TLSVersionInfo(v, v in supported, v in ("TLSv1.3", "TLSv1.2"))
                 for v in labels)


def _result(**kw):
    base = dict(valid=True, issuer="CN=CA", subject="CN=example.com",
                days_until_expiry=365, protocol="TLSv1.3",
                cipher="TLS_AES_256_GCM_SHA384 (TLSv1.3)",
                tls_versions=_versions("TLSv1.3", "TLSv1.2"))
    base.update(kw)
    return SSLResult(**base)


# ── certificate helpers ───────────────────────────────────────────────────────

def test_format_name():
    assert format_name(_name("example.com", "Example Inc")) == "CN=example.com, O=Example Inc"
    assert format_name(x509.Name([])) == "Unknown"


def test_days_until_floors():
    assert days_until(NOW + timedelta(days=7), now=NOW) == 7
    assert days_until(NOW + timedelta(days=6, hours=23), now=NOW) == 6
    assert days_until(NOW - timedelta(hours=1), now=NOW) == -1


def test_self_signed_detection():
    ca = _cert("Test CA")
    leaf, _ = _cert("example.com", issuer=ca)
    assert is_self_signed(ca[0], [ca[0]])
    assert not is_self_signed(leaf, [leaf, ca[0]])


def test_walk_chain_orders_leaf_first():
    root = _cert("Root CA")
    inter = _cert("Intermediate CA", issuer=root)
    leaf, _ = _cert("example.com", issuer=inter)
    chain = walk_chain([leaf, root[0], inter[0]])
    assert [format_name(c.subject) for c in chain] == [
        "CN=example.com", "CN=Intermediate CA", "CN=Root CA"]


def test_walk_chain_is_depth_bounded():
    issuer = _cert("CA 0")
    presented = [issuer[0]]
    for n in range(1, 13):
        issuer = _cert(f"CA {n}", issuer=issuer)
        presented.append(issuer[0])
    presented.reverse()
    assert len(walk_chain(presented)) == MAX_CHAIN_DEPTH


# ── vulnerabilities & grade ───────────────────────────────────────────────────

def test_vulnerability_table_for_legacy_server():
    vulns = detect_vulnerabilities(list(_versions("TLSv1.2", "TLSv1.0", "SSLv3")),
                                   "DES-CBC3-SHA (TLSv1.0)")
    names = {v.name: v.severity for v in vulns}
    assert names["SSLv3 Enabled (POODLE)"] is Severity.CRITICAL
    assert names["TLS 1.0 Enabled"] is Severity.HIGH
    assert names["Weak Cipher: DES"] is Severity.HIGH
    assert names["No Perfect Forward Secrecy"] is Severity.MEDIUM
    assert "TLS 1.1 Enabled" not in names
    assert sum(1 for v in vulns if v.name.startswith("Weak Cipher")) == 1


def test_null_cipher_is_critical_and_pfs_recognized():
    vulns = detect_vulnerabilities(list(_versions("TLSv1.2")), "ECDHE-RSA-NULL-SHA (TLSv1.2)")
    assert [(v.name, v.severity) for v in vulns] == [("Weak Cipher: NULL", Severity.CRITICAL)]


def test_weak_cipher_first_listed_match_wins():
    vulns = detect_vulnerabilities(list(_versions("TLSv1.2")), "NULL-MD5 (TLSv1.2)")
    weak = [(v.name, v.severity) for v in vulns if v.name.startswith("Weak Cipher")]
    assert weak == [("Weak Cipher: MD5", Severity.HIGH)]


def test_tls13_entry_is_not_a_penalty():
    vulns = detect_vulnerabilities(list(_versions("TLSv1.3", "TLSv1.2")),
                                   "ECDHE-RSA-AES128-GCM-SHA256 (TLSv1.2)")
    (entry,) = vulns
    assert entry.name == "TLS 1.3 Supported"
    assert not entry.vulnerable


def test_unknown_cipher_skips_pfs_check():
    assert detect_vulnerabilities(list(_versions("TLSv1.2")), "unknown") == []


def test_grade_ideal_tls13():
    result = _result()
    result = _result(vulnerabilities=tuple(detect_vulnerabilities(
        list(result.tls_versions), result.cipher)))
    # no PFS marker in the TLS 1.3 suite name: -10, TLS 1.3 bonus: +5
    assert ssl_score(result) == 95
    assert ssl_grade(result) == "A+"


@pytest.mark.parametrize("kw,grade", [
    (dict(days_until_expiry=45, tls_versions=_versions("TLSv1.2")), "A+"),
    (dict(days_until_expiry=20, tls_versions=_versions("TLSv1.2")), "A"),
    (dict(days_until_expiry=5, tls_versions=_versions("TLSv1.2")), "C"),
    (dict(valid=False, tls_versions=_versions("TLSv1.2")), "C"),
    (dict(valid=False, self_signed=True, tls_versions=_versions("TLSv1.2")), "F"),
    (dict(days_until_expiry=-3, tls_versions=_versions("TLSv1.2")), "D"),
    (dict(tls_versions=_versions("TLSv1.1")), "C"),
])
def test_grade_table(kw, grade):
    assert ssl_grade(_result(**kw)) == grade


def test_score_is_clamped():
    result = _result(valid=False, self_signed=True, days_until_expiry=-10,
                     tls_versions=_versions("TLSv1.0", "SSLv3"))
    assert ssl_score(result) == 0


# ── checks ────────────────────────────────────────────────────────────────────

def _expiry(days):
    checks = TLSAnalysisModule().checks_for(_result(days_until_expiry=days))
    return next(c for c in checks if c.id == "ssl-expiry")


def test_expiry_checks():
    assert _expiry(-1).status is Status.FAILED
    assert _expiry(-1).severity is Severity.CRITICAL
    assert _expiry(6).status is Status.WARNING
    assert _expiry(6).severity is Severity.HIGH
    assert _expiry(7).status is Status.WARNING
    assert _expiry(29).status is Status.WARNING
    assert _expiry(30).status is Status.PASSED


def test_checks_without_certificate():
    result = SSLResult(errors=("TLS connection failed: ConnectionRefusedError",))
    (check,) = TLSAnalysisModule().checks_for(result)
    assert check.id == "ssl-valid"
    assert check.status is Status.FAILED
    assert "ConnectionRefusedError" in check.message


def test_checks_for_legacy_protocol():
    result = _result(protocol="TLSv1", grade="D", tls_versions=_versions("TLSv1.0"),
                     vulnerabilities=tuple(detect_vulnerabilities(
                         list(_versions("TLSv1.0")), "AES128-SHA (TLSv1)")))
    checks = {c.id: c for c in TLSAnalysisModule().checks_for(result)}
    assert checks["ssl-protocol"].status is Status.FAILED
    assert checks["ssl-vuln-tls-1-0-enabled"].status is Status.FAILED
    assert checks["ssl-vuln-no-perfect-forward-secrecy"].status is Status.WARNING
    assert checks["ssl-grade"].status is Status.FAILED
    assert checks["ssl-grade"].severity is Severity.HIGH
    assert "tls-13" not in checks


# ── live handshake against a local server ─────────────────────────────────────

def _server_context(tmp_path, key=None):
    cert, key = _cert("localhost", key=key, san=[x509.DNSName("localhost"),
                                                 x509.IPAddress(ipaddress.ip_address("127.0.0.1"))])
    cert_file = tmp_path / "cert.pem"
    key_file  = tmp_path / "key.pem"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(serialization.Encoding.PEM,
                                           serialization.PrivateFormat.PKCS8,
                                           serialization.NoEncryption()))
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert_file, key_file)
    return ctx


async def _handle(reader, writer):
    try:
        await reader.read(100)
    except OSError:
        pass
    finally:
        writer.close()


def test_inspects_self_signed_local_server(tmp_path, config):
    ctx = _server_context(tmp_path)

    async def scenario():
        server = await asyncio.start_server(_handle, "127.0.0.1", 0, ssl=ctx)
        port = server.sockets[0].getsockname()[1]
        async with server:
            return await TLSAnalysisModule().run("127.0.0.1", config, port)

    mod = asyncio.run(scenario())
    result = mod.result

    assert result.inspected
    assert result.subject == "CN=localhost"
    assert result.self_signed
    assert not result.valid
    assert result.errors and "verification failed" in result.errors[0]
    assert 88 <= result.days_until_expiry <= 90
    assert result.protocol in ("TLSv1.2", "TLSv1.3")
    assert len(result.chain) == 1
    assert result.supports("TLSv1.2")
    assert not result.supports("SSLv3")
    assert result.grade in ("A+", "A", "B", "C", "D", "F")

    checks = {c.id: c for c in mod.checks}
    assert checks["ssl-valid"].status is Status.FAILED
    assert checks["ssl-self-signed"].status is Status.WARNING


def test_inspects_server_without_forward_secrecy(tmp_path, config):
    ctx = _server_context(tmp_path, key=rsa.generate_private_key(65537, 2048))
    ctx.maximum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_ciphers("AES256-GCM-SHA384")

    async def scenario():
        server = await asyncio.start_server(_handle, "127.0.0.1", 0, ssl=ctx)
        port = server.sockets[0].getsockname()[1]
        async with server:
            return await TLSAnalysisModule().run("127.0.0.1", config, port)

    mod = asyncio.run(scenario())
    result = mod.result

    assert result.inspected
    assert result.protocol == "TLSv1.2"
    assert result.cipher == "AES256-GCM-SHA384 (TLSv1.2)"
    assert result.supports("TLSv1.2")
    assert not result.supports("TLSv1.3")
    assert "No Perfect Forward Secrecy" in {v.name for v in result.vulnerabilities}

    checks = {c.id: c for c in mod.checks}
    assert checks["ssl-vuln-no-perfect-forward-secrecy"].status is Status.WARNING


def test_connection_failure_degrades(config):
    async def scenario():
        # bind then close to get a port nobody listens on
        server = await asyncio.start_server(_handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        return await TLSAnalysisModule().run("127.0.0.1", config, port)

    mod = asyncio.run(scenario())
    assert not mod.result.inspected
    assert mod.result.errors[0].startswith("TLS connection failed")
    assert [c.id for c in mod.checks] == ["ssl-valid"]
