import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, unquote, urlsplit

import pytest

from shieldscan.core.config import Config
from shieldscan.core.types import LookupStatus, RecordLookup

IDEAL_HEADERS = {
    "Content-Security-Policy":
        "default-src 'self'; frame-ancestors 'none'; upgrade-insecure-requests",
    "Strict-Transport-Security":    "max-age=63072000; includeSubDomains; preload",
    "X-Frame-Options":              "DENY",
    "X-Content-Type-Options":       "nosniff",
    "Referrer-Policy":              "strict-origin-when-cross-origin",
    "Permissions-Policy":           "camera=(), microphone=()",
    "X-XSS-Protection":             "1; mode=block",
    "Cross-Origin-Opener-Policy":   "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
}

# request bodies received on POST /hook
POSTED: list[bytes] = []

SQL_ERROR_BODY = (
    "<html><body>You have an error in your SQL syntax; check the manual that "
    "corresponds to your MySQL server version</body></html>"
)


class _Handler(BaseHTTPRequestHandler):
    banner = "nginx"

    def version_string(self):
        return self.banner

    def log_message(self, format, *args):
        pass

    def _send(self, status, body="", headers=None):
        data = body.encode("utf-8")
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self):
        parts = urlsplit(self.path)
        path  = parts.path
        query = unquote(parts.query)

        if path == "/headers/ideal":
            self._send(200, "ok", IDEAL_HEADERS)
        elif path == "/headers/none":
            self.banner = "Apache/2.4.41 (Ubuntu)"
            self._send(200, "ok", {"X-Powered-By": "PHP/8.1.2"})
        elif path == "/redirect-once":
            self._send(301, "", {"Location": "/headers/ideal"})
        elif path == "/redirect-loop":
            self._send(302, "", {"Location": "/redirect-loop"})
        elif path.startswith("/flaky/"):
            seen = self.server.flaky_seen
            if path not in seen:
                seen.add(path)
                # drop the connection without a response
                self.close_connection = True
                return
            self._send(200, "ok", IDEAL_HEADERS)
        elif path == "/echo":
            self._send(200, f"<html><body>You searched for {query}</body></html>")
        elif path == "/encoded":
            encoded = "".join(f"&#{ord(c)};" for c in query)
            self._send(200, f"<html><body>You searched for {encoded}</body></html>")
        elif path == "/sql":
            values = parse_qs(parts.query).get("id", [""])
            if "'" in values[0]:
                self._send(500, SQL_ERROR_BODY)
            else:
                self._send(200, "<html><body>item 1</body></html>")
        elif path == "/plain":
            self._send(200, "<html><body>Learn the syntax of the language.</body></html>")
        elif path == "/big":
            self._send(200, "a" * 300_000 + SQL_ERROR_BODY)
        else:
            self._send(404, "not found")

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body   = self.rfile.read(length)
        if self.path == "/hook":
            POSTED.append(body)
            self._send(204)
        else:
            self._send(404, "not found")


@pytest.fixture(scope="session")
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.flaky_seen = set()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def config(tmp_path: Path):
    return Config(
        timeout=5.0,
        dns_timeout=2.0,
        probe_timeout=5.0,
        module_timeout=30.0,
        retry_backoff=0.0,
        db_path=tmp_path / "scans.db",
    )


def make_lookup(table):
    """
    Fake DNS lookup over {(name, rdtype): [records] | "error"}.
    Missing keys are absent.
    """
    calls = []

    async def lookup(name, rdtype):
        calls.append((name, rdtype))
        value = table.get((name, rdtype))
        if value is None:
            return RecordLookup(name=name, rdtype=rdtype, status=LookupStatus.ABSENT)
        if value == "error":
            return RecordLookup(name=name, rdtype=rdtype, status=LookupStatus.ERROR,
                                error="SERVFAIL")
        return RecordLookup(name=name, rdtype=rdtype, status=LookupStatus.PRESENT,
                            records=tuple(value))

    lookup.calls = calls
    return lookup


@pytest.fixture
def fake_lookup():
    return make_lookup
