"""
HTTP helpers shared by the header analyzer and the passive probes.

All network calls use requests and are meant to be run through
asyncio.to_thread() so they never block the event loop.  Certificate
verification is disabled on purpose: certificate problems are reported by the
TLS analyzer, and the HTTP layer must still be able to read headers and bodies
from sites with broken certificates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
import urllib3

logger = logging.getLogger(__name__)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

CHUNK_SIZE = 8192


@dataclass
class FetchedPage:
    url:         str
    status_code: int
    headers:     dict[str, str]
    body:        str
    truncated:   bool


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names; requests already joins repeated headers."""
    return {k.lower(): v for k, v in headers.items()}


def with_query(url: str, **params: str) -> str:
    """Return *url* with *params* set in its query string (existing keys replaced)."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def read_capped(resp: requests.Response, limit: int) -> tuple[str, bool]:
    """Read at most *limit* bytes of a streamed response body."""
    chunks: list[bytes] = []
    size      = 0
    truncated = False
    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
        chunks.append(chunk)
        size += len(chunk)
        if size >= limit:
            truncated = True
            break
    raw = b"".join(chunks)[:limit]
    return raw.decode(resp.encoding or "utf-8", errors="replace"), truncated


def get_capped(url: str,
               *,
               user_agent: str,
               timeout: float,
               limit: int,
               max_redirects: int = 5) -> FetchedPage:
    """
    Single GET with a size-capped body.  The connection is always released,
    including when the cap is hit before the body ends.
    """
    with requests.Session() as session:
        session.max_redirects = max_redirects
        with session.get(url,
                         headers={"User-Agent": user_agent},
                         timeout=timeout,
                         stream=True,
                         verify=False) as resp:
            body, truncated = read_capped(resp, limit)
            logger.debug("GET %s → %s (%d chars%s)", url, resp.status_code,
                         len(body), ", truncated" if truncated else "")
            return FetchedPage(
                url=resp.url,
                status_code=resp.status_code,
                headers=lower_headers(resp.headers),
                body=body,
                truncated=truncated,
            )
