"""
Result sinks — external collaborators that receive every finished ScanResult.

The engine never persists or notifies by itself; anything that should happen
to a result (SQLite storage, a webhook, a queue) is injected as a sink.  A
sink that raises is logged by the engine and does not affect the scan.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

import requests

from .types import ScanResult

logger = logging.getLogger(__name__)


class ResultSink(Protocol):
    async def publish(self, result: ScanResult) -> None: ...


class WebhookNotifier:
    """POST the JSON-serialized result to a URL."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url     = url
        self.timeout = timeout

    def _post(self, payload: str) -> int:
        resp = requests.post(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.status_code

    async def publish(self, result: ScanResult) -> None:
        payload = json.dumps(result.to_dict(), default=str)
        status  = await asyncio.to_thread(self._post, payload)
        logger.info("webhook %s accepted scan %s (HTTP %d)",
                    self.url, result.scan_id, status)
