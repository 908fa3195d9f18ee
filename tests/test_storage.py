import asyncio
import json
import sqlite3
import uuid

from shieldscan.core.scoring import aggregate
from shieldscan.core.storage import Storage
from shieldscan.core.types import Check, Severity, Status


def _scan(url="https://example.com/", statuses=(Status.PASSED, Status.FAILED, Status.INFO),
          timestamp="2026-01-01T00:00:00+00:00"):
    checks = [
        Check(id=f"check-{n}", name=f"Check {n}", category="DNS", status=status,
              severity=Severity.HIGH if status is Status.FAILED else Severity.INFO,
              message=f"message {n}",
              recommendation="fix it" if status is Status.FAILED else None)
        for n, status in enumerate(statuses)
    ]
    return aggregate(url, timestamp, checks, duration_ms=42.0, scan_id=uuid.uuid4().hex)


def test_save_and_list_recent(tmp_path):
    storage = Storage(tmp_path / "scans.db")
    first, second = _scan(), _scan(statuses=(Status.PASSED,))

    async def scenario():
        row = await storage.save(first)
        await storage.save(second)
        return row, await storage.recent_scans(10)

    row, recent = asyncio.run(scenario())
    assert row == 1
    assert [r["scan_id"] for r in recent] == [second.scan_id, first.scan_id]
    latest = recent[0]
    assert latest["score"] == 100
    assert latest["grade"] == "A+"
    assert (latest["passed"], latest["warnings"], latest["failed"], latest["total"]) == (1, 0, 0, 1)


def test_recent_scans_limit(tmp_path):
    storage = Storage(tmp_path / "scans.db")

    async def scenario():
        for _ in range(5):
            await storage.save(_scan())
        return await storage.recent_scans(2)

    assert len(asyncio.run(scenario())) == 2


def test_checks_keep_their_order(tmp_path):
    storage = Storage(tmp_path / "scans.db")
    result  = _scan()

    async def scenario():
        await storage.save(result)
        return await storage.checks_for_scan(result.scan_id)

    rows = asyncio.run(scenario())
    assert [r["check_id"] for r in rows] == ["check-0", "check-1", "check-2"]
    assert rows[1]["status"] == "failed"
    assert rows[1]["severity"] == "high"
    assert rows[1]["recommendation"] == "fix it"
    assert rows[0]["recommendation"] is None


def test_raw_json_round_trips(tmp_path):
    storage = Storage(tmp_path / "scans.db")
    result  = _scan()
    asyncio.run(storage.save(result))

    conn = sqlite3.connect(tmp_path / "scans.db")
    try:
        (raw,) = conn.execute("SELECT raw_json FROM scans").fetchone()
    finally:
        conn.close()
    data = json.loads(raw)
    assert data["url"] == result.url
    assert data["checks"][1]["status"] == "failed"


def test_score_trend_is_oldest_first_per_url(tmp_path):
    storage = Storage(tmp_path / "scans.db")

    async def scenario():
        await storage.save(_scan(statuses=(Status.FAILED,), timestamp="t1"))
        await storage.save(_scan(url="https://other.example/", timestamp="t2"))
        await storage.save(_scan(statuses=(Status.PASSED, Status.WARNING), timestamp="t3"))
        await storage.save(_scan(statuses=(Status.PASSED,), timestamp="t4"))
        return await storage.score_trend("https://example.com/", limit=2)

    trend = asyncio.run(scenario())
    assert [(t["timestamp"], t["score"]) for t in trend] == [("t3", 75), ("t4", 100)]


def test_storage_is_a_result_sink(tmp_path):
    storage = Storage(tmp_path / "scans.db")
    result  = _scan()

    async def scenario():
        await storage.publish(result)
        return await storage.recent_scans()

    (row,) = asyncio.run(scenario())
    assert row["scan_id"] == result.scan_id
