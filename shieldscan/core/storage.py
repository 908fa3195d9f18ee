"""
SQLite Scan Storage

Every scan can be persisted so users can track a site's posture over time.
The schema is append-only: we never update rows, only insert new ones.

Tables
------
scans  — one row per scan: target, score, grade, summary counts, full JSON
checks — one row per Check, linked to a scan

Usage
-----
    storage = Storage("shieldscan.db")
    await storage.save(scan_result)
    history = await storage.recent_scans(10)

Storage implements the ResultSink protocol, so it can be handed straight to
the Engine.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path

from .types import ScanResult

DDL = """
CREATE TABLE IF NOT EXISTS scans (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_id     TEXT    UNIQUE,
    url         TEXT    NOT NULL,
    timestamp   TEXT    NOT NULL,
    duration_ms REAL,
    score       INTEGER,
    grade       TEXT,
    passed      INTEGER,
    warnings    INTEGER,
    failed      INTEGER,
    total       INTEGER,
    raw_json    TEXT
);

CREATE TABLE IF NOT EXISTS checks (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    scan_row       INTEGER NOT NULL REFERENCES scans(id),
    check_id       TEXT    NOT NULL,
    name           TEXT,
    category       TEXT,
    status         TEXT,
    severity       TEXT,
    message        TEXT,
    details        TEXT,
    evidence       TEXT,
    recommendation TEXT
);

CREATE INDEX IF NOT EXISTS idx_checks_scan   ON checks(scan_row);
CREATE INDEX IF NOT EXISTS idx_checks_status ON checks(status);
CREATE INDEX IF NOT EXISTS idx_scans_url     ON scans(url);
"""


class Storage:
    def __init__(self, db_path: str | Path = "shieldscan.db") -> None:
        self._path = str(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.executescript(DDL)
        conn.commit()
        return conn

    # run in a thread so we don't block the event loop
    async def _execute(self, fn):
        return await asyncio.to_thread(fn)

    async def save(self, result: ScanResult) -> int:
        """Persist a ScanResult and return the generated row id."""

        def _save():
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    """INSERT INTO scans
                       (scan_id, url, timestamp, duration_ms, score, grade,
                        passed, warnings, failed, total, raw_json)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                    (
                        result.scan_id,
                        result.url,
                        result.timestamp,
                        result.duration_ms,
                        result.score,
                        result.grade,
                        result.summary.passed,
                        result.summary.warnings,
                        result.summary.failed,
                        result.summary.total,
                        json.dumps(result.to_dict(), default=str),
                    ),
                )
                row_id = cur.lastrowid

                cur.executemany(
                    """INSERT INTO checks
                       (scan_row, check_id, name, category, status, severity,
                        message, details, evidence, recommendation)
                       VALUES (?,?,?,?,?,?,?,?,?,?)""",
                    [
                        (
                            row_id,
                            c.id,
                            c.name,
                            c.category,
                            c.status.value,
                            c.severity.value,
                            c.message,
                            c.details,
                            c.evidence,
                            c.recommendation,
                        )
                        for c in result.checks
                    ],
                )
                conn.commit()
                return row_id
            finally:
                conn.close()

        return await self._execute(_save)

    async def publish(self, result: ScanResult) -> None:
        await self.save(result)

    async def recent_scans(self, limit: int = 20) -> list[dict]:
        """Return the most recent *limit* scan summaries."""

        def _fetch():
            conn = self._connect()
            try:
                rows = conn.execute(
                    """SELECT id, scan_id, url, timestamp, duration_ms, score,
                              grade, passed, warnings, failed, total
                       FROM scans ORDER BY id DESC LIMIT ?""",
                    (limit,),
                ).fetchall()
            finally:
                conn.close()
            return [dict(r) for r in rows]

        return await self._execute(_fetch)

    async def checks_for_scan(self, scan_id: str) -> list[dict]:
        """All checks recorded for one scan, in their original order."""

        def _fetch():
            conn = self._connect()
            try:
                rows = conn.execute(
                    """SELECT c.check_id, c.name, c.category, c.status,
                              c.severity, c.message, c.details, c.evidence,
                              c.recommendation
                       FROM checks c JOIN scans s ON c.scan_row = s.id
                       WHERE s.scan_id = ?
                       ORDER BY c.id""",
                    (scan_id,),
                ).fetchall()
            finally:
                conn.close()
            return [dict(r) for r in rows]

        return await self._execute(_fetch)

    async def score_trend(self, url: str, limit: int = 30) -> list[dict]:
        """Score and grade of the last *limit* scans of *url*, oldest first."""

        def _fetch():
            conn = self._connect()
            try:
                rows = conn.execute(
                    """SELECT timestamp, score, grade FROM (
                           SELECT id, timestamp, score, grade FROM scans
                           WHERE url = ? ORDER BY id DESC LIMIT ?
                       ) ORDER BY id""",
                    (url, limit),
                ).fetchall()
            finally:
                conn.close()
            return [dict(r) for r in rows]

        return await self._execute(_fetch)
