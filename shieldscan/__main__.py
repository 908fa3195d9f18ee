"""
ShieldScan — Async CLI

Usage examples
--------------
    python -m shieldscan example.com                 # scan, save to shieldscan.db
    python -m shieldscan https://example.com --json out.json
    python -m shieldscan example.com --csv checks.csv --no-db
    python -m shieldscan example.com --webhook https://hooks.example/scan
    python -m shieldscan --history                   # show past scan results
    python -m shieldscan example.com --quiet --deadline 60
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .core.config import Config
from .core.engine import Engine
from .core.sinks import WebhookNotifier
from .core.storage import Storage
from .core.types import InvalidTargetError
from .modules.report import save_csv, save_json, terminal_report


def _parse(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="shieldscan",
        description="Passive security scan of a website: DNS, TLS, "
                    "HTTP security headers and safe vulnerability probes.",
        formatter_class=argparse.RawTextHelpFormatter,
    )

    p.add_argument("target", nargs="?",
                   help="URL or hostname to scan (https:// is assumed).")
    p.add_argument("--json",     metavar="FILE",
                   help="Also save the full result as JSON to FILE.")
    p.add_argument("--csv",      metavar="FILE",
                   help="Also save one row per check as CSV to FILE.")
    p.add_argument("--db",       metavar="FILE", default="shieldscan.db",
                   help="SQLite database path (default: shieldscan.db).")
    p.add_argument("--no-db",    action="store_true",
                   help="Do not persist the result.")
    p.add_argument("--webhook",  metavar="URL",
                   help="POST the JSON result to URL when the scan finishes.")
    p.add_argument("--timeout",  type=float, metavar="S",
                   help="Base per-connection timeout in seconds (default: 15).")
    p.add_argument("--deadline", type=float, metavar="S",
                   help="Overall scan deadline in seconds (default: 120).")
    p.add_argument("--nameserver", action="append", metavar="IP",
                   help="DNS server to query (repeatable; default: system).")
    p.add_argument("--quiet",    action="store_true",
                   help="Suppress progress output; only print final report.")
    p.add_argument("--verbose",  action="store_true",
                   help="Debug logging.")
    p.add_argument("--no-colour", action="store_true",
                   help="Disable terminal colour codes.")
    p.add_argument("--history",  action="store_true",
                   help="Show the last 15 scan summaries from the database.")

    return p.parse_args(argv)


async def _show_history(db_path: str) -> None:
    storage = Storage(db_path)
    rows    = await storage.recent_scans(15)
    if not rows:
        print("  No scan history found.")
        return
    print(f"\n{'─'*72}")
    print(f"  {'ID':<5} {'Timestamp':<26} {'Score':>5}  {'Grade':<5} "
          f"{'Failed':>6}  URL")
    print(f"{'─'*72}")
    for r in rows:
        print(f"  {r['id']:<5} {r['timestamp'][:26]:<26} {r['score']:>5}  "
              f"{r['grade']:<5} {r['failed']:>6}  {r['url']}")
    print(f"{'─'*72}\n")


async def _run(args: argparse.Namespace) -> int:
    if args.history:
        await _show_history(args.db)
        return 0

    config = Config.from_args(args)

    sinks = []
    storage = Storage(config.db_path) if config.db_path else None
    if storage:
        sinks.append(storage)
    if config.webhook_url:
        sinks.append(WebhookNotifier(config.webhook_url, timeout=config.timeout))

    engine = Engine(config, sinks=sinks)

    def _progress(msg: str) -> None:
        print(msg, flush=True)

    try:
        result = await engine.scan(
            args.target, progress=_progress if not config.quiet else None)
    except InvalidTargetError as exc:
        print(f"shieldscan: invalid target: {exc}", file=sys.stderr)
        return 2

    # ── terminal report ───────────────────────────────────────────────────────
    use_colour = not args.no_colour and sys.stdout.isatty()
    print(terminal_report(result, use_colour=use_colour))

    if storage and not config.quiet:
        print(f"  Scan {result.scan_id} saved to {config.db_path}")

    # ── exports ───────────────────────────────────────────────────────────────
    if config.json_output:
        out = save_json(result, config.json_output)
        print(f"  JSON saved to {out.resolve()}")
    if config.csv_output:
        out = save_csv(result, config.csv_output)
        print(f"  CSV saved to {out.resolve()}")

    return 0


def main(argv=None) -> int:
    args = _parse(argv)
    if not args.history and not args.target:
        print("shieldscan: a target is required (or use --history)", file=sys.stderr)
        return 2
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
