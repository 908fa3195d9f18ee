import asyncio
from pathlib import Path

from shieldscan.__main__ import _parse, main
from shieldscan.core.config import Config
from shieldscan.core.scoring import aggregate
from shieldscan.core.storage import Storage
from shieldscan.core.types import Check, Severity, Status


def test_target_is_required(capsys):
    assert main([]) == 2
    assert "target is required" in capsys.readouterr().err


def test_invalid_target_exits_with_usage_error(capsys):
    assert main(["ftp://example.com", "--no-db", "--quiet"]) == 2
    assert "invalid target" in capsys.readouterr().err


def test_empty_history(tmp_path, capsys):
    assert main(["--history", "--db", str(tmp_path / "empty.db")]) == 0
    assert "No scan history found." in capsys.readouterr().out


def test_history_lists_saved_scans(tmp_path, capsys):
    db = tmp_path / "scans.db"
    check = Check(id="dns-resolution", name="DNS Resolution", category="DNS",
                  status=Status.PASSED, severity=Severity.INFO, message="ok")
    asyncio.run(Storage(db).save(aggregate(
        "https://example.com/", "2026-01-01T00:00:00+00:00", [check], scan_id="s1")))

    assert main(["--history", "--db", str(db)]) == 0
    out = capsys.readouterr().out
    assert "https://example.com/" in out
    assert "A+" in out


def test_config_from_args():
    args = _parse(["example.com", "--timeout", "3", "--deadline", "30",
                   "--nameserver", "9.9.9.9", "--nameserver", "1.1.1.1",
                   "--json", "out.json", "--csv", "out.csv", "--no-db",
                   "--webhook", "https://hooks.example/scan", "--quiet"])
    cfg = Config.from_args(args)
    assert cfg.timeout == 3.0
    assert cfg.scan_deadline == 30.0
    assert cfg.nameservers == ["9.9.9.9", "1.1.1.1"]
    assert cfg.json_output == Path("out.json")
    assert cfg.csv_output == Path("out.csv")
    assert cfg.db_path is None
    assert cfg.webhook_url == "https://hooks.example/scan"
    assert cfg.quiet


def test_config_defaults_keep_database():
    cfg = Config.from_args(_parse(["example.com", "--db", "custom.db"]))
    assert cfg.db_path == Path("custom.db")
    assert cfg.timeout == 15.0
    assert cfg.max_redirects == 5
