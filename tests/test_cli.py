from __future__ import annotations

import argparse
import importlib.util
import json
import os
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conductor_mcp.runs import RunError, RunInput, RunKind, RunStatus, RunStore


def load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "conductor_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def seeded_store(root: Path) -> tuple[RunStore, dict[str, str]]:
    old = datetime.now(timezone.utc) - timedelta(days=45)
    stale = RunStore(root, clock=lambda: old)
    expired = stale.create_run(RunInput(prompt="old"), repository="legacy")
    stale.update_status(expired.id, RunStatus.SUCCESS)

    store = RunStore(root)
    ok = store.create_run(RunInput(prompt="a", diff="+x"), kind=RunKind.COMMIT_MESSAGE, repository="api")
    store.update_status(ok.id, RunStatus.RUNNING)
    store.update_status(ok.id, RunStatus.SUCCESS)
    bad = store.create_run(RunInput(prompt="b"), repository="web")
    store.update_status(bad.id, RunStatus.FAILED, error=RunError(code="TIMEOUT", message="slow"))
    return store, {"expired": expired.id, "ok": ok.id, "bad": bad.id}


def test_runs_lists_filtered_json(tmp_path: Path, monkeypatch, capsys) -> None:
    _, ids = seeded_store(tmp_path)
    monkeypatch.setenv("CONDUCTOR_RUN_STORAGE_PATH", str(tmp_path))
    diag = load_diag("conductor_diag_runs_module")

    diag.main(["runs", "--status", "failed", "--json"])

    output = json.loads(capsys.readouterr().out)
    assert [item["id"] for item in output] == [ids["bad"]]
    assert output[0]["error"] == "TIMEOUT"


def test_runs_plain_listing(tmp_path: Path, monkeypatch, capsys) -> None:
    store, ids = seeded_store(tmp_path)
    diag = load_diag("conductor_diag_plain_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    args = argparse.Namespace(status=None, kind="commit_message", repository=None, limit=20, json=False)
    diag.cmd_runs(args)

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines == [f"{ids['ok']} [SUCCESS] commit_message -> api"]


def test_show_prints_record_and_reports_missing(tmp_path: Path, monkeypatch, capsys) -> None:
    store, ids = seeded_store(tmp_path)
    diag = load_diag("conductor_diag_show_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_show(argparse.Namespace(run_id=ids["bad"]))
    record = json.loads(capsys.readouterr().out)
    assert record["status"] == "FAILED"
    assert record["error"]["message"] == "slow"

    with pytest.raises(SystemExit):
        diag.cmd_show(argparse.Namespace(run_id="missing"))
    assert "missing" in capsys.readouterr().out


def test_stats_and_cleanup(tmp_path: Path, monkeypatch, capsys) -> None:
    store, ids = seeded_store(tmp_path)
    diag = load_diag("conductor_diag_stats_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_stats(argparse.Namespace())
    stats = json.loads(capsys.readouterr().out)
    assert stats["total"] == 3
    assert stats["by_status"]["FAILED"] == 1

    diag.cmd_cleanup(argparse.Namespace(max_age_days=30))
    result = json.loads(capsys.readouterr().out)
    assert result == {"deleted": 1, "max_age_days": 30, "remaining": 2}
    assert store.get_run(ids["expired"]) is None


def test_diagnostics_cli_runs_as_script(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    script = repo_root / "scripts" / "conductor_diag.py"
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{repo_root / 'src'}" + os.pathsep + env.get("PYTHONPATH", "")
    env["CONDUCTOR_RUN_STORAGE_PATH"] = str(tmp_path / "runs")

    process = subprocess.run(
        [sys.executable, str(script), "stats"],
        cwd=str(tmp_path),
        capture_output=True,
        text=True,
        env=env,
    )

    assert process.returncode == 0, process.stderr
    assert json.loads(process.stdout)["total"] == 0
