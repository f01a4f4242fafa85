"""Tests for the command-line entry point."""

import json

import yaml

from jobcatalog.main import main


def _write_config(tmp_path, **overrides):
    data = {"sources": [], "data_dir": str(tmp_path / "data"), "output_dir": str(tmp_path / "out")}
    data.update(overrides)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data))
    return path


def test_run_all_steps_dry_run(tmp_path):
    path = _write_config(tmp_path)

    assert main(["run", "--config", str(path), "--dry-run"]) == 0

    artifacts = sorted(p.name.split("_")[0] for p in (tmp_path / "out" / "runs").glob("*.json"))
    assert artifacts == ["alerts", "deliver", "sync"]
    runs = json.loads((tmp_path / "data" / "runs.json").read_text())
    assert {r["kind"] for r in runs.values()} == {"sync", "alerts", "deliver"}


def test_unknown_source_filter(tmp_path):
    path = _write_config(tmp_path, sources=["acme"])
    assert main(["sync", "--config", str(path), "--source", "nope"]) == 1


def test_deliver_without_api_key_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    monkeypatch.delenv("JOBCATALOG_DRY_RUN", raising=False)
    path = _write_config(tmp_path)
    assert main(["deliver", "--config", str(path)]) == 1
