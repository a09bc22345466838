from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from screencast_pipeline.cli import cli
from screencast_pipeline.runtime.worker import build_video_store


def test_ingest_show_and_enqueue(tmp_path: Path) -> None:
    screen = tmp_path / "screen.webm"
    screen.write_bytes(b"not really webm")
    runner = CliRunner()

    r = runner.invoke(cli, ["ingest", "--screen", str(screen), "--title", "demo", "--no-enqueue"])
    assert r.exit_code == 0, r.output
    vid = r.output.strip().splitlines()[-1]
    v = build_video_store().get(vid)
    assert v is not None and v.screen_key == f"videos/{vid}/screen.webm"

    r = runner.invoke(cli, ["show", vid])
    assert r.exit_code == 0, r.output
    assert json.loads(r.output)["video"]["title"] == "demo"

    r = runner.invoke(cli, ["enqueue", vid])
    assert r.output.strip() == "enqueued"
    r = runner.invoke(cli, ["enqueue", vid])
    assert r.output.strip() == "already queued"


def test_retry_rejects_uploading_video(tmp_path: Path) -> None:
    screen = tmp_path / "screen.webm"
    screen.write_bytes(b"x")
    runner = CliRunner()
    vid = runner.invoke(cli, ["ingest", "--screen", str(screen), "--no-enqueue"]).output.strip().splitlines()[-1]
    r = runner.invoke(cli, ["retry", vid])
    assert r.exit_code != 0
    assert "cannot retry" in r.output
    r = runner.invoke(cli, ["show", "missing"])
    assert r.exit_code != 0


def test_health_exits_nonzero_without_worker() -> None:
    r = CliRunner().invoke(cli, ["health"])
    assert r.exit_code == 1
    assert json.loads(r.output)["services"]["worker"]["status"] == "down"


def test_config_report() -> None:
    r = CliRunner().invoke(cli, ["config-report"])
    assert r.exit_code == 0
    rep = json.loads(r.output)
    assert rep["secrets"]["s3_access_key"] in {"SET", "UNSET"}
