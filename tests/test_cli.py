from __future__ import annotations

import json
import logging

from click.testing import CliRunner

from videotext_pipeline.cli import cli
from videotext_pipeline.utils.log import set_log_level


def test_show_config_is_json_without_secrets(monkeypatch) -> None:
    monkeypatch.setenv("JOB_TOKEN_SECRET", "cli-secret-should-not-print-55555")
    runner = CliRunner()
    res = runner.invoke(cli, ["show-config"])
    assert res.exit_code == 0, res.output
    assert "cli-secret-should-not-print-55555" not in res.output
    report = json.loads(res.output)
    assert report["secrets"]["job_token_secret"] == "SET"


def test_status_of_unknown_job_fails() -> None:
    res = CliRunner().invoke(cli, ["status", "does-not-exist"])
    assert res.exit_code == 1
    assert "unknown job" in res.output


def test_sweep_reports_counts() -> None:
    res = CliRunner().invoke(cli, ["sweep"])
    assert res.exit_code == 0, res.output
    counts = json.loads(res.output)
    assert counts["uploads"] == 0
    assert counts["batches"] == 0


def test_worker_rejects_bad_ops_spec() -> None:
    res = CliRunner().invoke(cli, ["worker", "--ops", "no_colon_here"])
    assert res.exit_code == 2
    assert "module:callable" in res.output


def test_log_level_override() -> None:
    res = CliRunner().invoke(cli, ["--log-level", "warning", "show-config"])
    assert res.exit_code == 0, res.output
    assert logging.getLogger().level == logging.WARNING
    set_log_level("INFO")
