"""Regression tests for the voxdispatch Typer CLI."""

from __future__ import annotations

import json
import logging

import pytest
from typer.testing import CliRunner

from voxdispatch import cli
from voxdispatch.errors import ProviderError
from voxdispatch.service import create_service

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)


def test_providers_lists_builtin_catalog():
    result = runner.invoke(cli.app, ["providers"])

    assert result.exit_code == 0, result.stdout
    names = [entry["name"] for entry in json.loads(result.stdout)]
    assert names == ["whisper", "speechmatics", "assemblyai", "deepgram", "rev"]


def test_probe_prints_media_info(make_wav):
    result = runner.invoke(cli.app, ["probe", str(make_wav(3.0))])

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["duration_seconds"] == pytest.approx(3.0, abs=0.01)
    assert payload["channels"] == 1


def test_estimate_selects_and_quotes(make_wav):
    result = runner.invoke(cli.app, ["estimate", str(make_wav(45.0))])

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["provider"] == "whisper"
    assert payload["usd"] == pytest.approx(0.006)
    assert payload["credits"] == 6
    assert payload["estimated_processing_time_ms"] == 13_500


def test_estimate_unknown_provider_fails(make_wav):
    result = runner.invoke(cli.app, ["estimate", str(make_wav(1.0)), "--provider", "acme"])

    assert result.exit_code == 1


def test_transcribe_submits_and_waits(monkeypatch, make_wav, fake_adapter, tmp_path):
    whisper = fake_adapter("whisper")
    captured = {}

    def _fake_create_service(config):
        captured["config"] = config
        return create_service(config, adapters={"whisper": whisper})

    monkeypatch.setattr(cli, "create_service", _fake_create_service)
    monkeypatch.setenv("VOXDISPATCH_TEMP_DIR", str(tmp_path / "work"))

    result = runner.invoke(
        cli.app,
        [
            "transcribe",
            str(make_wav(2.0)),
            "--provider",
            "whisper",
            "-o",
            "language=en",
            "-o",
            "diarize=true",
            "--no-cache",
        ],
    )

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["status"] == "completed"
    assert payload["result"]["text"] == "hello world"
    assert whisper.calls[0][1] == {"language": "en", "diarize": True}
    assert captured["config"].enable_caching is False


def test_transcribe_reports_failed_jobs(monkeypatch, make_wav, fake_adapter, tmp_path):
    denied = ProviderError("invalid api key", provider="whisper", status_code=401, retryable=False)
    whisper = fake_adapter("whisper", outcomes=[denied])
    monkeypatch.setattr(
        cli, "create_service", lambda config: create_service(config, adapters={"whisper": whisper})
    )
    monkeypatch.setenv("VOXDISPATCH_TEMP_DIR", str(tmp_path / "work"))

    result = runner.invoke(cli.app, ["transcribe", str(make_wav(2.0)), "--provider", "whisper"])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["status"] == "failed"
    assert payload["error"]["kind"] == "ProviderError"


def test_bad_option_syntax_is_rejected(make_wav):
    result = runner.invoke(cli.app, ["transcribe", str(make_wav(1.0)), "-o", "novalue"])

    assert result.exit_code == 2


def test_verbose_flag_raises_log_level(monkeypatch, make_wav, fake_adapter, tmp_path):
    levels = []
    whisper = fake_adapter("whisper")
    monkeypatch.setattr(cli, "configure_logging", levels.append)
    monkeypatch.setattr(
        cli, "create_service", lambda config: create_service(config, adapters={"whisper": whisper})
    )
    monkeypatch.setenv("VOXDISPATCH_TEMP_DIR", str(tmp_path / "work"))

    quiet = runner.invoke(cli.app, ["transcribe", str(make_wav(1.0)), "--provider", "whisper"])
    loud = runner.invoke(
        cli.app, ["transcribe", str(make_wav(1.0, name="b.wav")), "--provider", "whisper", "-v"]
    )

    assert quiet.exit_code == 0, quiet.stdout
    assert loud.exit_code == 0, loud.stdout
    assert levels == [logging.WARNING, logging.INFO]
