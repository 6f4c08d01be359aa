"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

import json
from types import SimpleNamespace

from typer.testing import CliRunner

import run
from shala.bootstrap import Bootstrapper


def test_serve_wires_uvicorn(monkeypatch, temp_config):
    captured = {}

    def fake_initialize_app(**kwargs):
        captured["initialize_kwargs"] = kwargs
        return temp_config

    monkeypatch.setattr(run, "initialize_app", fake_initialize_app)
    monkeypatch.setattr(run, "_prepare_logging", lambda data_root: None)

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(config, *, repository, root_path):
        captured["root_path"] = root_path
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="api/")

    assert captured["initialize_kwargs"] == {"clear_staging": True}
    assert captured["root_path"] == "/api"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["server_run"] is True
    assert dummy_app.state.server is captured["server_instance"]


def test_ingest_command_stores_pdf(monkeypatch, temp_config, tmp_path, make_pdf):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda data_root: None)
    source = tmp_path / "worksheet.pdf"
    source.write_bytes(make_pdf(2048))

    result = CliRunner().invoke(run.cli, ["ingest", str(source), "--no-compress"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{"):])
    assert payload["original_name"] == "worksheet.pdf"
    assert payload["compression"]["skipped_reason"] == "disabled"
    assert (temp_config.storage_root / payload["name"]).exists()


def test_files_command_lists_uploads(monkeypatch, temp_config, tmp_path, make_pdf):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda data_root: None)

    empty = CliRunner().invoke(run.cli, ["files"])
    assert empty.exit_code == 0, empty.output
    assert "No PDFs have been uploaded yet" in empty.output

    (temp_config.storage_root / "manual.pdf").write_bytes(make_pdf(100))
    listed = CliRunner().invoke(run.cli, ["files"])
    assert listed.exit_code == 0, listed.output
    assert "manual.pdf" in listed.output


def test_compression_status_command(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run.PDFCompressor, "is_available", _unavailable)

    result = CliRunner().invoke(run.cli, ["compression-status"])

    assert result.exit_code == 0
    assert "not available" in result.output


async def _unavailable(self) -> bool:
    return False


def test_files_command_leaves_staging_untouched(monkeypatch, temp_config):
    calls = []

    def fake_initialize_app(**kwargs):
        calls.append(kwargs)
        Bootstrapper(temp_config).initialize(**kwargs)
        return temp_config

    monkeypatch.setattr(run, "initialize_app", fake_initialize_app)
    monkeypatch.setattr(run, "_prepare_logging", lambda data_root: None)
    in_flight = temp_config.staging_root / "compressed-in-flight.pdf"
    in_flight.write_bytes(b"%PDF")

    result = CliRunner().invoke(run.cli, ["files"])

    assert result.exit_code == 0, result.output
    assert calls == [{}]
    assert in_flight.exists()
