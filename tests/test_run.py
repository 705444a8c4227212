"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

import run


def _setup_serve(monkeypatch, tmp_path, upload_limit):
    captured = {}

    monkeypatch.setattr(
        run,
        "initialize_app",
        lambda: SimpleNamespace(storage_root=tmp_path),
    )
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "StudyRepository", lambda config: object())

    dummy_app = SimpleNamespace(state=SimpleNamespace())
    monkeypatch.setattr(run, "create_app", lambda repository, config, root_path: dummy_app)

    class DummyConfig:
        def __init__(self, app, limit_max_request_size=None, **kwargs):
            captured["app"] = app
            if limit_max_request_size is not None:
                kwargs["limit_max_request_size"] = limit_max_request_size
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_config"] = config
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    class DummyThread:
        def __init__(self, target, daemon):
            self._target = target
            captured["thread_daemon"] = daemon

        def start(self):
            captured["thread_started"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run.threading, "Thread", DummyThread)
    monkeypatch.setattr(run.webbrowser, "open", lambda *args, **kwargs: True)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="shelf/")

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_applies_request_size_limit(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=50 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 50 * 1024 * 1024
    assert captured["config_kwargs"]["root_path"] == "/shelf"
    assert captured["app_state_server"] is captured["server_instance"]
    assert captured["server_run"] is True
    assert captured["thread_daemon"] is True


def test_serve_omits_limit_when_disabled(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    assert "limit_max_request_size" not in captured["config_kwargs"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, ""), ("  ", ""), ("shelf", "/shelf"), ("/shelf/", "/shelf")],
)
def test_normalize_root_path(raw, expected):
    assert run._normalize_root_path(raw) == expected


@pytest.fixture()
def cli_env(temp_config, monkeypatch):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    return temp_config


def test_cli_builds_hierarchy_and_renders_overview(cli_env, tmp_path):
    runner = CliRunner()

    folder = runner.invoke(run.cli, ["add-folder", "Spanish", "--color", "#2A9D8F"])
    assert folder.exit_code == 0, folder.output
    assert "Created folder #1: Spanish (#2a9d8f)" in folder.output

    topic = runner.invoke(run.cli, ["add-topic", "1", "Grammar"])
    assert topic.exit_code == 0, topic.output

    lesson = runner.invoke(
        run.cli, ["add-lesson", "1", "Ser vs Estar", "--date", "2024-03-01"]
    )
    assert lesson.exit_code == 0, lesson.output

    document = tmp_path / "rules.pdf"
    document.write_bytes(b"%PDF-1.4")
    uploaded = runner.invoke(run.cli, ["upload", "1", str(document)])
    assert uploaded.exit_code == 0, uploaded.output
    assert "rules.pdf" in uploaded.output

    overview = runner.invoke(run.cli, ["overview", "--style", "console"])
    assert overview.exit_code == 0, overview.output
    assert "Spanish" in overview.output
    assert "Ser vs Estar" in overview.output


def test_cli_upload_reports_rejected_files(cli_env, tmp_path):
    runner = CliRunner()
    runner.invoke(run.cli, ["add-folder", "Spanish"])
    runner.invoke(run.cli, ["add-topic", "1", "Grammar"])
    runner.invoke(run.cli, ["add-lesson", "1", "Ser vs Estar"])
    notes = tmp_path / "notes.txt"
    notes.write_text("plain", encoding="utf-8")

    result = runner.invoke(run.cli, ["upload", "1", str(notes)])

    assert result.exit_code == 1
    assert "Skipped notes.txt" in result.output


def test_cli_delete_cascades_and_reports_missing(cli_env):
    runner = CliRunner()
    runner.invoke(run.cli, ["add-folder", "Spanish"])
    runner.invoke(run.cli, ["add-topic", "1", "Grammar"])

    first = runner.invoke(run.cli, ["delete", "folder", "1"])
    assert first.exit_code == 0, first.output
    assert "1 topic" in first.output
    assert "1 folder" in first.output

    second = runner.invoke(run.cli, ["delete", "folder", "1"])
    assert second.exit_code == 0
    assert "already removed" in second.output


def test_cli_reports_missing_parent(cli_env):
    result = CliRunner().invoke(run.cli, ["add-topic", "42", "Orphan"])

    assert result.exit_code == 1
    assert "Folder 42 not found" in result.output
