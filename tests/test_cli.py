from pathlib import Path

import pytest
from click.testing import CliRunner

from ai_project_agent.cli import cli
from ai_project_agent.providers.llm.base import LLMRateLimitError, Message
from ai_project_agent.session import JsonlHistoryStore

from fakes import ScriptedClient, make_manager, text_reply


@pytest.fixture(autouse=True)
def _keep_test_logging(monkeypatch):
    monkeypatch.setattr("ai_project_agent.cli.commands.configure_logging", lambda *args, **kwargs: None)


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(f"history_root = '{tmp_path.as_posix()}'\nstreaming_update_interval = 0\n", encoding="utf-8")
    return path


def _use_client(monkeypatch, client):
    managers = []

    def fake_build_manager(settings):
        manager = make_manager(client)
        managers.append(manager)
        return manager

    monkeypatch.setattr("ai_project_agent.cli.utils.build_manager", fake_build_manager)
    return managers


def test_chat_single_message_prints_reply(tmp_path: Path, monkeypatch) -> None:
    client = ScriptedClient(text_reply("Hello from the agent", chunks=3))
    managers = _use_client(monkeypatch, client)
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["--config", str(_config(tmp_path)), "chat", "demo", "-m", "hi", "--model", "prov/model"],
    )

    assert result.exit_code == 0, result.output
    assert "Hello from the agent" in result.output
    assert client.calls[0].model == "model"
    assert managers[0].get_all_sessions() == []


def test_chat_reports_failure_exit_code(tmp_path: Path, monkeypatch) -> None:
    _use_client(monkeypatch, ScriptedClient(LLMRateLimitError("429")))
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(_config(tmp_path)), "chat", "demo", "-m", "hi", "--model", "prov/m"])

    assert result.exit_code == 1
    assert "Rate limit exceeded" in result.output


def test_interactive_chat_supports_new_and_exit(tmp_path: Path, monkeypatch) -> None:
    client = ScriptedClient(text_reply("first answer"), text_reply("second answer"))
    managers = _use_client(monkeypatch, client)
    runner = CliRunner()

    result = runner.invoke(
        cli,
        ["--config", str(_config(tmp_path)), "chat", "demo", "--model", "prov/model"],
        input="one\n/new\ntwo\n/exit\n",
    )

    assert result.exit_code == 0, result.output
    assert "first answer" in result.output
    assert "second answer" in result.output
    assert "Started a new session." in result.output
    assert [m.role for m in client.calls[1].messages] == ["user"]
    assert len(managers) == 1


def test_history_shows_latest_session(tmp_path: Path) -> None:
    store = JsonlHistoryStore(tmp_path)
    store.save("demo", "2024-08-24T17-15-22Z-abc", [Message(role="user", content="older")])
    store.save(
        "demo",
        "2024-09-01T08-00-00Z-xyz",
        [Message(role="user", content="make a page"), Message(role="assistant", content="Done.")],
    )
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(_config(tmp_path)), "history", "demo"])

    assert result.exit_code == 0, result.output
    assert "# 2024-09-01T08-00-00Z-xyz" in result.output
    assert "user: make a page" in result.output
    assert "assistant: Done." in result.output

    listed = runner.invoke(cli, ["--config", str(_config(tmp_path)), "history", "demo", "--list"])
    assert listed.exit_code == 0
    assert listed.output.index("2024-09-01T08-00-00Z-xyz") < listed.output.index("2024-08-24T17-15-22Z-abc")


def test_history_without_records_fails(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(_config(tmp_path)), "history", "missing"])

    assert result.exit_code != 0
    assert "No stored history for missing" in result.output


def test_history_rejects_path_like_project_id(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(_config(tmp_path)), "history", "../outside"])

    assert result.exit_code == 1
    assert "Invalid project id" in result.output
