import os
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ocbridge import __version__
from ocbridge.cli.commands import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Run every command away from any real .env and OCBRIDGE_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("OCBRIDGE_"):
            monkeypatch.delenv(name)
    yield tmp_path


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"ocbridge v{__version__}" in result.stdout

    flag = runner.invoke(app, ["--version"])
    assert flag.exit_code == 0
    assert __version__ in flag.stdout


def test_config_masks_secrets(tmp_path: Path) -> None:
    env_file = tmp_path / "bridge.env"
    env_file.write_text(
        "OCBRIDGE_FEISHU__APP_ID=cli_visible\nOCBRIDGE_FEISHU__APP_SECRET=very-secret-value\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["config", "--env-file", str(env_file)])
    assert result.exit_code == 0
    assert "cli_visible" in result.stdout
    assert "very-secret-value" not in result.stdout
    assert "***" in result.stdout


def test_missing_env_file_fails(tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "--env-file", str(tmp_path / "missing.env")])
    assert result.exit_code == 1
    assert "Env file not found" in result.stdout


def test_invalid_config_fails() -> None:
    result = runner.invoke(app, ["config"], env={"OCBRIDGE_AGENT__MAX_CONCURRENT": "0"})
    assert result.exit_code == 1
    assert "Invalid configuration" in result.stdout


def test_gateway_requires_a_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep loguru's sinks pointed at the real stderr, not the runner's capture.
    monkeypatch.setattr("ocbridge.utils.helpers.setup_logging", lambda config: None)
    result = runner.invoke(app, ["gateway"])
    assert result.exit_code == 1
    assert "No channels enabled" in result.stdout


def test_models_lists_agent_models(fake_agent: Path) -> None:
    result = runner.invoke(
        app,
        ["models"],
        env={"OCBRIDGE_AGENT__PATH": str(fake_agent), "OCBRIDGE_AGENT__MODEL": "fake/model-b"},
    )
    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert lines[0] == "fake/model-a"
    assert lines[1].startswith("fake/model-b")
    assert "(configured)" in lines[1]


def test_models_fails_without_agent(tmp_path: Path) -> None:
    result = runner.invoke(app, ["models"], env={"OCBRIDGE_AGENT__PATH": str(tmp_path / "nope")})
    assert result.exit_code == 1
    assert "No models reported" in result.stdout


def test_classify_without_agent() -> None:
    chat = runner.invoke(app, ["classify", "hello", "--no-agent"])
    assert chat.exit_code == 0
    assert "intent: ExecuteIntent" in chat.stdout
    assert "hint: chat" in chat.stdout

    builtin = runner.invoke(app, ["classify", "!status", "--no-agent"])
    assert "intent: BuiltinIntent" in builtin.stdout
    assert "hint:" not in builtin.stdout


def test_classify_asks_agent_when_ambiguous(fake_agent: Path) -> None:
    result = runner.invoke(
        app,
        ["classify", "今天天气 classify=chat:1"],
        env={"OCBRIDGE_AGENT__PATH": str(fake_agent), "OCBRIDGE_AGENT__AUTO_DETECT_MODEL": "false"},
    )
    assert result.exit_code == 0
    assert "hint: ambiguous" in result.stdout
    assert "agent: chat (1.00)" in result.stdout
