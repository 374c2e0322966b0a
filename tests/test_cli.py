"""Tests for the recall CLI commands."""

import pytest
from typer.testing import CliRunner

from recall.cli.main import app
from recall.storage import db

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch, default_settings):
    """Point the CLI at a throwaway home directory and database."""
    monkeypatch.setenv("HOME", str(tmp_path))
    default_settings.general.db_url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    default_settings.general.default_project_path = str(tmp_path / "app")
    # A command that exits early leaves its engine behind
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(db, "_session_factory", None)
    return tmp_path


class TestInit:
    def test_writes_config_and_folder(self, cli_env):
        result = runner.invoke(app, ["init"])
        assert result.exit_code == 0, result.output
        assert (cli_env / ".config/recall/config.toml").exists()
        assert "Context folder" in result.output
        assert "Recall ready" in result.output

    def test_existing_config_kept(self, cli_env):
        config = cli_env / ".config/recall/config.toml"
        config.parent.mkdir(parents=True)
        config.write_text("[general]\n")
        result = runner.invoke(app, ["init", "--project", "/work/other"])
        assert result.exit_code == 0, result.output
        assert config.read_text() == "[general]\n"


class TestStats:
    def test_stats_table(self, cli_env):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["stats"])
        assert result.exit_code == 0, result.output
        assert "totalFolders" in result.output

    def test_unknown_project(self, cli_env):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["stats", "--project", "/nowhere"])
        assert result.exit_code == 1
        assert "No context folder" in result.output


class TestContextCommands:
    def test_resume_fresh_project(self, cli_env):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["context", "resume"])
        assert result.exit_code == 0, result.output
        assert "No previous sessions recorded" in result.output

    def test_finalize_unknown_session(self, cli_env):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["context", "finalize", "missing"])
        assert result.exit_code == 1
        assert "Session not found" in result.output

    def test_empty_listings(self, cli_env):
        runner.invoke(app, ["init"])
        assert "No conversations recorded" in runner.invoke(app, ["context", "conversations"]).output
        assert "No patterns detected yet" in runner.invoke(app, ["context", "patterns"]).output

    def test_relevant_without_history(self, cli_env):
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["context", "relevant", "login form"])
        assert result.exit_code == 0, result.output
        assert "No relevant conversations found" in result.output
