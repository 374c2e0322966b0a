"""Tests for configuration loading."""

import tempfile
from pathlib import Path

from recall.config import Settings


class TestConfigDefaults:
    def test_default_settings_load(self):
        """Settings should construct with all defaults when no config file exists."""
        settings = Settings()
        assert settings.general.log_level == "INFO"
        assert settings.capture.flush_interval == 2.0
        assert settings.capture.max_batch_size == 100
        assert settings.extraction.turn_timeout_seconds == 30.0
        assert settings.patterns.sequence_length == 3

    def test_invocation_words_in_priority_order(self):
        settings = Settings()
        assert settings.extraction.invocation_commands == ["claude", "claude-code", "cld", "cc"]

    def test_db_url_default(self):
        settings = Settings()
        assert settings.general.db_url.startswith("sqlite+aiosqlite:///")
        assert settings.general.db_url.endswith("context-memory.db")

    def test_base_confidence_per_type(self):
        settings = Settings()
        assert settings.patterns.base_confidence == {
            "command_sequence": 0.5,
            "error_solution": 0.6,
            "file_cluster": 0.4,
            "success_signal": 0.7,
        }

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("RECALL_CAPTURE_MAX_BATCH_SIZE", "25")
        settings = Settings()
        assert settings.capture.max_batch_size == 25

    def test_every_section_reads_its_own_prefix(self, monkeypatch):
        monkeypatch.setenv("SEQUENCE_LENGTH", "9")
        monkeypatch.setenv("TURN_TIMEOUT_SECONDS", "1")
        monkeypatch.setenv("RECALL_EXTRACTION_TURN_TIMEOUT_SECONDS", "12")
        monkeypatch.setenv("RECALL_PATTERNS_MIN_SEQUENCE_LENGTH", "3")
        monkeypatch.setenv("RECALL_SESSIONS_RESUMPTION_LIMIT", "8")
        monkeypatch.setenv("RECALL_RETRIEVAL_MAX_RESULTS", "2")
        settings = Settings()
        assert settings.patterns.sequence_length == 3
        assert settings.extraction.turn_timeout_seconds == 12.0
        assert settings.patterns.min_sequence_length == 3
        assert settings.sessions.resumption_limit == 8
        assert settings.retrieval.max_results == 2


class TestConfigFromToml:
    def test_load_from_toml(self):
        """Should load overrides from a TOML file."""
        toml_content = """
[general]
log_level = "DEBUG"

[capture]
flush_interval = 0.5

[sessions]
idle_timeout_minutes = 5
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(toml_content)
            f.flush()

            settings = Settings.load(Path(f.name))
            assert settings.general.log_level == "DEBUG"
            assert settings.capture.flush_interval == 0.5
            assert settings.sessions.idle_timeout_minutes == 5

    def test_missing_config_file_uses_defaults(self):
        settings = Settings.load(Path("/nonexistent/config.toml"))
        assert settings.general.log_level == "INFO"

    def test_partial_toml_fills_defaults(self):
        """A TOML with only [general] should still have defaults for other sections."""
        toml_content = """
[general]
log_level = "WARNING"
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(toml_content)
            f.flush()

            settings = Settings.load(Path(f.name))
            assert settings.general.log_level == "WARNING"
            assert settings.capture.max_batch_size == 100  # default preserved
            assert settings.server.port == 8765  # default preserved
