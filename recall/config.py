"""Recall configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so RECALL_* overrides are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

DEFAULT_DATA_DIR = Path.home() / ".local/share/recall"


class GeneralSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECALL_")
    db_url: str = Field(default=f"sqlite+aiosqlite:///{DEFAULT_DATA_DIR / 'context-memory.db'}")
    default_project_path: str = Field(default_factory=lambda: str(Path.cwd()))
    log_level: str = "INFO"


class CaptureSettings(BaseSettings):
    """Batching and delivery of terminal chunks to the capture endpoint."""

    model_config = SettingsConfigDict(env_prefix="RECALL_CAPTURE_")
    flush_interval: float = 2.0
    max_batch_size: int = 100
    tick_interval: float = 0.25
    endpoint_url: str = "http://127.0.0.1:8765/api/context/capture"
    request_timeout: float = 5.0
    failures_before_backoff: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 60.0


class ExtractionSettings(BaseSettings):
    """Turn segmentation rules."""

    model_config = SettingsConfigDict(env_prefix="RECALL_EXTRACTION_")
    invocation_commands: list[str] = ["claude", "claude-code", "cld", "cc"]
    interactive_sentinel: str = "[interactive session started]"
    inferred_input: str = "[terminal interaction]"
    turn_timeout_seconds: float = 30.0
    session_end_inputs: list[str] = ["exit", "/exit", "quit", "/quit"]
    trivial_inputs: list[str] = ["ls", "pwd", "cd", "clear", "exit"]
    # Recent chunk fingerprints remembered per terminal for re-delivery checks
    dedupe_window: int = 2048
    # Idle terminals with no open turn are forgotten after this long
    state_ttl_seconds: float = 3600.0


class PatternSettings(BaseSettings):
    """Pattern mining and confidence scoring."""

    model_config = SettingsConfigDict(env_prefix="RECALL_PATTERNS_")
    sequence_length: int = 3
    min_sequence_length: int = 2
    tracked_commands: list[str] = [
        "claude", "cld", "claude-code", "cc",
        "npm", "yarn", "pnpm", "node", "python", "pip", "pytest", "uv",
        "git", "docker", "kubectl",
        "ls", "cd", "mkdir", "rm", "cp", "mv",
        "cat", "less", "head", "tail", "grep",
        "vim", "nano", "code",
        "curl", "wget", "ssh",
        "make", "cmake", "cargo", "go",
    ]
    success_markers: list[str] = [
        "✅", "✓", "built successfully", "success", "completed",
        "passed", "deployed", "working", "done",
    ]
    file_cluster_window_seconds: float = 600.0
    max_cluster_files: int = 6
    confidence_ceiling: float = 0.99
    repetition_rate: float = 0.35
    half_life_days: float = 14.0
    base_confidence: dict[str, float] = {
        "command_sequence": 0.5,
        "error_solution": 0.6,
        "file_cluster": 0.4,
        "success_signal": 0.7,
    }
    insight_min_frequency: int = 3
    insight_min_confidence: float = 0.75


class SessionSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECALL_SESSIONS_")
    idle_timeout_minutes: float = 30.0
    sweep_interval: float = 1.0
    resumption_limit: int = 5
    lookback_conversations: int = 20


class RetrievalSettings(BaseSettings):
    """Keyword retrieval over past successful conversations."""

    model_config = SettingsConfigDict(env_prefix="RECALL_RETRIEVAL_")
    candidate_limit: int = 20
    max_results: int = 5
    min_score: float = 0.3
    recent_days: float = 7.0


class ServerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECALL_SERVER_")
    host: str = "127.0.0.1"
    port: int = 8765
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]


class Settings(BaseSettings):
    """Top-level settings assembled from subsections."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    patterns: PatternSettings = Field(default_factory=PatternSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from TOML config file, falling back to defaults."""
        if config_path is None:
            config_path = Path.home() / ".config/recall/config.toml"

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                capture=CaptureSettings(**data.get("capture", {})),
                extraction=ExtractionSettings(**data.get("extraction", {})),
                patterns=PatternSettings(**data.get("patterns", {})),
                sessions=SessionSettings(**data.get("sessions", {})),
                retrieval=RetrievalSettings(**data.get("retrieval", {})),
                server=ServerSettings(**data.get("server", {})),
            )

        return cls()


# Module-level singleton
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
