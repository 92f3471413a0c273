"""Application configuration models with Pydantic validation."""

from pydantic import BaseModel, Field


class LogDirsConfig(BaseModel):
    """Overrides for the per-agent log directories.

    When unset, directories are derived from the environment
    (CLAUDE_CONFIG_DIR, CODEX_HOME) and the home directory.
    """

    claude_projects_dir: str | None = Field(
        default=None,
        description="Directory holding Claude Code project logs",
    )
    codex_sessions_dir: str | None = Field(
        default=None,
        description="Directory holding Codex session logs",
    )


class MatchingConfig(BaseModel):
    """Log-to-window matching configuration."""

    max_logs_per_poll: int = Field(
        default=25,
        ge=1,
        le=1000,
        description="Most recently modified logs considered per poll",
    )
    scrollback_lines: int = Field(
        default=400,
        ge=20,
        le=10000,
        description="Trailing scrollback lines used as the window fingerprint",
    )
    min_tokens_for_match: int = Field(
        default=50,
        ge=0,
        description="Logs with fewer estimated tokens are not matched",
    )
    tail_bytes: int | None = Field(
        default=None,
        ge=1024,
        description="Trailing bytes of each log searched (matcher default when unset)",
    )
    rg_threads: int | None = Field(
        default=None,
        ge=1,
        le=64,
        description="ripgrep thread budget (derived from CPU count when unset)",
    )
    profile: bool = Field(
        default=False,
        description="Collect per-candidate timing telemetry",
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=300,
        description="Seconds to wait for a worker response before giving up on a tick",
    )
    max_outstanding_requests: int = Field(
        default=2,
        ge=1,
        le=20,
        description="Timed-out requests allowed in flight before ticks are skipped",
    )
    stuck_seconds: float = Field(
        default=120.0,
        gt=0,
        le=3600,
        description="Age of the oldest unanswered request at which the worker is restarted",
    )


class StatusConfig(BaseModel):
    """Session status derivation configuration."""

    idle_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=86400,
        description="Seconds without activity before a session is idle",
    )
    scan_lines: int = Field(
        default=60,
        ge=10,
        le=2000,
        description="Lines of the current screen captured for prompt detection",
    )
    orphan_grace_hours: float = Field(
        default=24,
        ge=0,
        le=24 * 30,
        description="Hours an orphaned session is kept without new activity",
    )


class TerminalConfig(BaseModel):
    """Terminal streaming configuration."""

    subscriber_queue_size: int = Field(
        default=512,
        ge=16,
        le=100000,
        description="Outbound messages buffered per client before dropping",
    )
    output_buffer_chars: int = Field(
        default=16384,
        ge=1024,
        le=1024 * 1024,
        description="Recent output kept per session for prompt scanning",
    )


class AppConfig(BaseModel):
    """Root application configuration.

    Loaded from config.yaml and validated with Pydantic.
    """

    port: int = Field(
        default=4040,
        ge=1024,
        le=65535,
        description="Port for the Flask server",
    )
    host: str = Field(default="0.0.0.0", description="Interface to bind")
    debug: bool = Field(default=False, description="Enable Flask debug mode")
    data_dir: str = Field(default="data", description="Directory for persisted state")
    tmux_session: str = Field(
        default="agentboard",
        min_length=1,
        description="tmux session whose windows are managed by agentboard",
    )
    scan_interval: int = Field(
        default=2,
        ge=1,
        le=60,
        description="Interval in seconds between status polls",
    )
    log_dirs: LogDirsConfig = Field(default_factory=LogDirsConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
