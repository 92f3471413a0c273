"""Match worker message contract.

The orchestrator and the match worker exchange these models as JSON-mode
dicts over multiprocessing queues. Requests and responses are correlated by
``id``.
"""

from typing import Literal

from pydantic import BaseModel, Field

from agentboard.models.session import AgentType, SessionSnapshot

DEFAULT_SCROLLBACK_LINES = 400


class WindowSnapshot(BaseModel):
    """A live tmux window as seen by the worker."""

    tmux_window: str = Field(..., description="tmux target 'session:index'")
    session_name: str = ""
    name: str = ""
    project_path: str = ""
    command: str | None = None
    last_activity: float = Field(
        default=0.0,
        description="tmux window_activity (epoch seconds)",
    )


class LogEntrySnapshot(BaseModel):
    """One log file observed during a poll. Never persisted."""

    log_path: str
    mtime: float
    birthtime: float
    session_id: str | None = None
    project_path: str | None = None
    agent_type: AgentType | None = None
    is_subagent: bool = False
    log_token_count: int = 0


class OrphanCandidate(BaseModel):
    """A session eligible for a forced rematch pass."""

    session_id: str
    log_file_path: str
    project_path: str | None = None
    agent_type: AgentType | None = None
    current_window: str | None = None


class MatchWorkerSearchOptions(BaseModel):
    """Tuning knobs for the ripgrep pass."""

    tail_bytes: int | None = Field(default=None, ge=1)
    rg_threads: int | None = Field(default=None, ge=1)
    profile: bool = False


class LogMatch(BaseModel):
    """A resolved log → window binding."""

    log_path: str
    tmux_window: str


class ExactMatchProfile(BaseModel):
    """Timing telemetry accumulated by the exact matcher.

    Diagnostics only; nothing reads it for control flow.
    """

    passes: int = 0
    windows_captured: int = 0
    logs_considered: int = 0
    rg_invocations: int = 0
    capture_ms: float = 0.0
    tail_read_ms: float = 0.0
    rg_ms: float = 0.0
    assign_ms: float = 0.0
    window_ms: dict[str, float] = Field(default_factory=dict)
    log_ms: dict[str, float] = Field(default_factory=dict)


class MatchWorkerRequest(BaseModel):
    """One poll's worth of matching work."""

    id: str = Field(..., min_length=1)
    windows: list[WindowSnapshot] = Field(default_factory=list)
    max_logs_per_poll: int = Field(..., ge=1)
    log_dirs: list[str] | None = None
    sessions: list[SessionSnapshot] = Field(default_factory=list)
    scrollback_lines: int = Field(default=DEFAULT_SCROLLBACK_LINES, ge=1)
    min_tokens_for_match: int | None = Field(default=None, ge=0)
    force_orphan_rematch: bool = False
    orphan_candidates: list[OrphanCandidate] = Field(default_factory=list)
    search: MatchWorkerSearchOptions = Field(default_factory=MatchWorkerSearchOptions)


class MatchWorkerResponse(BaseModel):
    """Result (or error) for a MatchWorkerRequest with the same id."""

    id: str
    type: Literal["result", "error"]
    entries: list[LogEntrySnapshot] = Field(default_factory=list)
    orphan_entries: list[LogEntrySnapshot] = Field(default_factory=list)
    scan_ms: float = 0.0
    sort_ms: float = 0.0
    match_ms: float = 0.0
    match_window_count: int = 0
    match_log_count: int = 0
    match_skipped: bool = False
    matches: list[LogMatch] = Field(default_factory=list)
    orphan_matches: list[LogMatch] = Field(default_factory=list)
    profile: ExactMatchProfile | None = None
    error: str | None = None
