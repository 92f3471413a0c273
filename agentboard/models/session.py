"""Session model - a tracked agent CLI running in a tmux window."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class AgentType(str, Enum):
    """Which agent CLI produced a window or log."""

    UNKNOWN = "unknown"
    CLAUDE = "claude"
    CODEX = "codex"
    OTHER = "other"


class SessionStatus(str, Enum):
    """Derived session status, recomputed on every poll.

    Transitions:
    - UNKNOWN → WORKING (first observed activity)
    - WORKING → NEEDS_INPUT (permission prompt on screen)
    - NEEDS_INPUT → WORKING (prompt answered, new output)
    - WORKING → IDLE (no activity for the idle timeout)
    - any → ORPHANED (bound window closed)
    - any → WORKING (new output)
    """

    UNKNOWN = "unknown"
    WORKING = "working"
    NEEDS_INPUT = "needs_input"
    IDLE = "idle"
    ORPHANED = "orphaned"


class SessionSource(str, Enum):
    """How the session came to be tracked."""

    MANAGED = "managed"
    """Window lives in the agentboard tmux session."""

    EXTERNAL = "external"
    """Window discovered in some other tmux session."""

    LOG = "log"
    """Created from a discovered log that no window claimed."""


class Session(BaseModel):
    """Canonical record for one agent session.

    A session is bound to at most one live tmux window and owns at most one
    log file. Both bindings may be absent: a window whose log has not been
    matched yet, or a log whose window has closed (orphan).
    """

    id: str = Field(..., description="Unique session identifier (UUID)")
    name: str = Field(..., description="Display name (window name or log leaf)")
    tmux_window: str | None = Field(
        default=None,
        description="tmux target 'session:index', None when orphaned",
    )
    tmux_window_id: str | None = Field(
        default=None,
        description="Stable tmux window id (@N) of the bound window",
    )
    project_path: str = Field(default="", description="Working directory of the agent")
    agent_type: AgentType = Field(default=AgentType.UNKNOWN)
    command: str | None = Field(default=None, description="Foreground pane command")
    log_file_path: str | None = Field(default=None, description="Resolved session log")
    agent_session_id: str | None = Field(
        default=None,
        description="Session id recorded inside the log",
    )
    status: SessionStatus = Field(default=SessionStatus.UNKNOWN)
    source: SessionSource = Field(default=SessionSource.MANAGED)
    created_at: datetime = Field(default_factory=datetime.now)
    last_activity_at: datetime | None = Field(default=None)
    last_matched_mtime: float | None = Field(
        default=None,
        description="Log mtime (epoch seconds) when the binding was last confirmed",
    )
    orphaned_at: datetime | None = Field(default=None)

    @property
    def is_orphaned(self) -> bool:
        """True when the session has no live window."""
        return self.tmux_window is None

    def to_snapshot(self) -> "SessionSnapshot":
        """Reduce to the fields the match gate needs."""
        return SessionSnapshot(
            session_id=self.id,
            log_file_path=self.log_file_path,
            current_window=self.tmux_window,
            last_matched_mtime=self.last_matched_mtime,
        )


class SessionSnapshot(BaseModel):
    """Known-session view sent to the match worker."""

    session_id: str
    log_file_path: str | None = None
    current_window: str | None = None
    last_matched_mtime: float | None = None
