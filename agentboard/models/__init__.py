"""Domain models for Agentboard."""

from agentboard.models.config import (
    AppConfig,
    LogDirsConfig,
    MatchingConfig,
    StatusConfig,
    TerminalConfig,
)
from agentboard.models.match import (
    DEFAULT_SCROLLBACK_LINES,
    ExactMatchProfile,
    LogEntrySnapshot,
    LogMatch,
    MatchWorkerRequest,
    MatchWorkerResponse,
    MatchWorkerSearchOptions,
    OrphanCandidate,
    WindowSnapshot,
)
from agentboard.models.session import (
    AgentType,
    Session,
    SessionSnapshot,
    SessionSource,
    SessionStatus,
)
from agentboard.models.terminal import TerminalMessage, TerminalMessageType

__all__ = [
    # Session
    "AgentType",
    "Session",
    "SessionSnapshot",
    "SessionSource",
    "SessionStatus",
    # Match worker
    "DEFAULT_SCROLLBACK_LINES",
    "ExactMatchProfile",
    "LogEntrySnapshot",
    "LogMatch",
    "MatchWorkerRequest",
    "MatchWorkerResponse",
    "MatchWorkerSearchOptions",
    "OrphanCandidate",
    "WindowSnapshot",
    # Terminal
    "TerminalMessage",
    "TerminalMessageType",
    # Config
    "AppConfig",
    "LogDirsConfig",
    "MatchingConfig",
    "StatusConfig",
    "TerminalConfig",
]
