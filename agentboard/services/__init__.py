"""Services for Agentboard."""

from agentboard.services.config_service import ConfigService
from agentboard.services.event_bus import Event, EventBus
from agentboard.services.log_discovery import (
    agent_path_conventions,
    classify_agent,
    classify_command,
    get_log_search_dirs,
    is_subagent_log,
)
from agentboard.services.log_match_gate import select_entries_needing_match
from agentboard.services.log_matcher import match_windows_to_logs
from agentboard.services.log_poll_data import LogEntryBatch, collect_log_entry_batch
from agentboard.services.match_worker import MatchWorkerClient, handle_match_worker_request
from agentboard.services.session_manager import SessionManager, detects_permission_prompt
from agentboard.services.session_store import SessionStore
from agentboard.services.status_watcher import StatusWatcher, infer_agent_type, next_status
from agentboard.services.terminal_proxy import TerminalProxy

__all__ = [
    # Config
    "ConfigService",
    # Events
    "Event",
    "EventBus",
    # Log discovery and matching
    "LogEntryBatch",
    "agent_path_conventions",
    "classify_agent",
    "classify_command",
    "collect_log_entry_batch",
    "get_log_search_dirs",
    "is_subagent_log",
    "match_windows_to_logs",
    "select_entries_needing_match",
    # Match worker
    "MatchWorkerClient",
    "handle_match_worker_request",
    # Sessions
    "SessionManager",
    "SessionStore",
    "StatusWatcher",
    "TerminalProxy",
    "detects_permission_prompt",
    "infer_agent_type",
    "next_status",
]
