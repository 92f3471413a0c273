"""SessionStore - the canonical session table.

Owned by the StatusWatcher, which is the only writer during normal
operation. Flask request threads read it concurrently, so every access
goes through a re-entrant lock. State is persisted to
``<data_dir>/sessions.yaml`` and change events are emitted for SSE.
"""

import contextlib
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import yaml

from agentboard.models.session import Session, SessionSnapshot

logger = logging.getLogger(__name__)


class SessionStore:
    """Thread-safe store of Session records.

    Lookups by window and by log path back the two uniqueness rules: one
    session per live window and one session per log file.
    """

    def __init__(self, data_dir: str | Path = "data"):
        """Initialize the store.

        Args:
            data_dir: Directory for persisting state.
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Callable]] = {}

        self._load_state()

    # =========================================================================
    # Session CRUD
    # =========================================================================

    def create_session(self, session: Session | None = None, **fields) -> Session:
        """Add a session.

        Args:
            session: A prepared Session; built from ``fields`` if omitted.
            **fields: Session fields (``id`` defaults to a new UUID).

        Returns:
            The stored Session.
        """
        if session is None:
            fields.setdefault("id", str(uuid.uuid4()))
            session = Session(**fields)

        with self._lock:
            self._sessions[session.id] = session
            self._save_state()

        logger.info(f"Session created: {session.name} ({session.id[:8]}, {session.source.value})")
        self._emit("session_created", {"session": session.model_dump(mode="json")})
        return session

    def get(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        with self._lock:
            return self._sessions.get(session_id)

    def get_by_window(self, tmux_window: str) -> Session | None:
        """Get the session bound to a tmux window."""
        with self._lock:
            for session in self._sessions.values():
                if session.tmux_window == tmux_window:
                    return session
        return None

    def get_by_log_path(self, log_path: str) -> Session | None:
        """Get the session that owns a log file."""
        with self._lock:
            for session in self._sessions.values():
                if session.log_file_path == log_path:
                    return session
        return None

    def list_sessions(self) -> list[Session]:
        """List all sessions, oldest first."""
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def update_session(self, session: Session, persist: bool = True) -> Session:
        """Store a modified session and notify listeners.

        Args:
            session: The session with its new field values.
            persist: Write the table to disk. Status-only churn passes False.
        """
        with self._lock:
            self._sessions[session.id] = session
            if persist:
                self._save_state()

        self._emit("session_updated", {"session": session.model_dump(mode="json")})
        return session

    def remove_session(self, session_id: str) -> bool:
        """Remove a session."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            self._save_state()

        logger.info(f"Session removed: {session.name} ({session_id[:8]})")
        self._emit("session_removed", {"session_id": session_id})
        return True

    def snapshots(self) -> list[SessionSnapshot]:
        """Gate view of every session."""
        with self._lock:
            return [s.to_snapshot() for s in self._sessions.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # =========================================================================
    # Event System
    # =========================================================================

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Subscribe to an event type.

        Args:
            event_type: The event type to subscribe to, or "*" for all.
            callback: Function called with (event_type, data).
        """
        if event_type not in self._listeners:
            self._listeners[event_type] = []
        self._listeners[event_type].append(callback)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        """Unsubscribe from an event type."""
        if event_type in self._listeners:
            self._listeners[event_type] = [
                cb for cb in self._listeners[event_type] if cb != callback
            ]

    def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all subscribers."""
        data["timestamp"] = datetime.now().isoformat()

        for callback in self._listeners.get(event_type, []) + self._listeners.get("*", []):
            # A broken listener must not interrupt the watcher tick
            with contextlib.suppress(Exception):
                callback(event_type, data)

    # =========================================================================
    # Persistence
    # =========================================================================

    def _get_state_file(self) -> Path:
        """Get the state file path."""
        return self.data_dir / "sessions.yaml"

    def save(self) -> None:
        """Write the table to disk."""
        with self._lock:
            self._save_state()

    def _save_state(self) -> None:
        state = {
            "sessions": {sid: s.model_dump(mode="json") for sid, s in self._sessions.items()},
        }

        state_file = self._get_state_file()
        try:
            with open(state_file, "w") as f:
                yaml.dump(state, f, default_flow_style=False)
            logger.debug(f"Saved state: {len(self._sessions)} sessions")
        except OSError as e:
            logger.error(f"Failed to save state to {state_file}: {e}")

    def _load_state(self) -> None:
        """Load state from disk."""
        state_file = self._get_state_file()
        if not state_file.exists():
            return

        try:
            with open(state_file) as f:
                state = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable session state {state_file}: {e}")
            return

        if not isinstance(state, dict):
            return

        for sid, sdata in (state.get("sessions") or {}).items():
            try:
                self._sessions[sid] = Session.model_validate(sdata)
            except ValueError as e:
                logger.warning(f"Skipping invalid persisted session {sid}: {e}")

        logger.info(f"Loaded {len(self._sessions)} sessions from {state_file}")

    def clear(self) -> None:
        """Clear all state (for testing)."""
        with self._lock:
            self._sessions.clear()
            self._save_state()
