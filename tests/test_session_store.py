"""Tests for SessionStore."""

import tempfile
from pathlib import Path

import pytest

from agentboard.models.session import Session, SessionSource, SessionStatus
from agentboard.services.session_store import SessionStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for state files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """Create a SessionStore with temporary storage."""
    return SessionStore(data_dir=temp_dir)


class TestSessionCRUD:
    """Tests for Session CRUD operations."""

    def test_create_session_from_fields(self, store):
        """create_session builds a Session with a generated id."""
        session = store.create_session(name="api", tmux_window="agentboard:1")

        assert session.id
        assert store.get(session.id) is session

    def test_create_session_from_model(self, store):
        """create_session accepts a prepared Session."""
        session = Session(id="s-1", name="api")

        store.create_session(session)

        assert store.get("s-1") is session

    def test_get_not_found(self, store):
        """get returns None for unknown ID."""
        assert store.get("unknown") is None

    def test_get_by_window(self, store):
        """get_by_window finds the session bound to a target."""
        session = store.create_session(name="api", tmux_window="agentboard:1")

        assert store.get_by_window("agentboard:1") is session
        assert store.get_by_window("agentboard:2") is None

    def test_get_by_log_path(self, store):
        """get_by_log_path finds the log's owner."""
        session = store.create_session(name="api", log_file_path="/logs/a.jsonl")

        assert store.get_by_log_path("/logs/a.jsonl") is session
        assert store.get_by_log_path("/logs/b.jsonl") is None

    def test_list_sessions_oldest_first(self, store):
        """list_sessions orders by creation time."""
        first = store.create_session(name="one")
        second = store.create_session(name="two")

        assert [s.id for s in store.list_sessions()] == [first.id, second.id]
        assert len(store) == 2

    def test_update_session(self, store):
        """update_session replaces the stored record."""
        session = store.create_session(name="api")

        store.update_session(session.model_copy(update={"status": SessionStatus.WORKING}))

        assert store.get(session.id).status == SessionStatus.WORKING

    def test_remove_session(self, store):
        """remove_session removes a session."""
        session = store.create_session(name="api")

        assert store.remove_session(session.id) is True
        assert store.get(session.id) is None

    def test_remove_session_not_found(self, store):
        """remove_session returns False for unknown ID."""
        assert store.remove_session("unknown") is False

    def test_snapshots(self, store):
        """snapshots reduce sessions to the match gate view."""
        session = store.create_session(
            name="api",
            tmux_window="agentboard:1",
            log_file_path="/logs/a.jsonl",
            last_matched_mtime=12.5,
        )

        snapshot = store.snapshots()[0]

        assert snapshot.session_id == session.id
        assert snapshot.current_window == "agentboard:1"
        assert snapshot.log_file_path == "/logs/a.jsonl"
        assert snapshot.last_matched_mtime == 12.5


class TestEventSystem:
    """Tests for the event subscription system."""

    def test_subscribe_and_emit(self, store):
        """Subscribers receive events."""
        events = []
        store.subscribe("session_created", lambda t, d: events.append((t, d)))

        store.create_session(name="api")

        assert len(events) == 1
        assert events[0][0] == "session_created"
        assert events[0][1]["session"]["name"] == "api"

    def test_wildcard_subscription(self, store):
        """Wildcard subscribers receive all events."""
        events = []
        store.subscribe("*", lambda t, d: events.append(t))

        session = store.create_session(name="api")
        store.update_session(session)
        store.remove_session(session.id)

        assert events == ["session_created", "session_updated", "session_removed"]

    def test_unsubscribe(self, store):
        """Unsubscribed callbacks stop receiving events."""
        events = []

        def callback(t, d):
            events.append(t)

        store.subscribe("session_created", callback)
        store.unsubscribe("session_created", callback)
        store.create_session(name="api")

        assert events == []

    def test_broken_listener_does_not_propagate(self, store):
        """A failing callback neither raises nor blocks other listeners."""
        events = []

        def broken(t, d):
            raise RuntimeError("listener bug")

        store.subscribe("*", broken)
        store.subscribe("*", lambda t, d: events.append(t))

        store.create_session(name="api")

        assert events == ["session_created"]


class TestPersistence:
    """Tests for state persistence."""

    def test_state_survives_restart(self, temp_dir):
        """Sessions are reloaded from disk."""
        store = SessionStore(data_dir=temp_dir)
        session = store.create_session(
            name="api",
            tmux_window="agentboard:1",
            log_file_path="/logs/a.jsonl",
            source=SessionSource.EXTERNAL,
        )

        reloaded = SessionStore(data_dir=temp_dir)
        restored = reloaded.get(session.id)

        assert restored is not None
        assert restored.name == "api"
        assert restored.log_file_path == "/logs/a.jsonl"
        assert restored.source == SessionSource.EXTERNAL
        assert restored.created_at == session.created_at

    def test_unpersisted_update_saved_explicitly(self, temp_dir):
        """persist=False defers the write until save()."""
        store = SessionStore(data_dir=temp_dir)
        session = store.create_session(name="api")
        store.update_session(session.model_copy(update={"status": SessionStatus.IDLE}), persist=False)

        assert SessionStore(data_dir=temp_dir).get(session.id).status == SessionStatus.UNKNOWN

        store.save()
        assert SessionStore(data_dir=temp_dir).get(session.id).status == SessionStatus.IDLE

    def test_corrupt_state_file_ignored(self, temp_dir):
        """An unreadable state file yields an empty store."""
        (temp_dir / "sessions.yaml").write_text("sessions: [unclosed")

        assert len(SessionStore(data_dir=temp_dir)) == 0

    def test_invalid_session_skipped(self, temp_dir):
        """Invalid persisted records are dropped individually."""
        (temp_dir / "sessions.yaml").write_text(
            "sessions:\n"
            "  good:\n"
            "    id: good\n"
            "    name: api\n"
            "  bad:\n"
            "    id: bad\n"
            "    status: exploded\n"
        )

        store = SessionStore(data_dir=temp_dir)

        assert store.get("good") is not None
        assert store.get("bad") is None

    def test_clear(self, store):
        """clear empties the store."""
        store.create_session(name="api")

        store.clear()

        assert len(store) == 0
