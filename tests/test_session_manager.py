"""Tests for SessionManager and permission prompt detection."""

import pytest

from agentboard.services.session_manager import SessionManager, detects_permission_prompt
from agentboard.services.session_store import SessionStore


class FakeProxy:
    """TerminalProxy stand-in that records calls."""

    instances: list["FakeProxy"] = []

    def __init__(self, session_id, target, on_output, on_exit=None, cols=80, rows=24):
        self.session_id = session_id
        self.target = target
        self.on_output = on_output
        self.on_exit = on_exit
        self.size = (cols, rows)
        self.written: list[str] = []
        self.started = False
        self.stopped = False
        FakeProxy.instances.append(self)

    def start(self):
        self.started = True

    def write(self, data):
        self.written.append(data)

    def resize(self, cols, rows):
        self.size = (cols, rows)

    def stop(self):
        self.stopped = True

    def emit(self, data):
        self.on_output(self.session_id, data)


class FailingProxy(FakeProxy):
    def start(self):
        raise OSError("no pty")


@pytest.fixture(autouse=True)
def reset_proxies():
    FakeProxy.instances = []


@pytest.fixture
def store(tmp_path):
    return SessionStore(data_dir=tmp_path)


@pytest.fixture
def session(store):
    return store.create_session(name="api", tmux_window="agentboard:1")


@pytest.fixture
def manager(store):
    return SessionManager(store, queue_size=16, output_buffer_chars=1024, proxy_factory=FakeProxy)


def drain(client_queue) -> list[dict]:
    messages = []
    while not client_queue.empty():
        messages.append(client_queue.get_nowait())
    return messages


class TestDetectsPermissionPrompt:
    """Tests for detects_permission_prompt."""

    def test_numbered_yes_option_with_ansi(self):
        assert detects_permission_prompt("\x1b[31m❯ 1. Yes\x1b[0m") is True

    def test_numbered_yes_option_with_misdecoded_glyph(self):
        assert detects_permission_prompt("some output\n\x1b[31mâ¯ 1. Yes\x1b[0m\n2. No") is True

    def test_numbered_yes_option_inside_box(self):
        assert detects_permission_prompt("╭──────────╮\n│ \x1b[36m❯ 1. Yes\x1b[0m   │\n│   2. No   │") is True

    def test_numbered_yes_needs_standalone_number(self):
        assert detects_permission_prompt("step 11. Yes we shipped it") is False

    @pytest.mark.parametrize(
        "text",
        [
            "Bash command\n  rm -rf build\nDo you want to proceed?\n",
            "Do you want to make this edit to app.py?",
            "Would you like to run the following command?\n  npm test",
            "Overwrite existing file? [Y/n]",
            "2. Yes, and don't ask again for this command",
        ],
    )
    def test_known_phrasings(self, text):
        assert detects_permission_prompt(text) is True

    def test_prompt_scrolled_out_of_window(self):
        text = "❯ 1. Yes\n" + "\n".join(f"output line {i}" for i in range(30))

        assert detects_permission_prompt(text) is False

    def test_trailing_padding_ignored(self):
        text = "Do you want to proceed?\n" + "\n" * 40

        assert detects_permission_prompt(text) is True

    def test_no_prompt(self):
        assert detects_permission_prompt("Running tests...\n42 passed") is False
        assert detects_permission_prompt("") is False


class TestAttach:
    """Tests for attaching and detaching."""

    def test_attach_starts_one_proxy_per_session(self, manager, session):
        manager.connect("c1")
        manager.connect("c2")

        assert manager.attach("c1", session.id, cols=120, rows=40) is True
        assert manager.attach("c2", session.id) is True

        assert len(FakeProxy.instances) == 1
        proxy = FakeProxy.instances[0]
        assert proxy.started
        assert proxy.target == "agentboard:1"
        assert proxy.size == (120, 40)
        assert manager.attached_sessions("c1") == [session.id]

    def test_output_fans_out_to_subscribers(self, manager, session):
        q1 = manager.connect("c1")
        q2 = manager.connect("c2")
        q3 = manager.connect("c3")
        manager.attach("c1", session.id)
        manager.attach("c2", session.id)

        FakeProxy.instances[0].emit("hello")

        for q in (q1, q2):
            assert drain(q) == [{"type": "terminal-output", "session_id": session.id, "data": "hello"}]
        assert drain(q3) == []
        assert manager.recent_output(session.id) == "hello"
        assert manager.last_output_at(session.id) is not None

    def test_slow_client_drops_only_its_own_messages(self, store, session):
        manager = SessionManager(store, queue_size=2, proxy_factory=FakeProxy)
        slow = manager.connect("slow")
        fast = manager.connect("fast")
        manager.attach("slow", session.id)
        manager.attach("fast", session.id)
        proxy = FakeProxy.instances[0]

        proxy.emit("a")
        proxy.emit("b")
        assert [m["data"] for m in drain(fast)] == ["a", "b"]
        proxy.emit("c")
        proxy.emit("d")

        assert [m["data"] for m in drain(slow)] == ["a", "b"]
        assert [m["data"] for m in drain(fast)] == ["c", "d"]
        assert manager.dropped_messages == 2

    def test_recent_output_bounded(self, store, session):
        manager = SessionManager(store, output_buffer_chars=1024, proxy_factory=FakeProxy)
        manager.attach("c1", session.id)

        FakeProxy.instances[0].emit("x" * 2000 + "tail")

        recent = manager.recent_output(session.id)
        assert len(recent) == 1024
        assert recent.endswith("tail")

    def test_last_detach_stops_proxy(self, manager, session):
        q1 = manager.connect("c1")
        manager.attach("c1", session.id)
        manager.attach("c2", session.id)
        proxy = FakeProxy.instances[0]

        assert manager.detach("c1", session.id) is True
        assert not proxy.stopped
        assert drain(q1) == [{"type": "terminal-detached", "session_id": session.id}]

        manager.detach("c2", session.id)
        assert proxy.stopped

    def test_detach_when_not_attached(self, manager, session):
        assert manager.detach("c1", session.id) is False

    def test_disconnect_detaches_everywhere(self, manager, session):
        manager.connect("c1")
        manager.attach("c1", session.id)

        manager.disconnect("c1")

        assert FakeProxy.instances[0].stopped
        assert manager.client_count == 0

    def test_close_session_notifies_subscribers(self, manager, session):
        q1 = manager.connect("c1")
        manager.attach("c1", session.id)

        manager.close_session(session.id)

        assert FakeProxy.instances[0].stopped
        assert drain(q1) == [{"type": "terminal-detached", "session_id": session.id}]
        assert manager.attached_sessions("c1") == []

    def test_proxy_exit_closes_session(self, manager, session):
        q1 = manager.connect("c1")
        manager.attach("c1", session.id)

        FakeProxy.instances[0].on_exit(session.id)

        assert drain(q1)[-1]["type"] == "terminal-detached"


class TestHandleMessage:
    """Tests for handle_message routing and errors."""

    def test_attach_input_resize(self, manager, session):
        manager.connect("c1")

        assert manager.handle_message("c1", {"type": "terminal-attach", "session_id": session.id})
        assert manager.handle_message("c1", {"type": "terminal-input", "session_id": session.id, "data": "ls\r"})
        assert manager.handle_message(
            "c1", {"type": "terminal-resize", "session_id": session.id, "cols": 100, "rows": 30}
        )

        proxy = FakeProxy.instances[0]
        assert proxy.written == ["ls\r"]
        assert proxy.size == (100, 30)

    def test_unknown_session(self, manager):
        q1 = manager.connect("c1")

        assert manager.handle_message("c1", {"type": "terminal-attach", "session_id": "nope"}) is False

        assert drain(q1) == [{"type": "terminal-error", "session_id": "nope", "message": "Unknown session"}]

    def test_orphaned_session(self, manager, store):
        orphan = store.create_session(name="old", log_file_path="/logs/a.jsonl")
        q1 = manager.connect("c1")

        manager.attach("c1", orphan.id)

        assert drain(q1)[0]["message"] == "Session has no live window"

    def test_input_without_attach(self, manager, session):
        q1 = manager.connect("c1")

        assert manager.handle_message("c1", {"type": "terminal-input", "session_id": session.id, "data": "x"}) is False

        assert drain(q1)[0]["message"] == "Not attached"

    def test_resize_requires_dimensions(self, manager, session):
        q1 = manager.connect("c1")
        manager.attach("c1", session.id)

        assert manager.resize("c1", session.id, None, 30) is False

        assert drain(q1)[0]["message"] == "Resize requires cols and rows"

    def test_invalid_message(self, manager):
        q1 = manager.connect("c1")

        assert manager.handle_message("c1", {"type": "bogus", "session_id": "s1"}) is False

        error = drain(q1)[0]
        assert error["type"] == "terminal-error"
        assert error["session_id"] == "s1"
        assert error["message"].startswith("Invalid message")

    def test_outbound_type_rejected(self, manager):
        q1 = manager.connect("c1")

        assert manager.handle_message("c1", {"type": "terminal-output", "session_id": "s1"}) is False

        assert "Unsupported message type" in drain(q1)[0]["message"]

    def test_failed_start_reports_error(self, store, session):
        manager = SessionManager(store, proxy_factory=FailingProxy)
        q1 = manager.connect("c1")

        assert manager.attach("c1", session.id) is False

        assert drain(q1)[0]["message"] == "Failed to attach: no pty"
        assert manager.attached_sessions("c1") == []


class TestStream:
    """Tests for the SSE stream."""

    def test_stream_yields_messages_then_disconnects(self, manager, session):
        q1 = manager.connect("c1")
        manager.attach("c1", session.id)
        FakeProxy.instances[0].emit("hi")

        stream = manager.get_stream("c1", timeout=0.01)
        first = next(stream)
        keep_alive = next(stream)
        stream.close()

        assert first.startswith("event: terminal-output\n")
        assert '"data": "hi"' in first
        assert keep_alive == ": keep-alive\n\n"
        assert manager.client_count == 0
        assert FakeProxy.instances[0].stopped
        assert q1.empty()

    def test_stop_closes_all_terminals(self, manager, session):
        manager.attach("c1", session.id)

        manager.stop()

        assert FakeProxy.instances[0].stopped
