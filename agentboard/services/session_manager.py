"""SessionManager - terminal attachment and output fan-out.

Clients connect with an id and receive a bounded outbound queue. They then
attach to sessions, send input and resize; output from each attached
window is broadcast to every client attached to that session. One
TerminalProxy runs per attached session regardless of how many clients
watch it.

The manager also keeps a short buffer of recent output per session, which
the StatusWatcher scans for permission prompts.
"""

import json
import logging
import queue
import re
import threading
import time
from collections.abc import Callable, Generator

from pydantic import ValidationError

from agentboard.models.terminal import INBOUND_TYPES, TerminalMessage, TerminalMessageType
from agentboard.services.session_store import SessionStore
from agentboard.services.terminal_proxy import TerminalProxy
from agentboard.services.terminal_text import strip_ansi, trailing_lines

logger = logging.getLogger(__name__)

# Prompts further up than this are considered answered or abandoned
PROMPT_WINDOW_LINES = 30

PERMISSION_PROMPT_PATTERNS = [
    # The numbered choice may sit after a cursor glyph or inside a box border
    re.compile(r"(?<![\w.])1\.\s+Yes\b"),
    re.compile(r"Do you want to proceed\?"),
    re.compile(r"Do you want to make this edit"),
    re.compile(r"Do you want to create\b"),
    re.compile(r"Would you like to run the following command\?"),
    re.compile(r"Allow command\?"),
    re.compile(r"Yes, and don't ask again"),
    re.compile(r"\[y/n\]", re.IGNORECASE),
    re.compile(r"Press Enter to confirm"),
]


def detects_permission_prompt(screen_text: str, window_lines: int = PROMPT_WINDOW_LINES) -> bool:
    """Check whether an agent is waiting on a permission prompt.

    Only the last ``window_lines`` non-padding lines are scanned, after ANSI
    escape codes are stripped.

    Args:
        screen_text: Raw terminal text.
        window_lines: Number of trailing lines considered.

    Returns:
        True if a known prompt phrasing is on screen.
    """
    if not screen_text:
        return False

    for line in trailing_lines(strip_ansi(screen_text), window_lines):
        if any(pattern.search(line) for pattern in PERMISSION_PROMPT_PATTERNS):
            return True
    return False


ProxyFactory = Callable[..., TerminalProxy]


class SessionManager:
    """Routes terminal messages between clients and tmux windows."""

    def __init__(
        self,
        store: SessionStore,
        queue_size: int = 512,
        output_buffer_chars: int = 16384,
        proxy_factory: ProxyFactory = TerminalProxy,
    ):
        """Initialize the manager.

        Args:
            store: Session table used to resolve session ids to windows.
            queue_size: Outbound messages buffered per client.
            output_buffer_chars: Recent output kept per session.
            proxy_factory: Builds the TerminalProxy for a session.
        """
        self._store = store
        self._queue_size = queue_size
        self._output_buffer_chars = output_buffer_chars
        self._proxy_factory = proxy_factory

        self._lock = threading.RLock()
        self._clients: dict[str, queue.Queue] = {}
        self._subscribers: dict[str, set[str]] = {}
        self._proxies: dict[str, TerminalProxy] = {}
        self._recent_output: dict[str, str] = {}
        self._last_output_at: dict[str, float] = {}
        self.dropped_messages = 0

    # =========================================================================
    # Clients
    # =========================================================================

    def connect(self, client_id: str) -> queue.Queue:
        """Register a client, returning its outbound queue.

        Reconnecting with a known id keeps the existing queue.
        """
        with self._lock:
            client_queue = self._clients.get(client_id)
            if client_queue is None:
                client_queue = queue.Queue(maxsize=self._queue_size)
                self._clients[client_id] = client_queue
                logger.debug(f"Terminal client connected: {client_id}")
            return client_queue

    def disconnect(self, client_id: str) -> None:
        """Detach a client from every session and forget it."""
        with self._lock:
            attached = [sid for sid, clients in self._subscribers.items() if client_id in clients]
        for session_id in attached:
            self._unsubscribe(client_id, session_id)
        with self._lock:
            self._clients.pop(client_id, None)
        logger.debug(f"Terminal client disconnected: {client_id}")

    def attached_sessions(self, client_id: str) -> list[str]:
        """Session ids a client is attached to."""
        with self._lock:
            return sorted(sid for sid, clients in self._subscribers.items() if client_id in clients)

    def _send(self, client_id: str, message: TerminalMessage) -> bool:
        """Queue a message for one client without blocking."""
        with self._lock:
            client_queue = self._clients.get(client_id)
        if client_queue is None:
            return False
        try:
            client_queue.put_nowait(message.to_wire())
            return True
        except queue.Full:
            self.dropped_messages += 1
            return False

    def _send_error(self, client_id: str, session_id: str, text: str) -> None:
        self._send(
            client_id,
            TerminalMessage(type=TerminalMessageType.ERROR, session_id=session_id, message=text),
        )

    # =========================================================================
    # Inbound messages
    # =========================================================================

    def handle_message(self, client_id: str, message: dict | TerminalMessage) -> bool:
        """Apply one inbound terminal message.

        Problems are reported to the client as ``terminal-error`` messages
        rather than raised.

        Args:
            client_id: The sending client (connected implicitly).
            message: Message model or its JSON dict.

        Returns:
            True if the message was applied.
        """
        self.connect(client_id)

        if not isinstance(message, TerminalMessage):
            raw_session = message.get("session_id") if isinstance(message, dict) else None
            try:
                message = TerminalMessage.model_validate(message)
            except ValidationError as e:
                self._send_error(client_id, raw_session or "unknown", f"Invalid message: {e.errors()[0]['msg']}")
                return False

        if message.type not in INBOUND_TYPES:
            self._send_error(client_id, message.session_id, f"Unsupported message type: {message.type.value}")
            return False

        if message.type == TerminalMessageType.ATTACH:
            return self.attach(client_id, message.session_id, cols=message.cols, rows=message.rows)
        if message.type == TerminalMessageType.DETACH:
            return self.detach(client_id, message.session_id)
        if message.type == TerminalMessageType.INPUT:
            return self.input(client_id, message.session_id, message.data or "")
        return self.resize(client_id, message.session_id, message.cols, message.rows)

    def attach(
        self,
        client_id: str,
        session_id: str,
        cols: int | None = None,
        rows: int | None = None,
    ) -> bool:
        """Subscribe a client to a session's output, starting its terminal."""
        session = self._store.get(session_id)
        if session is None:
            self._send_error(client_id, session_id, "Unknown session")
            return False
        if session.tmux_window is None:
            self._send_error(client_id, session_id, "Session has no live window")
            return False

        with self._lock:
            proxy = self._proxies.get(session_id)
            if proxy is None:
                kwargs = {}
                if cols and rows:
                    kwargs = {"cols": cols, "rows": rows}
                proxy = self._proxy_factory(
                    session_id,
                    session.tmux_window,
                    on_output=self._on_output,
                    on_exit=self._on_proxy_exit,
                    **kwargs,
                )
                try:
                    proxy.start()
                except OSError as e:
                    logger.error(f"Failed to attach terminal to {session.tmux_window}: {e}")
                    self._send_error(client_id, session_id, f"Failed to attach: {e}")
                    return False
                self._proxies[session_id] = proxy
            elif cols and rows:
                proxy.resize(cols, rows)

            self._subscribers.setdefault(session_id, set()).add(client_id)

        return True

    def detach(self, client_id: str, session_id: str) -> bool:
        """Unsubscribe a client; the terminal stops with its last subscriber."""
        if not self._unsubscribe(client_id, session_id):
            return False
        self._send(
            client_id,
            TerminalMessage(type=TerminalMessageType.DETACHED, session_id=session_id),
        )
        return True

    def _unsubscribe(self, client_id: str, session_id: str) -> bool:
        proxy = None
        with self._lock:
            clients = self._subscribers.get(session_id)
            if not clients or client_id not in clients:
                return False
            clients.discard(client_id)
            if not clients:
                del self._subscribers[session_id]
                proxy = self._proxies.pop(session_id, None)

        if proxy is not None:
            proxy.stop()
        return True

    def _attached_proxy(self, client_id: str, session_id: str) -> TerminalProxy | None:
        with self._lock:
            if client_id not in self._subscribers.get(session_id, set()):
                return None
            return self._proxies.get(session_id)

    def input(self, client_id: str, session_id: str, data: str) -> bool:
        """Forward keyboard input to an attached session."""
        proxy = self._attached_proxy(client_id, session_id)
        if proxy is None:
            self._send_error(client_id, session_id, "Not attached")
            return False
        try:
            proxy.write(data)
        except OSError as e:
            self._send_error(client_id, session_id, f"Write failed: {e}")
            return False
        return True

    def resize(self, client_id: str, session_id: str, cols: int | None, rows: int | None) -> bool:
        """Resize an attached session's terminal."""
        if not cols or not rows:
            self._send_error(client_id, session_id, "Resize requires cols and rows")
            return False
        proxy = self._attached_proxy(client_id, session_id)
        if proxy is None:
            self._send_error(client_id, session_id, "Not attached")
            return False
        try:
            proxy.resize(cols, rows)
        except OSError as e:
            self._send_error(client_id, session_id, f"Resize failed: {e}")
            return False
        return True

    # =========================================================================
    # Output
    # =========================================================================

    def _on_output(self, session_id: str, data: str) -> None:
        """Record output and broadcast it to the session's subscribers."""
        with self._lock:
            buffered = self._recent_output.get(session_id, "") + data
            self._recent_output[session_id] = buffered[-self._output_buffer_chars :]
            self._last_output_at[session_id] = time.time()
            clients = list(self._subscribers.get(session_id, ()))

        message = TerminalMessage(type=TerminalMessageType.OUTPUT, session_id=session_id, data=data)
        for client_id in clients:
            # A full queue only costs that client this chunk
            self._send(client_id, message)

    def _on_proxy_exit(self, session_id: str) -> None:
        self.close_session(session_id)

    def close_session(self, session_id: str) -> None:
        """Stop a session's terminal and notify its subscribers."""
        with self._lock:
            proxy = self._proxies.pop(session_id, None)
            clients = self._subscribers.pop(session_id, set())

        if proxy is not None:
            proxy.stop()

        for client_id in clients:
            self._send(
                client_id,
                TerminalMessage(type=TerminalMessageType.DETACHED, session_id=session_id),
            )

    def recent_output(self, session_id: str) -> str:
        """Recent terminal output of a session (empty if never attached)."""
        with self._lock:
            return self._recent_output.get(session_id, "")

    def last_output_at(self, session_id: str) -> float | None:
        """Epoch seconds of the last output chunk from a session."""
        with self._lock:
            return self._last_output_at.get(session_id)

    def forget_session(self, session_id: str) -> None:
        """Drop all state kept for a removed session."""
        self.close_session(session_id)
        with self._lock:
            self._recent_output.pop(session_id, None)
            self._last_output_at.pop(session_id, None)

    def get_stream(self, client_id: str, timeout: float = 15.0) -> Generator[str, None, None]:
        """SSE stream of a client's outbound messages.

        The client is disconnected when the stream is closed.

        Yields:
            SSE-formatted message strings.
        """
        client_queue = self.connect(client_id)
        try:
            while True:
                try:
                    message = client_queue.get(timeout=timeout)
                    yield f"event: {message['type']}\ndata: {json.dumps(message)}\n\n"
                except queue.Empty:
                    yield ": keep-alive\n\n"
        finally:
            self.disconnect(client_id)

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        with self._lock:
            return len(self._clients)

    def stop(self) -> None:
        """Stop every running terminal."""
        with self._lock:
            session_ids = list(self._proxies)
        for session_id in session_ids:
            self.close_session(session_id)
