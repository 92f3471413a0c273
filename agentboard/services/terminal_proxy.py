"""PTY bridge to a live tmux window.

Runs ``tmux attach-session`` on a pseudo-terminal so browser clients can
see and drive a window exactly as a local terminal would.
"""

import codecs
import fcntl
import logging
import os
import pty
import struct
import subprocess
import termios
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
STOP_TIMEOUT = 2.0


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    rows = max(1, int(rows))
    cols = max(1, int(cols))
    ws = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, ws)


class TerminalProxy:
    """One attached tmux client running on a PTY.

    Output is decoded incrementally (multi-byte characters may straddle
    reads) and handed to ``on_output``. ``on_exit`` fires once if the tmux
    client goes away on its own, for instance because the window closed.
    """

    def __init__(
        self,
        session_id: str,
        target: str,
        on_output: Callable[[str, str], None],
        on_exit: Callable[[str], None] | None = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ):
        """Initialize the proxy.

        Args:
            session_id: Session this terminal belongs to.
            target: tmux target to attach ("session:index").
            on_output: Called with (session_id, text) for each chunk.
            on_exit: Called with session_id when the client exits.
            cols: Initial terminal width.
            rows: Initial terminal height.
        """
        self.session_id = session_id
        self.target = target
        self._on_output = on_output
        self._on_exit = on_exit
        self._cols = cols
        self._rows = rows

        self._master_fd: int | None = None
        self._process: subprocess.Popen | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()
        self._write_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Check if the tmux client is alive."""
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Spawn the tmux client and start reading its output."""
        if self.is_running:
            return

        master_fd, slave_fd = pty.openpty()
        _set_winsize(master_fd, self._cols, self._rows)

        env = dict(os.environ)
        env["TERM"] = env.get("TERM") or "xterm-256color"
        # Attaching from inside a tmux client would be refused as nesting
        env.pop("TMUX", None)

        try:
            self._process = subprocess.Popen(
                ["tmux", "attach-session", "-t", self.target],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._read_loop,
            name=f"terminal-{self.target}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Terminal attached to {self.target} (session {self.session_id[:8]})")

    def _read_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self._master_fd
        try:
            while not self._stopping.is_set():
                try:
                    data = os.read(fd, READ_CHUNK_BYTES)
                except OSError:
                    # EIO once the child side of the pty is closed
                    break
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._on_output(self.session_id, text)
        finally:
            if not self._stopping.is_set():
                logger.info(f"Terminal for {self.target} exited")
                if self._on_exit is not None:
                    self._on_exit(self.session_id)

    def write(self, data: str) -> None:
        """Send keyboard input to the window."""
        if self._master_fd is None or not data:
            return
        payload = data.encode("utf-8")
        with self._write_lock:
            while payload:
                written = os.write(self._master_fd, payload)
                payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY; tmux redraws the window at the new size."""
        self._cols = cols
        self._rows = rows
        if self._master_fd is not None:
            _set_winsize(self._master_fd, cols, rows)

    def stop(self) -> None:
        """Detach the tmux client and release the PTY."""
        self._stopping.set()

        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=STOP_TIMEOUT)

        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=STOP_TIMEOUT)

        self._process = None
        self._thread = None
        logger.info(f"Terminal detached from {self.target}")
