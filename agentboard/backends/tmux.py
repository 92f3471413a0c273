"""tmux terminal backend.

All tmux interaction goes through ``_run_tmux`` so failures (missing binary,
hung server) surface as a non-zero return code instead of an exception.
"""

import logging
import shutil
import subprocess

from agentboard.backends.base import TerminalBackend, WindowInfo

logger = logging.getLogger(__name__)

# Fields requested from `tmux list-windows`, tab separated
WINDOW_FORMAT = "\t".join(
    [
        "#{session_name}",
        "#{window_index}",
        "#{window_id}",
        "#{window_name}",
        "#{pane_current_path}",
        "#{window_activity}",
        "#{pane_current_command}",
    ]
)


def _run_tmux(*args: str, timeout: int = 10) -> tuple[int, str, str]:
    """Run a tmux command.

    Args:
        *args: Command arguments to pass to tmux.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).
    """
    cmd = ["tmux", *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout or "", result.stderr or "")
    except subprocess.TimeoutExpired:
        return (1, "", "Command timed out")
    except FileNotFoundError:
        return (1, "", "tmux not found")


def parse_window_line(line: str) -> WindowInfo | None:
    """Parse one line of `tmux list-windows -F WINDOW_FORMAT` output."""
    parts = line.split("\t")
    if len(parts) < 7:
        return None

    session_name, index, window_id, name, cwd, activity, command = parts[:7]
    if not session_name or not index:
        return None

    try:
        last_activity = float(activity) if activity else 0.0
    except ValueError:
        last_activity = 0.0

    return WindowInfo(
        target=f"{session_name}:{index}",
        session_name=session_name,
        name=name,
        window_id=window_id or None,
        cwd=cwd or None,
        command=command or None,
        last_activity=last_activity,
    )


class TmuxBackend(TerminalBackend):
    """tmux-based terminal backend."""

    def __init__(self):
        """Initialize the tmux backend."""
        self._available: bool | None = None

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "tmux"

    def is_available(self) -> bool:
        """Check if tmux is installed and a server is running.

        A positive result is cached; a negative one is re-checked so the
        backend recovers when a tmux server starts after agentboard.

        Returns:
            True if tmux is available, False otherwise.
        """
        if self._available:
            return True

        if shutil.which("tmux") is None:
            self._available = False
            return False

        returncode, _, _ = _run_tmux("list-sessions")
        self._available = returncode == 0
        return self._available

    def list_windows(self) -> list[WindowInfo]:
        """List all tmux windows across sessions.

        Returns:
            List of WindowInfo for each window.
        """
        if not self.is_available():
            return []

        returncode, stdout, stderr = _run_tmux("list-windows", "-a", "-F", WINDOW_FORMAT)
        if returncode != 0:
            logger.debug(f"tmux list-windows failed: {stderr.strip()}")
            # Server may have exited since the availability check
            self._available = None
            return []

        windows = []
        for line in stdout.strip().split("\n"):
            if not line:
                continue
            window = parse_window_line(line)
            if window is not None:
                windows.append(window)

        return windows

    def get_content(self, target: str, lines: int = 100) -> str | None:
        """Capture the trailing scrollback of a tmux window.

        Wrapped lines are joined (-J) so long lines read the way the
        program printed them.

        Args:
            target: The tmux target ("session:index").
            lines: Number of lines to capture.

        Returns:
            Captured text, or None on failure.
        """
        if not self.is_available():
            return None

        args = ["capture-pane", "-p", "-J", "-t", target, "-S", str(-lines)]
        returncode, stdout, _ = _run_tmux(*args)

        if returncode != 0:
            return None

        return stdout
