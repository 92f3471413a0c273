"""Abstract base class for terminal backend implementations.

Defines the interface for terminal multiplexer integrations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class WindowInfo:
    """Information about a terminal multiplexer window."""

    target: str  # Backend-specific address (e.g., "agentboard:3" for tmux)
    session_name: str  # Multiplexer session the window belongs to
    name: str  # Window name
    window_id: str | None = None  # Stable backend id (e.g., "@12")
    cwd: str | None = None  # Current path of the active pane
    command: str | None = None  # Foreground command of the active pane
    last_activity: float = 0.0  # Last output time (epoch seconds)


class TerminalBackend(ABC):
    """Abstract interface for terminal backends.

    Terminal backends provide the ability to:
    - Discover running windows
    - Capture window scrollback content
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier (e.g., 'tmux')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backend is installed and running.

        Returns:
            True if the backend can be used, False otherwise.
        """

    @abstractmethod
    def list_windows(self) -> list[WindowInfo]:
        """List all live windows.

        Returns:
            List of WindowInfo for each window.
        """

    @abstractmethod
    def get_content(self, target: str, lines: int = 100) -> str | None:
        """Capture terminal content from a window.

        Args:
            target: The window address.
            lines: Number of lines to capture from scrollback.

        Returns:
            Terminal content as string, or None on failure.
        """
