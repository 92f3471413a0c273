"""Terminal multiplexer backends."""

from agentboard.backends.base import TerminalBackend, WindowInfo
from agentboard.backends.tmux import TmuxBackend

__all__ = ["TerminalBackend", "TmuxBackend", "WindowInfo"]
