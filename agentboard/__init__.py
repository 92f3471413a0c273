"""Agentboard - dashboard for AI coding agents running in tmux."""

__version__ = "0.1.0"
