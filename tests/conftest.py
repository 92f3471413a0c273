"""Pytest configuration and shared fixtures for Agentboard tests."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from agentboard.backends.base import TerminalBackend, WindowInfo
from agentboard.services import log_matcher


class FakeBackend(TerminalBackend):
    """In-memory stand-in for tmux.

    ``windows`` is the list returned by list_windows; ``contents`` maps a
    target to the text get_content returns.
    """

    def __init__(self, windows=None, contents=None):
        self.windows: list[WindowInfo] = list(windows or [])
        self.contents: dict[str, str] = dict(contents or {})
        self.captures: list[tuple[str, int]] = []

    @property
    def backend_name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    def list_windows(self) -> list[WindowInfo]:
        return list(self.windows)

    def get_content(self, target: str, lines: int = 100) -> str | None:
        self.captures.append((target, lines))
        return self.contents.get(target)


def make_window(target: str, name: str = "agent", command: str = "claude", **kwargs) -> WindowInfo:
    """Build a WindowInfo for a target like 'agentboard:1'."""
    session_name = target.split(":", 1)[0]
    kwargs.setdefault("window_id", f"@{target.rsplit(':', 1)[-1]}")
    return WindowInfo(target=target, session_name=session_name, name=name, command=command, **kwargs)


def write_claude_log(path: Path, session_id: str, cwd: str, messages: list[str], mtime: float | None = None) -> Path:
    """Write a Claude-style JSONL transcript."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = []
    for index, text in enumerate(messages):
        role = "user" if index % 2 == 0 else "assistant"
        lines.append(
            json.dumps(
                {
                    "type": role,
                    "sessionId": session_id,
                    "cwd": cwd,
                    "message": {"role": role, "content": [{"type": "text", "text": text}]},
                }
            )
        )
    path.write_text("\n".join(lines) + "\n")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def fake_backend():
    """An empty FakeBackend."""
    return FakeBackend()


@pytest.fixture
def claude_home(tmp_path, monkeypatch):
    """Point CLAUDE_CONFIG_DIR and CODEX_HOME at a temporary directory."""
    claude_dir = tmp_path / "claude"
    codex_dir = tmp_path / "codex"
    (claude_dir / "projects").mkdir(parents=True)
    (codex_dir / "sessions").mkdir(parents=True)
    monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(claude_dir))
    monkeypatch.setenv("CODEX_HOME", str(codex_dir))
    return tmp_path


@pytest.fixture
def window_factory():
    """Factory for WindowInfo objects (see make_window)."""
    return make_window


@pytest.fixture
def log_writer():
    """Factory writing Claude-style JSONL logs (see write_claude_log)."""
    return write_claude_log


@pytest.fixture
def backend_factory():
    """Factory for FakeBackend instances."""
    return FakeBackend


def fake_rg(*args, timeout=None):
    """Evaluate an rg --fixed-strings --files-with-matches call in Python."""
    args = list(args)
    separator = args.index("--")
    patterns = [args[i + 1] for i, arg in enumerate(args[:separator]) if arg == "-e"]
    matched = []
    for path in args[separator + 1 :]:
        with open(path, encoding="utf-8", errors="replace") as f:
            text = f.read()
        if any(p in text for p in patterns):
            matched.append(path)
    return (0, "\n".join(matched) + "\n", "") if matched else (1, "", "")


@pytest.fixture
def python_rg():
    """Replace the rg subprocess with fake_rg."""
    with (
        patch.object(log_matcher, "_run_rg", side_effect=fake_rg) as mock_rg,
        patch.object(log_matcher, "rg_available", return_value=True),
    ):
        yield mock_rg
