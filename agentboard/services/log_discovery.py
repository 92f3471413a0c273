"""Log discovery for agent CLI session transcripts.

Knows where each supported agent writes its JSONL session logs and how to
tell them apart:

- Claude Code: ``~/.claude/projects/<encoded-project>/<session-uuid>.jsonl``
  (subagent transcripts under ``.../subagents/agent-*.jsonl``)
- Codex: ``~/.codex/sessions/YYYY/MM/DD/rollout-<timestamp>-<uuid>.jsonl``
  (subagent sessions declare it in their ``session_meta`` header)
- Pi: ``~/.pi/agent/sessions/...`` (classified as ``other``)

Everything here fails soft: a missing or unreadable directory or file
yields empty results rather than an exception.
"""

import json
import logging
import os
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from agentboard.models.session import AgentType

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"

# Generic path segments, used after the configured directory prefixes
CLAUDE_LOG_SEGMENT = "/.claude/projects/"
CODEX_LOG_SEGMENT = "/.codex/sessions/"
PI_LOG_SEGMENT = "/.pi/agent/sessions/"

# Header lines scanned for session metadata
HEAD_MAX_LINES = 25
HEAD_MAX_LINE_BYTES = 256 * 1024

# Pane command prefixes, first match wins
COMMAND_PREFIXES: list[tuple[str, AgentType]] = [
    ("claude", AgentType.CLAUDE),
    ("codex", AgentType.CODEX),
    ("pi", AgentType.OTHER),
    ("gemini", AgentType.OTHER),
    ("opencode", AgentType.OTHER),
    ("aider", AgentType.OTHER),
]

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


@dataclass
class LogTimes:
    """Filesystem times for a log, in epoch seconds."""

    mtime: float
    birthtime: float


@dataclass
class LogMetadata:
    """Best-effort identity read from a log's header lines."""

    session_id: str | None = None
    project_path: str | None = None


def claude_projects_dir() -> Path:
    """Directory where Claude Code writes project session logs."""
    base = os.environ.get("CLAUDE_CONFIG_DIR")
    root = Path(base).expanduser() if base else Path.home() / ".claude"
    return root / "projects"


def codex_sessions_dir() -> Path:
    """Directory where Codex writes session rollouts."""
    base = os.environ.get("CODEX_HOME")
    root = Path(base).expanduser() if base else Path.home() / ".codex"
    return root / "sessions"


def pi_sessions_dir() -> Path:
    """Directory where the Pi agent writes session logs."""
    return Path.home() / ".pi" / "agent" / "sessions"


def get_log_search_dirs(
    claude_dir: str | None = None,
    codex_dir: str | None = None,
) -> list[str]:
    """Ordered, de-duplicated log directories, one per supported agent.

    Args:
        claude_dir: Override for the Claude projects directory.
        codex_dir: Override for the Codex sessions directory.

    Returns:
        List of directory paths (which may not exist).
    """
    candidates = [
        str(Path(claude_dir).expanduser()) if claude_dir else str(claude_projects_dir()),
        str(Path(codex_dir).expanduser()) if codex_dir else str(codex_sessions_dir()),
        str(pi_sessions_dir()),
    ]
    seen: set[str] = set()
    dirs = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            dirs.append(candidate)
    return dirs


def _normalize(path: str) -> str:
    return str(path).replace("\\", "/")


def _as_prefix(directory: str | Path) -> str:
    return _normalize(str(directory)).rstrip("/") + "/"


def agent_path_conventions(
    claude_dir: str | None = None,
    codex_dir: str | None = None,
) -> list[tuple[str, AgentType]]:
    """Ordered (pattern, agent type) table for classifying log paths.

    Configured directory prefixes come first so relocated installs
    classify correctly; the generic dot-directory segments follow.
    """
    return [
        (_as_prefix(claude_dir or claude_projects_dir()), AgentType.CLAUDE),
        (_as_prefix(codex_dir or codex_sessions_dir()), AgentType.CODEX),
        (_as_prefix(pi_sessions_dir()), AgentType.OTHER),
        (CLAUDE_LOG_SEGMENT, AgentType.CLAUDE),
        (CODEX_LOG_SEGMENT, AgentType.CODEX),
        (PI_LOG_SEGMENT, AgentType.OTHER),
    ]


def classify_agent(
    path: str | Path,
    conventions: list[tuple[str, AgentType]] | None = None,
) -> AgentType:
    """Classify a log path by agent convention.

    Args:
        path: Log file path.
        conventions: (pattern, agent type) table; defaults to
            ``agent_path_conventions()``.

    Returns:
        The first matching AgentType, or AgentType.UNKNOWN.
    """
    if not path:
        return AgentType.UNKNOWN

    normalized = _normalize(str(path))
    for pattern, agent_type in conventions or agent_path_conventions():
        if pattern in normalized:
            return agent_type
    return AgentType.UNKNOWN


def classify_command(command: str | None) -> AgentType:
    """Classify a pane's foreground command by agent name."""
    if not command or not command.strip():
        return AgentType.UNKNOWN

    name = os.path.basename(command.strip().split()[0]).lower()
    for prefix, agent_type in COMMAND_PREFIXES:
        if name == prefix or name.startswith((f"{prefix}-", f"{prefix}.")):
            return agent_type
    return AgentType.UNKNOWN


def _read_head_entries(path: str | Path, max_lines: int = HEAD_MAX_LINES) -> list[dict]:
    """Parse the first JSON lines of a log, skipping malformed ones."""
    entries: list[dict] = []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for _ in range(max_lines):
                line = f.readline(HEAD_MAX_LINE_BYTES)
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    parsed = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    entries.append(parsed)
    except OSError as e:
        logger.debug(f"Cannot read log head {path}: {e}")
    return entries


def _codex_session_meta(path: str | Path) -> dict | None:
    for entry in _read_head_entries(path, max_lines=3):
        if entry.get("type") == "session_meta" and isinstance(entry.get("payload"), dict):
            return entry["payload"]
    return None


def is_subagent_log(path: str | Path, agent_type: AgentType | None = None) -> bool:
    """Check whether a log belongs to a subagent of a parent agent.

    Subagent logs stay tracked in the snapshot but are never matched to a
    top-level window.

    Args:
        path: Log file path.
        agent_type: Agent type if already known; classified otherwise.
    """
    if agent_type is None:
        agent_type = classify_agent(path)

    normalized = _normalize(str(path))
    if agent_type == AgentType.CLAUDE:
        name = normalized.rsplit("/", 1)[-1]
        return "/subagents/" in normalized or name.startswith("agent-")

    if agent_type == AgentType.CODEX:
        meta = _codex_session_meta(path)
        if not meta:
            return False
        source = meta.get("source")
        return isinstance(source, dict) and "subagent" in source

    return False


def read_log_metadata(path: str | Path, agent_type: AgentType | None = None) -> LogMetadata:
    """Extract the agent's session id and project path from a log header."""
    if agent_type is None:
        agent_type = classify_agent(path)

    metadata = LogMetadata()
    for entry in _read_head_entries(path):
        payload = entry.get("payload") if isinstance(entry.get("payload"), dict) else {}
        if entry.get("type") == "session_meta":
            metadata.session_id = metadata.session_id or payload.get("id")
            metadata.project_path = metadata.project_path or payload.get("cwd")
        else:
            metadata.session_id = metadata.session_id or entry.get("sessionId")
            metadata.project_path = metadata.project_path or entry.get("cwd")
        if metadata.session_id and metadata.project_path:
            break

    if not metadata.session_id:
        stem = Path(path).stem
        if agent_type == AgentType.CLAUDE:
            metadata.session_id = stem
        else:
            found = UUID_RE.findall(stem)
            metadata.session_id = found[-1] if found else None

    return metadata


def get_log_times(path: str | Path) -> LogTimes | None:
    """Stat a log file.

    Returns:
        LogTimes, or None if the file is gone or unreadable.
    """
    try:
        stat = os.stat(path)
    except OSError:
        return None
    birthtime = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return LogTimes(mtime=stat.st_mtime, birthtime=birthtime)


def iter_log_files(dirs: Iterable[str]) -> Iterator[str]:
    """Yield every JSONL log under the given directories.

    Missing or unreadable directories are skipped silently.
    """
    for directory in dirs:
        if not os.path.isdir(directory):
            continue
        for root, _, files in os.walk(directory):
            for name in files:
                if name.endswith(LOG_SUFFIX):
                    yield os.path.join(root, name)
