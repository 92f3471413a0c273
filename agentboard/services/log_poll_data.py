"""Per-poll snapshot of live agent logs.

Agent installations accumulate thousands of historical transcripts; only
the most recently modified ones can belong to a window that is open now,
so each poll keeps the newest ``max_entries`` logs and enriches only those.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from agentboard.models.match import LogEntrySnapshot
from agentboard.models.session import AgentType
from agentboard.services.log_discovery import (
    LogTimes,
    classify_agent,
    get_log_search_dirs,
    get_log_times,
    is_subagent_log,
    iter_log_files,
    read_log_metadata,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TOKEN_COUNT_CAP = 100_000

# Keys whose string values count as conversation text
TEXT_KEYS = ("text", "content")
NESTED_KEYS = ("message", "payload", "content")
MAX_TEXT_DEPTH = 6


@dataclass
class LogEntryBatch:
    """Result of one snapshot collection."""

    entries: list[LogEntrySnapshot] = field(default_factory=list)
    scan_ms: float = 0.0
    sort_ms: float = 0.0


def _text_length(value, depth: int = 0) -> int:
    """Total length of conversation text nested in a JSONL entry."""
    if depth > MAX_TEXT_DEPTH:
        return 0

    if isinstance(value, list):
        return sum(_text_length(item, depth + 1) for item in value)

    if not isinstance(value, dict):
        return 0

    total = 0
    for key in TEXT_KEYS:
        text = value.get(key)
        if isinstance(text, str):
            total += len(text)
    for key in NESTED_KEYS:
        nested = value.get(key)
        if isinstance(nested, (dict, list)):
            total += _text_length(nested, depth + 1)
    return total


def estimate_token_count(path: str | Path) -> int:
    """Approximate the conversation size of a log in tokens.

    A cheap proxy (characters of message text / 4), not a tokenizer. The
    count is capped at TOKEN_COUNT_CAP since callers only compare it with
    a small threshold.

    Returns:
        Estimated token count, 0 if the file cannot be read.
    """
    chars = 0
    limit = TOKEN_COUNT_CAP * CHARS_PER_TOKEN
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                chars += _text_length(entry)
                if chars >= limit:
                    break
    except OSError as e:
        logger.debug(f"Cannot estimate tokens for {path}: {e}")
        return 0

    return min(chars // CHARS_PER_TOKEN, TOKEN_COUNT_CAP)


def build_log_entry(
    path: str,
    times: LogTimes,
    conventions: list[tuple[str, AgentType]] | None = None,
) -> LogEntrySnapshot | None:
    """Enrich a stat'ed log path into a snapshot entry.

    Returns:
        The entry, or None if the file disappeared while reading it.
    """
    agent_type = classify_agent(path, conventions)
    subagent = is_subagent_log(path, agent_type)
    metadata = read_log_metadata(path, agent_type)
    token_count = estimate_token_count(path)

    if not os.path.exists(path):
        return None

    return LogEntrySnapshot(
        log_path=path,
        mtime=times.mtime,
        birthtime=times.birthtime,
        session_id=metadata.session_id,
        project_path=metadata.project_path,
        agent_type=None if agent_type == AgentType.UNKNOWN else agent_type,
        is_subagent=subagent,
        log_token_count=token_count,
    )


def collect_log_entry_batch(
    max_entries: int,
    log_dirs: list[str] | None = None,
    conventions: list[tuple[str, AgentType]] | None = None,
) -> LogEntryBatch:
    """Snapshot the most recently modified logs.

    Args:
        max_entries: Maximum number of entries to return.
        log_dirs: Directories to walk; defaults to the known agent dirs.
        conventions: Agent classification table.

    Returns:
        LogEntryBatch with entries newest first and scan/sort timings.
    """
    dirs = log_dirs if log_dirs is not None else get_log_search_dirs()

    scan_start = time.perf_counter()
    stamped: list[tuple[str, LogTimes]] = []
    for path in iter_log_files(dirs):
        times = get_log_times(path)
        if times is None:
            continue
        stamped.append((path, times))
    scan_ms = (time.perf_counter() - scan_start) * 1000

    sort_start = time.perf_counter()
    stamped.sort(key=lambda item: item[1].mtime, reverse=True)
    recent = stamped[: max(max_entries, 0)]
    sort_ms = (time.perf_counter() - sort_start) * 1000

    enrich_start = time.perf_counter()
    entries = []
    for path, times in recent:
        entry = build_log_entry(path, times, conventions)
        if entry is None:
            logger.debug(f"Log vanished during poll: {path}")
            continue
        entries.append(entry)
    scan_ms += (time.perf_counter() - enrich_start) * 1000

    return LogEntryBatch(entries=entries, scan_ms=scan_ms, sort_ms=sort_ms)
