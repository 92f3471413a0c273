"""Exact-content matching of tmux windows to agent logs.

Each window is fingerprinted from the trailing lines of its scrollback.
Agent CLIs write every message they render into their JSONL transcript, so
a log whose recent content contains a window's distinguishing lines belongs
to that window. The search runs ripgrep over staged copies of each
candidate log's trailing bytes.
"""

import json
import logging
import os
import shutil
import subprocess
import tempfile
import time
from collections.abc import Iterable

from agentboard.backends.base import TerminalBackend
from agentboard.backends.tmux import TmuxBackend
from agentboard.models.match import ExactMatchProfile, WindowSnapshot
from agentboard.services.log_discovery import iter_log_files
from agentboard.services.terminal_text import strip_ansi

logger = logging.getLogger(__name__)

DEFAULT_TAIL_BYTES = 256 * 1024
MIN_FRAGMENT_CHARS = 20
MAX_FRAGMENT_CHARS = 200
MAX_FRAGMENTS_PER_WINDOW = 8
DEFAULT_RG_THREADS = min(os.cpu_count() or 1, 2)
RG_TIMEOUT_SECONDS = 10

# Leading glyphs agent UIs draw in front of message text
LEADING_DECORATION = "⏺●•◦⎿│┃>❯$#*- \t"

# Characters that make up borders and separators
BOX_CHARS = set("─━│┃┌┐└┘├┤┬┴┼╭╮╯╰═║╔╗╚╝╠╣╦╩╬▔▁█▌▐░▒▓·…")

# Status-bar and prompt chrome that never appears in a transcript
CHROME_MARKERS = (
    "esc to interrupt",
    "? for shortcuts",
    "ctrl+c to exit",
    "ctrl+r to expand",
    "shift+tab to cycle",
    "auto-accept edits",
    "bypass permissions",
    "context left",
    "tokens used",
    "% context",
    "press up to edit",
)

_rg_missing_logged = False


def _is_chrome(line: str) -> bool:
    if not line:
        return True
    if sum(1 for ch in line if ch in BOX_CHARS) * 2 >= len(line):
        return True
    lowered = line.lower()
    return any(marker in lowered for marker in CHROME_MARKERS)


def extract_fingerprint_fragments(
    content: str,
    max_fragments: int = MAX_FRAGMENTS_PER_WINDOW,
    min_chars: int = MIN_FRAGMENT_CHARS,
) -> list[str]:
    """Pick distinguishing lines from captured scrollback.

    Lines are taken newest first, after stripping ANSI codes, UI borders,
    status-bar chrome and leading decoration glyphs. Short lines are too
    common to identify a conversation and are skipped.

    Args:
        content: Raw captured pane text.
        max_fragments: Maximum fragments to return.
        min_chars: Minimum fragment length.

    Returns:
        Unique fragments, most recent first.
    """
    fragments: list[str] = []
    seen: set[str] = set()

    for raw in reversed(strip_ansi(content).split("\n")):
        line = raw.strip()
        if _is_chrome(line):
            continue
        line = line.lstrip(LEADING_DECORATION).rstrip(" │┃")
        if len(line) < min_chars:
            continue
        line = line[:MAX_FRAGMENT_CHARS].rstrip()
        if line in seen:
            continue
        seen.add(line)
        fragments.append(line)
        if len(fragments) >= max_fragments:
            break

    return fragments


def search_patterns(fragments: Iterable[str]) -> list[str]:
    """Encode fragments the way they appear inside JSON string values.

    Both the literal-unicode and the ``\\uXXXX`` escaped spellings are
    searched since agents differ in how they serialize non-ASCII text.
    """
    patterns: list[str] = []
    for fragment in fragments:
        literal = json.dumps(fragment, ensure_ascii=False)[1:-1]
        escaped = json.dumps(fragment)[1:-1]
        for pattern in (literal, escaped):
            if pattern not in patterns:
                patterns.append(pattern)
    return patterns


def read_log_tail(path: str, tail_bytes: int = DEFAULT_TAIL_BYTES) -> bytes | None:
    """Read the trailing bytes of a log.

    Returns:
        The bytes, or None if the file cannot be read.
    """
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(size - tail_bytes, 0))
            return f.read()
    except OSError as e:
        logger.debug(f"Cannot read log tail {path}: {e}")
        return None


def _run_rg(*args: str, timeout: int = RG_TIMEOUT_SECONDS) -> tuple[int, str, str]:
    """Run ripgrep.

    Returns:
        Tuple of (return_code, stdout, stderr). rg exits 1 when nothing
        matched; 2 and above are errors.
    """
    cmd = ["rg", *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return (result.returncode, result.stdout or "", result.stderr or "")
    except subprocess.TimeoutExpired:
        return (2, "", "Command timed out")
    except FileNotFoundError:
        return (2, "", "rg not found")


def rg_available() -> bool:
    """Check for ripgrep, warning once if it is missing."""
    global _rg_missing_logged
    if shutil.which("rg") is not None:
        return True
    if not _rg_missing_logged:
        logger.warning("ripgrep (rg) not found; log matching is disabled")
        _rg_missing_logged = True
    return False


def create_exact_match_profile() -> ExactMatchProfile:
    """Return an empty profile for match_windows_to_logs to fill in."""
    return ExactMatchProfile()


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _search_files(patterns: list[str], files: list[str], threads: int) -> set[str]:
    args = [
        "--fixed-strings",
        "--files-with-matches",
        "--no-messages",
        "--no-ignore",
        "--threads",
        str(threads),
    ]
    for pattern in patterns:
        args.extend(["-e", pattern])
    args.append("--")
    args.extend(files)

    returncode, stdout, stderr = _run_rg(*args)
    if returncode == 1:
        return set()
    if returncode != 0:
        logger.debug(f"rg failed ({returncode}): {stderr.strip()}")
        return set()
    return {line.strip() for line in stdout.splitlines() if line.strip()}


def _candidate_logs(log_dirs: list[str], log_paths: Iterable[str] | None) -> list[tuple[str, float]]:
    """Candidate logs with their mtimes, newest first."""
    paths = list(log_paths) if log_paths is not None else list(iter_log_files(log_dirs))
    stamped = []
    for path in dict.fromkeys(paths):
        try:
            stamped.append((path, os.stat(path).st_mtime))
        except OSError:
            continue
    stamped.sort(key=lambda item: item[1], reverse=True)
    return stamped


def assign_logs_to_windows(
    hits: dict[str, set[str]],
    log_mtimes: dict[str, float],
    windows: dict[str, WindowSnapshot],
) -> dict[str, WindowSnapshot]:
    """Resolve search hits into a one-to-one log → window mapping.

    Logs are visited newest first; each takes the most recently active
    window that matched it and is still free. Equal activity falls back to
    the lowest window target.

    Args:
        hits: Log path -> targets of windows whose fingerprint it contains.
        log_mtimes: Log path -> modification time.
        windows: Window target -> snapshot.
    """
    assigned: dict[str, WindowSnapshot] = {}
    taken: set[str] = set()

    for log_path in sorted(hits, key=lambda p: (-log_mtimes.get(p, 0.0), p)):
        free = [windows[t] for t in hits[log_path] if t in windows and t not in taken]
        if not free:
            continue
        winner = min(free, key=lambda w: (-w.last_activity, w.tmux_window))
        assigned[log_path] = winner
        taken.add(winner.tmux_window)

    return assigned


def match_windows_to_logs(
    windows: list[WindowSnapshot],
    log_dirs: list[str],
    scrollback_lines: int,
    log_paths: Iterable[str] | None = None,
    tail_bytes: int | None = None,
    rg_threads: int | None = None,
    profile: ExactMatchProfile | None = None,
    backend: TerminalBackend | None = None,
) -> dict[str, WindowSnapshot]:
    """Match live windows to the logs they are writing.

    Args:
        windows: Live windows to fingerprint.
        log_dirs: Directories to search when log_paths is not given.
        scrollback_lines: Trailing lines captured per window.
        log_paths: Restrict the search to these logs.
        tail_bytes: Bytes of each log searched; DEFAULT_TAIL_BYTES if unset.
        rg_threads: ripgrep thread count; DEFAULT_RG_THREADS if unset.
        profile: If given, timings and counters are accumulated into it.
        backend: Terminal backend used to capture scrollback.

    Returns:
        Mapping of log path to the window it belongs to. Never maps two
        logs to the same window.
    """
    if not windows:
        return {}

    backend = backend or TmuxBackend()
    tail_bytes = tail_bytes or DEFAULT_TAIL_BYTES
    threads = rg_threads or DEFAULT_RG_THREADS
    if profile is not None:
        profile.passes += 1

    candidates = _candidate_logs(log_dirs, log_paths)
    if profile is not None:
        profile.logs_considered += len(candidates)
    if not candidates or not rg_available():
        return {}

    by_target = {w.tmux_window: w for w in windows}
    log_mtimes = dict(candidates)
    hits: dict[str, set[str]] = {}

    with tempfile.TemporaryDirectory(prefix="agentboard-match-") as staging:
        tail_start = time.perf_counter()
        staged: dict[str, str] = {}
        for index, (log_path, _) in enumerate(candidates):
            log_start = time.perf_counter()
            data = read_log_tail(log_path, tail_bytes)
            if data is None:
                continue
            staged_path = os.path.join(staging, f"{index}.jsonl")
            with open(staged_path, "wb") as f:
                f.write(data)
            staged[staged_path] = log_path
            if profile is not None:
                profile.log_ms[log_path] = _elapsed_ms(log_start)
        if profile is not None:
            profile.tail_read_ms += _elapsed_ms(tail_start)

        if not staged:
            return {}
        staged_files = list(staged)

        for window in windows:
            window_start = time.perf_counter()
            content = backend.get_content(window.tmux_window, lines=scrollback_lines)
            if profile is not None:
                profile.capture_ms += _elapsed_ms(window_start)
            if not content:
                logger.debug(f"No scrollback captured for {window.tmux_window}")
                continue
            if profile is not None:
                profile.windows_captured += 1

            fragments = extract_fingerprint_fragments(content)
            if not fragments:
                continue

            rg_start = time.perf_counter()
            matched = _search_files(search_patterns(fragments), staged_files, threads)
            if profile is not None:
                profile.rg_invocations += 1
                profile.rg_ms += _elapsed_ms(rg_start)
                profile.window_ms[window.tmux_window] = _elapsed_ms(window_start)

            for staged_path in matched:
                log_path = staged.get(staged_path)
                if log_path is not None:
                    hits.setdefault(log_path, set()).add(window.tmux_window)

    assign_start = time.perf_counter()
    result = assign_logs_to_windows(hits, log_mtimes, by_target)
    if profile is not None:
        profile.assign_ms += _elapsed_ms(assign_start)

    return result
