"""Gate deciding which log entries are worth a matching attempt.

Matching is the expensive part of a poll. Without this gate every poll
would re-run the full ripgrep pass over every recent log.
"""

from collections.abc import Iterable

from agentboard.models.match import LogEntrySnapshot
from agentboard.models.session import SessionSnapshot


def _binding_is_stale(
    entry: LogEntrySnapshot,
    session: SessionSnapshot,
    live_windows: set[str] | None,
) -> bool:
    if session.current_window is None:
        # Orphaned log: only worth rematching once it is being written again
        last_matched = session.last_matched_mtime or 0.0
        return entry.mtime > last_matched

    if live_windows is not None and session.current_window not in live_windows:
        return True

    return False


def select_entries_needing_match(
    entries: Iterable[LogEntrySnapshot],
    sessions: Iterable[SessionSnapshot],
    min_tokens: int = 0,
    live_windows: Iterable[str] | None = None,
) -> list[LogEntrySnapshot]:
    """Select the snapshot entries that need matching this cycle.

    An entry is selected when it is not a subagent log, its token estimate
    reaches ``min_tokens``, and either no known session owns its log or the
    owning session's binding is stale:

    - the session has no window and the log was modified after the last
      confirmed match, or
    - the session's window is not among ``live_windows`` (when given).

    Args:
        entries: Snapshot entries from the current poll.
        sessions: Known sessions.
        min_tokens: Minimum estimated tokens for a log to be matchable.
        live_windows: Targets of the windows alive this poll.

    Returns:
        Selected entries, in input order.
    """
    by_log_path = {s.log_file_path: s for s in sessions if s.log_file_path}
    live = set(live_windows) if live_windows is not None else None

    selected = []
    for entry in entries:
        if entry.is_subagent:
            continue
        if entry.log_token_count < min_tokens:
            continue

        session = by_log_path.get(entry.log_path)
        if session is None or _binding_is_stale(entry, session, live):
            selected.append(entry)

    return selected
