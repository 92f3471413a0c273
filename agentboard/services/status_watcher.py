"""StatusWatcher - the agentboard orchestrator.

Runs the poll loop that keeps the session table in step with tmux and the
agents' logs:

1. List live tmux windows and sync them into the SessionStore
2. Send one MatchWorkerRequest and bind the returned log → window matches
3. Recompute each session's status from its screen, logs and output
4. Expire orphans that stayed quiet past the grace period

The watcher thread is the only writer of the session table.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agentboard.backends.base import TerminalBackend, WindowInfo
from agentboard.backends.tmux import TmuxBackend
from agentboard.models.config import AppConfig
from agentboard.models.match import (
    LogEntrySnapshot,
    MatchWorkerRequest,
    MatchWorkerResponse,
    MatchWorkerSearchOptions,
    OrphanCandidate,
    WindowSnapshot,
)
from agentboard.models.session import AgentType, Session, SessionSource, SessionStatus
from agentboard.services.event_bus import EventBus
from agentboard.services.log_discovery import (
    classify_agent,
    classify_command,
    get_log_search_dirs,
    get_log_times,
)
from agentboard.services.match_worker import MatchWorkerClient
from agentboard.services.session_manager import SessionManager, detects_permission_prompt
from agentboard.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def infer_agent_type(log_path: str | Path | None) -> AgentType | None:
    """Agent that wrote a log, judged by its path.

    Returns:
        The AgentType, or None for empty input and unrelated paths.
    """
    if not log_path:
        return None
    agent_type = classify_agent(log_path)
    return None if agent_type == AgentType.UNKNOWN else agent_type


def next_status(
    previous: SessionStatus,
    has_window: bool,
    prompt_visible: bool,
    active: bool,
    seconds_since_activity: float,
    idle_timeout: float,
) -> SessionStatus:
    """Derive a session's status for this tick.

    Args:
        previous: Status after the previous tick.
        has_window: Whether the session is bound to a live window.
        prompt_visible: Whether a permission prompt is on screen.
        active: Whether activity was observed since the previous tick.
        seconds_since_activity: Seconds since activity was last observed.
        idle_timeout: Seconds of inactivity before a session is idle.
    """
    if not has_window:
        return SessionStatus.ORPHANED
    if prompt_visible:
        return SessionStatus.NEEDS_INPUT
    if active:
        return SessionStatus.WORKING
    if seconds_since_activity >= idle_timeout:
        return SessionStatus.IDLE
    if previous == SessionStatus.NEEDS_INPUT:
        # Prompt gone without new output: it was answered
        return SessionStatus.WORKING
    if previous == SessionStatus.ORPHANED:
        return SessionStatus.UNKNOWN
    return previous


@dataclass
class ActivityTracker:
    """What a session looked like at the previous tick.

    None means not observed yet; the first observation sets the baseline
    and never counts as activity.
    """

    content_hash: str | None = None
    window_activity: float | None = None
    log_mtime: float | None = None
    output_at: float | None = None
    last_active: float = 0.0

    def observe(
        self,
        content_hash: str | None,
        window_activity: float | None,
        log_mtime: float | None,
        output_at: float | None,
    ) -> bool:
        """Record the current observation; True if anything advanced."""
        active = False
        if content_hash is not None:
            active |= self.content_hash is not None and content_hash != self.content_hash
            self.content_hash = content_hash
        if window_activity:
            active |= self.window_activity is not None and window_activity > self.window_activity
            self.window_activity = window_activity
        if log_mtime:
            active |= self.log_mtime is not None and log_mtime > self.log_mtime
            self.log_mtime = log_mtime
        if output_at:
            active |= self.output_at is None or output_at > self.output_at
            self.output_at = output_at
        return active


def _window_snapshot(window: WindowInfo) -> WindowSnapshot:
    return WindowSnapshot(
        tmux_window=window.target,
        session_name=window.session_name,
        name=window.name,
        project_path=window.cwd or "",
        command=window.command,
        last_activity=window.last_activity,
    )


class StatusWatcher:
    """Poll loop merging tmux windows and match results into sessions."""

    DEFAULT_POLL_INTERVAL_SECONDS = 2.0

    def __init__(
        self,
        store: SessionStore,
        worker: MatchWorkerClient,
        backend: TerminalBackend | None = None,
        session_manager: SessionManager | None = None,
        event_bus: EventBus | None = None,
        config: AppConfig | None = None,
    ):
        """Initialize the watcher.

        Args:
            store: The session table this watcher owns.
            worker: Client for the match worker process.
            backend: tmux backend.
            session_manager: Terminal manager, for output activity and for
                closing terminals of vanished windows.
            event_bus: Receives a sessions_refreshed event per tick.
            config: Application configuration.
        """
        self._config = config or AppConfig()
        self._store = store
        self._worker = worker
        self._worker.on_late_response = self._on_late_response
        self._backend = backend or TmuxBackend()
        self._manager = session_manager
        self._event_bus = event_bus

        dirs = self._config.log_dirs
        self._log_dirs = get_log_search_dirs(dirs.claude_projects_dir, dirs.codex_sessions_dir)

        self._trackers: dict[str, ActivityTracker] = {}
        self._request_seqs: dict[str, int] = {}
        self._tick_seq = 0
        self._last_applied_seq = 0
        self._force_orphan_rematch = True

        # Tick statistics for the health endpoint
        self.tick_count = 0
        self.failed_ticks = 0
        self.last_tick_ms: float | None = None
        self.last_response: MatchWorkerResponse | None = None

        self._running = False
        self._stop_event = threading.Event()
        self._poll_thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def poll_interval_seconds(self) -> float:
        """Get poll interval from config."""
        return float(self._config.scan_interval or self.DEFAULT_POLL_INTERVAL_SECONDS)

    @property
    def log_dirs(self) -> list[str]:
        """Log directories searched for matches."""
        return list(self._log_dirs)

    def start(self) -> None:
        """Start the poll loop."""
        with self._lock:
            if self._running:
                return

            self._running = True
            self._stop_event.clear()
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                name="status-watcher",
                daemon=True,
            )
            self._poll_thread.start()
            logger.info("StatusWatcher started")

    def stop(self) -> None:
        """Stop the poll loop."""
        with self._lock:
            self._running = False
            self._stop_event.set()
            if self._poll_thread:
                self._poll_thread.join(timeout=5.0)
                self._poll_thread = None
            logger.info("StatusWatcher stopped")

    @property
    def is_running(self) -> bool:
        """Check if the poll loop is running."""
        return self._running

    def _poll_loop(self) -> None:
        while self._running:
            try:
                self.poll_once()
            except Exception as e:
                self.failed_ticks += 1
                logger.exception(f"Error in poll loop: {e}")

            self._stop_event.wait(self.poll_interval_seconds)

    # =========================================================================
    # Tick
    # =========================================================================

    def poll_once(self) -> bool:
        """Run one tick.

        Returns:
            True if a match response was applied this tick.
        """
        start = time.perf_counter()
        self._tick_seq += 1
        seq = self._tick_seq

        # Responses to earlier timed-out ticks
        self._worker.drain()

        windows = self._backend.list_windows()
        live = self._sync_windows(windows)

        request = self._build_request(seq, live)
        self._request_seqs[request.id] = seq
        response = self._worker.request(request, timeout=self._config.matching.timeout_seconds)

        applied = False
        if response is None:
            self.failed_ticks += 1
        else:
            self._request_seqs.pop(request.id, None)
            if response.type == "error":
                self.failed_ticks += 1
                logger.error(f"Match tick {seq} failed: {response.error}")
            else:
                applied = self._apply_response(response, seq)
                if applied and request.force_orphan_rematch:
                    self._force_orphan_rematch = False

        self._refresh_statuses(live)
        self._expire_orphans()

        self.tick_count += 1
        self.last_tick_ms = (time.perf_counter() - start) * 1000
        if self._event_bus is not None:
            self._event_bus.emit(
                "sessions_refreshed",
                {"tick": seq, "session_count": len(self._store), "applied": applied},
            )
        return applied

    def _build_request(self, seq: int, live: dict[str, WindowInfo]) -> MatchWorkerRequest:
        matching = self._config.matching
        force = self._force_orphan_rematch

        candidates = []
        if force:
            for session in self._store.list_sessions():
                if session.log_file_path and session.tmux_window is None:
                    candidates.append(
                        OrphanCandidate(
                            session_id=session.id,
                            log_file_path=session.log_file_path,
                            project_path=session.project_path or None,
                            agent_type=session.agent_type,
                            current_window=None,
                        )
                    )

        return MatchWorkerRequest(
            id=f"tick-{seq}-{uuid.uuid4().hex[:8]}",
            windows=[_window_snapshot(w) for w in live.values()],
            max_logs_per_poll=matching.max_logs_per_poll,
            log_dirs=self._log_dirs,
            sessions=self._store.snapshots(),
            scrollback_lines=matching.scrollback_lines,
            min_tokens_for_match=matching.min_tokens_for_match,
            force_orphan_rematch=force,
            orphan_candidates=candidates,
            search=MatchWorkerSearchOptions(
                tail_bytes=matching.tail_bytes,
                rg_threads=matching.rg_threads,
                profile=matching.profile,
            ),
        )

    # =========================================================================
    # Window sync
    # =========================================================================

    def _is_tracked(self, window: WindowInfo) -> bool:
        """Managed windows are always tracked; others only when running an agent."""
        if window.session_name == self._config.tmux_session:
            return True
        return classify_command(window.command) != AgentType.UNKNOWN

    def _sync_windows(self, windows: list[WindowInfo]) -> dict[str, WindowInfo]:
        """Create sessions for new windows and orphan those whose window closed.

        A tmux target can be reused by a new window after the old one
        closed; the stable tmux window id tells them apart.

        Returns:
            Tracked live windows by target.
        """
        live: dict[str, WindowInfo] = {}
        created = False

        for window in windows:
            session = self._store.get_by_window(window.target)
            previous_id = session.tmux_window_id if session is not None else None
            if session is not None and previous_id and window.window_id and previous_id != window.window_id:
                self._on_window_closed(session)
                session = None

            if session is None:
                if not self._is_tracked(window):
                    continue
                self._create_window_session(window)
                created = True
            else:
                self._refresh_window_fields(session, window)

            live[window.target] = window

        for session in self._store.list_sessions():
            if session.tmux_window and session.tmux_window not in live:
                self._on_window_closed(session)

        if created:
            self._force_orphan_rematch = True
        return live

    def _create_window_session(self, window: WindowInfo) -> Session:
        managed = window.session_name == self._config.tmux_session
        return self._store.create_session(
            name=window.name or window.target,
            tmux_window=window.target,
            tmux_window_id=window.window_id,
            project_path=window.cwd or "",
            agent_type=classify_command(window.command),
            command=window.command,
            source=SessionSource.MANAGED if managed else SessionSource.EXTERNAL,
            last_activity_at=datetime.fromtimestamp(window.last_activity) if window.last_activity else None,
        )

    def _refresh_window_fields(self, session: Session, window: WindowInfo) -> None:
        changes = {}
        if window.name and window.name != session.name:
            changes["name"] = window.name
        if window.command != session.command:
            changes["command"] = window.command
            if session.log_file_path is None:
                changes["agent_type"] = classify_command(window.command)
        if window.window_id and window.window_id != session.tmux_window_id:
            changes["tmux_window_id"] = window.window_id
        if window.cwd and not session.project_path:
            changes["project_path"] = window.cwd
        if changes:
            self._save(session, **changes)

    def _on_window_closed(self, session: Session) -> None:
        """Orphan a session whose window is gone; drop it if it never had a log."""
        if self._manager is not None:
            self._manager.close_session(session.id)

        if session.log_file_path is None:
            self._forget(session.id)
            return

        self._save(
            session,
            tmux_window=None,
            tmux_window_id=None,
            status=SessionStatus.ORPHANED,
            orphaned_at=datetime.now(),
        )
        self._trackers.pop(session.id, None)
        logger.info(f"Session orphaned: {session.name} ({session.id[:8]}), window {session.tmux_window} closed")

    # =========================================================================
    # Match results
    # =========================================================================

    def _on_late_response(self, response: MatchWorkerResponse) -> None:
        """Apply a response that arrived after its tick gave up waiting."""
        seq = self._request_seqs.pop(response.id, None)
        if seq is None:
            logger.debug(f"Discarding late response for unknown request {response.id}")
            return
        if response.type == "error":
            logger.error(f"Late match response {response.id} failed: {response.error}")
            return
        self._apply_response(response, seq)

    def _apply_response(self, response: MatchWorkerResponse, seq: int) -> bool:
        """Bind matches from a response unless a newer tick was applied."""
        if seq <= self._last_applied_seq:
            logger.debug(f"Discarding stale match response {response.id} (tick {seq})")
            return False

        self._last_applied_seq = seq
        self.last_response = response
        for request_id, request_seq in list(self._request_seqs.items()):
            if request_seq <= seq:
                del self._request_seqs[request_id]

        entries = {e.log_path: e for e in response.entries}
        entries.update({e.log_path: e for e in response.orphan_entries})

        matched = set()
        for match in [*response.matches, *response.orphan_matches]:
            if self._bind(match.log_path, match.tmux_window, entries.get(match.log_path)):
                matched.add(match.log_path)

        self._adopt_unmatched_logs(response.entries, matched)
        return True

    def _bind(self, log_path: str, target: str, entry: LogEntrySnapshot | None) -> bool:
        """Attach a log to the session of a window.

        A separate orphan record for the same log is merged into the window
        session, so each log keeps a single owner.
        """
        window_session = self._store.get_by_window(target)
        if window_session is None:
            logger.debug(f"Match for vanished window {target} ignored")
            return False

        mtime = entry.mtime if entry else None
        if mtime is None:
            times = get_log_times(log_path)
            mtime = times.mtime if times else None

        owner = self._store.get_by_log_path(log_path)
        if owner is not None and owner.id == window_session.id:
            if mtime is not None and mtime != owner.last_matched_mtime:
                self._save(owner, persist=False, last_matched_mtime=mtime)
            return True

        if owner is not None:
            if owner.tmux_window is None:
                logger.info(f"Merging orphan {owner.id[:8]} into session {window_session.name}")
                self._forget(owner.id)
            else:
                # The conversation moved to another window (resumed elsewhere)
                self._save(owner, log_file_path=None, agent_session_id=None, last_matched_mtime=None)

        agent_type = (entry.agent_type if entry else None) or infer_agent_type(log_path)
        changes = {
            "log_file_path": log_path,
            "last_matched_mtime": mtime,
            "agent_type": agent_type or window_session.agent_type,
        }
        if entry is not None and entry.session_id:
            changes["agent_session_id"] = entry.session_id
        if entry is not None and entry.project_path and not window_session.project_path:
            changes["project_path"] = entry.project_path

        self._save(window_session, **changes)
        logger.info(f"Bound {log_path} to window {target} ({window_session.name})")
        return True

    def _adopt_unmatched_logs(self, entries: list[LogEntrySnapshot], matched: set[str]) -> None:
        """Track recent unowned logs as orphaned, log-only sessions."""
        min_tokens = self._config.matching.min_tokens_for_match
        horizon = time.time() - self._config.status.orphan_grace_hours * 3600

        for entry in entries:
            if entry.log_path in matched or entry.is_subagent:
                continue
            if entry.log_token_count < min_tokens or entry.mtime < horizon:
                continue
            if self._store.get_by_log_path(entry.log_path) is not None:
                continue

            name = Path(entry.project_path).name if entry.project_path else Path(entry.log_path).stem
            self._store.create_session(
                name=name or entry.log_path,
                project_path=entry.project_path or "",
                agent_type=entry.agent_type or infer_agent_type(entry.log_path) or AgentType.UNKNOWN,
                log_file_path=entry.log_path,
                agent_session_id=entry.session_id,
                status=SessionStatus.ORPHANED,
                source=SessionSource.LOG,
                last_activity_at=datetime.fromtimestamp(entry.mtime),
                last_matched_mtime=entry.mtime,
                orphaned_at=datetime.fromtimestamp(entry.mtime),
            )

    # =========================================================================
    # Status
    # =========================================================================

    def _refresh_statuses(self, live: dict[str, WindowInfo]) -> None:
        """Recompute status and last activity for every session."""
        status_config = self._config.status
        now = time.time()

        for session in self._store.list_sessions():
            tracker = self._trackers.setdefault(session.id, ActivityTracker(last_active=now))

            times = get_log_times(session.log_file_path) if session.log_file_path else None
            log_mtime = times.mtime if times else None

            window = live.get(session.tmux_window) if session.tmux_window else None
            content = None
            prompt_visible = False
            output_at = None
            if window is not None:
                content = self._backend.get_content(window.target, lines=status_config.scan_lines)
                if self._manager is not None:
                    output_at = self._manager.last_output_at(session.id)
                screen = content if content is not None else (
                    self._manager.recent_output(session.id) if self._manager else ""
                )
                prompt_visible = detects_permission_prompt(screen)

            active = tracker.observe(
                str(hash(content)) if content is not None else None,
                window.last_activity if window is not None else None,
                log_mtime,
                output_at,
            )
            if active:
                tracker.last_active = now

            status = next_status(
                session.status,
                has_window=window is not None,
                prompt_visible=prompt_visible,
                active=active,
                seconds_since_activity=now - tracker.last_active,
                idle_timeout=status_config.idle_timeout_seconds,
            )

            changes = {}
            if status != session.status:
                logger.info(f"Session {session.name}: {session.status.value} → {status.value}")
                changes["status"] = status
            if active:
                changes["last_activity_at"] = datetime.fromtimestamp(now)
            if changes:
                self._save(session, persist=False, **changes)

    def _expire_orphans(self) -> None:
        """Remove orphans with no activity for the grace period."""
        grace_seconds = self._config.status.orphan_grace_hours * 3600
        now = datetime.now()

        for session in self._store.list_sessions():
            if session.tmux_window is not None:
                continue
            seen = [t for t in (session.orphaned_at, session.last_activity_at) if t is not None]
            last_seen = max(seen) if seen else session.created_at
            if (now - last_seen).total_seconds() > grace_seconds:
                logger.info(f"Expiring orphan {session.name} ({session.id[:8]})")
                self._forget(session.id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _save(self, session: Session, persist: bool = True, **changes) -> Session:
        current = self._store.get(session.id) or session
        updated = current.model_copy(update=changes)
        return self._store.update_session(updated, persist=persist)

    def _forget(self, session_id: str) -> None:
        self._store.remove_session(session_id)
        self._trackers.pop(session_id, None)
        if self._manager is not None:
            self._manager.forget_session(session_id)

    def get_status(self) -> dict:
        """Watcher and worker health for the health endpoint."""
        last = self.last_response
        return {
            "running": self._running,
            "tick_count": self.tick_count,
            "failed_ticks": self.failed_ticks,
            "last_tick_ms": self.last_tick_ms,
            "last_applied_tick": self._last_applied_seq,
            "worker_running": self._worker.is_running,
            "worker_restarts": self._worker.restarts,
            "worker_outstanding": self._worker.outstanding,
            "log_dirs": self._log_dirs,
            "last_match": None
            if last is None
            else {
                "entries": len(last.entries),
                "matches": len(last.matches) + len(last.orphan_matches),
                "match_skipped": last.match_skipped,
                "scan_ms": last.scan_ms,
                "sort_ms": last.sort_ms,
                "match_ms": last.match_ms,
            },
        }
