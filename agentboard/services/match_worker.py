"""Match worker process and its client.

Log discovery, the poll snapshot, gating and the ripgrep pass run in a
separate process so a slow match never stalls the status loop. The two
sides only exchange JSON-mode dicts of MatchWorkerRequest and
MatchWorkerResponse over multiprocessing queues, correlated by id.
"""

import logging
import multiprocessing
import os
import queue
import threading
import time
from collections.abc import Callable

from pydantic import ValidationError

from agentboard.backends.base import TerminalBackend
from agentboard.models.match import (
    DEFAULT_SCROLLBACK_LINES,
    LogEntrySnapshot,
    LogMatch,
    MatchWorkerRequest,
    MatchWorkerResponse,
    OrphanCandidate,
)
from agentboard.services.log_discovery import get_log_search_dirs, get_log_times, is_subagent_log
from agentboard.services.log_match_gate import select_entries_needing_match
from agentboard.services.log_matcher import create_exact_match_profile, match_windows_to_logs
from agentboard.services.log_poll_data import collect_log_entry_batch, estimate_token_count

logger = logging.getLogger(__name__)

ORPHAN_PASS_MAX_THREADS = 4
WORKER_STOP_TIMEOUT = 2.0

# How long a single queue read blocks before re-checking the worker
POLL_SLICE_SECONDS = 0.25


def build_orphan_entries(
    candidates: list[OrphanCandidate],
    entries: list[LogEntrySnapshot],
    min_tokens: int = 0,
) -> list[LogEntrySnapshot]:
    """Snapshot entries for orphan candidates missing from this poll.

    Candidates already in the snapshot were handled by the regular pass.
    Subagent logs, vanished logs and logs under ``min_tokens`` are skipped.
    """
    existing = {entry.log_path for entry in entries}
    orphan_entries = []

    for candidate in candidates:
        log_path = candidate.log_file_path
        if not log_path or log_path in existing:
            continue
        if is_subagent_log(log_path, candidate.agent_type):
            continue

        times = get_log_times(log_path)
        if times is None:
            continue

        token_count = estimate_token_count(log_path)
        if min_tokens > 0 and token_count < min_tokens:
            continue

        orphan_entries.append(
            LogEntrySnapshot(
                log_path=log_path,
                mtime=times.mtime,
                birthtime=times.birthtime,
                session_id=candidate.session_id,
                project_path=candidate.project_path,
                agent_type=candidate.agent_type,
                is_subagent=False,
                log_token_count=token_count,
            )
        )
        existing.add(log_path)

    return orphan_entries


def _payload_id(payload) -> str:
    if isinstance(payload, MatchWorkerRequest):
        return payload.id
    if isinstance(payload, dict) and isinstance(payload.get("id"), str):
        return payload["id"]
    return ""


def handle_match_worker_request(
    payload: MatchWorkerRequest | dict,
    backend: TerminalBackend | None = None,
) -> MatchWorkerResponse:
    """Run one poll's matching work.

    Steps: collect the snapshot, gate it against the known sessions, match
    the gated logs (skipped when nothing needs matching), then, when asked,
    run a separate pass for orphan candidates outside the snapshot.

    Never raises: any failure, including a payload that does not validate,
    becomes an error response carrying the request id.

    Args:
        payload: Request model or its JSON-mode dict.
        backend: Terminal backend for scrollback capture.

    Returns:
        MatchWorkerResponse with the same id.
    """
    request_id = _payload_id(payload)
    try:
        if isinstance(payload, MatchWorkerRequest):
            request = payload
        else:
            request = MatchWorkerRequest.model_validate(payload)

        search = request.search
        log_dirs = request.log_dirs if request.log_dirs is not None else get_log_search_dirs()
        scrollback_lines = request.scrollback_lines or DEFAULT_SCROLLBACK_LINES
        min_tokens = request.min_tokens_for_match or 0
        profile = create_exact_match_profile() if search.profile else None

        batch = collect_log_entry_batch(request.max_logs_per_poll, log_dirs=log_dirs)

        response = MatchWorkerResponse(
            id=request.id,
            type="result",
            entries=batch.entries,
            scan_ms=batch.scan_ms,
            sort_ms=batch.sort_ms,
            profile=profile,
        )

        to_match = select_entries_needing_match(
            batch.entries,
            request.sessions,
            min_tokens=min_tokens,
            live_windows=[w.tmux_window for w in request.windows],
        )
        if not to_match:
            response.match_skipped = True
        else:
            match_start = time.perf_counter()
            log_paths = [entry.log_path for entry in to_match]
            matches = match_windows_to_logs(
                request.windows,
                log_dirs,
                scrollback_lines,
                log_paths=log_paths,
                tail_bytes=search.tail_bytes,
                rg_threads=search.rg_threads,
                profile=profile,
                backend=backend,
            )
            response.match_ms = (time.perf_counter() - match_start) * 1000
            response.match_window_count = len(request.windows)
            response.match_log_count = len(log_paths)
            response.matches = [
                LogMatch(log_path=path, tmux_window=window.tmux_window)
                for path, window in matches.items()
            ]

        if request.force_orphan_rematch and request.orphan_candidates:
            orphan_entries = build_orphan_entries(
                request.orphan_candidates, batch.entries, min_tokens
            )
            response.orphan_entries = orphan_entries
            if orphan_entries:
                threads = max(
                    search.rg_threads or 1,
                    min(os.cpu_count() or 1, ORPHAN_PASS_MAX_THREADS),
                )
                matches = match_windows_to_logs(
                    request.windows,
                    log_dirs,
                    scrollback_lines,
                    log_paths=[entry.log_path for entry in orphan_entries],
                    rg_threads=threads,
                    profile=profile,
                    backend=backend,
                )
                response.orphan_matches = [
                    LogMatch(log_path=path, tmux_window=window.tmux_window)
                    for path, window in matches.items()
                ]

        return response

    except ValidationError as e:
        logger.error(f"Invalid match request {request_id!r}: {e}")
        return MatchWorkerResponse(id=request_id, type="error", error=str(e))
    except Exception as e:
        logger.error(f"Match request {request_id!r} failed: {e}")
        return MatchWorkerResponse(id=request_id, type="error", error=str(e))


def run_worker(request_queue, response_queue) -> None:
    """Worker process main loop.

    Reads request dicts until a ``None`` sentinel arrives. Payloads without
    an id cannot be answered and are ignored.
    """
    try:
        while True:
            payload = request_queue.get()
            if payload is None:
                break
            if not _payload_id(payload):
                continue
            response = handle_match_worker_request(payload)
            response_queue.put(response.model_dump(mode="json"))
    except KeyboardInterrupt:
        pass


class MatchWorkerClient:
    """Owns the match worker process and talks to it.

    Requests are answered synchronously within a timeout. A request that
    times out stays outstanding: if its response arrives later it is handed
    to ``on_late_response``. Responses with any other unknown id are
    discarded.

    At most ``max_outstanding`` timed-out requests are kept in flight; while
    the backlog is full new requests are not sent. A worker whose oldest
    unanswered request is older than ``stuck_seconds`` is restarted, which
    abandons the backlog.
    """

    def __init__(
        self,
        on_late_response: Callable[[MatchWorkerResponse], None] | None = None,
        start_method: str = "spawn",
        max_outstanding: int = 2,
        stuck_seconds: float = 120.0,
    ):
        """Initialize the client.

        Args:
            on_late_response: Called with responses to timed-out requests.
            start_method: multiprocessing start method.
            max_outstanding: Timed-out requests allowed in flight.
            stuck_seconds: Backlog age that forces a worker restart.
        """
        self.on_late_response = on_late_response
        self.max_outstanding = max_outstanding
        self.stuck_seconds = stuck_seconds
        self._context = multiprocessing.get_context(start_method)
        self._process = None
        self._requests = None
        self._responses = None
        # request id -> monotonic send time
        self._late_ids: dict[str, float] = {}
        self._lock = threading.Lock()
        self.restarts = 0

    @property
    def is_running(self) -> bool:
        """Check if the worker process is alive."""
        return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        """Start the worker process if it is not running."""
        if self.is_running:
            return

        self._requests = self._context.Queue()
        self._responses = self._context.Queue()
        self._late_ids.clear()
        self._process = self._context.Process(
            target=run_worker,
            args=(self._requests, self._responses),
            name="agentboard-match-worker",
            daemon=True,
        )
        self._process.start()
        logger.info(f"Match worker started (pid {self._process.pid})")

    def stop(self) -> None:
        """Stop the worker process."""
        process = self._process
        if process is None:
            return

        if process.is_alive():
            try:
                self._requests.put(None)
            except (OSError, ValueError):
                pass
            process.join(WORKER_STOP_TIMEOUT)
            if process.is_alive():
                logger.warning("Match worker did not exit, terminating")
                process.terminate()
                process.join(WORKER_STOP_TIMEOUT)

        for q in (self._requests, self._responses):
            if q is not None:
                q.cancel_join_thread()
                q.close()

        self._process = None
        self._requests = None
        self._responses = None
        self._late_ids.clear()
        logger.info("Match worker stopped")

    def _ensure_running(self) -> None:
        if self.is_running:
            return
        if self._process is not None:
            logger.warning("Match worker exited unexpectedly, restarting")
            self.restarts += 1
            self.stop()
        self.start()

    def _parse(self, raw) -> MatchWorkerResponse | None:
        try:
            return MatchWorkerResponse.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Discarding malformed worker response: {e}")
            return None

    def _dispatch_unsolicited(self, response: MatchWorkerResponse) -> None:
        """Route a response that is not the one currently awaited."""
        if response.id not in self._late_ids:
            logger.debug(f"Discarding response for unknown request {response.id}")
            return

        del self._late_ids[response.id]
        if self.on_late_response is not None:
            self.on_late_response(response)

    def request(self, request: MatchWorkerRequest, timeout: float) -> MatchWorkerResponse | None:
        """Send a request and wait for its response.

        Args:
            request: The request to send.
            timeout: Seconds to wait.

        Returns:
            The response, or None on timeout, worker death or a full backlog.
        """
        with self._lock:
            self._ensure_running()
            self._drain_locked()

            if len(self._late_ids) >= self.max_outstanding:
                oldest = time.monotonic() - min(self._late_ids.values())
                if oldest < self.stuck_seconds:
                    logger.warning(
                        f"Match worker has {len(self._late_ids)} unanswered requests, "
                        f"not sending {request.id}"
                    )
                    return None
                logger.warning(f"Match worker unresponsive for {oldest:.0f}s, restarting")
                self.restarts += 1
                self.stop()
                self.start()

            sent_at = time.monotonic()
            self._requests.put(request.model_dump(mode="json"))

            deadline = sent_at + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    raw = self._responses.get(timeout=min(remaining, POLL_SLICE_SECONDS))
                except queue.Empty:
                    if not self._process.is_alive():
                        logger.warning(f"Match worker died while handling {request.id}")
                        return None
                    continue

                response = self._parse(raw)
                if response is None:
                    continue
                if response.id == request.id:
                    return response
                self._dispatch_unsolicited(response)

            self._late_ids[request.id] = sent_at
            logger.warning(f"Match request {request.id} timed out after {timeout}s")
            return None

    @property
    def outstanding(self) -> int:
        """Number of timed-out requests still awaiting a response."""
        return len(self._late_ids)

    def drain(self) -> int:
        """Deliver any responses already queued without blocking.

        Returns:
            Number of responses read.
        """
        with self._lock:
            return self._drain_locked()

    def _drain_locked(self) -> int:
        if self._responses is None:
            return 0
        count = 0
        while True:
            try:
                raw = self._responses.get_nowait()
            except queue.Empty:
                break
            count += 1
            response = self._parse(raw)
            if response is not None:
                self._dispatch_unsolicited(response)
        return count
