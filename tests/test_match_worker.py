"""Tests for the match worker request handler and client."""

import queue
import time
from unittest.mock import MagicMock, patch

import pytest

from agentboard.models.match import (
    MatchWorkerRequest,
    MatchWorkerResponse,
    LogEntrySnapshot,
    OrphanCandidate,
    WindowSnapshot,
)
from agentboard.models.session import SessionSnapshot
from agentboard.services import match_worker
from agentboard.services.match_worker import (
    MatchWorkerClient,
    build_orphan_entries,
    handle_match_worker_request,
    run_worker,
)

FINGERPRINT_A = "Wire the feature flag into the checkout flow"
FINGERPRINT_B = "Investigate the flaky websocket reconnect test"


@pytest.fixture
def log_tree(tmp_path, log_writer):
    """Two Claude logs, each containing one window's fingerprint."""
    root = tmp_path / ".claude" / "projects" / "p"
    now = time.time()
    padding = "context " * 100
    log_a = log_writer(root / "a.jsonl", "sess-a", "/w/a", [padding, FINGERPRINT_A], mtime=now - 20)
    log_b = log_writer(root / "b.jsonl", "sess-b", "/w/b", [padding, FINGERPRINT_B], mtime=now - 10)
    return {"dir": str(tmp_path / ".claude" / "projects"), "a": str(log_a), "b": str(log_b)}


def request(log_tree, windows, **kwargs) -> dict:
    payload = {
        "id": "req-1",
        "windows": [w.model_dump(mode="json") for w in windows],
        "max_logs_per_poll": 10,
        "log_dirs": [log_tree["dir"]],
        "sessions": [],
        "scrollback_lines": 200,
        "min_tokens_for_match": 50,
    }
    payload.update(kwargs)
    return payload


class TestHandleMatchWorkerRequest:
    """Tests for handle_match_worker_request."""

    def test_two_windows_two_logs(self, log_tree, backend_factory, python_rg):
        backend = backend_factory(contents={"main:1": FINGERPRINT_A + "\n", "main:2": FINGERPRINT_B + "\n"})
        windows = [WindowSnapshot(tmux_window="main:1"), WindowSnapshot(tmux_window="main:2")]

        response = handle_match_worker_request(request(log_tree, windows), backend=backend)

        assert response.type == "result"
        assert response.id == "req-1"
        assert response.match_skipped is False
        assert {m.log_path: m.tmux_window for m in response.matches} == {
            log_tree["a"]: "main:1",
            log_tree["b"]: "main:2",
        }
        assert response.match_window_count == 2
        assert response.match_log_count == 2
        assert len(response.entries) == 2

    def test_unmatched_window(self, log_tree, backend_factory, python_rg):
        backend = backend_factory(contents={"main:9": "This window never talks about anything logged\n"})
        windows = [WindowSnapshot(tmux_window="main:9")]

        response = handle_match_worker_request(request(log_tree, windows), backend=backend)

        assert response.type == "result"
        assert response.matches == []
        assert response.match_skipped is False

    def test_nothing_to_match_skips_search(self, log_tree, backend_factory):
        sessions = [
            SessionSnapshot(session_id="1", log_file_path=log_tree["a"], current_window="main:1"),
            SessionSnapshot(session_id="2", log_file_path=log_tree["b"], current_window="main:2"),
        ]
        windows = [WindowSnapshot(tmux_window="main:1"), WindowSnapshot(tmux_window="main:2")]
        payload = request(log_tree, windows, sessions=[s.model_dump(mode="json") for s in sessions])

        with patch.object(match_worker, "match_windows_to_logs") as mock_match:
            response = handle_match_worker_request(payload, backend=backend_factory())

        assert response.type == "result"
        assert response.match_skipped is True
        assert response.matches == []
        mock_match.assert_not_called()

    def test_below_min_tokens_skips_search(self, log_tree, backend_factory):
        payload = request(log_tree, [WindowSnapshot(tmux_window="main:1")], min_tokens_for_match=100_000)

        with patch.object(match_worker, "match_windows_to_logs") as mock_match:
            response = handle_match_worker_request(payload, backend=backend_factory())

        assert response.match_skipped is True
        mock_match.assert_not_called()

    def test_invalid_payload_keeps_id(self):
        response = handle_match_worker_request({"id": "bad-1", "max_logs_per_poll": 0})

        assert response.type == "error"
        assert response.id == "bad-1"
        assert response.error

    def test_handler_exception_becomes_error(self, log_tree):
        payload = request(log_tree, [])

        with patch.object(match_worker, "collect_log_entry_batch", side_effect=RuntimeError("disk gone")):
            response = handle_match_worker_request(payload)

        assert response.type == "error"
        assert response.id == "req-1"
        assert response.error == "disk gone"

    def test_forced_orphan_rematch(self, tmp_path, log_tree, log_writer, backend_factory, python_rg):
        # An older log outside the snapshot window (max_logs_per_poll=2)
        old_log = log_writer(
            tmp_path / ".claude" / "projects" / "p" / "old.jsonl",
            "sess-old",
            "/w/old",
            ["context " * 100, "Resume the data export from where we stopped"],
            mtime=time.time() - 3600,
        )
        backend = backend_factory(contents={"main:5": "Resume the data export from where we stopped\n"})
        candidates = [
            OrphanCandidate(session_id="old", log_file_path=str(old_log)).model_dump(mode="json"),
        ]
        payload = request(
            log_tree,
            [WindowSnapshot(tmux_window="main:5")],
            max_logs_per_poll=2,
            force_orphan_rematch=True,
            orphan_candidates=candidates,
        )

        response = handle_match_worker_request(payload, backend=backend)

        assert [e.log_path for e in response.orphan_entries] == [str(old_log)]
        assert [(m.log_path, m.tmux_window) for m in response.orphan_matches] == [(str(old_log), "main:5")]

    def test_orphan_pass_thread_floor(self, log_tree, backend_factory):
        candidates = [OrphanCandidate(session_id="a", log_file_path=log_tree["a"]).model_dump(mode="json")]
        payload = request(
            log_tree,
            [WindowSnapshot(tmux_window="main:1")],
            max_logs_per_poll=1,
            force_orphan_rematch=True,
            orphan_candidates=candidates,
            search={"rg_threads": 16},
        )

        with patch.object(match_worker, "match_windows_to_logs", return_value={}) as mock_match:
            handle_match_worker_request(payload, backend=backend_factory())

        assert mock_match.call_args_list[-1].kwargs["rg_threads"] == 16


class TestBuildOrphanEntries:
    """Tests for build_orphan_entries."""

    def test_skips_snapshot_subagent_small_and_missing(self, tmp_path, log_writer):
        big = ["word " * 200]
        in_snapshot = log_writer(tmp_path / ".claude" / "projects" / "p" / "in.jsonl", "i", "/w", big)
        subagent = log_writer(tmp_path / ".claude" / "projects" / "p" / "agent-1.jsonl", "s", "/w", big)
        small = log_writer(tmp_path / ".claude" / "projects" / "p" / "small.jsonl", "t", "/w", ["hi"])
        keep = log_writer(tmp_path / ".claude" / "projects" / "p" / "keep.jsonl", "k", "/w", big)
        snapshot = LogEntrySnapshot(log_path=str(in_snapshot), mtime=1.0, birthtime=1.0)

        candidates = [
            OrphanCandidate(session_id=str(i), log_file_path=str(path))
            for i, path in enumerate([in_snapshot, subagent, small, keep, tmp_path / "gone.jsonl"])
        ]

        entries = build_orphan_entries(candidates, [snapshot], min_tokens=50)

        assert [e.log_path for e in entries] == [str(keep)]
        assert entries[0].session_id == "3"


class TestRunWorker:
    """Tests for the worker process loop, run in-process."""

    def test_answers_until_sentinel(self):
        requests = MagicMock()
        requests.get.side_effect = [{"id": "x", "max_logs_per_poll": 0}, {"no": "id"}, None]
        responses = MagicMock()

        run_worker(requests, responses)

        assert responses.put.call_count == 1
        sent = responses.put.call_args[0][0]
        assert sent["id"] == "x"
        assert sent["type"] == "error"


class TestMatchWorkerClient:
    """Tests for MatchWorkerClient response routing."""

    def test_unknown_response_discarded(self):
        callback = MagicMock()
        client = MatchWorkerClient(on_late_response=callback)

        client._dispatch_unsolicited(MatchWorkerResponse(id="stranger", type="result"))

        callback.assert_not_called()

    def test_late_response_delivered_once(self):
        callback = MagicMock()
        client = MatchWorkerClient(on_late_response=callback)
        client._late_ids["slow-1"] = time.monotonic()
        response = MatchWorkerResponse(id="slow-1", type="result")

        client._dispatch_unsolicited(response)
        client._dispatch_unsolicited(response)

        callback.assert_called_once_with(response)

    def test_drain_without_process(self):
        assert MatchWorkerClient().drain() == 0

    def test_request_round_trip_in_process(self, tmp_path):
        """A real worker process answers a request by id."""
        client = MatchWorkerClient()
        client.start()
        try:
            req = MatchWorkerRequest(id="live-1", max_logs_per_poll=5, log_dirs=[str(tmp_path)])
            response = client.request(req, timeout=60)
        finally:
            client.stop()

        assert response is not None
        assert response.id == "live-1"
        assert response.type == "result"
        assert response.match_skipped is True
        assert not client.is_running


def install_silent_worker(client: MatchWorkerClient) -> MagicMock:
    """Give the client a live worker that never answers."""
    process = MagicMock()
    process.is_alive.return_value = True
    responses = MagicMock()
    responses.get.side_effect = queue.Empty
    responses.get_nowait.side_effect = queue.Empty
    client._process = process
    client._requests = MagicMock()
    client._responses = responses
    return client._requests


class TestMatchWorkerBacklog:
    """Tests for a worker that stops answering."""

    def make_request(self, n: int) -> MatchWorkerRequest:
        return MatchWorkerRequest(id=f"req-{n}", max_logs_per_poll=5)

    def test_backlog_is_capped(self):
        client = MatchWorkerClient(max_outstanding=2, stuck_seconds=600)
        requests = install_silent_worker(client)

        results = [client.request(self.make_request(n), timeout=0.05) for n in range(5)]

        assert results == [None] * 5
        assert requests.put.call_count == 2
        assert client.outstanding == 2
        assert client.restarts == 0

    def test_stuck_worker_restarted(self):
        client = MatchWorkerClient(max_outstanding=2, stuck_seconds=30)
        install_silent_worker(client)
        client._late_ids = {"req-0": time.monotonic() - 60, "req-1": time.monotonic() - 45}
        fresh = {}

        def restart():
            fresh["requests"] = install_silent_worker(client)

        with patch.object(client, "start", side_effect=restart):
            response = client.request(self.make_request(2), timeout=0.05)

        assert response is None
        assert client.restarts == 1
        assert fresh["requests"].put.call_count == 1
        assert list(client._late_ids) == ["req-2"]

    def test_late_answer_frees_a_slot(self):
        callback = MagicMock()
        client = MatchWorkerClient(on_late_response=callback, max_outstanding=1, stuck_seconds=600)
        requests = install_silent_worker(client)
        client._late_ids = {"req-0": time.monotonic()}
        late = MatchWorkerResponse(id="req-0", type="result").model_dump(mode="json")
        client._responses.get_nowait.side_effect = [late, queue.Empty()]

        client.request(self.make_request(1), timeout=0.05)

        callback.assert_called_once()
        assert callback.call_args[0][0].id == "req-0"
        assert requests.put.call_count == 1
        assert list(client._late_ids) == ["req-1"]
