"""Unit tests for the per-pair guard and the event trail."""

from __future__ import annotations

import threading

import pytest

from convoy_core.errors import ConcurrentOperationError
from convoy_core.events import EventTrail
from convoy_core.guard import PairGuard
from convoy_core.schemas.deployment import PipelineState

from conftest import FixedClock


class TestPairGuard:
    """Try-acquire semantics of PairGuard."""

    @pytest.mark.requirement("guard.exclusive")
    def test_second_acquire_is_rejected(self, clock: FixedClock) -> None:
        """Test a held pair rejects other operations immediately."""
        guard = PairGuard(clock=clock)
        hold = guard.try_acquire("frontend", "staging", "promote", tag="stage-1")

        with pytest.raises(ConcurrentOperationError) as exc_info:
            guard.try_acquire("frontend", "staging", "rollback")

        error = exc_info.value
        assert error.held_by == "promote"
        assert error.run_id == hold.run_id
        assert error.retryable is True
        assert error.exit_code == 13

    def test_other_pairs_are_independent(self) -> None:
        guard = PairGuard()
        guard.try_acquire("frontend", "staging", "promote")

        guard.try_acquire("frontend", "production", "promote")
        guard.try_acquire("backend", "staging", "build")

    def test_release_requires_matching_run(self) -> None:
        guard = PairGuard()
        hold = guard.try_acquire("frontend", "staging", "build", run_id="run-1")

        assert guard.release("frontend", "staging", "other") is False
        assert guard.is_held_by("frontend", "staging", "run-1")
        assert guard.release("frontend", "staging", hold.run_id) is True
        assert guard.holder("frontend", "staging") is None
        assert guard.release("frontend", "staging", hold.run_id) is False

    def test_stale_holds(self, clock: FixedClock) -> None:
        """Test holds at or past the timeout are reported stale."""
        guard = PairGuard(clock=clock)
        guard.try_acquire("frontend", "staging", "build", run_id="old")
        clock.advance(100)
        guard.try_acquire("backend", "staging", "build", run_id="new")
        clock.advance(50)

        stale = guard.stale(timeout_seconds=120)

        assert [(svc, env, hold.run_id) for svc, env, hold in stale] == [
            ("frontend", "staging", "old")
        ]

    def test_only_one_thread_wins(self) -> None:
        """Test concurrent acquirers of one pair produce exactly one hold."""
        guard = PairGuard()
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                guard.try_acquire("frontend", "production", "promote")
                result = "won"
            except ConcurrentOperationError:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("won") == 1
        assert outcomes.count("rejected") == 7


class TestEventTrail:
    def test_sequences_are_per_pair(self, clock: FixedClock) -> None:
        trail = EventTrail(clock=clock)
        trail.record("frontend", "staging", "build_started", state=PipelineState.BUILDING)
        clock.advance(5)
        trail.record("frontend", "staging", "build_succeeded", digest="sha256:abc")
        trail.record("frontend", "production", "promotion_requested")

        events = trail.events("frontend", "staging")

        assert [e.sequence for e in events] == [1, 2]
        assert events[0].state == PipelineState.BUILDING
        assert events[1].detail == {"digest": "sha256:abc"}
        assert events[1].timestamp > events[0].timestamp
        assert trail.kinds("frontend", "production") == ["promotion_requested"]
        assert trail.events("backend", "staging") == ()
