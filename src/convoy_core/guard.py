"""Per-pair mutual exclusion for pipeline operations.

At most one build, promotion or rollback may be in flight for a given
(service, environment). The guard is not a queue: a second request is
rejected immediately with :class:`ConcurrentOperationError` and the caller
decides whether to retry.

Thread Safety:
    All hold bookkeeping is protected by a threading lock. The lock is never
    held while a collaborator is called.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from convoy_core.errors import ConcurrentOperationError

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Hold:
    """An in-flight operation on a pair.

    Attributes:
        run_id: Identifier of the run holding the pair.
        operation: build, promote or rollback.
        acquired_at: When the hold was taken.
        tag: Tag the operation works on, if known.
    """

    run_id: str
    operation: str
    acquired_at: datetime
    tag: str | None = None


class PairGuard:
    """Non-blocking try-acquire lock per (service, environment).

    Example:
        >>> guard = PairGuard()
        >>> hold = guard.try_acquire("frontend", "staging", "promote")
        >>> guard.try_acquire("frontend", "staging", "rollback")
        Traceback (most recent call last):
            ...
        ConcurrentOperationError: ...
        >>> guard.release("frontend", "staging", hold.run_id)
        True
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._holds: dict[tuple[str, str], Hold] = {}
        self._lock = threading.Lock()

    def try_acquire(
        self,
        service: str,
        environment: str,
        operation: str,
        tag: str | None = None,
        run_id: str | None = None,
    ) -> Hold:
        """Take the pair or raise.

        Raises:
            ConcurrentOperationError: If another operation holds the pair.
        """
        key = (service, environment)
        with self._lock:
            existing = self._holds.get(key)
            if existing is not None:
                logger.info(
                    "pair_busy",
                    service=service,
                    environment=environment,
                    held_by=existing.operation,
                    run_id=existing.run_id,
                    requested=operation,
                )
                raise ConcurrentOperationError(
                    service,
                    environment,
                    held_by=existing.operation,
                    run_id=existing.run_id,
                    tag=tag,
                )
            hold = Hold(
                run_id=run_id or uuid.uuid4().hex[:12],
                operation=operation,
                acquired_at=self._clock(),
                tag=tag,
            )
            self._holds[key] = hold
            return hold

    def release(self, service: str, environment: str, run_id: str) -> bool:
        """Release the pair if ``run_id`` still holds it.

        Returns:
            True if released, False if the pair is held by another run or free.
        """
        key = (service, environment)
        with self._lock:
            existing = self._holds.get(key)
            if existing is None or existing.run_id != run_id:
                return False
            del self._holds[key]
            return True

    def holder(self, service: str, environment: str) -> Hold | None:
        with self._lock:
            return self._holds.get((service, environment))

    def is_held_by(self, service: str, environment: str, run_id: str) -> bool:
        hold = self.holder(service, environment)
        return hold is not None and hold.run_id == run_id

    def stale(self, timeout_seconds: float) -> list[tuple[str, str, Hold]]:
        """Holds older than ``timeout_seconds``, as (service, environment, hold)."""
        cutoff = self._clock() - timedelta(seconds=timeout_seconds)
        with self._lock:
            return [
                (service, environment, hold)
                for (service, environment), hold in self._holds.items()
                if hold.acquired_at <= cutoff
            ]


__all__: list[str] = ["Hold", "PairGuard", "utc_now"]
