"""Ordered, append-only trail of pipeline events per (service, environment)."""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from convoy_core.guard import utc_now
from convoy_core.schemas.deployment import PipelineEvent, PipelineState

logger = structlog.get_logger(__name__)

VERIFY_SCOPE = "verify"
"""Trail scope for feature-branch and pull-request runs."""


class EventTrail:
    """Records every transition as a :class:`PipelineEvent`.

    Each event is also logged, using its kind as the structlog event name.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._events: dict[tuple[str, str], list[PipelineEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def record(
        self,
        service: str,
        environment: str,
        kind: str,
        *,
        state: PipelineState | None = None,
        tag: str | None = None,
        run_id: str | None = None,
        **detail: Any,
    ) -> PipelineEvent:
        key = (service, environment)
        with self._lock:
            event = PipelineEvent(
                sequence=len(self._events[key]) + 1,
                timestamp=self._clock(),
                service=service,
                environment=environment,
                kind=kind,
                state=state,
                tag=tag,
                run_id=run_id,
                detail=detail,
            )
            self._events[key].append(event)
        logger.info(
            kind,
            service=service,
            environment=environment,
            state=state.value if state is not None else None,
            tag=tag,
            run_id=run_id,
            **detail,
        )
        return event

    def events(self, service: str, environment: str) -> tuple[PipelineEvent, ...]:
        with self._lock:
            return tuple(self._events.get((service, environment), ()))

    def kinds(self, service: str, environment: str) -> list[str]:
        return [event.kind for event in self.events(service, environment)]


__all__: list[str] = ["EventTrail", "VERIFY_SCOPE"]
