"""Append-only deployment history per (service, environment).

History is the single source of truth for what is deployed where. Records
are only ever appended; the "current" deployment is the latest succeeded
entry, and rolling aliases (``dev``, ``prod``, ``latest``) are derived from
it rather than stored.

Two backends share the same interface:

- :class:`InMemoryDeploymentHistory`: process-local, used by tests and
  embedded callers.
- :class:`JsonLinesDeploymentHistory`: one JSON object per line in
  ``history.jsonl``; each append writes and flushes a whole line under the
  lock, so a reader never observes a partial record.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from pathlib import Path

import structlog
from pydantic import ValidationError

from convoy_core.errors import ConfigurationError
from convoy_core.schemas.deployment import Deployment, ImageTag, TagKind

logger = structlog.get_logger(__name__)

HISTORY_FILENAME = "history.jsonl"

PairKey = tuple[str, str]


class DeploymentHistory:
    """Thread-safe, append-only deployment history.

    Readers get tuple snapshots, which are a consistent prefix of the log.
    """

    def __init__(self) -> None:
        self._records: dict[PairKey, list[Deployment]] = defaultdict(list)
        self._lock = threading.Lock()

    def _persist(self, record: Deployment) -> None:
        """Hook called under the lock after a record is assigned its sequence."""

    def append(self, record: Deployment) -> Deployment:
        """Append a record, assigning its 1-based sequence within the pair.

        Returns:
            The stored record (with ``sequence`` set).
        """
        key = (record.service, record.environment)
        with self._lock:
            stored = record.model_copy(update={"sequence": len(self._records[key]) + 1})
            self._persist(stored)
            self._records[key].append(stored)
        logger.debug(
            "deployment_recorded",
            service=stored.service,
            environment=stored.environment,
            tag=stored.tag,
            status=stored.status.value,
            sequence=stored.sequence,
        )
        return stored

    def entries(self, service: str, environment: str) -> tuple[Deployment, ...]:
        """All records for the pair, oldest first."""
        with self._lock:
            return tuple(self._records.get((service, environment), ()))

    def succeeded(self, service: str, environment: str) -> tuple[Deployment, ...]:
        """Succeeded records for the pair, oldest first."""
        return tuple(d for d in self.entries(service, environment) if d.succeeded)

    def current(self, service: str, environment: str) -> Deployment | None:
        """Latest succeeded deployment, or None."""
        succeeded = self.succeeded(service, environment)
        return succeeded[-1] if succeeded else None

    def previous(self, service: str, environment: str) -> Deployment | None:
        """Succeeded deployment immediately before the current one, or None."""
        succeeded = self.succeeded(service, environment)
        return succeeded[-2] if len(succeeded) >= 2 else None

    def find(self, service: str, environment: str, version: str) -> Deployment | None:
        """Most recent succeeded record whose tag or digest equals ``version``."""
        for record in reversed(self.succeeded(service, environment)):
            if record.matches_version(version):
                return record
        return None

    def environments(self, service: str) -> list[str]:
        """Environments with at least one record for the service."""
        with self._lock:
            return [
                env
                for (svc, env), records in self._records.items()
                if svc == service and records
            ]

    def rolling_aliases(self, service: str) -> dict[str, Deployment]:
        """Map each rolling alias to the deployment it currently points at."""
        aliases: dict[str, Deployment] = {}
        for environment in self.environments(service):
            current = self.current(service, environment)
            if current is None:
                continue
            for alias in current.aliases:
                aliases[alias] = current
        return aliases

    def rolling_tags(self, service: str) -> list[ImageTag]:
        """Rolling aliases as branch-rolling tags bound to the environment they point into."""
        return [
            ImageTag(value=alias, kind=TagKind.BRANCH_ROLLING, environment=d.environment)
            for alias, d in self.rolling_aliases(service).items()
        ]


class InMemoryDeploymentHistory(DeploymentHistory):
    """Process-local history."""


class JsonLinesDeploymentHistory(DeploymentHistory):
    """History persisted as JSON lines in ``{state_dir}/history.jsonl``.

    Args:
        state_dir: Directory holding the history file; created if missing.

    Raises:
        ConfigurationError: If an existing history file holds an invalid record.
    """

    def __init__(self, state_dir: str | Path) -> None:
        super().__init__()
        self.path = Path(state_dir) / HISTORY_FILENAME
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with self.path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    record = Deployment.model_validate_json(line)
                except ValidationError as e:
                    raise ConfigurationError(
                        f"invalid history record on line {lineno}: {e.error_count()} error(s)",
                        source=str(self.path),
                    ) from e
                self._records[(record.service, record.environment)].append(record)
        logger.debug("history_loaded", path=str(self.path))

    def _persist(self, record: Deployment) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(record.model_dump_json() + "\n")
            fh.flush()


__all__: list[str] = [
    "DeploymentHistory",
    "HISTORY_FILENAME",
    "InMemoryDeploymentHistory",
    "JsonLinesDeploymentHistory",
]
