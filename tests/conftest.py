"""Shared fixtures for convoy-core tests.

Provides a three-service pipeline config, in-memory collaborator fakes, a
controllable clock, and fully wired state machine and orchestrator
instances. Everything runs in-process; no subprocess, network or registry
is touched unless a test opts in.
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import structlog

from convoy_core.collaborators import ApplyResult, BuildResult
from convoy_core.events import EventTrail
from convoy_core.guard import PairGuard
from convoy_core.history import InMemoryDeploymentHistory
from convoy_core.orchestrator import PipelineOrchestrator
from convoy_core.schemas.config import PipelineConfig, ServiceConfig
from convoy_core.schemas.deployment import (
    Deployment,
    DeploymentStatus,
    TagKind,
    TriggerEvent,
    TriggerKind,
)
from convoy_core.schemas.security import Finding, VulnerabilityReport
from convoy_core.state_machine import PromotionStateMachine
from convoy_core.telemetry import reset_tracer

START = datetime(2024, 1, 26, 14, 30, 22, tzinfo=timezone.utc)
SHA = "3f9c2ab7d1e04c55"
ROLLING_ALIASES = {
    "development": ("dev",),
    "staging": ("stage",),
    "production": ("prod", "latest"),
}


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "requirement(id): mark test as validating a specific requirement",
    )


def make_digest(seed: str) -> str:
    """Deterministic sha256 image digest for ``seed``."""
    return "sha256:" + hashlib.sha256(seed.encode("utf-8")).hexdigest()


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeBuilder:
    """Build collaborator that 'pushes' by hashing the image reference."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_with: str | None = None
        self.raise_with: Exception | None = None
        self.on_build: Callable[[], None] | None = None

    def build(self, service: ServiceConfig, image_ref: str) -> BuildResult:
        self.calls.append(image_ref)
        if self.on_build is not None:
            self.on_build()
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with is not None:
            return BuildResult(success=False, log=self.fail_with)
        return BuildResult(success=True, digest=make_digest(image_ref), log="pushed")


class FakeScanner:
    """Scan collaborator returning a configurable set of findings."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.findings: list[Finding] = []

    def scan(self, image_ref: str) -> VulnerabilityReport:
        self.calls.append(image_ref)
        return VulnerabilityReport(findings=self.findings, scanner="fake", image_ref=image_ref)


class FakeManifest:
    """Manifest collaborator recording applies.

    Set ``block`` to make ``apply`` wait on it; ``entered`` is set once a
    call is inside ``apply``.
    """

    def __init__(self) -> None:
        self.applied: list[tuple[str, str, str, str]] = []
        self.fail_with: str | None = None
        self.raise_with: Exception | None = None
        self.block: threading.Event | None = None
        self.entered = threading.Event()
        self.on_apply: Callable[[], None] | None = None

    def apply(self, service: str, environment: str, tag: str, image_ref: str) -> ApplyResult:
        self.entered.set()
        if self.block is not None:
            self.block.wait(timeout=10)
        if self.on_apply is not None:
            self.on_apply()
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with is not None:
            return ApplyResult(success=False, detail=self.fail_with)
        self.applied.append((service, environment, tag, image_ref))
        return ApplyResult(success=True, detail="synced")


class RecordingSink:
    """Reporting sink keeping every report in memory."""

    def __init__(self) -> None:
        self.reports: list[tuple[str, dict[str, Any]]] = []

    def report(self, event_type: str, payload: dict[str, Any]) -> None:
        self.reports.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.reports]


@pytest.fixture(autouse=True)
def _reset_logging_and_tracing() -> Generator[None, None, None]:
    """Undo CLI logging configuration and tracer overrides between tests."""
    yield
    structlog.reset_defaults()
    reset_tracer()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Default environments with frontend (web, ui), backend (api) and docs (dev only)."""
    return PipelineConfig.model_validate(
        {
            "services": [
                {
                    "name": "frontend",
                    "registry": "registry.example.com/shop/frontend",
                    "aliases": ["web", "ui"],
                },
                {
                    "name": "backend",
                    "registry": "registry.example.com/shop/backend",
                    "aliases": ["api"],
                },
                {
                    "name": "docs",
                    "registry": "registry.example.com/shop/docs",
                    "environments": ["development"],
                },
            ],
        }
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def manifest() -> FakeManifest:
    return FakeManifest()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def history() -> InMemoryDeploymentHistory:
    return InMemoryDeploymentHistory()


@pytest.fixture
def machine(
    pipeline_config: PipelineConfig,
    history: InMemoryDeploymentHistory,
    manifest: FakeManifest,
    sink: RecordingSink,
    clock: FixedClock,
) -> PromotionStateMachine:
    return PromotionStateMachine(
        pipeline_config,
        history,
        manifest,
        guard=PairGuard(clock=clock),
        trail=EventTrail(clock=clock),
        sink=sink,
        clock=clock,
    )


@pytest.fixture
def orchestrator(
    pipeline_config: PipelineConfig,
    builder: FakeBuilder,
    scanner: FakeScanner,
    manifest: FakeManifest,
    history: InMemoryDeploymentHistory,
    sink: RecordingSink,
    clock: FixedClock,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        pipeline_config,
        builder=builder,
        scanner=scanner,
        manifest=manifest,
        history=history,
        sink=sink,
        clock=clock,
    )


@pytest.fixture
def make_trigger() -> Callable[..., TriggerEvent]:
    """Factory for build triggers; pass exactly one of branch/pr_number/dispatch_environment."""

    def _make(service: str = "frontend", **overrides: Any) -> TriggerEvent:
        fields: dict[str, Any] = {
            "service": service,
            "commit_sha": SHA,
            "timestamp": START,
            "actor": "ci-bot",
        }
        fields.update(overrides)
        if "kind" not in fields:
            if fields.get("pr_number") is not None:
                fields["kind"] = TriggerKind.PULL_REQUEST
            elif fields.get("dispatch_environment") is not None:
                fields["kind"] = TriggerKind.DISPATCH
            else:
                fields["kind"] = TriggerKind.PUSH
        return TriggerEvent(**fields)

    return _make


@pytest.fixture
def seed_history(
    history: InMemoryDeploymentHistory,
    clock: FixedClock,
) -> Callable[..., list[Deployment]]:
    """Append records for a pair: ``seed_history("frontend", "production", "a", "b")``.

    Tags prefixed with ``!`` are recorded as failed.
    """

    def _seed(service: str, environment: str, *tags: str) -> list[Deployment]:
        stored = []
        for tag in tags:
            failed = tag.startswith("!")
            value = tag.lstrip("!")
            stored.append(
                history.append(
                    Deployment(
                        service=service,
                        environment=environment,
                        tag=value,
                        tag_kind=TagKind.TIMESTAMPED,
                        aliases=ROLLING_ALIASES.get(environment, ()),
                        digest=make_digest(f"{service}:{value}"),
                        status=DeploymentStatus.FAILED if failed else DeploymentStatus.SUCCEEDED,
                        deployed_at=clock(),
                        operator="seed",
                    )
                )
            )
            clock.advance(60)
        return stored

    return _seed


@pytest.fixture
def digest() -> Callable[[str], str]:
    """The ``make_digest`` helper, for tests that need a valid image digest."""
    return make_digest
