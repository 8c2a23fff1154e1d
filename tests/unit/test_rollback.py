"""Unit tests for rollback parsing, resolution and execution."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from convoy_core.errors import (
    ConcurrentOperationError,
    DeploymentError,
    InsufficientHistoryError,
    ParseError,
    VersionNotFoundError,
)
from convoy_core.history import InMemoryDeploymentHistory
from convoy_core.rollback import (
    DEFAULT_COMMENT_REASON,
    DEFAULT_DISPATCH_REASON,
    RollbackCoordinator,
)
from convoy_core.schemas.deployment import (
    Deployment,
    DeploymentStatus,
    PipelineState,
    RollbackRequest,
)
from convoy_core.state_machine import PromotionStateMachine

from conftest import FakeManifest, RecordingSink, make_digest

SeedHistory = Callable[..., list[Deployment]]


@pytest.fixture
def coordinator(machine: PromotionStateMachine) -> RollbackCoordinator:
    return RollbackCoordinator(machine)


def _request(version: str | None = None, environment: str = "production") -> RollbackRequest:
    return RollbackRequest(
        service="frontend",
        environment=environment,
        target_version=version,
        reason="bad release",
        requested_by="oncall",
    )


# =============================================================================
# Parsing
# =============================================================================


class TestParseCommand:
    """Tests for the /rollback comment grammar."""

    @pytest.mark.requirement("rollback.parse")
    def test_explicit_version(self, coordinator: RollbackCoordinator) -> None:
        request = coordinator.parse_command("/rollback frontend production v20240126.143022")

        assert request.service == "frontend"
        assert request.environment == "production"
        assert request.target_version == "v20240126.143022"
        assert request.reason == DEFAULT_COMMENT_REASON
        assert request.source == "comment"

    def test_aliases_and_reason(self, coordinator: RollbackCoordinator) -> None:
        """Test service and environment aliases resolve to canonical names."""
        request = coordinator.parse_command(
            "/rollback web prod prod-20240126-143022 login broken after deploy",
            requested_by="alice",
        )

        assert (request.service, request.environment) == ("frontend", "production")
        assert request.target_version == "prod-20240126-143022"
        assert request.reason == "login broken after deploy"
        assert request.requested_by == "alice"

    def test_reason_without_version(self, coordinator: RollbackCoordinator) -> None:
        """Test a non-version third token starts the reason."""
        request = coordinator.parse_command("/rollback api staging errors spiking")

        assert request.service == "backend"
        assert request.target_version is None
        assert request.reason == "errors spiking"

    def test_digest_version(self, coordinator: RollbackCoordinator) -> None:
        digest = make_digest("x")

        request = coordinator.parse_command(f"/rollback frontend production {digest}")

        assert request.target_version == digest

    def test_dotted_version(self, coordinator: RollbackCoordinator) -> None:
        """Test a bare dotted number is a version, not the start of the reason."""
        request = coordinator.parse_command("/rollback frontend production 1.4.2 login broken")

        assert request.target_version == "1.4.2"
        assert request.reason == "login broken"

    def test_bare_number_starts_reason(self, coordinator: RollbackCoordinator) -> None:
        request = coordinator.parse_command("/rollback frontend production 2 users affected")

        assert request.target_version is None
        assert request.reason == "2 users affected"

    @pytest.mark.requirement("rollback.parse")
    def test_unknown_service(self, coordinator: RollbackCoordinator) -> None:
        with pytest.raises(ParseError) as exc_info:
            coordinator.parse_command("/rollback unknown-svc staging")

        assert exc_info.value.problems == [
            "unknown service or alias 'unknown-svc' (known: api, backend, docs, frontend, ui, web)"
        ]
        assert exc_info.value.exit_code == 2

    def test_all_problems_reported_together(self, coordinator: RollbackCoordinator) -> None:
        with pytest.raises(ParseError) as exc_info:
            coordinator.parse_command("/rollback nope qa")

        problems = exc_info.value.problems
        assert len(problems) == 2
        assert "unknown service or alias 'nope'" in problems[0]
        assert "unknown environment 'qa'" in problems[1]

    @pytest.mark.parametrize(
        ("text", "problem"),
        [
            ("/rollback", "missing service"),
            ("/rollback frontend", "missing environment"),
            ("rollback frontend production", "must start with /rollback"),
            ("", "must start with /rollback"),
        ],
    )
    def test_incomplete_commands(
        self, coordinator: RollbackCoordinator, text: str, problem: str
    ) -> None:
        with pytest.raises(ParseError, match=problem):
            coordinator.parse_command(text)

    def test_unsupported_environment(self, coordinator: RollbackCoordinator) -> None:
        with pytest.raises(ParseError, match="does not deploy to 'production'"):
            coordinator.parse_command("/rollback docs production")


class TestParseDispatch:
    def test_full_payload(self, coordinator: RollbackCoordinator) -> None:
        request = coordinator.parse_dispatch(
            {
                "service": "ui",
                "environment": "stage",
                "version": "stage-20240126-143022-rc.4",
                "reason": "  smoke tests failing ",
            },
            requested_by="gh-actions",
        )

        assert (request.service, request.environment) == ("frontend", "staging")
        assert request.target_version == "stage-20240126-143022-rc.4"
        assert request.reason == "smoke tests failing"
        assert request.source == "dispatch"

    def test_defaults(self, coordinator: RollbackCoordinator) -> None:
        request = coordinator.parse_dispatch({"service": "frontend", "environment": "production"})

        assert request.target_version is None
        assert request.reason == DEFAULT_DISPATCH_REASON

    def test_invalid_payload(self, coordinator: RollbackCoordinator) -> None:
        """Test unknown keys, wrong types and missing fields are all reported."""
        with pytest.raises(ParseError) as exc_info:
            coordinator.parse_dispatch({"service": 42, "env": "prod"})

        problems = exc_info.value.problems
        assert "unknown payload keys ['env']" in problems
        assert "'service' must be a non-empty string" in problems
        assert "missing environment" in problems


# =============================================================================
# Resolution and execution
# =============================================================================


class TestResolve:
    """Choosing the record to redeploy."""

    @pytest.mark.requirement("rollback.implicit")
    def test_implicit_target_is_previous(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        a, b = seed_history("frontend", "production", "prod-a", "prod-b")

        plan = coordinator.resolve(_request())

        assert plan.target == a
        assert plan.superseded == b

    def test_failed_records_are_skipped(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        a, _, c, _ = seed_history("frontend", "production", "prod-a", "!prod-b", "prod-c", "!d")

        plan = coordinator.resolve(_request())

        assert plan.target == a
        assert plan.superseded == c

    @pytest.mark.requirement("rollback.insufficient-history")
    def test_single_record(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        seed_history("frontend", "production", "prod-a")

        with pytest.raises(InsufficientHistoryError) as exc_info:
            coordinator.resolve(_request())

        assert exc_info.value.succeeded_count == 1
        assert exc_info.value.exit_code == 12

    def test_empty_history_with_version(self, coordinator: RollbackCoordinator) -> None:
        """Test an explicit version against empty history is reported as not found."""
        with pytest.raises(VersionNotFoundError) as exc_info:
            coordinator.resolve(_request(version="prod-a"))

        assert exc_info.value.available_versions == []
        assert exc_info.value.exit_code == 11

    def test_empty_history_without_version(self, coordinator: RollbackCoordinator) -> None:
        with pytest.raises(InsufficientHistoryError) as exc_info:
            coordinator.resolve(_request())

        assert exc_info.value.succeeded_count == 0

    def test_dotted_version_not_in_history(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        """Test an unknown dotted version is not replaced by the previous record."""
        seed_history("frontend", "production", "prod-a", "prod-b", "prod-c")

        with pytest.raises(VersionNotFoundError) as exc_info:
            coordinator.resolve(coordinator.parse_command("/rollback frontend production 1.4.2"))

        assert exc_info.value.version == "1.4.2"
        assert exc_info.value.available_versions == ["prod-c", "prod-b", "prod-a"]

    @pytest.mark.requirement("rollback.explicit")
    def test_explicit_version(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        a, _, c = seed_history("frontend", "production", "prod-a", "prod-b", "prod-c")

        plan = coordinator.resolve(_request(version="prod-a"))

        assert plan.target == a
        assert plan.superseded == c

    def test_explicit_digest(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        a, _ = seed_history("frontend", "production", "prod-a", "prod-b")

        plan = coordinator.resolve(_request(version=make_digest("frontend:prod-a")))

        assert plan.target == a

    @pytest.mark.requirement("rollback.version-not-found")
    def test_missing_version_lists_available(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        seed_history("frontend", "production", "prod-a", "!prod-b", "prod-c")

        with pytest.raises(VersionNotFoundError) as exc_info:
            coordinator.resolve(_request(version="v9.9.9"))

        assert exc_info.value.available_versions == ["prod-c", "prod-a"]
        assert "prod-c, prod-a" in str(exc_info.value)

    def test_failed_version_is_not_a_target(
        self, coordinator: RollbackCoordinator, seed_history: SeedHistory
    ) -> None:
        seed_history("frontend", "production", "prod-a", "!prod-b", "prod-c")

        with pytest.raises(VersionNotFoundError):
            coordinator.resolve(_request(version="prod-b"))


class TestExecute:
    """Redeploying and appending the rollback record."""

    @pytest.mark.requirement("rollback.append")
    def test_appends_rollback_record(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
        manifest: FakeManifest,
        sink: RecordingSink,
    ) -> None:
        """Test [A, B] rolls back to A, appending a third record pointing at B."""
        a, b = seed_history("frontend", "production", "prod-a", "prod-b")

        deployment = coordinator.execute(_request())

        entries = history.entries("frontend", "production")
        assert [d.tag for d in entries] == ["prod-a", "prod-b", "prod-a"]
        assert entries[:2] == (a, b)
        assert deployment.sequence == 3
        assert deployment.source == "rollback"
        assert deployment.rolled_back_from == b.deployment_id
        assert deployment.reason == "bad release"
        assert deployment.operator == "oncall"
        assert deployment.digest == a.digest
        assert history.current("frontend", "production") == deployment
        assert manifest.applied[-1][3] == f"registry.example.com/shop/frontend@{a.digest}"
        assert sink.types() == ["deploy", "rollback"]
        assert sink.reports[1][1]["previous_tag"] == "prod-b"

    @pytest.mark.requirement("rollback.aliases")
    def test_rolling_aliases_follow_rollback(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
    ) -> None:
        seed_history("frontend", "production", "prod-a", "prod-b")
        assert history.rolling_aliases("frontend")["latest"].tag == "prod-b"

        coordinator.execute(_request())

        aliases = history.rolling_aliases("frontend")
        assert aliases["prod"].tag == "prod-a"
        assert aliases["latest"].tag == "prod-a"

    def test_explicit_rollback_to_current_appends(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
    ) -> None:
        """Test redeploying the current version is allowed and recorded."""
        _, b = seed_history("frontend", "production", "prod-a", "prod-b")

        deployment = coordinator.execute(_request(version="prod-b"))

        assert deployment.tag == "prod-b"
        assert deployment.rolled_back_from == b.deployment_id
        assert len(history.entries("frontend", "production")) == 3

    def test_consecutive_rollbacks(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
    ) -> None:
        """Test a second implicit rollback returns to the version before the first."""
        seed_history("frontend", "production", "prod-a", "prod-b")

        coordinator.execute(_request())
        second = coordinator.execute(_request())

        assert second.tag == "prod-b"
        assert [d.tag for d in history.entries("frontend", "production")] == [
            "prod-a",
            "prod-b",
            "prod-a",
            "prod-b",
        ]

    def test_failed_sync_appends_failed_record(
        self,
        coordinator: RollbackCoordinator,
        machine: PromotionStateMachine,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
        manifest: FakeManifest,
    ) -> None:
        seed_history("frontend", "production", "prod-a", "prod-b")
        manifest.fail_with = "cluster unreachable"

        with pytest.raises(DeploymentError):
            coordinator.execute(_request())

        last = history.entries("frontend", "production")[-1]
        assert last.status == DeploymentStatus.FAILED
        current = history.current("frontend", "production")
        assert current is not None and current.tag == "prod-b"
        assert machine.get_state("frontend", "production").state == PipelineState.FAILED

    def test_resolution_errors_release_the_pair(
        self,
        coordinator: RollbackCoordinator,
        machine: PromotionStateMachine,
        seed_history: SeedHistory,
    ) -> None:
        seed_history("frontend", "production", "prod-a")

        with pytest.raises(InsufficientHistoryError):
            coordinator.execute(_request())

        assert machine.guard.holder("frontend", "production") is None

    def test_busy_pair_is_rejected(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        manifest: FakeManifest,
        history: InMemoryDeploymentHistory,
    ) -> None:
        """Test a rollback during another rollback on the same pair is refused."""
        seed_history("frontend", "production", "prod-a", "prod-b")
        manifest.block = threading.Event()
        worker = threading.Thread(target=coordinator.execute, args=(_request(),))
        worker.start()
        assert manifest.entered.wait(timeout=5)

        with pytest.raises(ConcurrentOperationError) as exc_info:
            coordinator.execute(_request(version="prod-b"))

        manifest.block.set()
        worker.join(timeout=5)
        assert exc_info.value.held_by == "rollback"
        assert len(history.entries("frontend", "production")) == 3

    def test_preview_does_not_deploy(
        self,
        coordinator: RollbackCoordinator,
        seed_history: SeedHistory,
        history: InMemoryDeploymentHistory,
        manifest: FakeManifest,
    ) -> None:
        a, _ = seed_history("frontend", "production", "prod-a", "prod-b")

        plan = coordinator.preview(_request())

        assert plan.target == a
        assert manifest.applied == []
        assert len(history.entries("frontend", "production")) == 2
