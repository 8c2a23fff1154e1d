"""Unit tests for convoy_core error types.

Tests the exception hierarchy, exit codes and the pair context every
surfaced failure carries.
"""

from __future__ import annotations

import pytest

from convoy_core.errors import (
    ApprovalRequiredError,
    BuildFailureError,
    ConcurrentOperationError,
    ConfigurationError,
    DeploymentError,
    GateBlockedError,
    InsufficientHistoryError,
    InvalidStateError,
    InvalidTransitionError,
    OperationTimeoutError,
    PairError,
    ParseError,
    PipelineError,
    ScanReportParseError,
    TagResolutionError,
    VersionNotFoundError,
)
from convoy_core.schemas.security import Finding, Severity

# =============================================================================
# Hierarchy and exit codes
# =============================================================================


class TestHierarchy:
    """Every error is a PipelineError with a distinct CLI exit code."""

    @pytest.mark.requirement("errors.exit-codes")
    @pytest.mark.parametrize(
        ("error", "exit_code"),
        [
            (ConfigurationError("bad"), 3),
            (ParseError("/rollback", ["missing service"]), 2),
            (TagResolutionError("no sha"), 2),
            (ScanReportParseError("bad json", "trivy"), 19),
            (VersionNotFoundError("frontend", "production", "v1"), 11),
            (InsufficientHistoryError("frontend", "production", 1), 12),
            (ConcurrentOperationError("frontend", "production", "promote", "run-1"), 13),
            (InvalidTransitionError("frontend", "staging", "development", "backward"), 14),
            (InvalidStateError("frontend", "production", "IDLE", "GATING"), 14),
            (ApprovalRequiredError("frontend", "production", "prod-a", 2, 0), 15),
            (BuildFailureError("frontend", "development", "dev-a", "oom"), 16),
            (GateBlockedError("frontend", "development", "dev-a", []), 9),
            (OperationTimeoutError("frontend", "development", "run-1", 1800), 17),
            (DeploymentError("frontend", "production", "prod-a", "sync failed"), 18),
        ],
    )
    def test_exit_codes(self, error: PipelineError, exit_code: int) -> None:
        """Test each error type maps to its documented exit code."""
        assert isinstance(error, PipelineError)
        assert error.exit_code == exit_code

    def test_only_concurrency_is_retryable(self) -> None:
        assert ConcurrentOperationError("a", "b", "build", "r").retryable is True
        assert DeploymentError("a", "b", "t", "x").retryable is False
        assert PipelineError().retryable is False

    def test_single_except_clause_catches_all(self) -> None:
        """Test callers can catch every pipeline failure at once."""
        with pytest.raises(PipelineError):
            raise InvalidStateError("frontend", "production", "IDLE", "GATING")


# =============================================================================
# Pair context
# =============================================================================


class TestPairContext:
    """Pair-scoped errors carry service, environment and tag."""

    @pytest.mark.requirement("errors.context")
    def test_context_in_message(self) -> None:
        error = DeploymentError("frontend", "production", "prod-a", "argocd timeout")

        assert isinstance(error, PairError)
        assert (error.service, error.environment, error.tag) == (
            "frontend",
            "production",
            "prod-a",
        )
        assert str(error) == (
            "Deployment failed: argocd timeout "
            "[service=frontend, environment=production, tag=prod-a]"
        )

    def test_tag_omitted_when_unknown(self) -> None:
        error = InsufficientHistoryError("frontend", "production", 0)

        assert error.tag is None
        assert str(error).endswith("[service=frontend, environment=production]")

    def test_invalid_transition_is_scoped_to_target(self) -> None:
        error = InvalidTransitionError(
            "frontend", "staging", "development", "backward", tag="stage-a"
        )

        assert error.environment == "development"
        assert error.from_env == "staging"
        assert "Invalid promotion staging -> development: backward" in str(error)


class TestMessages:
    def test_version_not_found_previews_available(self) -> None:
        versions = [f"prod-{i}" for i in range(7)]

        error = VersionNotFoundError("frontend", "production", "v9", available_versions=versions)

        assert error.available_versions == versions
        assert "prod-0, prod-1, prod-2, prod-3, prod-4 (and 2 more)" in str(error)
        assert error.tag == "v9"

    def test_parse_error_lists_every_problem(self) -> None:
        error = ParseError("/rollback x y", ["unknown service or alias 'x'", "unknown env 'y'"])

        assert error.problems == ["unknown service or alias 'x'", "unknown env 'y'"]
        assert str(error) == (
            "Cannot parse rollback request: unknown service or alias 'x'; unknown env 'y'"
        )

    def test_gate_blocked_truncates_ids(self) -> None:
        findings = [Finding(id=f"CVE-{i:02d}", severity=Severity.HIGH) for i in range(12)]

        error = GateBlockedError("frontend", "production", "prod-a", findings)

        assert len(error.findings) == 12
        assert "12 offending finding(s)" in str(error)
        assert "CVE-09 (and 2 more)" in str(error)
        assert "CVE-10" not in str(error)

    def test_configuration_error_source(self) -> None:
        error = ConfigurationError("collaborators.build_command is not set", source="convoy.yaml")

        assert str(error) == (
            "Invalid configuration: collaborators.build_command is not set (source: convoy.yaml)"
        )

    def test_scan_parse_error_truncates_output(self) -> None:
        error = ScanReportParseError("bad", "grype", raw_output="x" * 2000)

        assert error.raw_output is not None and len(error.raw_output) == 500
        assert str(error) == "grype: bad"
