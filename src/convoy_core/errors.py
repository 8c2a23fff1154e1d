"""Exception hierarchy for the convoy pipeline core.

All custom exceptions inherit from PipelineError, so callers can catch every
pipeline failure with a single except clause. Errors raised against a
(service, environment) pair carry that context, plus the tag when one is
known, so every surfaced failure is traceable.

Exception Hierarchy:
    PipelineError (base)
    ├── ConfigurationError        # Invalid or conflicting configuration
    ├── ParseError                # Malformed rollback command or payload
    ├── TagResolutionError        # Trigger cannot be turned into a tag
    ├── ScanReportParseError      # Scanner output is not valid JSON
    └── PairError                 # Errors scoped to a (service, environment) pair
        ├── VersionNotFoundError
        ├── InsufficientHistoryError
        ├── ConcurrentOperationError
        ├── InvalidTransitionError
        ├── InvalidStateError
        ├── ApprovalRequiredError
        ├── BuildFailureError
        ├── GateBlockedError
        ├── OperationTimeoutError
        └── DeploymentError

Exit Codes:
    0  - Success
    1  - General error (PipelineError)
    2  - Parse / usage error (ParseError, TagResolutionError)
    3  - Configuration error
    9  - Security gate blocked
    11 - Version not found in deployment history
    12 - Insufficient deployment history for rollback
    13 - Concurrent operation on the same pair (retry later)
    14 - Invalid promotion transition or state
    15 - Required approvals missing
    16 - Build failed
    17 - Operation timed out
    18 - Deployment (manifest sync) failed
    19 - Scanner output could not be parsed

Example:
    >>> from convoy_core.errors import VersionNotFoundError
    >>> raise VersionNotFoundError("frontend", "production", "v1.0.0")
    Traceback (most recent call last):
        ...
    VersionNotFoundError: Version v1.0.0 not found in frontend/production history [...]
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from convoy_core.schemas.security import Finding


class PipelineError(Exception):
    """Base exception for all pipeline core errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
        retryable: Whether the same request may succeed if retried later.
    """

    exit_code: int = 1
    retryable: bool = False


class ConfigurationError(PipelineError):
    """Raised when pipeline configuration is invalid or self-contradictory.

    Attributes:
        reason: Description of the configuration problem.
        source: Config file path or setting name, if known.
    """

    exit_code: int = 3

    def __init__(self, reason: str, source: str | None = None) -> None:
        self.reason = reason
        self.source = source
        msg = f"Invalid configuration: {reason}"
        if source:
            msg += f" (source: {source})"
        super().__init__(msg)


class ParseError(PipelineError):
    """Raised when a rollback command or dispatch payload cannot be parsed.

    Every problem found is collected in ``problems`` so the requester sees
    all of them at once rather than fixing one per round trip.

    Attributes:
        text: The raw input that failed to parse.
        problems: All problems detected, in input order.

    Example:
        >>> raise ParseError(
        ...     "/rollback unknown-svc staging",
        ...     ["unknown service or alias 'unknown-svc'"],
        ... )
        Traceback (most recent call last):
            ...
        ParseError: Cannot parse rollback request: unknown service or alias 'unknown-svc'
    """

    exit_code: int = 2

    def __init__(self, text: str, problems: list[str]) -> None:
        self.text = text
        self.problems = list(problems)
        super().__init__(f"Cannot parse rollback request: {'; '.join(self.problems)}")


class TagResolutionError(PipelineError):
    """Raised when a trigger descriptor cannot be resolved to an image tag."""

    exit_code: int = 2

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Cannot resolve image tag: {reason}")


class ScanReportParseError(PipelineError):
    """Raised when security scanner output cannot be parsed.

    Attributes:
        scanner_format: Scanner format that failed (trivy, grype).
        raw_output: First 500 chars of the problematic output.
    """

    exit_code: int = 19

    def __init__(
        self,
        message: str,
        scanner_format: str = "unknown",
        raw_output: str | None = None,
    ) -> None:
        self.message = message
        self.scanner_format = scanner_format
        self.raw_output = raw_output[:500] if raw_output else None
        super().__init__(f"{scanner_format}: {message}")


class PairError(PipelineError):
    """Base for errors scoped to a (service, environment) pair.

    Attributes:
        service: Canonical service name.
        environment: Environment name.
        tag: Image tag involved, if known.
    """

    def __init__(
        self,
        message: str,
        service: str,
        environment: str,
        tag: str | None = None,
    ) -> None:
        self.service = service
        self.environment = environment
        self.tag = tag
        self.message = message
        context = f"service={service}, environment={environment}"
        if tag:
            context += f", tag={tag}"
        super().__init__(f"{message} [{context}]")


class VersionNotFoundError(PairError):
    """Raised when a version is not a succeeded entry in the pair's history.

    Attributes:
        available_versions: Succeeded versions in the history, newest first.

    Example:
        >>> raise VersionNotFoundError(
        ...     "frontend", "production", "v9.9.9",
        ...     available_versions=["prod-20240126-143022"],
        ... )
    """

    exit_code: int = 11

    def __init__(
        self,
        service: str,
        environment: str,
        version: str,
        available_versions: list[str] | None = None,
    ) -> None:
        self.version = version
        self.available_versions = list(available_versions or [])
        msg = f"Version {version} not found in {service}/{environment} history"
        if self.available_versions:
            preview = ", ".join(self.available_versions[:5])
            if len(self.available_versions) > 5:
                preview += f" (and {len(self.available_versions) - 5} more)"
            msg += f". Available versions: {preview}"
        super().__init__(msg, service, environment, tag=version)


class InsufficientHistoryError(PairError):
    """Raised when a rollback needs a previous deployment that does not exist.

    Attributes:
        succeeded_count: Number of succeeded entries in the history.
    """

    exit_code: int = 12

    def __init__(self, service: str, environment: str, succeeded_count: int) -> None:
        self.succeeded_count = succeeded_count
        super().__init__(
            f"Cannot roll back: {service}/{environment} has {succeeded_count} "
            "succeeded deployment(s), at least 2 are required",
            service,
            environment,
        )


class ConcurrentOperationError(PairError):
    """Raised when another operation holds the pair.

    The pair is not queued; the caller should retry after the in-flight
    operation completes or times out.

    Attributes:
        held_by: Operation currently holding the pair (build, promote, rollback).
        run_id: Identifier of the in-flight run.
    """

    exit_code: int = 13
    retryable: bool = True

    def __init__(
        self,
        service: str,
        environment: str,
        held_by: str,
        run_id: str,
        tag: str | None = None,
    ) -> None:
        self.held_by = held_by
        self.run_id = run_id
        super().__init__(
            f"Another {held_by} operation (run {run_id}) is in flight; retry after it completes",
            service,
            environment,
            tag=tag,
        )


class InvalidTransitionError(PairError):
    """Raised when a promotion request violates the environment rank order.

    Attributes:
        from_env: Source environment name.
        to_env: Target environment name.
        reason: Why the transition was rejected.
    """

    exit_code: int = 14

    def __init__(
        self,
        service: str,
        from_env: str,
        to_env: str,
        reason: str,
        tag: str | None = None,
    ) -> None:
        self.from_env = from_env
        self.to_env = to_env
        self.reason = reason
        super().__init__(
            f"Invalid promotion {from_env} -> {to_env}: {reason}",
            service,
            to_env,
            tag=tag,
        )


class InvalidStateError(PairError):
    """Raised when the state machine cannot move from its current state."""

    exit_code: int = 14

    def __init__(
        self,
        service: str,
        environment: str,
        current: str,
        attempted: str,
        tag: str | None = None,
    ) -> None:
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot transition from {current} to {attempted}",
            service,
            environment,
            tag=tag,
        )


class ApprovalRequiredError(PairError):
    """Raised when a promotion lacks the environment's required approvals."""

    exit_code: int = 15

    def __init__(
        self,
        service: str,
        environment: str,
        tag: str,
        required: int,
        received: int,
    ) -> None:
        self.required = required
        self.received = received
        super().__init__(
            f"Promotion requires {required} approval(s), got {received}",
            service,
            environment,
            tag=tag,
        )


class BuildFailureError(PairError):
    """Raised when the build collaborator reports failure. Terminal for the run."""

    exit_code: int = 16

    def __init__(
        self,
        service: str,
        environment: str,
        tag: str,
        reason: str,
    ) -> None:
        self.reason = reason
        super().__init__(f"Build failed: {reason}", service, environment, tag=tag)


class GateBlockedError(PairError):
    """Raised when the security gate blocks a build. Terminal for the run.

    Attributes:
        findings: Offending findings, most severe first.
    """

    exit_code: int = 9

    def __init__(
        self,
        service: str,
        environment: str,
        tag: str,
        findings: list[Finding],
    ) -> None:
        self.findings = list(findings)
        ids = ", ".join(f.id for f in self.findings[:10])
        if len(self.findings) > 10:
            ids += f" (and {len(self.findings) - 10} more)"
        super().__init__(
            f"Security gate blocked: {len(self.findings)} offending finding(s): {ids}",
            service,
            environment,
            tag=tag,
        )


class OperationTimeoutError(PairError):
    """Raised when a run outlived the configured timeout and was expired."""

    exit_code: int = 17

    def __init__(
        self,
        service: str,
        environment: str,
        run_id: str,
        timeout_seconds: float,
        tag: str | None = None,
    ) -> None:
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Run {run_id} exceeded {timeout_seconds:g}s and was marked failed",
            service,
            environment,
            tag=tag,
        )


class DeploymentError(PairError):
    """Raised when the manifest collaborator fails to apply a deployment."""

    exit_code: int = 18

    def __init__(
        self,
        service: str,
        environment: str,
        tag: str,
        reason: str,
    ) -> None:
        self.reason = reason
        super().__init__(f"Deployment failed: {reason}", service, environment, tag=tag)


__all__: list[str] = [
    "ApprovalRequiredError",
    "BuildFailureError",
    "ConcurrentOperationError",
    "ConfigurationError",
    "DeploymentError",
    "GateBlockedError",
    "InsufficientHistoryError",
    "InvalidStateError",
    "InvalidTransitionError",
    "OperationTimeoutError",
    "PairError",
    "ParseError",
    "PipelineError",
    "ScanReportParseError",
    "TagResolutionError",
    "VersionNotFoundError",
]
