"""Per-(service, environment) promotion state machine.

States and transitions::

    IDLE/PROMOTABLE/BLOCKED/DEPLOYED/FAILED --begin_build--> BUILDING
    BUILDING --build ok--> GATING            BUILDING --build failed--> FAILED
    GATING --gate PASS--> PROMOTABLE         GATING --gate BLOCK--> BLOCKED
    <resting> --promote/deploy/rollback--> DEPLOYING --> DEPLOYED | FAILED
    BUILDING/GATING/DEPLOYING --timeout--> FAILED

Every in-flight state is covered by a :class:`PairGuard` hold, so at most one
operation runs per pair. Collaborators are called without holding the
internal lock; results are committed only if the run still owns the pair,
so a late result from an expired run never touches state or history.

Example:
    >>> machine = PromotionStateMachine(config, history, manifest)
    >>> deployment = machine.promote(PromotionRequest(
    ...     service="frontend", from_environment="development",
    ...     to_environment="staging", source_tag="dev-abc1234",
    ...     approved_by=frozenset({"alice"}),
    ... ))
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from convoy_core.collaborators import (
    ApplyResult,
    BuildResult,
    LogReportingSink,
    ManifestCollaborator,
    ReportingSink,
)
from convoy_core.errors import (
    ApprovalRequiredError,
    BuildFailureError,
    ConfigurationError,
    DeploymentError,
    GateBlockedError,
    InvalidStateError,
    InvalidTransitionError,
    OperationTimeoutError,
    VersionNotFoundError,
)
from convoy_core.events import EventTrail
from convoy_core.guard import Hold, PairGuard, utc_now
from convoy_core.history import DeploymentHistory
from convoy_core.schemas.config import EnvironmentConfig, PipelineConfig, ServiceConfig
from convoy_core.schemas.deployment import (
    Deployment,
    DeploymentStatus,
    ImageTag,
    PairStatus,
    PipelineState,
    PromotionRequest,
    TagKind,
)
from convoy_core.schemas.security import GateEvaluation
from convoy_core.telemetry import create_span, current_trace_id

logger = structlog.get_logger(__name__)

PairKey = tuple[str, str]

_RESTING = frozenset(
    {
        PipelineState.IDLE,
        PipelineState.PROMOTABLE,
        PipelineState.BLOCKED,
        PipelineState.DEPLOYED,
        PipelineState.FAILED,
    }
)

ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset(),
    PipelineState.BUILDING: _RESTING,
    PipelineState.GATING: frozenset({PipelineState.BUILDING}),
    PipelineState.PROMOTABLE: frozenset({PipelineState.GATING}),
    PipelineState.BLOCKED: frozenset({PipelineState.GATING}),
    PipelineState.DEPLOYING: _RESTING,
    PipelineState.DEPLOYED: frozenset({PipelineState.DEPLOYING}),
    PipelineState.FAILED: frozenset(
        {PipelineState.BUILDING, PipelineState.GATING, PipelineState.DEPLOYING}
    ),
}
"""Target state -> states it may be entered from."""


@dataclass
class _Pair:
    state: PipelineState = PipelineState.IDLE
    pending: ImageTag | None = None
    candidate: ImageTag | None = None
    candidate_digest: str | None = None
    run_id: str | None = None
    updated_at: datetime | None = None
    expired_runs: set[str] = field(default_factory=set)

    @property
    def pending_tag(self) -> str | None:
        return self.pending.value if self.pending is not None else None


class PromotionStateMachine:
    """Owns pair state and writes promotion and pipeline deployments.

    Args:
        config: Pipeline configuration.
        history: Deployment history (shared with the rollback coordinator).
        manifest: Manifest collaborator that applies deployments.
        guard: Pair guard (shared with the rollback coordinator).
        trail: Event trail.
        sink: Reporting sink for deploy/promote/failure reports.
        clock: UTC clock.
    """

    def __init__(
        self,
        config: PipelineConfig,
        history: DeploymentHistory,
        manifest: ManifestCollaborator,
        *,
        guard: PairGuard | None = None,
        trail: EventTrail | None = None,
        sink: ReportingSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.history = history
        self.manifest = manifest
        self.clock = clock
        self.guard = guard or PairGuard(clock=clock)
        self.trail = trail or EventTrail(clock=clock)
        self.sink = sink or LogReportingSink()
        self._pairs: dict[PairKey, _Pair] = defaultdict(_Pair)
        self._lock = threading.Lock()
        self._log = logger.bind(environments=[e.name for e in config.environments])

    # Lookups

    def service(self, name: str) -> ServiceConfig:
        """Resolve a service by name or alias.

        Raises:
            ConfigurationError: If the service is not registered.
        """
        svc = self.config.get_service(name)
        if svc is None:
            raise ConfigurationError(f"service '{name}' is not registered", source="services")
        return svc

    def environment(self, service: ServiceConfig, name: str) -> EnvironmentConfig:
        """Resolve an environment (name or alias) the service deploys to.

        Raises:
            ConfigurationError: If the environment is unknown or unsupported.
        """
        env = self.config.get_environment(name)
        if env is None:
            raise ConfigurationError(
                f"environment '{name}' is not configured", source="environments"
            )
        if not self.config.supports(service, env.name):
            raise ConfigurationError(
                f"service '{service.name}' does not deploy to '{env.name}'",
                source="services",
            )
        return env

    def _key(self, service: str, environment: str) -> PairKey:
        svc = self.service(service)
        return svc.name, self.environment(svc, environment).name

    def get_state(self, service: str, environment: str) -> PairStatus:
        """Snapshot of a pair, applying timeouts first."""
        self.expire_stale()
        key = self._key(service, environment)
        with self._lock:
            pair = self._pairs[key]
            return PairStatus(
                service=key[0],
                environment=key[1],
                state=pair.state,
                candidate=pair.candidate,
                candidate_digest=pair.candidate_digest,
                run_id=pair.run_id,
                updated_at=pair.updated_at,
                current=self.history.current(*key),
            )

    # Internal helpers

    def _move(self, key: PairKey, pair: _Pair, target: PipelineState, tag: str | None) -> None:
        """Apply a transition; caller holds ``self._lock``."""
        if pair.state not in ALLOWED_TRANSITIONS[target]:
            raise InvalidStateError(key[0], key[1], pair.state.value, target.value, tag=tag)
        pair.state = target
        pair.updated_at = self.clock()

    def _require_run(self, key: PairKey, run_id: str, expected: PipelineState) -> _Pair:
        """Check ``run_id`` still owns the pair in ``expected``; caller holds the lock."""
        pair = self._pairs[key]
        if not self.guard.is_held_by(key[0], key[1], run_id):
            if run_id in pair.expired_runs:
                raise OperationTimeoutError(
                    key[0],
                    key[1],
                    run_id,
                    self.config.operation_timeout_seconds,
                    tag=pair.pending_tag,
                )
            raise InvalidStateError(
                key[0], key[1], pair.state.value, expected.value, tag=pair.pending_tag
            )
        if pair.state != expected:
            raise InvalidStateError(
                key[0], key[1], pair.state.value, expected.value, tag=pair.pending_tag
            )
        return pair

    def _emit(
        self,
        key: PairKey,
        kind: str,
        state: PipelineState,
        tag: str | None,
        run_id: str | None,
        **detail: Any,
    ) -> None:
        self.trail.record(key[0], key[1], kind, state=state, tag=tag, run_id=run_id, **detail)

    def expire_stale(self) -> list[str]:
        """Fail every run held longer than ``operation_timeout_seconds``.

        Returns:
            Run ids that were expired.
        """
        expired: list[str] = []
        for service, environment, hold in self.guard.stale(self.config.operation_timeout_seconds):
            key = (service, environment)
            with self._lock:
                if not self.guard.release(service, environment, hold.run_id):
                    continue
                pair = self._pairs[key]
                pair.expired_runs.add(hold.run_id)
                pair.pending = None
                if pair.state.in_flight:
                    pair.state = PipelineState.FAILED
                    pair.updated_at = self.clock()
            self._emit(
                key,
                "operation_timed_out",
                PipelineState.FAILED,
                hold.tag,
                hold.run_id,
                operation=hold.operation,
                timeout_seconds=self.config.operation_timeout_seconds,
            )
            expired.append(hold.run_id)
        return expired

    # Build and gate

    def begin_build(self, service: str, environment: str, tag: ImageTag) -> str:
        """Accept a new build for a pair.

        Returns:
            Run id owning the pair until the gate decision.

        Raises:
            ConcurrentOperationError: If another operation holds the pair.
        """
        self.expire_stale()
        key = self._key(service, environment)
        hold = self.guard.try_acquire(key[0], key[1], "build", tag=tag.value)
        with self._lock:
            pair = self._pairs[key]
            try:
                self._move(key, pair, PipelineState.BUILDING, tag.value)
            except InvalidStateError:
                self.guard.release(key[0], key[1], hold.run_id)
                raise
            pair.pending = tag
            pair.run_id = hold.run_id
        self._emit(key, "build_started", PipelineState.BUILDING, tag.value, hold.run_id)
        return hold.run_id

    def record_build_result(
        self,
        service: str,
        environment: str,
        run_id: str,
        result: BuildResult,
    ) -> PairStatus:
        """Move BUILDING to GATING, or to FAILED on a failed build.

        Raises:
            BuildFailureError: If the build failed.
            OperationTimeoutError: If the run was expired.
        """
        self.expire_stale()
        key = self._key(service, environment)
        with self._lock:
            pair = self._require_run(key, run_id, PipelineState.BUILDING)
            tag = pair.pending_tag or ""
            if result.success:
                self._move(key, pair, PipelineState.GATING, tag)
                pair.candidate_digest = result.digest
            else:
                self._move(key, pair, PipelineState.FAILED, tag)
                pair.pending = None
                self.guard.release(key[0], key[1], run_id)

        if not result.success:
            reason = result.log or "build failed"
            self._emit(key, "build_failed", PipelineState.FAILED, tag, run_id, reason=reason)
            self.sink.report(
                "failure",
                {
                    "service": key[0],
                    "environment": key[1],
                    "tag": tag,
                    "stage": "build",
                    "reason": reason,
                },
            )
            raise BuildFailureError(key[0], key[1], tag, reason)

        self._emit(
            key, "build_succeeded", PipelineState.GATING, tag, run_id, digest=result.digest
        )
        return self.get_state(*key)

    def record_gate_decision(
        self,
        service: str,
        environment: str,
        run_id: str,
        evaluation: GateEvaluation,
        *,
        keep_hold: bool = False,
    ) -> PairStatus:
        """Move GATING to PROMOTABLE on PASS or BLOCKED on BLOCK.

        The pair is released unless the gate passed and ``keep_hold`` is set,
        in which case ``run_id`` keeps it for :meth:`deploy_candidate`.

        Raises:
            GateBlockedError: If the gate blocked.
            OperationTimeoutError: If the run was expired.
        """
        self.expire_stale()
        key = self._key(service, environment)
        with self._lock:
            pair = self._require_run(key, run_id, PipelineState.GATING)
            tag = pair.pending_tag or ""
            if evaluation.passed:
                self._move(key, pair, PipelineState.PROMOTABLE, tag)
                pair.candidate = pair.pending
            else:
                self._move(key, pair, PipelineState.BLOCKED, tag)
                pair.candidate = None
                pair.candidate_digest = None
            pair.pending = None
            if evaluation.blocked or not keep_hold:
                self.guard.release(key[0], key[1], run_id)

        if evaluation.blocked:
            self._emit(
                key,
                "gate_blocked",
                PipelineState.BLOCKED,
                tag,
                run_id,
                offending=[f.id for f in evaluation.offending],
            )
            raise GateBlockedError(key[0], key[1], tag, list(evaluation.offending))

        self._emit(
            key,
            "gate_passed",
            PipelineState.PROMOTABLE,
            tag,
            run_id,
            advisory=evaluation.advisory,
            findings=len(evaluation.findings),
        )
        return self.get_state(*key)

    def fail_run(self, service: str, environment: str, run_id: str, reason: str) -> bool:
        """Mark an in-flight run FAILED and release the pair.

        Returns:
            False if the run no longer owns the pair.
        """
        key = self._key(service, environment)
        with self._lock:
            pair = self._pairs[key]
            if not self.guard.is_held_by(key[0], key[1], run_id):
                return False
            tag = pair.pending_tag
            if pair.state.in_flight:
                self._move(key, pair, PipelineState.FAILED, tag)
            pair.pending = None
            self.guard.release(key[0], key[1], run_id)
        self._emit(key, "run_failed", PipelineState.FAILED, tag, run_id, reason=reason)
        return True

    # Deployment

    def _deploy_failed(self, key: PairKey, tag: str, run_id: str, detail: str) -> None:
        self._emit(key, "deploy_failed", PipelineState.FAILED, tag, run_id, reason=detail)
        self.sink.report(
            "failure",
            {
                "service": key[0],
                "environment": key[1],
                "tag": tag,
                "stage": "deploy",
                "reason": detail,
            },
        )

    def deploy(
        self,
        hold: Hold,
        service: ServiceConfig,
        environment: EnvironmentConfig,
        *,
        tag: str,
        tag_kind: TagKind,
        digest: str | None,
        operator: str,
        source: str,
        reason: str | None = None,
        rolled_back_from: UUID | None = None,
    ) -> Deployment:
        """Apply a deployment for a pair the caller holds via ``hold``.

        Moves the pair to DEPLOYING, calls the manifest collaborator outside
        the internal lock, then appends the succeeded or failed record. The
        caller releases ``hold`` afterwards.

        Raises:
            DeploymentError: If the manifest collaborator failed (a failed
                record is appended first), or the history write failed. Either
                way the pair ends in FAILED.
            OperationTimeoutError: If the hold expired while applying.
        """
        key = (service.name, environment.name)
        with self._lock:
            if not self.guard.is_held_by(key[0], key[1], hold.run_id):
                raise OperationTimeoutError(
                    key[0], key[1], hold.run_id, self.config.operation_timeout_seconds, tag=tag
                )
            pair = self._pairs[key]
            self._move(key, pair, PipelineState.DEPLOYING, tag)
            pair.run_id = hold.run_id
        self._emit(key, "deploy_started", PipelineState.DEPLOYING, tag, hold.run_id, source=source)

        image_ref = service.image_ref(tag, digest)
        cause: Exception | None = None
        try:
            result = self.manifest.apply(service.name, environment.name, tag, image_ref)
        except Exception as e:
            cause = e
            result = ApplyResult(success=False, detail=f"{type(e).__name__}: {e}")

        status = DeploymentStatus.SUCCEEDED if result.success else DeploymentStatus.FAILED
        record = Deployment(
            service=service.name,
            environment=environment.name,
            tag=tag,
            tag_kind=tag_kind,
            aliases=tuple(environment.rolling_aliases),
            digest=digest,
            status=status,
            deployed_at=self.clock(),
            source=source,
            operator=operator,
            reason=reason,
            rolled_back_from=rolled_back_from,
            trace_id=current_trace_id(),
        )
        with self._lock:
            if not self.guard.is_held_by(key[0], key[1], hold.run_id):
                raise OperationTimeoutError(
                    key[0], key[1], hold.run_id, self.config.operation_timeout_seconds, tag=tag
                )
            try:
                stored = self.history.append(record)
            except Exception as e:
                self._move(key, pair, PipelineState.FAILED, tag)
                append_error: Exception | None = e
            else:
                append_error = None
                if result.success:
                    self._move(key, pair, PipelineState.DEPLOYED, tag)
                    if pair.candidate is not None and pair.candidate.value == tag:
                        pair.candidate = None
                        pair.candidate_digest = None
                else:
                    self._move(key, pair, PipelineState.FAILED, tag)

        if append_error is not None:
            detail = f"history write failed: {type(append_error).__name__}: {append_error}"
            self._deploy_failed(key, tag, hold.run_id, detail)
            raise DeploymentError(key[0], key[1], tag, detail) from append_error

        if not result.success:
            detail = result.detail or "manifest sync failed"
            self._deploy_failed(key, tag, hold.run_id, detail)
            raise DeploymentError(key[0], key[1], tag, detail) from cause

        self._emit(
            key,
            "deploy_succeeded",
            PipelineState.DEPLOYED,
            tag,
            hold.run_id,
            deployment_id=str(stored.deployment_id),
            sequence=stored.sequence,
        )
        self.sink.report(
            "deploy",
            {
                "service": key[0],
                "environment": key[1],
                "tag": tag,
                "digest": digest,
                "source": source,
                "operator": operator,
                "deployment_id": str(stored.deployment_id),
                "timestamp": stored.deployed_at.isoformat(),
            },
        )
        return stored

    def deploy_candidate(
        self,
        service: str,
        environment: str,
        operator: str = "pipeline",
        run_id: str | None = None,
    ) -> Deployment:
        """Deploy the pair's gated candidate (auto-deploy environments).

        With ``run_id``, the deployment continues the run that kept its hold
        through the gate (see ``record_gate_decision(keep_hold=True)``) and
        the hold is released afterwards. Without it, a new hold is taken.

        Raises:
            InvalidStateError: If the pair is not PROMOTABLE, or ``run_id``
                no longer owns it.
            OperationTimeoutError: If the ``run_id`` hold was expired.
            ConcurrentOperationError: If the pair is busy.
        """
        self.expire_stale()
        svc = self.service(service)
        env = self.environment(svc, environment)
        key = (svc.name, env.name)
        hold: Hold | None = None
        with self._lock:
            if run_id is not None:
                try:
                    pair = self._require_run(key, run_id, PipelineState.PROMOTABLE)
                except InvalidStateError:
                    self.guard.release(key[0], key[1], run_id)
                    raise
                hold = self.guard.holder(*key)
            else:
                pair = self._pairs[key]
            candidate, digest = pair.candidate, pair.candidate_digest
            if pair.state != PipelineState.PROMOTABLE or candidate is None:
                if run_id is not None:
                    self.guard.release(key[0], key[1], run_id)
                raise InvalidStateError(
                    key[0], key[1], pair.state.value, PipelineState.DEPLOYING.value
                )

        with create_span(
            "convoy.deploy",
            attributes={
                "convoy.service": svc.name,
                "convoy.environment": env.name,
                "convoy.tag": candidate.value,
            },
        ):
            if hold is None:
                hold = self.guard.try_acquire(svc.name, env.name, "deploy", tag=candidate.value)
            try:
                return self.deploy(
                    hold,
                    svc,
                    env,
                    tag=candidate.value,
                    tag_kind=candidate.kind,
                    digest=digest,
                    operator=operator,
                    source="pipeline",
                )
            finally:
                self.guard.release(svc.name, env.name, hold.run_id)

    # Promotion

    def _validate_transition(
        self,
        service: ServiceConfig,
        request: PromotionRequest,
    ) -> tuple[EnvironmentConfig, EnvironmentConfig]:
        """Check the request moves exactly one rank forward.

        Raises:
            InvalidTransitionError: Unknown environment, backward move, skipped
                environment, or a target the service does not deploy to.
        """

        def reject(reason: str) -> InvalidTransitionError:
            return InvalidTransitionError(
                service.name,
                request.from_environment,
                request.to_environment,
                reason,
                tag=request.source_tag,
            )

        from_env = self.config.get_environment(request.from_environment)
        if from_env is None:
            raise reject(f"Unknown source environment: '{request.from_environment}'")
        to_env = self.config.get_environment(request.to_environment)
        if to_env is None:
            raise reject(f"Unknown target environment: '{request.to_environment}'")

        from_idx = self.config.environment_rank(from_env.name)
        to_idx = self.config.environment_rank(to_env.name)
        if to_idx <= from_idx:
            raise reject(
                f"Invalid direction: cannot promote backward from '{from_env.name}' "
                f"to '{to_env.name}'"
            )
        if to_idx != from_idx + 1:
            skipped = [self.config.environments[i].name for i in range(from_idx + 1, to_idx)]
            raise reject(f"Cannot skip environments: must promote through {skipped}")
        if not self.config.supports(service, to_env.name):
            raise reject(f"Service '{service.name}' does not deploy to '{to_env.name}'")
        return from_env, to_env

    def _eligible_source(
        self,
        service: ServiceConfig,
        from_env: EnvironmentConfig,
        to_env: EnvironmentConfig,
        tag: str,
    ) -> tuple[TagKind, str | None]:
        """Find the artifact to promote: the gated candidate or a from-env deployment."""
        with self._lock:
            pair = self._pairs[(service.name, to_env.name)]
            if (
                pair.state == PipelineState.PROMOTABLE
                and pair.candidate is not None
                and pair.candidate.value == tag
            ):
                return pair.candidate.kind, pair.candidate_digest

        source = self.history.find(service.name, from_env.name, tag)
        if source is not None:
            return source.tag_kind, source.digest

        available = [d.tag for d in reversed(self.history.succeeded(service.name, from_env.name))]
        raise VersionNotFoundError(service.name, from_env.name, tag, available_versions=available)

    def promote(self, request: PromotionRequest) -> Deployment:
        """Promote a tag to the next environment.

        Resubmitting a request whose tag is already the target's current
        deployment returns that deployment without appending.

        Returns:
            The new (or existing) succeeded Deployment.

        Raises:
            InvalidTransitionError: If the rank rule is violated.
            ConcurrentOperationError: If the target pair is busy.
            ApprovalRequiredError: If approvals are missing.
            VersionNotFoundError: If the tag is neither the target's gated
                candidate nor a succeeded deployment in the source environment.
            DeploymentError: If the manifest collaborator fails.
        """
        svc = self.service(request.service)
        from_env, to_env = self._validate_transition(svc, request)

        with create_span(
            "convoy.promote",
            attributes={
                "convoy.service": svc.name,
                "convoy.from_env": from_env.name,
                "convoy.to_env": to_env.name,
                "convoy.tag": request.source_tag,
                "convoy.operator": request.operator,
            },
        ):
            log = self._log.bind(
                service=svc.name,
                from_env=from_env.name,
                to_env=to_env.name,
                tag=request.source_tag,
            )
            log.info(
                "promote_started",
                operator=request.operator,
                approvals=len(request.approved_by),
                trace_id=current_trace_id(),
            )

            self.expire_stale()
            hold = self.guard.try_acquire(
                svc.name, to_env.name, "promote", tag=request.source_tag
            )
            try:
                if len(request.approved_by) < to_env.required_approvals:
                    log.warning(
                        "promotion_blocked_approvals",
                        required=to_env.required_approvals,
                        received=len(request.approved_by),
                    )
                    raise ApprovalRequiredError(
                        svc.name,
                        to_env.name,
                        request.source_tag,
                        to_env.required_approvals,
                        len(request.approved_by),
                    )

                current = self.history.current(svc.name, to_env.name)
                if current is not None and current.tag == request.source_tag:
                    log.info("promote_noop", deployment_id=str(current.deployment_id))
                    return current

                tag_kind, digest = self._eligible_source(
                    svc, from_env, to_env, request.source_tag
                )
                deployment = self.deploy(
                    hold,
                    svc,
                    to_env,
                    tag=request.source_tag,
                    tag_kind=tag_kind,
                    digest=digest,
                    operator=request.operator,
                    source="promotion",
                )
            finally:
                self.guard.release(svc.name, to_env.name, hold.run_id)

            log.info(
                "promote_completed",
                deployment_id=str(deployment.deployment_id),
                sequence=deployment.sequence,
            )
            self.sink.report(
                "promote",
                {
                    "service": svc.name,
                    "from_environment": from_env.name,
                    "to_environment": to_env.name,
                    "tag": request.source_tag,
                    "operator": request.operator,
                    "approved_by": sorted(request.approved_by),
                    "deployment_id": str(deployment.deployment_id),
                    "timestamp": deployment.deployed_at.isoformat(),
                },
            )
            return deployment


__all__: list[str] = ["ALLOWED_TRANSITIONS", "PromotionStateMachine"]
