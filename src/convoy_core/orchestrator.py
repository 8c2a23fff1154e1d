"""Pipeline orchestration: one trigger event in, one run result out.

:class:`PipelineOrchestrator` composes tag resolution, the security gate,
the promotion state machine and the rollback coordinator:

1. Rollback intents (``/rollback`` comments, rollback dispatches) skip the
   build and go straight to the rollback coordinator.
2. Other triggers resolve a tag and an environment. Feature branches and
   pull requests have no environment and run as verification builds under
   the ``verify`` trail scope, without state or history.
3. Environment builds drive BUILDING -> GATING -> PROMOTABLE/BLOCKED, then
   auto-deploy where the environment allows it. An auto-deploy run holds
   the pair from build start until the deployment is recorded.

Build failures and gate blocks end the run and are returned as results;
every other error propagates.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

import structlog

from convoy_core.collaborators import (
    BuildCollaborator,
    CompositeReportingSink,
    LogReportingSink,
    ManifestCollaborator,
    ReportingSink,
    ScanCollaborator,
    WebhookReportingSink,
)
from convoy_core.errors import BuildFailureError, GateBlockedError, PipelineError
from convoy_core.events import VERIFY_SCOPE, EventTrail
from convoy_core.guard import PairGuard, utc_now
from convoy_core.history import DeploymentHistory, InMemoryDeploymentHistory
from convoy_core.rollback import RollbackCoordinator
from convoy_core.schemas.config import PipelineConfig, ServiceConfig
from convoy_core.schemas.deployment import (
    Deployment,
    EnvironmentStatus,
    ImageTag,
    PipelineRunResult,
    PromotionRequest,
    RollbackRequest,
    RunStatus,
    TriggerEvent,
)
from convoy_core.schemas.security import GateEvaluation
from convoy_core.security_gate import evaluate_security_gate
from convoy_core.state_machine import PromotionStateMachine
from convoy_core.tags import resolve_tag
from convoy_core.telemetry import create_span

logger = structlog.get_logger(__name__)


def default_sink(config: PipelineConfig) -> ReportingSink:
    """Structured-log sink, plus webhooks when configured."""
    if not config.webhooks:
        return LogReportingSink()
    return CompositeReportingSink([LogReportingSink(), WebhookReportingSink(config.webhooks)])


class PipelineOrchestrator:
    """Handles trigger events and explicit promotion/rollback requests.

    Args:
        config: Pipeline configuration.
        builder: Build collaborator.
        scanner: Scan collaborator.
        manifest: Manifest collaborator.
        history: Deployment history; in-memory when omitted.
        sink: Reporting sink; derived from ``config.webhooks`` when omitted.
        ignore_unfixed: Findings without a fix never block the gate.
        clock: UTC clock.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        builder: BuildCollaborator,
        scanner: ScanCollaborator,
        manifest: ManifestCollaborator,
        history: DeploymentHistory | None = None,
        sink: ReportingSink | None = None,
        ignore_unfixed: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.builder = builder
        self.scanner = scanner
        self.ignore_unfixed = ignore_unfixed
        self.sink = sink or default_sink(config)
        self.trail = EventTrail(clock=clock)
        self.machine = PromotionStateMachine(
            config,
            history if history is not None else InMemoryDeploymentHistory(),
            manifest,
            guard=PairGuard(clock=clock),
            trail=self.trail,
            sink=self.sink,
            clock=clock,
        )
        self.rollbacks = RollbackCoordinator(self.machine)

    @property
    def history(self) -> DeploymentHistory:
        return self.machine.history

    # Trigger handling

    def handle(self, event: TriggerEvent) -> PipelineRunResult:
        """Run the pipeline for one trigger.

        Returns:
            Run result; ``status`` is failed/blocked for build failures and
            gate blocks.

        Raises:
            ParseError: If a rollback intent cannot be parsed.
            TagResolutionError: If the trigger cannot be tagged.
            ConcurrentOperationError: If the pair is busy.
            PipelineError: For any other pipeline failure.
        """
        with create_span(
            "convoy.pipeline.run",
            attributes={
                "convoy.service": event.service,
                "convoy.trigger.kind": event.kind.value,
                "convoy.actor": event.actor,
            },
        ) as span:
            if event.is_rollback_intent:
                result = self._handle_rollback(event)
            else:
                svc = self.machine.service(event.service)
                tag = resolve_tag(event, self.config)
                if tag.environment is None:
                    result = self._verify(svc, tag)
                else:
                    result = self._build_and_gate(svc, tag, event.actor)
            span.set_attribute("convoy.run.status", result.status.value)
            return result

    def handle_many(
        self,
        events: Iterable[TriggerEvent],
        *,
        return_exceptions: bool = False,
    ) -> list[PipelineRunResult | PipelineError]:
        """Handle independent events concurrently, returning results in input order.

        Args:
            events: Trigger events.
            return_exceptions: Put pipeline errors in the result list instead
                of raising the first one after all events finished.
        """
        events = list(events)
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = [pool.submit(self.handle, event) for event in events]

        results: list[PipelineRunResult | PipelineError] = []
        for future in futures:
            error = future.exception()
            if error is None:
                results.append(future.result())
            elif return_exceptions and isinstance(error, PipelineError):
                results.append(error)
            else:
                raise error
        return results

    def _handle_rollback(self, event: TriggerEvent) -> PipelineRunResult:
        if event.rollback is not None:
            request = self.rollbacks.parse_dispatch(event.rollback, requested_by=event.actor)
        else:
            request = self.rollbacks.parse_command(event.comment_body or "", event.actor)
        deployment = self.rollbacks.execute(request)
        return PipelineRunResult(
            run_id=deployment.deployment_id.hex[:12],
            service=deployment.service,
            environment=deployment.environment,
            status=RunStatus.ROLLED_BACK,
            tag=ImageTag(
                value=deployment.tag,
                kind=deployment.tag_kind,
                aliases=deployment.aliases,
                environment=deployment.environment,
            ),
            digest=deployment.digest,
            deployment=deployment,
        )

    def _verify(self, svc: ServiceConfig, tag: ImageTag) -> PipelineRunResult:
        """Build and gate a feature/PR tag without touching state or history.

        The gate uses the lowest-rank environment's policy, the first place
        the change could be deployed.
        """
        run_id = uuid.uuid4().hex[:12]
        first_env = self.config.environments[0]
        self.trail.record(svc.name, VERIFY_SCOPE, "verify_started", tag=tag.value, run_id=run_id)

        build = self.builder.build(svc, svc.image_ref(tag.value))
        if not build.success:
            self.trail.record(
                svc.name,
                VERIFY_SCOPE,
                "verify_build_failed",
                tag=tag.value,
                run_id=run_id,
                reason=build.log,
            )
            return PipelineRunResult(
                run_id=run_id,
                service=svc.name,
                environment=VERIFY_SCOPE,
                status=RunStatus.FAILED,
                tag=tag,
                error=build.log or "build failed",
            )

        report = self.scanner.scan(svc.image_ref(tag.value, build.digest))
        evaluation = evaluate_security_gate(
            report,
            first_env,
            ignore_unfixed=self.ignore_unfixed,
            config=self.config,
        )
        kind = "verify_passed" if evaluation.passed else "verify_blocked"
        self.trail.record(
            svc.name,
            VERIFY_SCOPE,
            kind,
            tag=tag.value,
            run_id=run_id,
            offending=[f.id for f in evaluation.offending],
        )
        self.sink.report("gate", self._gate_payload(svc.name, VERIFY_SCOPE, tag, evaluation))
        return PipelineRunResult(
            run_id=run_id,
            service=svc.name,
            environment=VERIFY_SCOPE,
            status=RunStatus.VERIFIED if evaluation.passed else RunStatus.BLOCKED,
            tag=tag,
            digest=build.digest,
            gate=evaluation,
            error=evaluation.reason,
        )

    def _build_and_gate(
        self,
        svc: ServiceConfig,
        tag: ImageTag,
        actor: str,
    ) -> PipelineRunResult:
        env = self.machine.environment(svc, tag.environment or "")
        run_id = self.machine.begin_build(svc.name, env.name, tag)
        log = logger.bind(service=svc.name, environment=env.name, tag=tag.value, run_id=run_id)

        try:
            build = self.builder.build(svc, svc.image_ref(tag.value))
        except Exception as e:
            self.machine.fail_run(svc.name, env.name, run_id, f"build collaborator error: {e}")
            raise

        try:
            self.machine.record_build_result(svc.name, env.name, run_id, build)
        except BuildFailureError as e:
            log.warning("pipeline_run_failed", stage="build", error=e.reason)
            return PipelineRunResult(
                run_id=run_id,
                service=svc.name,
                environment=env.name,
                status=RunStatus.FAILED,
                tag=tag,
                error=str(e),
            )
        self.sink.report(
            "build",
            {
                "service": svc.name,
                "environment": env.name,
                "tag": tag.value,
                "digest": build.digest,
                "run_id": run_id,
            },
        )

        try:
            report = self.scanner.scan(svc.image_ref(tag.value, build.digest))
        except Exception as e:
            self.machine.fail_run(svc.name, env.name, run_id, f"scan failed: {e}")
            raise

        evaluation = evaluate_security_gate(
            report,
            env,
            ignore_unfixed=self.ignore_unfixed,
            config=self.config,
        )
        self.sink.report("gate", self._gate_payload(svc.name, env.name, tag, evaluation))
        try:
            self.machine.record_gate_decision(
                svc.name, env.name, run_id, evaluation, keep_hold=env.auto_deploy
            )
        except GateBlockedError as e:
            log.warning("pipeline_run_blocked", offending=[f.id for f in e.findings])
            return PipelineRunResult(
                run_id=run_id,
                service=svc.name,
                environment=env.name,
                status=RunStatus.BLOCKED,
                tag=tag,
                digest=build.digest,
                gate=evaluation,
                error=str(e),
            )

        if not env.auto_deploy:
            log.info("pipeline_run_promotable")
            return PipelineRunResult(
                run_id=run_id,
                service=svc.name,
                environment=env.name,
                status=RunStatus.PROMOTABLE,
                tag=tag,
                digest=build.digest,
                gate=evaluation,
            )

        deployment = self.machine.deploy_candidate(
            svc.name, env.name, operator=actor, run_id=run_id
        )
        log.info("pipeline_run_deployed", deployment_id=str(deployment.deployment_id))
        return PipelineRunResult(
            run_id=run_id,
            service=svc.name,
            environment=env.name,
            status=RunStatus.DEPLOYED,
            tag=tag,
            digest=build.digest,
            gate=evaluation,
            deployment=deployment,
        )

    @staticmethod
    def _gate_payload(
        service: str,
        environment: str,
        tag: ImageTag,
        evaluation: GateEvaluation,
    ) -> dict[str, Any]:
        return {
            "service": service,
            "environment": environment,
            "tag": tag.value,
            "decision": evaluation.decision.value,
            "fail_on": [s.value for s in evaluation.fail_on],
            "offending": [f.id for f in evaluation.offending],
            "total_findings": len(evaluation.findings),
        }

    # Explicit requests

    def promote(self, request: PromotionRequest) -> Deployment:
        return self.machine.promote(request)

    def rollback(self, request: RollbackRequest) -> Deployment:
        return self.rollbacks.execute(request)

    # Queries

    def status(self, service: str) -> list[EnvironmentStatus]:
        """Per-environment state, current/previous deployment and rolling aliases."""
        svc = self.machine.service(service)
        statuses = []
        for env in self.config.environments:
            if not self.config.supports(svc, env.name):
                continue
            pair = self.machine.get_state(svc.name, env.name)
            current = self.history.current(svc.name, env.name)
            statuses.append(
                EnvironmentStatus(
                    environment=env.name,
                    state=pair.state,
                    current=current,
                    previous=self.history.previous(svc.name, env.name),
                    rolling_aliases=current.aliases if current is not None else (),
                )
            )
        return statuses

    def deployments(self, service: str, environment: str) -> tuple[Deployment, ...]:
        """All history records for a pair, oldest first."""
        svc = self.machine.service(service)
        env = self.machine.environment(svc, environment)
        return self.history.entries(svc.name, env.name)


__all__: list[str] = ["PipelineOrchestrator", "default_sink"]
