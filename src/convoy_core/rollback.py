"""Rollback requests: parsing, resolution and execution.

Rollbacks arrive either as chat/PR comments::

    /rollback <service-or-alias> <environment> [<version>] [reason...]

or as structured dispatch payloads (``service``, ``environment``, optional
``version`` and ``reason``). Parsing reports every problem it finds in one
:class:`ParseError`; nothing that fails to parse is ever treated as a no-op.

A rollback redeploys an earlier succeeded record and appends a new record
pointing back at the one it superseded. History is never rewritten.

Example:
    >>> coordinator = RollbackCoordinator(state_machine)
    >>> request = coordinator.parse_command("/rollback web prod v1.4.2 bad release")
    >>> request.service, request.environment, request.target_version, request.reason
    ('frontend', 'production', 'v1.4.2', 'bad release')
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

import structlog

from convoy_core.errors import InsufficientHistoryError, ParseError, VersionNotFoundError
from convoy_core.schemas.deployment import Deployment, RollbackPlan, RollbackRequest
from convoy_core.state_machine import PromotionStateMachine
from convoy_core.telemetry import create_span, current_trace_id

logger = structlog.get_logger(__name__)

COMMAND_PREFIX = "/rollback"
DEFAULT_COMMENT_REASON = "Rollback requested via comment"
DEFAULT_DISPATCH_REASON = "Rollback requested via dispatch"

DISPATCH_KEYS: frozenset[str] = frozenset({"service", "environment", "version", "reason"})

_SEMVER_PATTERN = re.compile(r"^v\d[0-9A-Za-z.+_-]*$")
_DOTTED_VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+)+(?:[-+][0-9A-Za-z.+_-]*)?$")
_DIGEST_PATTERN = re.compile(r"^sha256:[0-9A-Za-z]*$")


class RollbackCoordinator:
    """Parses, resolves and executes rollbacks.

    Shares history, guard, trail and sink with the state machine, so a
    rollback and a promotion on the same pair exclude each other.
    """

    def __init__(self, state_machine: PromotionStateMachine) -> None:
        self.machine = state_machine
        self.config = state_machine.config
        self.history = state_machine.history
        prefixes = sorted(
            {env.tag_prefix for env in self.config.environments} | {"feature", "pr"}
        )
        self._tag_pattern = re.compile(
            rf"^(?:{'|'.join(re.escape(p) for p in prefixes)})-[a-z0-9][a-z0-9._-]*$"
        )

    # Parsing

    def is_version(self, token: str) -> bool:
        """Whether a token is a version rather than the start of the reason.

        Versions are ``v1.2.3``, dotted numbers (``1.4.2``), build tags with a
        configured prefix, and ``sha256:`` digests. A token in one of these
        shapes is always the version, even when history does not contain it.
        """
        return bool(
            _SEMVER_PATTERN.match(token)
            or _DOTTED_VERSION_PATTERN.match(token)
            or _DIGEST_PATTERN.match(token)
            or self._tag_pattern.match(token)
        )

    def _check_target(
        self,
        service_token: str | None,
        environment_token: str | None,
        problems: list[str],
    ) -> tuple[str | None, str | None]:
        """Resolve service and environment tokens, appending every problem found."""
        service = None
        environment = None
        if not service_token:
            problems.append("missing service")
        else:
            svc = self.config.get_service(service_token)
            if svc is None:
                known = ", ".join(sorted(self.config.service_alias_table()))
                problems.append(f"unknown service or alias '{service_token}' (known: {known})")
            else:
                service = svc.name
        if not environment_token:
            problems.append("missing environment")
        else:
            env = self.config.get_environment(environment_token)
            if env is None:
                known = [e.name for e in self.config.environments]
                problems.append(
                    f"unknown environment '{environment_token}' (expected one of {known})"
                )
            else:
                environment = env.name

        if service is not None and environment is not None:
            svc = self.config.get_service(service)
            if svc is not None and not self.config.supports(svc, environment):
                problems.append(f"service '{service}' does not deploy to '{environment}'")
        return service, environment

    def parse_command(self, text: str, requested_by: str = "unknown") -> RollbackRequest:
        """Parse a ``/rollback`` comment.

        The third token is taken as the version only if it matches the version
        grammar; otherwise it starts the reason.

        Raises:
            ParseError: With every problem found.
        """
        tokens = text.split()
        if not tokens or tokens[0] != COMMAND_PREFIX:
            raise ParseError(text, [f"command must start with {COMMAND_PREFIX}"])

        args = tokens[1:]
        problems: list[str] = []
        service, environment = self._check_target(
            args[0] if len(args) > 0 else None,
            args[1] if len(args) > 1 else None,
            problems,
        )
        rest = args[2:]
        version = None
        if rest and self.is_version(rest[0]):
            version, rest = rest[0], rest[1:]

        if problems or service is None or environment is None:
            logger.info("rollback_parse_failed", text=text, problems=problems)
            raise ParseError(text, problems)

        return RollbackRequest(
            service=service,
            environment=environment,
            target_version=version,
            reason=" ".join(rest) or DEFAULT_COMMENT_REASON,
            requested_by=requested_by,
            source="comment",
        )

    def parse_dispatch(
        self,
        payload: Mapping[str, Any],
        requested_by: str = "unknown",
    ) -> RollbackRequest:
        """Parse a structured rollback dispatch payload.

        Raises:
            ParseError: With every problem found.
        """
        text = repr(dict(payload))
        problems: list[str] = []
        unknown = sorted(set(payload) - DISPATCH_KEYS)
        if unknown:
            problems.append(f"unknown payload keys {unknown}")

        def text_field(key: str) -> str | None:
            value = payload.get(key)
            if value is None:
                return None
            if not isinstance(value, str) or not value.strip():
                problems.append(f"'{key}' must be a non-empty string")
                return None
            return value.strip()

        service_token = text_field("service")
        environment_token = text_field("environment")
        version = text_field("version")
        reason = text_field("reason")
        service, environment = self._check_target(service_token, environment_token, problems)

        if problems or service is None or environment is None:
            logger.info("rollback_parse_failed", payload=text, problems=problems)
            raise ParseError(text, problems)

        return RollbackRequest(
            service=service,
            environment=environment,
            target_version=version,
            reason=reason or DEFAULT_DISPATCH_REASON,
            requested_by=requested_by,
            source="dispatch",
        )

    # Resolution

    def resolve(self, request: RollbackRequest) -> RollbackPlan:
        """Pick the record to redeploy.

        An explicit version must be a succeeded record (matched by tag or
        digest) and may equal the current deployment. Without a version the
        record immediately before the current one is chosen.

        Raises:
            VersionNotFoundError: If the explicit version is not in history.
            InsufficientHistoryError: If there is no previous succeeded record.
        """
        svc = self.machine.service(request.service)
        env = self.machine.environment(svc, request.environment)
        succeeded = self.history.succeeded(svc.name, env.name)

        version = request.target_version
        if version is not None:
            target = next((d for d in reversed(succeeded) if d.matches_version(version)), None)
            if target is None:
                raise VersionNotFoundError(
                    svc.name,
                    env.name,
                    version,
                    available_versions=[d.tag for d in reversed(succeeded)],
                )
        else:
            if len(succeeded) < 2:
                raise InsufficientHistoryError(svc.name, env.name, len(succeeded))
            target = succeeded[-2]

        return RollbackPlan(request=request, target=target, superseded=succeeded[-1])

    def preview(self, request: RollbackRequest) -> RollbackPlan:
        """Resolve without deploying (dry run)."""
        plan = self.resolve(request)
        logger.info(
            "rollback_preview",
            service=request.service,
            environment=request.environment,
            target_tag=plan.target.tag,
            superseded_tag=plan.superseded.tag,
        )
        return plan

    # Execution

    def execute(self, request: RollbackRequest) -> Deployment:
        """Redeploy the resolved record and append the rollback entry.

        Returns:
            The appended succeeded Deployment with ``rolled_back_from`` set.

        Raises:
            ConcurrentOperationError: If the pair is busy.
            VersionNotFoundError: If the explicit version is not in history.
            InsufficientHistoryError: If there is nothing to roll back to.
            DeploymentError: If the manifest collaborator fails.
        """
        svc = self.machine.service(request.service)
        env = self.machine.environment(svc, request.environment)

        with create_span(
            "convoy.rollback",
            attributes={
                "convoy.service": svc.name,
                "convoy.environment": env.name,
                "convoy.target_version": request.target_version,
                "convoy.reason": request.reason,
                "convoy.operator": request.requested_by,
            },
        ):
            log = logger.bind(service=svc.name, environment=env.name)
            log.info(
                "rollback_started",
                target_version=request.target_version,
                reason=request.reason,
                operator=request.requested_by,
                source=request.source,
                trace_id=current_trace_id(),
            )

            self.machine.expire_stale()
            hold = self.machine.guard.try_acquire(
                svc.name, env.name, "rollback", tag=request.target_version
            )
            try:
                plan = self.resolve(request)
                deployment = self.machine.deploy(
                    hold,
                    svc,
                    env,
                    tag=plan.target.tag,
                    tag_kind=plan.target.tag_kind,
                    digest=plan.target.digest,
                    operator=request.requested_by,
                    source="rollback",
                    reason=request.reason,
                    rolled_back_from=plan.superseded.deployment_id,
                )
            finally:
                self.machine.guard.release(svc.name, env.name, hold.run_id)

            log.info(
                "rollback_completed",
                deployment_id=str(deployment.deployment_id),
                tag=deployment.tag,
                previous_tag=plan.superseded.tag,
                rolled_back_from=str(plan.superseded.deployment_id),
            )
            self.machine.sink.report(
                "rollback",
                {
                    "service": svc.name,
                    "environment": env.name,
                    "tag": deployment.tag,
                    "digest": deployment.digest,
                    "previous_tag": plan.superseded.tag,
                    "reason": request.reason,
                    "operator": request.requested_by,
                    "timestamp": deployment.deployed_at.isoformat(),
                    "deployment_id": str(deployment.deployment_id),
                },
            )
            return deployment


__all__: list[str] = [
    "COMMAND_PREFIX",
    "DEFAULT_COMMENT_REASON",
    "DEFAULT_DISPATCH_REASON",
    "RollbackCoordinator",
]
