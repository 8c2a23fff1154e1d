"""Deployment, request, trigger and run-state schemas.

Key Components:
    TagKind, ImageTag: Resolved image tag and its rolling aliases
    TriggerKind, TriggerEvent: Source-control or chat trigger for a run
    DeploymentStatus, Deployment: One entry of a pair's history
    PromotionRequest, RollbackRequest: Explicit operator requests
    PipelineState, PairStatus: Per-(service, environment) state machine view
    PipelineEvent: One entry of the event trail
    RunStatus, PipelineRunResult: Outcome of handling one trigger

All models are immutable. History entries are never rewritten; a rollback
appends a new Deployment that points back at the record it superseded.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from convoy_core.schemas.security import GateEvaluation


class TagKind(str, Enum):
    """Kind of an image tag.

    Sha-pinned and timestamped tags are unique per build; branch-rolling
    tags are mutable pointers derived from history.
    """

    BRANCH_ROLLING = "branch-rolling"
    SHA_PINNED = "sha-pinned"
    TIMESTAMPED = "timestamped"
    PR = "pr"
    FEATURE = "feature"


class ImageTag(BaseModel):
    """A resolved image tag.

    Examples:
        >>> tag = ImageTag(value="prod-20240126-143022", kind=TagKind.TIMESTAMPED,
        ...                aliases=("prod", "latest"))
        >>> str(tag)
        'prod-20240126-143022'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    value: str = Field(..., min_length=1, max_length=128, description="Tag value")
    kind: TagKind = Field(..., description="Tag kind")
    aliases: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Rolling aliases this tag is published under",
    )
    environment: str | None = Field(
        default=None,
        description="Target environment; None for feature/PR verification tags",
    )

    def __str__(self) -> str:
        return self.value


class TriggerKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    DISPATCH = "dispatch"
    COMMENT = "comment"


class TriggerEvent(BaseModel):
    """A trigger handed to the orchestrator.

    Build triggers (push, pull_request, dispatch without a rollback payload)
    carry exactly one of ``branch``, ``pr_number`` or
    ``dispatch_environment``, plus the commit sha and an aware timestamp.
    Comment triggers carry ``comment_body``; rollback dispatches carry
    ``rollback``.

    Attributes:
        service: Service name or alias.
        kind: Trigger kind.
        branch: Pushed branch name.
        pr_number: Pull request number.
        dispatch_environment: Environment chosen on manual dispatch.
        commit_sha: Commit hash (7-40 hex characters).
        timestamp: Trigger time, timezone-aware.
        build_number: CI build number.
        actor: Identity that caused the trigger.
        comment_body: Free text of a chat/PR comment.
        rollback: Structured rollback dispatch payload.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str = Field(..., min_length=1, description="Service name or alias")
    kind: TriggerKind = Field(..., description="Trigger kind")
    branch: str | None = Field(default=None, min_length=1)
    pr_number: int | None = Field(default=None, ge=1)
    dispatch_environment: str | None = Field(default=None, min_length=1)
    commit_sha: str | None = Field(default=None)
    timestamp: AwareDatetime | None = Field(default=None)
    build_number: int | None = Field(default=None, ge=0)
    actor: str = Field(default="unknown", min_length=1)
    comment_body: str | None = Field(default=None)
    rollback: dict[str, Any] | None = Field(default=None)

    @model_validator(mode="after")
    def validate_trigger_shape(self) -> TriggerEvent:
        if self.is_rollback_intent:
            return self
        if self.kind == TriggerKind.COMMENT:
            raise ValueError("comment triggers require a body starting with /rollback")
        targets = [
            value
            for value in (self.branch, self.pr_number, self.dispatch_environment)
            if value is not None
        ]
        if len(targets) != 1:
            raise ValueError(
                "build triggers need exactly one of branch, pr_number, dispatch_environment"
            )
        expected = {
            TriggerKind.PUSH: self.branch,
            TriggerKind.PULL_REQUEST: self.pr_number,
            TriggerKind.DISPATCH: self.dispatch_environment,
        }[self.kind]
        if expected is None:
            raise ValueError(f"{self.kind.value} trigger is missing its target field")
        if self.commit_sha is None or self.timestamp is None:
            raise ValueError("build triggers require commit_sha and timestamp")
        return self

    @property
    def is_rollback_intent(self) -> bool:
        if self.kind == TriggerKind.COMMENT:
            return (self.comment_body or "").strip().startswith("/rollback")
        return self.kind == TriggerKind.DISPATCH and self.rollback is not None


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Deployment(BaseModel):
    """One entry of a (service, environment) deployment history.

    Attributes:
        deployment_id: Unique record identifier.
        sequence: 1-based position in the pair's history.
        service: Canonical service name.
        environment: Environment name.
        tag: Deployed tag value.
        tag_kind: Kind of the deployed tag.
        aliases: Rolling aliases of the deployed tag.
        digest: Image digest, when known.
        status: succeeded or failed.
        deployed_at: Record time (UTC).
        source: What produced the record (pipeline, promotion, rollback).
        operator: Identity that requested the deployment.
        reason: Free-text reason (rollbacks).
        rolled_back_from: deployment_id of the record a rollback superseded.
        trace_id: Trace id of the operation, when tracing is active.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deployment_id: UUID = Field(default_factory=uuid4)
    sequence: int = Field(default=0, ge=0, description="Assigned on append")
    service: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    tag: str = Field(..., min_length=1)
    tag_kind: TagKind = Field(default=TagKind.SHA_PINNED)
    aliases: tuple[str, ...] = Field(default_factory=tuple)
    digest: str | None = Field(default=None, pattern=r"^sha256:[a-f0-9]{64}$")
    status: DeploymentStatus
    deployed_at: AwareDatetime
    source: Literal["pipeline", "promotion", "rollback"] = "pipeline"
    operator: str = Field(default="unknown", min_length=1)
    reason: str | None = None
    rolled_back_from: UUID | None = None
    trace_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCEEDED

    def matches_version(self, version: str) -> bool:
        """Match a requested version by tag or by image digest."""
        return version == self.tag or (self.digest is not None and version == self.digest)


class PromotionRequest(BaseModel):
    """Request to promote a tag from one environment to the next.

    Identical requests compare and hash equal, so resubmission is detectable.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str = Field(..., min_length=1)
    from_environment: str = Field(..., min_length=1)
    to_environment: str = Field(..., min_length=1)
    source_tag: str = Field(..., min_length=1)
    operator: str = Field(default="unknown", min_length=1)
    approved_by: frozenset[str] = Field(
        default_factory=frozenset,
        description="Distinct approver identities",
    )


class RollbackRequest(BaseModel):
    """Request to redeploy an earlier succeeded version.

    When ``target_version`` is None the request resolves to the succeeded
    deployment immediately preceding the current one.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    target_version: str | None = None
    reason: str = Field(default="Rollback requested via comment", min_length=1)
    requested_by: str = Field(default="unknown", min_length=1)
    source: Literal["comment", "dispatch"] = "comment"


class RollbackPlan(BaseModel):
    """Resolved rollback: the record to redeploy and the record it supersedes."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request: RollbackRequest
    target: Deployment
    superseded: Deployment


class PipelineState(str, Enum):
    """State of a (service, environment) pair."""

    IDLE = "IDLE"
    BUILDING = "BUILDING"
    GATING = "GATING"
    PROMOTABLE = "PROMOTABLE"
    BLOCKED = "BLOCKED"
    DEPLOYING = "DEPLOYING"
    DEPLOYED = "DEPLOYED"
    FAILED = "FAILED"

    @property
    def in_flight(self) -> bool:
        return self in _IN_FLIGHT_STATES


_IN_FLIGHT_STATES = frozenset(
    {PipelineState.BUILDING, PipelineState.GATING, PipelineState.DEPLOYING}
)


class PairStatus(BaseModel):
    """Snapshot of one pair's state machine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str
    environment: str
    state: PipelineState = PipelineState.IDLE
    candidate: ImageTag | None = None
    candidate_digest: str | None = None
    run_id: str | None = None
    updated_at: datetime | None = None
    current: Deployment | None = None


class PipelineEvent(BaseModel):
    """One entry of the append-only event trail.

    ``environment`` is ``"verify"`` for feature and pull-request runs, which
    have no target environment.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sequence: int = Field(..., ge=1)
    timestamp: AwareDatetime
    service: str
    environment: str
    kind: str = Field(..., description="snake_case event kind (build_started, ...)")
    state: PipelineState | None = None
    tag: str | None = None
    run_id: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class RunStatus(str, Enum):
    """Outcome of handling one trigger."""

    PROMOTABLE = "promotable"
    DEPLOYED = "deployed"
    VERIFIED = "verified"
    BLOCKED = "blocked"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PipelineRunResult(BaseModel):
    """Result returned by ``PipelineOrchestrator.handle``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str
    service: str
    environment: str
    status: RunStatus
    tag: ImageTag | None = None
    digest: str | None = None
    gate: GateEvaluation | None = None
    deployment: Deployment | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status not in (RunStatus.BLOCKED, RunStatus.FAILED)


class EnvironmentStatus(BaseModel):
    """Per-environment view returned by ``PipelineOrchestrator.status``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    state: PipelineState
    current: Deployment | None = None
    previous: Deployment | None = None
    rolling_aliases: tuple[str, ...] = Field(default_factory=tuple)


__all__: list[str] = [
    "Deployment",
    "DeploymentStatus",
    "EnvironmentStatus",
    "ImageTag",
    "PairStatus",
    "PipelineEvent",
    "PipelineRunResult",
    "PipelineState",
    "PromotionRequest",
    "RollbackPlan",
    "RollbackRequest",
    "RunStatus",
    "TagKind",
    "TriggerEvent",
    "TriggerKind",
]
