"""Pydantic schemas for pipeline configuration, records and requests."""

from __future__ import annotations

from convoy_core.schemas.config import (
    CollaboratorsConfig,
    EnvironmentConfig,
    PipelineConfig,
    ServiceConfig,
    TagStyle,
    WebhookConfig,
)
from convoy_core.schemas.deployment import (
    Deployment,
    DeploymentStatus,
    EnvironmentStatus,
    ImageTag,
    PairStatus,
    PipelineEvent,
    PipelineRunResult,
    PipelineState,
    PromotionRequest,
    RollbackPlan,
    RollbackRequest,
    RunStatus,
    TagKind,
    TriggerEvent,
    TriggerKind,
)
from convoy_core.schemas.security import (
    Finding,
    GateDecision,
    GateEvaluation,
    Severity,
    VulnerabilityReport,
)

__all__: list[str] = [
    "CollaboratorsConfig",
    "Deployment",
    "DeploymentStatus",
    "EnvironmentConfig",
    "EnvironmentStatus",
    "Finding",
    "GateDecision",
    "GateEvaluation",
    "ImageTag",
    "PairStatus",
    "PipelineConfig",
    "PipelineEvent",
    "PipelineRunResult",
    "PipelineState",
    "PromotionRequest",
    "RollbackPlan",
    "RollbackRequest",
    "RunStatus",
    "ServiceConfig",
    "Severity",
    "TagKind",
    "TagStyle",
    "TriggerEvent",
    "TriggerKind",
    "VulnerabilityReport",
    "WebhookConfig",
]
