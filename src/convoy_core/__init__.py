"""convoy-core: Deployment pipeline orchestration core.

This package provides:
- resolve_tag: Deterministic image tags from trigger events
- evaluate_security_gate: Pass/block decisions from vulnerability reports
- PromotionStateMachine: Per-(service, environment) promotion lifecycle
- RollbackCoordinator: Comment and dispatch rollbacks against history
- PipelineOrchestrator: One trigger event in, one run result out
- Errors: PipelineError hierarchy with CLI exit codes
- Schemas: Pydantic models for configuration and records (convoy_core.schemas)

Example:
    >>> from convoy_core import PipelineConfig, PipelineOrchestrator
    >>> orchestrator = PipelineOrchestrator(
    ...     PipelineConfig.model_validate(data),
    ...     builder=builder, scanner=scanner, manifest=manifest,
    ... )
    >>> result = orchestrator.handle(event)
    >>> result.status
    <RunStatus.DEPLOYED: 'deployed'>
"""

from __future__ import annotations

from convoy_core.config import load_config
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
    ParseError,
    PipelineError,
    ScanReportParseError,
    TagResolutionError,
    VersionNotFoundError,
)
from convoy_core.history import (
    DeploymentHistory,
    InMemoryDeploymentHistory,
    JsonLinesDeploymentHistory,
)
from convoy_core.orchestrator import PipelineOrchestrator
from convoy_core.rollback import RollbackCoordinator
from convoy_core.schemas import (
    Deployment,
    GateDecision,
    ImageTag,
    PipelineConfig,
    PipelineRunResult,
    PipelineState,
    PromotionRequest,
    RollbackRequest,
    Severity,
    TriggerEvent,
)
from convoy_core.security_gate import evaluate_security_gate
from convoy_core.state_machine import PromotionStateMachine
from convoy_core.tags import resolve_tag

__version__ = "0.1.0"

__all__: list[str] = [
    "ApprovalRequiredError",
    "BuildFailureError",
    "ConcurrentOperationError",
    "ConfigurationError",
    "Deployment",
    "DeploymentError",
    "DeploymentHistory",
    "GateBlockedError",
    "GateDecision",
    "ImageTag",
    "InMemoryDeploymentHistory",
    "InsufficientHistoryError",
    "InvalidStateError",
    "InvalidTransitionError",
    "JsonLinesDeploymentHistory",
    "OperationTimeoutError",
    "ParseError",
    "PipelineConfig",
    "PipelineError",
    "PipelineOrchestrator",
    "PipelineRunResult",
    "PipelineState",
    "PromotionRequest",
    "PromotionStateMachine",
    "RollbackCoordinator",
    "RollbackRequest",
    "ScanReportParseError",
    "Severity",
    "TagResolutionError",
    "TriggerEvent",
    "VersionNotFoundError",
    "__version__",
    "evaluate_security_gate",
    "load_config",
    "resolve_tag",
]
