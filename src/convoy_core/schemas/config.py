"""Pipeline configuration schemas.

This module defines the Pydantic v2 models loaded from ``convoy.yaml``:
the ordered environment list (promotion path), registered services, and the
ambient settings of the orchestrator.

Key Components:
    TagStyle: How an environment's build tags are formed
    EnvironmentConfig: Rank, branch mapping, tag rule, gate threshold, approvals
    ServiceConfig: Registered service with registry path and aliases
    WebhookConfig: Reporting webhook endpoint
    CollaboratorsConfig: Command templates for build, scan and manifest sync
    PipelineConfig: Top-level configuration

The branch-to-environment mapping lives in ``EnvironmentConfig.branches``
rather than in conditionals, so adding an environment is a config change.

Examples:
    >>> config = PipelineConfig()
    >>> [env.name for env in config.environments]
    ['development', 'staging', 'production']
    >>> config.environment_for_branch("main").name
    'production'
"""

from __future__ import annotations

import fnmatch
import re
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from convoy_core.schemas.security import Severity

TAG_COMPONENT_PATTERN = r"^[a-z0-9][a-z0-9._-]*$"
"""Registry tag charset for prefixes and rolling aliases."""

VALID_WEBHOOK_EVENTS: frozenset[str] = frozenset(
    {"gate", "build", "promote", "rollback", "deploy", "failure"}
)
"""Event types a reporting webhook can subscribe to."""


class TagStyle(str, Enum):
    """Tag rule applied to builds targeting an environment.

    Attributes:
        TIMESTAMPED: ``{prefix}-{timestamp}``
        RELEASE_CANDIDATE: ``{prefix}-{timestamp}-rc.{build_number}``
        SHA_PINNED: ``{prefix}-{short_sha}``
    """

    TIMESTAMPED = "timestamped"
    RELEASE_CANDIDATE = "release-candidate"
    SHA_PINNED = "sha-pinned"


class EnvironmentConfig(BaseModel):
    """Per-environment promotion, tagging and gating configuration.

    The environment's promotion rank is its position in
    ``PipelineConfig.environments``.

    Attributes:
        name: Environment name (e.g. "development", "production").
        aliases: Alternative names accepted in rollback commands.
        branches: fnmatch patterns of branches that deploy here.
        tag_prefix: Prefix of build tags for this environment.
        tag_style: Tag rule for builds targeting this environment.
        rolling_aliases: Floating tags that point at the current deployment.
        severity_threshold: Minimum severity that blocks the gate; None
            inherits ``PipelineConfig.default_fail_on`` (advisory if unset).
        required_approvals: Distinct approvers needed to promote here.
        auto_deploy: Deploy immediately when the gate passes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=r"^[a-z][a-z0-9_-]*$",
        description="Environment name (lowercase, alphanumeric with hyphens/underscores)",
    )
    aliases: list[str] = Field(
        default_factory=list,
        description="Alternative names accepted in rollback commands",
    )
    branches: list[str] = Field(
        default_factory=list,
        description="Branch patterns (fnmatch) mapped to this environment",
    )
    tag_prefix: str = Field(
        ...,
        max_length=32,
        pattern=TAG_COMPONENT_PATTERN,
        description="Prefix for build tags",
    )
    tag_style: TagStyle = Field(
        default=TagStyle.SHA_PINNED,
        description="Tag rule for builds targeting this environment",
    )
    rolling_aliases: list[str] = Field(
        default_factory=list,
        description="Floating tags computed from the current deployment",
    )
    severity_threshold: Severity | None = Field(
        default=None,
        description="Minimum severity that blocks promotion",
    )
    required_approvals: int = Field(
        default=0,
        ge=0,
        le=10,
        description="Distinct approvers required to promote into this environment",
    )
    auto_deploy: bool = Field(
        default=False,
        description="Deploy as soon as the security gate passes",
    )

    @field_validator("rolling_aliases")
    @classmethod
    def validate_rolling_aliases(cls, v: list[str]) -> list[str]:
        """Validate rolling aliases fit the registry tag charset."""
        bad = [alias for alias in v if not re.match(TAG_COMPONENT_PATTERN, alias)]
        if bad:
            raise ValueError(f"Rolling aliases must match {TAG_COMPONENT_PATTERN}: {bad}")
        return v

    def matches_branch(self, branch: str) -> bool:
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)


class ServiceConfig(BaseModel):
    """A registered service.

    Attributes:
        name: Canonical service identifier.
        registry: Container registry path (e.g. "ghcr.io/acme/frontend").
        aliases: Alternative names accepted in rollback commands.
        environments: Supported environment names; None means all.
        dockerfile: Dockerfile path passed to the build collaborator.
        context: Build context passed to the build collaborator.

    Examples:
        >>> svc = ServiceConfig(name="frontend", registry="ghcr.io/acme/frontend")
        >>> svc.image_ref("dev-abc1234")
        'ghcr.io/acme/frontend:dev-abc1234'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=63,
        pattern=r"^[a-z][a-z0-9_-]*$",
        description="Canonical service name",
    )
    registry: str = Field(
        ...,
        min_length=1,
        pattern=r"^[a-z0-9][a-z0-9._:/-]*$",
        description="Container registry repository path",
    )
    aliases: list[str] = Field(
        default_factory=list,
        description="Alternative names accepted in rollback commands",
    )
    environments: list[str] | None = Field(
        default=None,
        description="Supported environments (None = every configured environment)",
    )
    dockerfile: str = Field(default="Dockerfile", description="Dockerfile path")
    context: str = Field(default=".", description="Build context")

    def image_ref(self, tag: str, digest: str | None = None) -> str:
        """Build a full image reference, pinned to the digest when known."""
        if digest:
            return f"{self.registry}@{digest}"
        return f"{self.registry}:{tag}"


class WebhookConfig(BaseModel):
    """Webhook endpoint for pipeline reports.

    Attributes:
        url: Target URL (https recommended).
        events: Event types to send.
        headers: Extra HTTP headers.
        timeout_seconds: Per-request timeout.
        retry_count: Retries after the first attempt on 5xx/transport errors.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., pattern=r"^https?://", description="Webhook URL")
    events: list[str] = Field(
        default_factory=lambda: sorted(VALID_WEBHOOK_EVENTS),
        description="Subscribed event types",
    )
    headers: dict[str, str] | None = Field(default=None, description="Extra HTTP headers")
    timeout_seconds: int = Field(default=10, ge=1, le=120, description="Request timeout")
    retry_count: int = Field(default=2, ge=0, le=5, description="Retries on failure")

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


class CollaboratorsConfig(BaseModel):
    """Command templates for the subprocess-backed collaborators.

    Placeholders are substituted shell-quoted; see
    :mod:`convoy_core.collaborators`. A missing template disables the
    operations that need it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_command: str | None = Field(default=None, description="Build and push template")
    scan_command: str | None = Field(default=None, description="Scanner template")
    scan_format: Literal["trivy", "grype"] = Field(
        default="trivy",
        description="Scanner JSON format",
    )
    manifest_command: str | None = Field(default=None, description="Manifest sync template")
    timeout_seconds: float = Field(
        default=600,
        gt=0,
        description="Per-command timeout",
    )


def _default_environments() -> list[EnvironmentConfig]:
    """Create default environment configurations [development, staging, production]."""
    return [
        EnvironmentConfig(
            name="development",
            aliases=["dev"],
            branches=["develop", "development"],
            tag_prefix="dev",
            tag_style=TagStyle.SHA_PINNED,
            rolling_aliases=["dev"],
            severity_threshold=Severity.CRITICAL,
            required_approvals=0,
            auto_deploy=True,
        ),
        EnvironmentConfig(
            name="staging",
            aliases=["stage"],
            branches=["staging", "release/*"],
            tag_prefix="stage",
            tag_style=TagStyle.RELEASE_CANDIDATE,
            rolling_aliases=["stage"],
            severity_threshold=Severity.HIGH,
            required_approvals=1,
        ),
        EnvironmentConfig(
            name="production",
            aliases=["prod"],
            branches=["main", "master"],
            tag_prefix="prod",
            tag_style=TagStyle.TIMESTAMPED,
            rolling_aliases=["prod", "latest"],
            severity_threshold=Severity.HIGH,
            required_approvals=2,
        ),
    ]


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration from convoy.yaml.

    Attributes:
        environments: Ordered environments (promotion path, lowest rank first).
        services: Registered services.
        timestamp_format: strftime format for timestamped tags.
        operation_timeout_seconds: Max time a pair may stay in
            BUILDING/GATING/DEPLOYING before the run is expired.
        default_fail_on: Global severities to fail on, inherited by
            environments without their own threshold.
        max_workers: Thread pool size for concurrent event handling.
        webhooks: Reporting webhooks.
        collaborators: Command templates used by the CLI.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environments: list[EnvironmentConfig] = Field(
        default_factory=_default_environments,
        min_length=1,
        description="Ordered list of environments (promotion path)",
    )
    services: list[ServiceConfig] = Field(
        default_factory=list,
        description="Registered services",
    )
    timestamp_format: str = Field(
        default="%Y%m%d-%H%M%S",
        min_length=2,
        description="strftime format for timestamped tags",
    )
    operation_timeout_seconds: float = Field(
        default=1800,
        gt=0,
        description="Timeout for runs held in BUILDING/GATING/DEPLOYING",
    )
    default_fail_on: list[Severity] | None = Field(
        default=None,
        description="Global severities to fail on when an environment sets none",
    )
    max_workers: int = Field(default=4, ge=1, le=64, description="Concurrent event handlers")
    webhooks: list[WebhookConfig] | None = Field(
        default=None,
        description="Reporting webhooks",
    )
    collaborators: CollaboratorsConfig = Field(
        default_factory=CollaboratorsConfig,
        description="Collaborator command templates",
    )

    @field_validator("environments")
    @classmethod
    def validate_unique_environment_names(
        cls, v: list[EnvironmentConfig]
    ) -> list[EnvironmentConfig]:
        """Validate that environment names and aliases are unique."""
        names = [name for env in v for name in (env.name, *env.aliases)]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"Environment names and aliases must be unique. Duplicates found: {duplicates}"
            )
        return v

    @model_validator(mode="after")
    def validate_services(self) -> PipelineConfig:
        """Validate services are unique and reference known environments."""
        env_names = {env.name for env in self.environments}
        names = [name for svc in self.services for name in (svc.name, *svc.aliases)]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"Service names and aliases must be unique. Duplicates found: {duplicates}"
            )
        for svc in self.services:
            unknown = set(svc.environments or []) - env_names
            if unknown:
                raise ValueError(
                    f"Service '{svc.name}' references unknown environments: {sorted(unknown)}"
                )
        return self

    @model_validator(mode="after")
    def validate_threshold_precedence(self) -> PipelineConfig:
        """Reject a global default that disagrees with an environment threshold."""
        if self.default_fail_on is None:
            return self
        global_set = frozenset(self.default_fail_on)
        conflicts = [
            env.name
            for env in self.environments
            if env.severity_threshold is not None
            and Severity.at_or_above(env.severity_threshold) != global_set
        ]
        if conflicts:
            raise ValueError(
                "default_fail_on conflicts with severity_threshold of environments "
                f"{conflicts}; remove one of them or make them agree"
            )
        return self

    def get_environment(self, name: str) -> EnvironmentConfig | None:
        """Look up an environment by name or alias."""
        for env in self.environments:
            if name == env.name or name in env.aliases:
                return env
        return None

    def environment_rank(self, name: str) -> int:
        """Return the promotion rank of an environment.

        Raises:
            ValueError: If the environment is not configured.
        """
        for idx, env in enumerate(self.environments):
            if env.name == name:
                return idx
        raise ValueError(f"Environment '{name}' not found in promotion path")

    def get_service(self, name: str) -> ServiceConfig | None:
        """Look up a service by canonical name or alias."""
        for svc in self.services:
            if name == svc.name or name in svc.aliases:
                return svc
        return None

    def service_alias_table(self) -> dict[str, str]:
        """Map every accepted service name or alias to its canonical name."""
        table: dict[str, str] = {}
        for svc in self.services:
            table[svc.name] = svc.name
            for alias in svc.aliases:
                table[alias] = svc.name
        return table

    def supports(self, service: ServiceConfig, environment: str) -> bool:
        return service.environments is None or environment in service.environments

    def environment_for_branch(self, branch: str) -> EnvironmentConfig | None:
        """Map a branch to its environment, highest rank first."""
        for env in reversed(self.environments):
            if env.matches_branch(branch):
                return env
        return None

    def effective_fail_on(self, environment: EnvironmentConfig) -> frozenset[Severity]:
        """Severities that block the gate for an environment when no override is given."""
        if environment.severity_threshold is not None:
            return Severity.at_or_above(environment.severity_threshold)
        if self.default_fail_on is not None:
            return frozenset(self.default_fail_on)
        return frozenset()


__all__: list[str] = [
    "CollaboratorsConfig",
    "EnvironmentConfig",
    "PipelineConfig",
    "ServiceConfig",
    "TagStyle",
    "VALID_WEBHOOK_EVENTS",
    "WebhookConfig",
]
