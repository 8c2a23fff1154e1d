"""Image tag resolution.

Turns a trigger descriptor into an :class:`ImageTag`. Resolution is pure:
the same trigger and configuration always produce the same tag, and the only
time read is the trigger's own timestamp.

Rules, first match wins (environments are checked highest rank first):
    1. Branch or dispatch targets an environment -> that environment's rule
       (``prod-{timestamp}``, ``stage-{timestamp}-rc.{build}``, ``dev-{sha}``
       with the default configuration).
    2. Any other branch -> ``feature-{sanitized-branch}-{sha}``.
    3. Pull request -> ``pr-{number}-{sha}``.

Example:
    >>> from datetime import datetime, timezone
    >>> from convoy_core.schemas import PipelineConfig, TriggerEvent
    >>> trigger = TriggerEvent(
    ...     service="frontend", kind="push", branch="main",
    ...     commit_sha="ABCDEF1234", timestamp=datetime(2024, 1, 26, 14, 30, 22,
    ...     tzinfo=timezone.utc),
    ... )
    >>> resolve_tag(trigger, PipelineConfig()).value
    'prod-20240126-143022'
"""

from __future__ import annotations

import hashlib
import re
from datetime import timezone

import structlog

from convoy_core.errors import TagResolutionError
from convoy_core.schemas.config import EnvironmentConfig, PipelineConfig, TagStyle
from convoy_core.schemas.deployment import ImageTag, TagKind, TriggerEvent
from convoy_core.telemetry import create_span

logger = structlog.get_logger(__name__)

MAX_TAG_LENGTH = 128
SHORT_SHA_LENGTH = 7
DIGEST_SUFFIX_LENGTH = 8

_TAG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,127}$")
_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def short_sha(commit_sha: str | None) -> str:
    """Validate a commit hash and return its lower-cased 7-char prefix."""
    if commit_sha is None or not _SHA_PATTERN.match(commit_sha):
        raise TagResolutionError(f"commit sha must be 7-40 hex characters, got {commit_sha!r}")
    return commit_sha.lower()[:SHORT_SHA_LENGTH]


def sanitize_branch(branch: str) -> str:
    """Lower-case a branch name and collapse non-alphanumeric runs to ``-``.

    Examples:
        >>> sanitize_branch("Feature/JIRA-123_New Login")
        'feature-jira-123-new-login'
    """
    sanitized = _NON_ALNUM.sub("-", branch.lower()).strip("-")
    if not sanitized:
        raise TagResolutionError(f"branch {branch!r} has no usable characters")
    return sanitized


def validate_tag(value: str) -> str:
    """Check a tag against the registry charset and length limit.

    Raises:
        TagResolutionError: If the tag is empty, too long, or has invalid characters.
    """
    if not _TAG_PATTERN.match(value):
        raise TagResolutionError(
            f"tag {value!r} must match [a-z0-9][a-z0-9._-]* and be at most "
            f"{MAX_TAG_LENGTH} characters"
        )
    return value


def _fit_length(value: str, sha: str) -> str:
    """Truncate an overlong tag, keeping a digest of the full value and the sha."""
    if len(value) <= MAX_TAG_LENGTH:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:DIGEST_SUFFIX_LENGTH]
    suffix = f"-{digest}-{sha}"
    head = value[: MAX_TAG_LENGTH - len(suffix)].rstrip("-._")
    return f"{head}{suffix}"


def environment_for_trigger(
    trigger: TriggerEvent,
    config: PipelineConfig,
) -> EnvironmentConfig | None:
    """Map a trigger to its target environment.

    Returns None for pull requests and branches that match no environment.

    Raises:
        TagResolutionError: If a dispatch names an unknown environment.
    """
    if trigger.dispatch_environment is not None:
        env = config.get_environment(trigger.dispatch_environment)
        if env is None:
            raise TagResolutionError(
                f"unknown dispatch environment {trigger.dispatch_environment!r}"
            )
        return env
    if trigger.branch is not None:
        return config.environment_for_branch(trigger.branch)
    return None


def _environment_tag(
    trigger: TriggerEvent,
    env: EnvironmentConfig,
    config: PipelineConfig,
    sha: str,
) -> ImageTag:
    if env.tag_style == TagStyle.SHA_PINNED:
        return ImageTag(
            value=validate_tag(f"{env.tag_prefix}-{sha}"),
            kind=TagKind.SHA_PINNED,
            aliases=tuple(env.rolling_aliases),
            environment=env.name,
        )

    if trigger.timestamp is None:
        raise TagResolutionError(f"{env.name} tags require a timestamp")
    stamp = trigger.timestamp.astimezone(timezone.utc).strftime(config.timestamp_format)
    value = f"{env.tag_prefix}-{stamp}"
    if env.tag_style == TagStyle.RELEASE_CANDIDATE:
        if trigger.build_number is None:
            raise TagResolutionError(f"{env.name} tags require a build number")
        value = f"{value}-rc.{trigger.build_number}"
    return ImageTag(
        value=validate_tag(value),
        kind=TagKind.TIMESTAMPED,
        aliases=tuple(env.rolling_aliases),
        environment=env.name,
    )


def resolve_tag(trigger: TriggerEvent, config: PipelineConfig) -> ImageTag:
    """Resolve the image tag for a build trigger.

    Args:
        trigger: Build trigger (push, pull_request or dispatch).
        config: Pipeline configuration with the environment tag rules.

    Returns:
        The resolved tag. ``environment`` is None for feature and PR tags.

    Raises:
        TagResolutionError: If the trigger is a rollback intent, the sha is
            invalid, a required build number is missing, or the result does
            not fit the registry tag charset.
    """
    with create_span(
        "convoy.tag.resolve",
        attributes={
            "convoy.service": trigger.service,
            "convoy.trigger.kind": trigger.kind.value,
        },
    ) as span:
        if trigger.is_rollback_intent:
            raise TagResolutionError("rollback triggers do not produce a build tag")

        sha = short_sha(trigger.commit_sha)
        env = environment_for_trigger(trigger, config)

        if env is not None:
            tag = _environment_tag(trigger, env, config, sha)
        elif trigger.branch is not None:
            value = _fit_length(f"feature-{sanitize_branch(trigger.branch)}-{sha}", sha)
            tag = ImageTag(value=validate_tag(value), kind=TagKind.FEATURE)
        elif trigger.pr_number is not None:
            tag = ImageTag(
                value=validate_tag(f"pr-{trigger.pr_number}-{sha}"),
                kind=TagKind.PR,
            )
        else:
            raise TagResolutionError("trigger has no branch, pull request or environment")

        span.set_attribute("convoy.tag", tag.value)
        logger.debug(
            "tag_resolved",
            service=trigger.service,
            tag=tag.value,
            kind=tag.kind.value,
            environment=tag.environment,
        )
        return tag


__all__: list[str] = [
    "MAX_TAG_LENGTH",
    "environment_for_trigger",
    "resolve_tag",
    "sanitize_branch",
    "short_sha",
    "validate_tag",
]
