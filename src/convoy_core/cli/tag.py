"""Tag command: print the image tag a trigger resolves to.

Example:
    $ convoy tag frontend --branch main --sha 3f9c2ab --timestamp 2024-01-26T14:30:22Z
    $ convoy tag frontend --pr 42 --sha 3f9c2ab --output json
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import click
from pydantic import ValidationError

from convoy_core.cli.utils import (
    ExitCode,
    emit_json,
    error_exit,
    get_cli_context,
    handle_pipeline_error,
    output_option,
    success,
)
from convoy_core.errors import PipelineError
from convoy_core.schemas.deployment import TriggerEvent, TriggerKind
from convoy_core.tags import resolve_tag

F = TypeVar("F", bound=Callable[..., Any])


def _trigger_kind(pr: int | None, dispatch_env: str | None) -> TriggerKind:
    if pr is not None:
        return TriggerKind.PULL_REQUEST
    if dispatch_env is not None:
        return TriggerKind.DISPATCH
    return TriggerKind.PUSH


def build_trigger(
    service: str,
    *,
    branch: str | None,
    pr: int | None,
    dispatch_env: str | None,
    sha: str,
    timestamp: datetime | None,
    build_number: int | None,
    actor: str = "unknown",
) -> TriggerEvent:
    """Assemble a TriggerEvent from command-line options.

    A timestamp without a zone is taken as UTC; when omitted, now is used.
    Invalid combinations exit with a usage error.
    """
    targets = [t for t in (branch, pr, dispatch_env) if t is not None]
    if len(targets) != 1:
        error_exit(
            "Exactly one of --branch, --pr or --dispatch-env is required",
            exit_code=ExitCode.USAGE_ERROR,
        )
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    elif timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    try:
        return TriggerEvent(
            service=service,
            kind=_trigger_kind(pr, dispatch_env),
            branch=branch,
            pr_number=pr,
            dispatch_environment=dispatch_env,
            commit_sha=sha,
            timestamp=timestamp,
            build_number=build_number,
            actor=actor,
        )
    except ValidationError as e:
        error_exit(f"Invalid trigger: {e.errors()[0]['msg']}", exit_code=ExitCode.USAGE_ERROR)


def trigger_options(func: F) -> F:
    """Shared trigger options for ``tag`` and ``run``."""
    options = [
        click.option("--branch", default=None, help="Pushed branch name.", metavar="BRANCH"),
        click.option("--pr", type=int, default=None, help="Pull request number.", metavar="N"),
        click.option(
            "--dispatch-env",
            default=None,
            help="Environment chosen on manual dispatch.",
            metavar="ENV",
        ),
        click.option("--sha", required=True, help="Commit hash.", metavar="SHA"),
        click.option(
            "--timestamp",
            type=click.DateTime(
                formats=["%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S"]
            ),
            default=None,
            help="Trigger time (UTC when no offset is given). Defaults to now.",
        ),
        click.option(
            "--build", "build_number", type=int, default=None, help="CI build number."
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.command(
    name="tag",
    help="Resolve the image tag for a trigger.",
    epilog="""
Examples:
    $ convoy tag frontend --branch main --sha 3f9c2ab --timestamp 2024-01-26T14:30:22Z
    $ convoy tag frontend --branch release/2.1 --sha 3f9c2ab --build 17
    $ convoy tag frontend --pr 42 --sha 3f9c2ab --output json

Exit Codes:
    0 - Success
    2 - Trigger cannot be tagged
""",
)
@click.argument("service")
@trigger_options
@output_option
@click.pass_context
def tag_command(
    ctx: click.Context,
    service: str,
    branch: str | None,
    pr: int | None,
    dispatch_env: str | None,
    sha: str,
    timestamp: datetime | None,
    build_number: int | None,
    output: str,
) -> None:
    """Resolve and print the image tag for a trigger.

    \b
    SERVICE: Service name or alias.
    """
    cli_ctx = get_cli_context(ctx)
    trigger = build_trigger(
        service,
        branch=branch,
        pr=pr,
        dispatch_env=dispatch_env,
        sha=sha,
        timestamp=timestamp,
        build_number=build_number,
    )
    try:
        tag = resolve_tag(trigger, cli_ctx.config)
    except PipelineError as e:
        handle_pipeline_error(e, output)

    if output == "json":
        emit_json(tag.model_dump(mode="json"))
        return
    success(tag.value)
    if tag.aliases:
        click.echo(f"aliases: {', '.join(tag.aliases)}", err=True)


__all__: list[str] = ["build_trigger", "tag_command", "trigger_options"]
