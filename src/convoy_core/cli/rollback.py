"""Rollback command: redeploy an earlier version from deployment history.

Accepts either the comment form, exactly as typed in a chat or PR comment,
or the dispatch form built from options. ``--dry-run`` resolves the target
and prints it without deploying.

Example:
    $ convoy rollback "/rollback web prod v1.4.2 login broken"
    $ convoy rollback --service frontend --env production --reason "bad release"
    $ convoy rollback "/rollback api staging" --dry-run --output json
"""

from __future__ import annotations

import click
import structlog

from convoy_core.cli.promote import format_deployment
from convoy_core.cli.utils import (
    ExitCode,
    emit_json,
    error_exit,
    get_cli_context,
    handle_pipeline_error,
    info,
    output_option,
    success,
)
from convoy_core.config import get_operator
from convoy_core.errors import PipelineError
from convoy_core.rollback import RollbackCoordinator
from convoy_core.schemas.deployment import RollbackPlan

logger = structlog.get_logger(__name__)


def _format_plan(plan: RollbackPlan) -> str:
    request = plan.request
    lines = [
        "",
        "Rollback Plan (dry run)",
        "=" * 40,
        f"Service:        {request.service}",
        f"Environment:    {request.environment}",
        f"Current:        {plan.superseded.tag} (#{plan.superseded.sequence})",
        f"Target:         {plan.target.tag} (#{plan.target.sequence})",
        f"Target Digest:  {plan.target.digest or '-'}",
        f"Reason:         {request.reason}",
        f"Requested By:   {request.requested_by}",
        "",
    ]
    return "\n".join(lines)


@click.command(
    name="rollback",
    help="Roll an environment back to a previous deployment.",
    epilog="""
Examples:
    $ convoy rollback "/rollback web prod v1.4.2 login broken"
    $ convoy rollback --service frontend --env production --version prod-20240126-143022
    $ convoy rollback "/rollback api staging" --dry-run

Exit Codes:
    0  - Success
    2  - Request could not be parsed
    3  - Configuration error
    11 - Version not in the environment's history
    12 - No earlier deployment to roll back to
    13 - Another operation holds the environment
    18 - Manifest sync failed
""",
)
@click.argument("command_text", required=False, metavar="[COMMAND]")
@click.option("--service", default=None, help="Service name or alias.", metavar="SERVICE")
@click.option("--env", "environment", default=None, help="Environment.", metavar="ENV")
@click.option(
    "--version",
    "target_version",
    default=None,
    help="Version to restore (tag, v-version or digest). Defaults to the previous one.",
    metavar="VERSION",
)
@click.option("--reason", "-r", default=None, help="Reason for the rollback.", metavar="TEXT")
@click.option(
    "--operator",
    default=None,
    help="Operator identity. Defaults to $CONVOY_OPERATOR, $USER or 'unknown'.",
    metavar="IDENTITY",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Resolve the rollback target without deploying.",
)
@output_option
@click.pass_context
def rollback_command(
    ctx: click.Context,
    command_text: str | None,
    service: str | None,
    environment: str | None,
    target_version: str | None,
    reason: str | None,
    operator: str | None,
    dry_run: bool,
    output: str,
) -> None:
    """Roll back SERVICE in an environment.

    \b
    COMMAND: Comment text starting with /rollback. Omit it to use the
             --service/--env/--version/--reason options instead.
    """
    cli_ctx = get_cli_context(ctx)
    dispatch_options = any(v is not None for v in (service, environment, target_version, reason))
    if command_text is not None and dispatch_options:
        error_exit(
            "Give either a /rollback COMMAND or the dispatch options, not both",
            exit_code=ExitCode.USAGE_ERROR,
        )
    if command_text is None and not dispatch_options:
        error_exit(
            "Missing rollback request: give a /rollback COMMAND or --service and --env",
            exit_code=ExitCode.USAGE_ERROR,
        )

    requested_by = operator or get_operator()
    try:
        machine = cli_ctx.state_machine(read_only=dry_run)
        coordinator = RollbackCoordinator(machine)
        if command_text is not None:
            request = coordinator.parse_command(command_text, requested_by=requested_by)
        else:
            payload = {
                key: value
                for key, value in (
                    ("service", service),
                    ("environment", environment),
                    ("version", target_version),
                    ("reason", reason),
                )
                if value is not None
            }
            request = coordinator.parse_dispatch(payload, requested_by=requested_by)

        if dry_run:
            plan = coordinator.preview(request)
        else:
            if output == "table":
                info(f"Rolling back {request.service} in {request.environment}")
            deployment = coordinator.execute(request)
    except PipelineError as e:
        handle_pipeline_error(e, output)

    if dry_run:
        if output == "json":
            emit_json(plan.model_dump(mode="json"))
        else:
            click.echo(_format_plan(plan))
            success(f"Would roll back to {plan.target.tag}")
        return

    logger.debug(
        "rollback_command_completed",
        service=deployment.service,
        environment=deployment.environment,
        tag=deployment.tag,
    )
    if output == "json":
        emit_json(deployment.model_dump(mode="json"))
        return
    click.echo(format_deployment(deployment, "Rollback"))
    success(f"Rolled back {deployment.service} in {deployment.environment} to {deployment.tag}")


__all__: list[str] = ["rollback_command"]
