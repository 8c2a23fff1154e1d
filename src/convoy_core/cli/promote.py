"""Promote command: move a deployed tag one environment forward.

The tag must already be a succeeded deployment in the source environment.
The manifest sync runs through ``collaborators.manifest_command``.

Example:
    $ convoy promote frontend --from development --to staging --tag dev-3f9c2ab \\
        --approver alice
"""

from __future__ import annotations

import click
import structlog

from convoy_core.cli.utils import (
    emit_json,
    get_cli_context,
    handle_pipeline_error,
    info,
    output_option,
    success,
)
from convoy_core.config import get_operator
from convoy_core.errors import PipelineError
from convoy_core.schemas.deployment import Deployment, PromotionRequest
from convoy_core.tags import validate_tag

logger = structlog.get_logger(__name__)


def format_deployment(deployment: Deployment, title: str) -> str:
    """Human-readable summary of one deployment record."""
    lines = [
        "",
        title,
        "=" * 40,
        f"Deployment ID:  {deployment.deployment_id}",
        f"Service:        {deployment.service}",
        f"Environment:    {deployment.environment}",
        f"Tag:            {deployment.tag}",
        f"Digest:         {deployment.digest or '-'}",
        f"Status:         {deployment.status.value}",
        f"Source:         {deployment.source}",
        f"Operator:       {deployment.operator}",
        f"Deployed At:    {deployment.deployed_at.isoformat()}",
    ]
    if deployment.aliases:
        lines.append(f"Aliases:        {', '.join(deployment.aliases)}")
    if deployment.reason:
        lines.append(f"Reason:         {deployment.reason}")
    if deployment.rolled_back_from:
        lines.append(f"Supersedes:     {deployment.rolled_back_from}")
    if deployment.trace_id:
        lines.append(f"Trace ID:       {deployment.trace_id}")
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="promote",
    help="Promote a tag to the next environment.",
    epilog="""
Examples:
    $ convoy promote frontend --from development --to staging --tag dev-3f9c2ab --approver alice
    $ convoy promote web --from stage --to prod --tag stage-20240126-143022-rc.17 \\
        --approver alice --approver bob --output json

Exit Codes:
    0  - Success (or tag already current)
    3  - Configuration error
    11 - Tag not deployed in the source environment
    13 - Another operation holds the target environment
    14 - Invalid transition (backward, skipped or unknown environment)
    15 - Not enough approvals
    18 - Manifest sync failed
""",
)
@click.argument("service")
@click.option("--from", "from_env", required=True, help="Source environment.", metavar="ENV")
@click.option("--to", "to_env", required=True, help="Target environment.", metavar="ENV")
@click.option("--tag", required=True, help="Tag to promote.", metavar="TAG")
@click.option(
    "--approver",
    "approvers",
    multiple=True,
    help="Approver identity (repeatable).",
    metavar="ID",
)
@click.option(
    "--operator",
    default=None,
    help="Operator identity. Defaults to $CONVOY_OPERATOR, $USER or 'unknown'.",
    metavar="IDENTITY",
)
@output_option
@click.pass_context
def promote_command(
    ctx: click.Context,
    service: str,
    from_env: str,
    to_env: str,
    tag: str,
    approvers: tuple[str, ...],
    operator: str | None,
    output: str,
) -> None:
    """Promote TAG of SERVICE from one environment to the next.

    \b
    SERVICE: Service name or alias.
    """
    cli_ctx = get_cli_context(ctx)
    if output == "table":
        info(f"Promoting {service} {tag}: {from_env} -> {to_env}")

    try:
        validate_tag(tag)
        machine = cli_ctx.state_machine()
        deployment = machine.promote(
            PromotionRequest(
                service=service,
                from_environment=from_env,
                to_environment=to_env,
                source_tag=tag,
                operator=operator or get_operator(),
                approved_by=frozenset(approvers),
            )
        )
    except PipelineError as e:
        handle_pipeline_error(e, output)

    logger.debug(
        "promote_command_completed",
        service=deployment.service,
        environment=deployment.environment,
        sequence=deployment.sequence,
    )
    if output == "json":
        emit_json(deployment.model_dump(mode="json"))
        return
    click.echo(format_deployment(deployment, "Promotion"))
    success(f"{deployment.service} {deployment.tag} is current in {deployment.environment}")


__all__: list[str] = ["format_deployment", "promote_command"]
