"""Status and history commands: query the persisted deployment history.

Example:
    $ convoy status frontend
    $ convoy history frontend --env production --limit 5 --output json
"""

from __future__ import annotations

import click

from convoy_core.cli.utils import emit_json, get_cli_context, handle_pipeline_error, output_option
from convoy_core.errors import PipelineError
from convoy_core.schemas.deployment import Deployment


def _short(deployment: Deployment | None) -> str:
    if deployment is None:
        return "-"
    return f"{deployment.tag} ({deployment.deployed_at.strftime('%Y-%m-%d %H:%M:%S')})"


@click.command(
    name="status",
    help="Show the current deployment of a service in each environment.",
    epilog="""
Examples:
    $ convoy status frontend
    $ convoy status web --output json
""",
)
@click.argument("service")
@output_option
@click.pass_context
def status_command(ctx: click.Context, service: str, output: str) -> None:
    """Show current and previous deployments plus rolling aliases.

    \b
    SERVICE: Service name or alias.
    """
    cli_ctx = get_cli_context(ctx)
    try:
        machine = cli_ctx.state_machine(read_only=True)
        svc = machine.service(service)
    except PipelineError as e:
        handle_pipeline_error(e, output)

    history = machine.history
    rolling = history.rolling_tags(svc.name)
    rows = []
    for env in cli_ctx.config.environments:
        if not cli_ctx.config.supports(svc, env.name):
            continue
        current = history.current(svc.name, env.name)
        rows.append(
            {
                "environment": env.name,
                "current": current,
                "previous": history.previous(svc.name, env.name),
                "aliases": [t.value for t in rolling if t.environment == env.name],
            }
        )

    if output == "json":
        emit_json(
            {
                "service": svc.name,
                "environments": [
                    {
                        "environment": row["environment"],
                        "current": row["current"].model_dump(mode="json")
                        if row["current"]
                        else None,
                        "previous": row["previous"].model_dump(mode="json")
                        if row["previous"]
                        else None,
                        "rolling_aliases": row["aliases"],
                    }
                    for row in rows
                ],
            }
        )
        return

    lines = ["", f"Service: {svc.name} ({svc.registry})", "=" * 50]
    for row in rows:
        alias_text = f"  [{', '.join(row['aliases'])}]" if row["aliases"] else ""
        lines.append(f"  {row['environment']}: {_short(row['current'])}{alias_text}")
        lines.append(f"      previous: {_short(row['previous'])}")
    lines.append("")
    click.echo("\n".join(lines))


@click.command(
    name="history",
    help="List the deployment history of a service in one environment.",
    epilog="""
Examples:
    $ convoy history frontend --env production
    $ convoy history api --env stage --limit 5 --output json
""",
)
@click.argument("service")
@click.option("--env", "environment", required=True, help="Environment.", metavar="ENV")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Show only the most recent N records.",
)
@output_option
@click.pass_context
def history_command(
    ctx: click.Context,
    service: str,
    environment: str,
    limit: int | None,
    output: str,
) -> None:
    """List history records, newest first.

    \b
    SERVICE: Service name or alias.
    """
    cli_ctx = get_cli_context(ctx)
    try:
        machine = cli_ctx.state_machine(read_only=True)
        svc = machine.service(service)
        env = machine.environment(svc, environment)
    except PipelineError as e:
        handle_pipeline_error(e, output)

    records = list(reversed(machine.history.entries(svc.name, env.name)))
    if limit is not None:
        records = records[:limit]

    if output == "json":
        emit_json([record.model_dump(mode="json") for record in records])
        return

    if not records:
        click.echo(f"No deployments of {svc.name} in {env.name}")
        return

    lines = [
        "",
        f"{'#':>4}  {'TAG':<36} {'STATUS':<10} {'SOURCE':<10} {'OPERATOR':<12} DEPLOYED AT",
    ]
    for record in records:
        lines.append(
            f"{record.sequence:>4}  {record.tag:<36} {record.status.value:<10} "
            f"{record.source:<10} {record.operator:<12} "
            f"{record.deployed_at.isoformat()}"
        )
    lines.append("")
    click.echo("\n".join(lines))


__all__: list[str] = ["history_command", "status_command"]
