"""Run command: handle one build trigger end to end.

Resolves the tag, builds, scans and gates the image, then deploys where the
environment auto-deploys. Needs ``build_command``, ``scan_command`` and
``manifest_command`` under ``collaborators`` in the config.

Example:
    $ convoy run frontend --branch develop --sha 3f9c2ab
    $ convoy run frontend --branch feature/login --sha 3f9c2ab --output json
"""

from __future__ import annotations

from datetime import datetime

import click
import structlog

from convoy_core.cli.tag import build_trigger, trigger_options
from convoy_core.cli.utils import (
    ExitCode,
    emit_json,
    get_cli_context,
    handle_pipeline_error,
    info,
    output_option,
    success,
)
from convoy_core.config import get_operator
from convoy_core.errors import PipelineError
from convoy_core.orchestrator import PipelineOrchestrator
from convoy_core.schemas.deployment import PipelineRunResult, RunStatus

logger = structlog.get_logger(__name__)

_EXIT_CODES = {
    RunStatus.BLOCKED: ExitCode.GATE_BLOCKED,
    RunStatus.FAILED: ExitCode.BUILD_FAILED,
}


def _format_result(result: PipelineRunResult) -> str:
    lines = [
        "",
        f"Run:          {result.run_id}",
        f"Service:      {result.service}",
        f"Environment:  {result.environment}",
        f"Tag:          {result.tag.value if result.tag else '-'}",
        f"Digest:       {result.digest or '-'}",
        f"Status:       {result.status.value}",
    ]
    if result.gate is not None:
        lines.append(f"Gate:         {result.gate.decision.value}")
    if result.deployment is not None:
        lines.append(f"Deployment:   {result.deployment.deployment_id}")
    if result.error:
        lines.append(f"Error:        {result.error}")
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="run",
    help="Build, gate and (where allowed) deploy one trigger.",
    epilog="""
Examples:
    $ convoy run frontend --branch develop --sha 3f9c2ab
    $ convoy run frontend --branch release/2.1 --sha 3f9c2ab --build 17
    $ convoy run frontend --pr 42 --sha 3f9c2ab --ignore-unfixed

Exit Codes:
    0  - Deployed, promotable or verified
    2  - Trigger cannot be tagged
    3  - Configuration error
    9  - Security gate blocked
    13 - Another operation holds the environment
    16 - Build failed
    18 - Manifest sync failed
    19 - Scanner output could not be parsed
""",
)
@click.argument("service")
@trigger_options
@click.option(
    "--actor",
    default=None,
    help="Identity that caused the trigger. Defaults to the operator identity.",
    metavar="IDENTITY",
)
@click.option(
    "--ignore-unfixed",
    is_flag=True,
    default=False,
    help="Never block on findings without a fixed version.",
)
@output_option
@click.pass_context
def run_command(
    ctx: click.Context,
    service: str,
    branch: str | None,
    pr: int | None,
    dispatch_env: str | None,
    sha: str,
    timestamp: datetime | None,
    build_number: int | None,
    actor: str | None,
    ignore_unfixed: bool,
    output: str,
) -> None:
    """Run the pipeline for one trigger.

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
        actor=actor or get_operator(),
    )
    if output == "table":
        info(f"Running pipeline for {service}")

    try:
        orchestrator = PipelineOrchestrator(
            cli_ctx.config,
            builder=cli_ctx.builder(),
            scanner=cli_ctx.scanner(),
            manifest=cli_ctx.manifest(),
            history=cli_ctx.history(),
            ignore_unfixed=ignore_unfixed,
        )
        result = orchestrator.handle(trigger)
    except PipelineError as e:
        handle_pipeline_error(e, output)

    logger.debug("run_command_completed", run_id=result.run_id, status=result.status.value)
    if output == "json":
        emit_json(result.model_dump(mode="json"))
    else:
        click.echo(_format_result(result))
        if result.ok:
            success(f"Pipeline run {result.status.value}")
        else:
            click.echo(f"Error: {result.error}", err=True)

    exit_code = _EXIT_CODES.get(result.status)
    if exit_code is not None:
        ctx.exit(exit_code)


__all__: list[str] = ["run_command"]
