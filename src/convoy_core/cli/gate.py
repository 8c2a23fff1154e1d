"""Gate command: evaluate a scanner report against an environment's policy.

Example:
    $ trivy image --format json registry.example.com/frontend:dev-3f9c2ab > report.json
    $ convoy gate report.json --env production
    $ convoy gate report.json --format grype --fail-on CRITICAL --output json
"""

from __future__ import annotations

import click
import structlog

from convoy_core.cli.utils import (
    ExitCode,
    emit_json,
    get_cli_context,
    handle_pipeline_error,
    output_option,
    read_text_input,
    success,
)
from convoy_core.errors import ConfigurationError, PipelineError
from convoy_core.schemas.security import GateEvaluation, Severity, VulnerabilityReport
from convoy_core.security_gate import SCANNER_FORMATS, evaluate_security_gate, parse_scanner_output

logger = structlog.get_logger(__name__)


def _format_evaluation(report: VulnerabilityReport, evaluation: GateEvaluation) -> str:
    counts = report.counts()
    lines = [
        "",
        f"Decision:   {evaluation.decision.value.upper()}",
        f"Fail on:    {', '.join(s.value for s in evaluation.fail_on) or '(advisory)'}",
        "Findings:   "
        + ", ".join(f"{severity.value}={counts.get(severity, 0)}" for severity in Severity),
    ]
    if evaluation.ignored_unfixed:
        lines.append(f"Ignored:    {evaluation.ignored_unfixed} without a fix")
    if evaluation.offending:
        lines.append("")
        lines.append("Offending:")
        for finding in evaluation.offending:
            fix = f" (fixed in {finding.fixed_version})" if finding.fixed_version else ""
            lines.append(
                f"  {finding.severity.value:<8} {finding.id}  {finding.package}"
                f" {finding.installed_version}{fix}"
            )
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="gate",
    help="Evaluate a vulnerability scan report against a severity policy.",
    epilog="""
Examples:
    $ convoy gate report.json --env production
    $ convoy gate - --format grype --fail-on CRITICAL < grype.json
    $ convoy gate report.json --env staging --ignore-unfixed --output json

Exit Codes:
    0  - Gate passed
    2  - Invalid options
    3  - Unknown environment
    9  - Gate blocked
    19 - Report could not be parsed
""",
)
@click.argument("report")
@click.option(
    "--format",
    "scanner_format",
    type=click.Choice(SCANNER_FORMATS, case_sensitive=False),
    default="trivy",
    show_default=True,
    help="Scanner JSON format.",
)
@click.option(
    "--env",
    "environment",
    default=None,
    help="Environment whose threshold applies.",
    metavar="ENV",
)
@click.option(
    "--fail-on",
    "fail_on",
    multiple=True,
    type=click.Choice([s.value for s in Severity], case_sensitive=False),
    help="Severity to fail on (repeatable). Overrides the environment threshold.",
)
@click.option(
    "--ignore-unfixed",
    is_flag=True,
    default=False,
    help="Never block on findings without a fixed version.",
)
@output_option
@click.pass_context
def gate_command(
    ctx: click.Context,
    report: str,
    scanner_format: str,
    environment: str | None,
    fail_on: tuple[str, ...],
    ignore_unfixed: bool,
    output: str,
) -> None:
    """Evaluate a scanner report.

    \b
    REPORT: Path to the scanner JSON output, or - for stdin.
    """
    cli_ctx = get_cli_context(ctx)
    raw = read_text_input(report)

    try:
        config = cli_ctx.config
        env = None
        if environment is not None:
            env = config.get_environment(environment)
            if env is None:
                raise ConfigurationError(
                    f"environment '{environment}' is not configured", source="--env"
                )
        parsed = parse_scanner_output(raw, scanner_format.lower())
        evaluation = evaluate_security_gate(
            parsed,
            env,
            fail_on=[s.upper() for s in fail_on] if fail_on else None,
            ignore_unfixed=ignore_unfixed,
            config=config,
        )
    except PipelineError as e:
        handle_pipeline_error(e, output)

    if output == "json":
        emit_json(evaluation.model_dump(mode="json"))
    else:
        click.echo(_format_evaluation(parsed, evaluation))
        if evaluation.passed:
            success("Security gate passed")

    if evaluation.blocked:
        logger.debug("gate_command_blocked", offending=len(evaluation.offending))
        if output != "json":
            click.echo(f"Error: {evaluation.reason}", err=True)
        ctx.exit(ExitCode.GATE_BLOCKED)


__all__: list[str] = ["gate_command"]
