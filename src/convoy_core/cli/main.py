"""Main entry point for the convoy CLI.

This module provides the Click-based CLI over the pipeline core.

Commands:
    convoy tag: Resolve the image tag for a trigger
    convoy gate: Evaluate a scanner report against a severity policy
    convoy run: Build, gate and deploy one trigger
    convoy promote: Promote a tag to the next environment
    convoy rollback: Roll an environment back from history
    convoy status: Current deployment per environment
    convoy history: Deployment history of one environment

Example:
    $ convoy --help
    $ convoy --config convoy.yaml status frontend
    $ convoy rollback "/rollback web prod" --dry-run
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from convoy_core.cli.gate import gate_command
from convoy_core.cli.promote import promote_command
from convoy_core.cli.rollback import rollback_command
from convoy_core.cli.run import run_command
from convoy_core.cli.status import history_command, status_command
from convoy_core.cli.tag import tag_command
from convoy_core.cli.utils import CliContext
from convoy_core.telemetry import configure_logging

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _get_version() -> str:
    """Get the convoy-core package version, or 'unknown' if not installed."""
    try:
        return get_version("convoy-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="convoy",
    help="convoy - Build, gate, promote and roll back container deployments.",
    epilog="Use 'convoy <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="convoy",
    message="%(prog)s %(version)s",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Pipeline config (YAML). Defaults to $CONVOY_CONFIG or ./convoy.yaml.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory holding history.jsonl. Defaults to $CONVOY_STATE_DIR or ./.convoy.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum log level (logs go to stderr).",
)
@click.option(
    "--log-json/--no-log-json",
    default=False,
    show_default=True,
    help="Render logs as JSON lines.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    state_dir: str | None,
    log_level: str,
    log_json: bool,
) -> None:
    """Root command group for the convoy CLI."""
    configure_logging(log_level, json_output=log_json)
    ctx.obj = CliContext(config_path, state_dir)


cli.add_command(tag_command)
cli.add_command(gate_command)
cli.add_command(run_command)
cli.add_command(promote_command)
cli.add_command(rollback_command)
cli.add_command(status_command)
cli.add_command(history_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the convoy CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        exit_code = cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    if isinstance(exit_code, int) and exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
