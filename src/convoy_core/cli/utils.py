"""CLI utility functions and error handling.

This module provides shared utilities for the convoy CLI, including:
- Output helpers for consistent stderr/stdout usage
- Mapping of pipeline errors to exit codes and JSON error objects
- Construction of the history and collaborators from the loaded config

Errors are printed as plain text to stderr (or as a JSON object on stdout
with ``--output json``) and the process exits with the error's
``exit_code``, so CI jobs can branch on the failure type.

Example:
    from convoy_core.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Report not found", exit_code=ExitCode.USAGE_ERROR, path=str(path))
"""

from __future__ import annotations

import json
import sys
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import structlog

from convoy_core.collaborators import (
    ApplyResult,
    CommandBuildCollaborator,
    CommandManifestCollaborator,
    CommandScanCollaborator,
)
from convoy_core.config import load_config, resolve_state_dir
from convoy_core.errors import ConfigurationError, PipelineError
from convoy_core.history import JsonLinesDeploymentHistory
from convoy_core.orchestrator import default_sink
from convoy_core.schemas.config import PipelineConfig
from convoy_core.state_machine import PromotionStateMachine

if TYPE_CHECKING:
    from typing import NoReturn

logger = structlog.get_logger(__name__)

OUTPUT_FORMATS = ("table", "json")


class ExitCode(IntEnum):
    """Exit codes for failures detected by the CLI itself.

    Pipeline failures exit with their error's ``exit_code`` instead.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, unreadable input)."""

    GATE_BLOCKED = 9
    """Security gate blocked the image."""

    BUILD_FAILED = 16
    """Build failed during a pipeline run."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Report not found", path="/path/to/report.json")
        # Output: Error: Report not found (path=/path/to/report.json)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress updates that should not be captured by stdout
    redirection.
    """
    click.echo(message, err=True)


def emit_json(data: Any) -> None:
    """Print a JSON document to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _error_payload(exc: PipelineError) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "exit_code": exc.exit_code,
        "retryable": exc.retryable,
    }
    for attr in ("service", "environment", "tag", "problems", "available_versions"):
        value = getattr(exc, attr, None)
        if value is not None:
            payload[attr] = value
    return payload


def handle_pipeline_error(exc: PipelineError, output: str) -> NoReturn:
    """Report a pipeline error and exit with its exit code."""
    logger.debug(
        "cli_command_failed",
        error_type=type(exc).__name__,
        exit_code=exc.exit_code,
    )
    if output == "json":
        emit_json(_error_payload(exc))
    else:
        error(str(exc))
        problems = getattr(exc, "problems", None)
        if problems and len(problems) > 1:
            for problem in problems:
                click.echo(f"  - {problem}", err=True)
        available = getattr(exc, "available_versions", None)
        if available:
            warn("Available versions: " + ", ".join(available))
        if exc.retryable:
            warn("Another operation holds this service/environment; retry later")
    sys.exit(exc.exit_code)


class ReadOnlyManifest:
    """Manifest collaborator for commands that only inspect history."""

    def apply(self, service: str, environment: str, tag: str, image_ref: str) -> ApplyResult:
        return ApplyResult(success=False, detail="read-only command cannot deploy")


class CliContext:
    """Lazily loaded config and state shared by all commands.

    Args:
        config_path: Explicit config file, or None for the default lookup.
        state_dir: Explicit state directory, or None for the default.
    """

    def __init__(self, config_path: str | None, state_dir: str | None) -> None:
        self.config_path = config_path
        self.state_dir = resolve_state_dir(state_dir)
        self._config: PipelineConfig | None = None

    @property
    def config(self) -> PipelineConfig:
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    def history(self) -> JsonLinesDeploymentHistory:
        return JsonLinesDeploymentHistory(self.state_dir)

    def _command(self, name: str) -> str:
        command = getattr(self.config.collaborators, name)
        if not command:
            raise ConfigurationError(
                f"collaborators.{name} is not set", source=self.config_path or "convoy.yaml"
            )
        return command

    def manifest(self) -> CommandManifestCollaborator:
        return CommandManifestCollaborator(
            self._command("manifest_command"),
            timeout_seconds=self.config.collaborators.timeout_seconds,
        )

    def builder(self) -> CommandBuildCollaborator:
        return CommandBuildCollaborator(
            self._command("build_command"),
            timeout_seconds=self.config.collaborators.timeout_seconds,
        )

    def scanner(self) -> CommandScanCollaborator:
        return CommandScanCollaborator(
            self._command("scan_command"),
            scanner_format=self.config.collaborators.scan_format,
            timeout_seconds=self.config.collaborators.timeout_seconds,
        )

    def state_machine(self, *, read_only: bool = False) -> PromotionStateMachine:
        """State machine over the persisted history.

        Read-only machines need no manifest command and refuse to deploy.
        """
        return PromotionStateMachine(
            self.config,
            self.history(),
            ReadOnlyManifest() if read_only else self.manifest(),
            sink=default_sink(self.config),
        )


def get_cli_context(ctx: click.Context) -> CliContext:
    """Return the CliContext stored by the root group."""
    obj = ctx.find_object(CliContext)
    if obj is None:
        obj = CliContext(None, None)
        ctx.obj = obj
    return obj


def read_text_input(path: str) -> str:
    """Read a file, or stdin when ``path`` is ``-``."""
    if path == "-":
        return click.get_text_stream("stdin").read()
    report_path = Path(path)
    if not report_path.is_file():
        error_exit("Input file not found", exit_code=ExitCode.USAGE_ERROR, path=path)
    return report_path.read_text(encoding="utf-8")


output_option = click.option(
    "--output",
    type=click.Choice(OUTPUT_FORMATS, case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)


__all__: list[str] = [
    "CliContext",
    "ExitCode",
    "emit_json",
    "error",
    "error_exit",
    "get_cli_context",
    "handle_pipeline_error",
    "info",
    "output_option",
    "read_text_input",
    "success",
    "warn",
]
