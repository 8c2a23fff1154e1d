"""External collaborators: build, scan, manifest sync and reporting.

The core never shells out or talks HTTP directly; it calls these interfaces.
Each has a command-template implementation that runs a subprocess with a
timeout, substituting placeholders:

- ``${IMAGE_REF}``, ``${DOCKERFILE}``, ``${CONTEXT}`` for builds
- ``${ARTIFACT_REF}`` for scans
- ``${SERVICE}``, ``${ENVIRONMENT}``, ``${TAG}``, ``${IMAGE_REF}`` for manifest sync

Reporting sinks never raise: a failed delivery is logged and dropped.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from convoy_core.errors import ScanReportParseError
from convoy_core.schemas.config import ServiceConfig, WebhookConfig
from convoy_core.schemas.security import VulnerabilityReport
from convoy_core.security_gate import parse_scanner_output
from convoy_core.telemetry import create_span

logger = structlog.get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 600
BACKOFF_BASE_SECONDS = 1.0
"""Base delay for webhook retry backoff (doubles each retry)."""


class BuildResult(BaseModel):
    """Outcome of a build.

    Attributes:
        success: Whether the image was built and pushed.
        digest: Pushed image digest (sha256:...), when successful.
        log: Build output or failure description.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    digest: str | None = Field(default=None, pattern=r"^sha256:[a-f0-9]{64}$")
    log: str = ""


class ApplyResult(BaseModel):
    """Outcome of a manifest sync."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    detail: str = ""


@runtime_checkable
class BuildCollaborator(Protocol):
    def build(self, service: ServiceConfig, image_ref: str) -> BuildResult: ...


@runtime_checkable
class ScanCollaborator(Protocol):
    def scan(self, image_ref: str) -> VulnerabilityReport: ...


@runtime_checkable
class ManifestCollaborator(Protocol):
    def apply(self, service: str, environment: str, tag: str, image_ref: str) -> ApplyResult: ...


@runtime_checkable
class ReportingSink(Protocol):
    def report(self, event_type: str, payload: dict[str, Any]) -> None: ...


def _render(template: str, values: dict[str, str]) -> str:
    command = template
    for key, value in values.items():
        command = command.replace(f"${{{key}}}", shlex.quote(value))
    return command


def run_command(command: str, timeout_seconds: float, name: str) -> tuple[bool, str, str]:
    """Run a shell command with a timeout.

    Returns:
        (success, stdout, error message). The error is empty on success.
    """
    log = logger.bind(collaborator=name, timeout_seconds=timeout_seconds)
    start_time = time.monotonic()
    log.info("collaborator_command_started", command=command)
    try:
        result = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        log.warning("collaborator_command_timeout")
        return False, "", f"{name} timed out after {timeout_seconds:g} seconds"
    except OSError as e:
        log.error("collaborator_command_error", error=str(e))
        return False, "", f"{name} could not be started: {e}"

    duration_ms = int((time.monotonic() - start_time) * 1000)
    if result.returncode != 0:
        error = f"{name} failed with exit code {result.returncode}"
        if result.stderr:
            error = f"{error}: {result.stderr.strip()}"
        log.warning(
            "collaborator_command_failed",
            exit_code=result.returncode,
            duration_ms=duration_ms,
        )
        return False, result.stdout, error

    log.info("collaborator_command_passed", duration_ms=duration_ms)
    return True, result.stdout, ""


class CommandBuildCollaborator:
    """Builds and pushes an image by running a command template.

    The pushed digest is read from the last non-empty stdout line.

    Example:
        >>> builder = CommandBuildCollaborator(
        ...     "docker buildx build -f ${DOCKERFILE} -t ${IMAGE_REF} --push ${CONTEXT}"
        ...     " && docker inspect --format '{{index .RepoDigests 0}}' ${IMAGE_REF}"
        ...     " | cut -d@ -f2"
        ... )
    """

    def __init__(
        self,
        command: str,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def build(self, service: ServiceConfig, image_ref: str) -> BuildResult:
        command = _render(
            self.command,
            {
                "IMAGE_REF": image_ref,
                "DOCKERFILE": service.dockerfile,
                "CONTEXT": service.context,
            },
        )
        with create_span("convoy.collaborator.build", attributes={"convoy.image_ref": image_ref}):
            ok, stdout, error = run_command(command, self.timeout_seconds, "build")
        if not ok:
            return BuildResult(success=False, log=error)

        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        digest = lines[-1] if lines else ""
        if not digest.startswith("sha256:") or len(digest) != 71:
            return BuildResult(
                success=False,
                log=f"build did not report an image digest (last line: {digest[:80]!r})",
            )
        return BuildResult(success=True, digest=digest, log=stdout[-2000:])


class CommandScanCollaborator:
    """Scans an image by running a scanner command that prints JSON.

    Args:
        command: Template with ``${ARTIFACT_REF}``, e.g.
            ``trivy image --format json ${ARTIFACT_REF}``.
        scanner_format: trivy or grype.
    """

    def __init__(
        self,
        command: str,
        scanner_format: str = "trivy",
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.command = command
        self.scanner_format = scanner_format
        self.timeout_seconds = timeout_seconds

    def scan(self, image_ref: str) -> VulnerabilityReport:
        """Run the scanner and parse its output.

        Raises:
            ScanReportParseError: If the scanner fails or prints invalid JSON.
        """
        command = _render(self.command, {"ARTIFACT_REF": image_ref})
        with create_span("convoy.collaborator.scan", attributes={"convoy.image_ref": image_ref}):
            ok, stdout, error = run_command(command, self.timeout_seconds, "scan")
        if not ok:
            raise ScanReportParseError(error, scanner_format=self.scanner_format)
        return parse_scanner_output(stdout, self.scanner_format, image_ref=image_ref)


class CommandManifestCollaborator:
    """Updates deployment manifests by running a command template."""

    def __init__(
        self,
        command: str,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def apply(self, service: str, environment: str, tag: str, image_ref: str) -> ApplyResult:
        command = _render(
            self.command,
            {
                "SERVICE": service,
                "ENVIRONMENT": environment,
                "TAG": tag,
                "IMAGE_REF": image_ref,
            },
        )
        with create_span(
            "convoy.collaborator.manifest",
            attributes={"convoy.service": service, "convoy.environment": environment},
        ):
            ok, stdout, error = run_command(command, self.timeout_seconds, "manifest sync")
        return ApplyResult(success=ok, detail=error or stdout.strip()[-500:])


class LogReportingSink:
    """Reports events to the structured log."""

    def report(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("pipeline_report", event_type=event_type, **payload)


class WebhookReportingSink:
    """POSTs JSON reports to configured webhooks.

    Each webhook only receives the event types it subscribes to. Server
    errors, timeouts and transport errors are retried with exponential
    backoff; client errors are not. Delivery failures are logged, never
    raised.

    Args:
        configs: Webhook endpoints.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        backoff_base_seconds: First retry delay.
    """

    def __init__(
        self,
        configs: list[WebhookConfig],
        *,
        transport: httpx.BaseTransport | None = None,
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self.configs = list(configs)
        self._transport = transport
        self._backoff_base = backoff_base_seconds

    def report(self, event_type: str, payload: dict[str, Any]) -> None:
        body = {"event_type": event_type, **payload}
        for config in self.configs:
            if event_type not in config.events:
                logger.debug(
                    "webhook_skipped",
                    url=config.url,
                    event_type=event_type,
                    reason="event_type_not_subscribed",
                )
                continue
            self._deliver(config, event_type, body)

    def _deliver(self, config: WebhookConfig, event_type: str, body: dict[str, Any]) -> bool:
        max_attempts = 1 + config.retry_count
        last_error: str | None = None
        last_status: int | None = None

        with httpx.Client(timeout=config.timeout_seconds, transport=self._transport) as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = client.post(config.url, json=body, headers=config.headers or {})
                except httpx.TimeoutException:
                    last_error = "Request timed out"
                except httpx.RequestError as e:
                    last_error = str(e)
                else:
                    last_status = response.status_code
                    if response.status_code < 400:
                        logger.info(
                            "webhook_notification_sent",
                            url=config.url,
                            event_type=event_type,
                            status_code=response.status_code,
                            attempts=attempt,
                        )
                        return True
                    if response.status_code < 500:
                        last_error = f"Client error: {response.status_code}"
                        break
                    last_error = f"Server error: {response.status_code}"

                if attempt < max_attempts:
                    backoff_delay = self._backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        "webhook_notification_retry",
                        url=config.url,
                        event_type=event_type,
                        error=last_error,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        backoff_seconds=backoff_delay,
                    )
                    time.sleep(backoff_delay)

        logger.error(
            "webhook_notification_failed",
            url=config.url,
            event_type=event_type,
            status_code=last_status,
            error=last_error,
        )
        return False


class CompositeReportingSink:
    """Fans a report out to several sinks."""

    def __init__(self, sinks: list[ReportingSink]) -> None:
        self.sinks = list(sinks)

    def report(self, event_type: str, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            sink.report(event_type, payload)


__all__: list[str] = [
    "ApplyResult",
    "BuildCollaborator",
    "BuildResult",
    "CommandBuildCollaborator",
    "CommandManifestCollaborator",
    "CommandScanCollaborator",
    "CompositeReportingSink",
    "LogReportingSink",
    "ManifestCollaborator",
    "ReportingSink",
    "ScanCollaborator",
    "WebhookReportingSink",
    "run_command",
]
