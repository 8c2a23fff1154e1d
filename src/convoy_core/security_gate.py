"""Security gate: scanner output parsing and gate evaluation.

Scanner parsers turn Trivy (``trivy image --format json``) and Grype
(``grype <image> -o json``) output into a :class:`VulnerabilityReport`.
:func:`evaluate_security_gate` decides PASS or BLOCK for an environment.

Threshold precedence:
    1. An explicit ``fail_on`` at the call site is authoritative (an empty
       set makes the gate advisory).
    2. Otherwise the environment's ``severity_threshold`` (every severity at
       or above it), or the global ``default_fail_on`` for environments
       without one.
    3. Otherwise the gate is advisory and always passes.

Example:
    >>> report = parse_trivy_output('{"Results": []}')
    >>> evaluate_security_gate(report, fail_on=["CRITICAL"]).decision
    <GateDecision.PASS: 'PASS'>
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

import structlog

from convoy_core.errors import ScanReportParseError
from convoy_core.schemas.config import EnvironmentConfig, PipelineConfig
from convoy_core.schemas.security import (
    Finding,
    GateDecision,
    GateEvaluation,
    Severity,
    VulnerabilityReport,
)
from convoy_core.telemetry import create_span

logger = structlog.get_logger(__name__)

SCANNER_FORMATS: tuple[str, ...] = ("trivy", "grype")


def _load_json(output: str, scanner_format: str, required_key: str) -> dict[str, Any]:
    log = logger.bind(scanner=scanner_format)
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        log.error(f"{scanner_format}_parse_failed", error=str(e))
        raise ScanReportParseError(
            f"Invalid {scanner_format.capitalize()} JSON: {e}",
            scanner_format=scanner_format,
            raw_output=output,
        ) from e

    if not isinstance(data, dict) or required_key not in data:
        log.error(f"{scanner_format}_missing_{required_key.lower()}_key")
        raise ScanReportParseError(
            f"Missing '{required_key}' key in {scanner_format.capitalize()} output",
            scanner_format=scanner_format,
            raw_output=output,
        )
    return data


def parse_trivy_output(output: str, image_ref: str | None = None) -> VulnerabilityReport:
    """Parse Trivy JSON output into a VulnerabilityReport.

    Findings with unranked severities (UNKNOWN) are dropped; a CVE reported
    for several targets is kept once.

    Raises:
        ScanReportParseError: If output is not valid Trivy JSON.
    """
    data = _load_json(output, "trivy", "Results")

    findings: list[Finding] = []
    dropped = 0
    for result in data.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            severity = Severity.parse(vuln.get("Severity", "UNKNOWN"))
            if severity is None:
                dropped += 1
                continue
            findings.append(
                Finding(
                    id=vuln.get("VulnerabilityID", "UNKNOWN"),
                    severity=severity,
                    package=vuln.get("PkgName"),
                    installed_version=vuln.get("InstalledVersion"),
                    fixed_version=vuln.get("FixedVersion") or None,
                    title=vuln.get("Title"),
                )
            )

    report = VulnerabilityReport(findings=findings, scanner="trivy", image_ref=image_ref)
    logger.info(
        "trivy_parse_complete",
        total=report.total,
        dropped_unranked=dropped,
        **{k.value.lower(): v for k, v in report.counts().items()},
    )
    return report


def parse_grype_output(output: str, image_ref: str | None = None) -> VulnerabilityReport:
    """Parse Grype JSON output into a VulnerabilityReport.

    Grype reports mixed-case severities and a fix state; only
    ``fix.state == "fixed"`` yields a fixed version. Negligible and unknown
    severities are dropped.

    Raises:
        ScanReportParseError: If output is not valid Grype JSON.
    """
    data = _load_json(output, "grype", "matches")

    findings: list[Finding] = []
    dropped = 0
    for match in data.get("matches") or []:
        vulnerability = match.get("vulnerability") or {}
        artifact = match.get("artifact") or {}
        severity = Severity.parse(vulnerability.get("severity", "UNKNOWN"))
        if severity is None:
            dropped += 1
            continue
        fix_info = vulnerability.get("fix") or {}
        versions = fix_info.get("versions") or []
        fixed_version = None
        if fix_info.get("state") == "fixed":
            fixed_version = versions[0] if versions else "fixed"
        findings.append(
            Finding(
                id=vulnerability.get("id", "UNKNOWN"),
                severity=severity,
                package=artifact.get("name"),
                installed_version=artifact.get("version"),
                fixed_version=fixed_version,
                title=vulnerability.get("description"),
            )
        )

    report = VulnerabilityReport(findings=findings, scanner="grype", image_ref=image_ref)
    logger.info(
        "grype_parse_complete",
        total=report.total,
        dropped_unranked=dropped,
        **{k.value.lower(): v for k, v in report.counts().items()},
    )
    return report


def parse_scanner_output(
    output: str,
    scanner_format: str,
    image_ref: str | None = None,
) -> VulnerabilityReport:
    """Dispatch to the parser for ``scanner_format`` (trivy or grype)."""
    if scanner_format == "trivy":
        return parse_trivy_output(output, image_ref=image_ref)
    if scanner_format == "grype":
        return parse_grype_output(output, image_ref=image_ref)
    raise ScanReportParseError(
        f"Unsupported scanner format; expected one of {list(SCANNER_FORMATS)}",
        scanner_format=scanner_format,
    )


def resolve_fail_on(
    environment: EnvironmentConfig | None = None,
    fail_on: Iterable[Severity | str] | None = None,
    config: PipelineConfig | None = None,
) -> frozenset[Severity]:
    """Resolve the effective set of blocking severities.

    Raises:
        ValueError: If ``fail_on`` contains an unknown severity.
    """
    if fail_on is not None:
        return frozenset(Severity(str(s).strip().upper()) for s in fail_on)
    if environment is None:
        return frozenset()
    if config is not None:
        return config.effective_fail_on(environment)
    if environment.severity_threshold is not None:
        return Severity.at_or_above(environment.severity_threshold)
    return frozenset()


def evaluate_security_gate(
    report: VulnerabilityReport,
    environment: EnvironmentConfig | None = None,
    fail_on: Iterable[Severity | str] | None = None,
    *,
    ignore_unfixed: bool = False,
    config: PipelineConfig | None = None,
) -> GateEvaluation:
    """Evaluate a vulnerability report against a severity policy.

    Args:
        report: Findings to evaluate.
        environment: Environment whose threshold applies when ``fail_on`` is None.
        fail_on: Explicit severities to fail on; authoritative when given.
        ignore_unfixed: Findings without a fixed version never offend.
        config: Pipeline config, consulted for ``default_fail_on``.

    Returns:
        GateEvaluation with offending findings most severe first, then by id.
    """
    effective = resolve_fail_on(environment, fail_on, config)
    env_name = environment.name if environment is not None else None
    log = logger.bind(
        environment=env_name,
        fail_on=sorted(s.value for s in effective),
        ignore_unfixed=ignore_unfixed,
    )

    with create_span(
        "convoy.gate.evaluate",
        attributes={
            "convoy.environment": env_name,
            "convoy.gate.findings": report.total,
            "convoy.gate.image_ref": report.image_ref,
        },
    ) as span:
        fail_on_sorted = tuple(sorted(effective))
        if not effective:
            span.set_attribute("convoy.gate.decision", GateDecision.PASS.value)
            log.info("security_gate_advisory", total_findings=report.total)
            return GateEvaluation(
                decision=GateDecision.PASS,
                fail_on=fail_on_sorted,
                advisory=True,
                findings=report.findings,
            )

        offending: list[Finding] = []
        ignored = 0
        for finding in report.findings:
            if finding.severity not in effective:
                continue
            if ignore_unfixed and not finding.has_fix:
                ignored += 1
                log.debug("security_gate_ignored_unfixed", cve=finding.id)
                continue
            offending.append(finding)
        offending.sort(key=lambda f: (-f.severity.rank, f.id))

        decision = GateDecision.BLOCK if offending else GateDecision.PASS
        span.set_attribute("convoy.gate.decision", decision.value)
        span.set_attribute("convoy.gate.offending", len(offending))

        reason = None
        if offending:
            ids = ", ".join(f.id for f in offending)
            reason = (
                f"Security gate blocked: {len(offending)} finding(s) at "
                f"{'/'.join(s.value for s in fail_on_sorted)}: {ids}"
            )
            log.warning(
                "security_gate_blocked",
                blocking_count=len(offending),
                blocking_cves=[f.id for f in offending],
            )
        else:
            log.info(
                "security_gate_passed",
                total_findings=report.total,
                ignored_unfixed=ignored,
            )

        return GateEvaluation(
            decision=decision,
            fail_on=fail_on_sorted,
            offending=tuple(offending),
            findings=report.findings,
            ignored_unfixed=ignored,
            reason=reason,
        )


__all__: list[str] = [
    "SCANNER_FORMATS",
    "evaluate_security_gate",
    "parse_grype_output",
    "parse_scanner_output",
    "parse_trivy_output",
    "resolve_fail_on",
]
