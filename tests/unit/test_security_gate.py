"""Unit tests for scanner parsing and security gate evaluation."""

from __future__ import annotations

import json
from typing import Any

import pytest

from convoy_core.config import parse_config
from convoy_core.errors import ConfigurationError, ScanReportParseError
from convoy_core.schemas.config import PipelineConfig
from convoy_core.schemas.security import (
    Finding,
    GateDecision,
    Severity,
    VulnerabilityReport,
)
from convoy_core.security_gate import (
    evaluate_security_gate,
    parse_grype_output,
    parse_scanner_output,
    parse_trivy_output,
    resolve_fail_on,
)


def _trivy(*vulns: dict[str, Any]) -> str:
    return json.dumps(
        {
            "SchemaVersion": 2,
            "ArtifactName": "registry.example.com/shop/frontend:dev-3f9c2ab",
            "Results": [{"Target": "alpine 3.19", "Vulnerabilities": list(vulns)}],
        }
    )


def _report(*pairs: tuple[str, Severity], fixed: bool = True) -> VulnerabilityReport:
    return VulnerabilityReport(
        findings=[
            Finding(id=cve, severity=sev, fixed_version="1.0.1" if fixed else None)
            for cve, sev in pairs
        ]
    )


# =============================================================================
# Severity ordering
# =============================================================================


class TestSeverity:
    """Severity has a total order independent of string order."""

    @pytest.mark.requirement("gate.severity-order")
    def test_total_order(self) -> None:
        """Test LOW < MEDIUM < HIGH < CRITICAL."""
        assert Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL
        assert sorted([Severity.CRITICAL, Severity.LOW, Severity.HIGH]) == [
            Severity.LOW,
            Severity.HIGH,
            Severity.CRITICAL,
        ]

    def test_at_or_above(self) -> None:
        assert Severity.at_or_above(Severity.HIGH) == {Severity.HIGH, Severity.CRITICAL}
        assert Severity.at_or_above(Severity.LOW) == set(Severity)

    @pytest.mark.parametrize("raw", ["UNKNOWN", "Negligible", ""])
    def test_unranked_levels_parse_to_none(self, raw: str) -> None:
        assert Severity.parse(raw) is None

    def test_finding_normalizes_case(self) -> None:
        """Test lower-case scanner severities are accepted."""
        assert Finding(id="CVE-1", severity="high").severity == Severity.HIGH


# =============================================================================
# Trivy / Grype parsing
# =============================================================================


class TestTrivyParser:
    """Tests for parse_trivy_output."""

    def test_parses_findings(self) -> None:
        """Test Trivy fields map onto Finding."""
        report = parse_trivy_output(
            _trivy(
                {
                    "VulnerabilityID": "CVE-2024-0001",
                    "Severity": "CRITICAL",
                    "PkgName": "openssl",
                    "InstalledVersion": "3.1.0",
                    "FixedVersion": "3.1.5",
                    "Title": "openssl overflow",
                },
                {"VulnerabilityID": "CVE-2024-0002", "Severity": "LOW", "PkgName": "zlib"},
            ),
            image_ref="registry.example.com/shop/frontend:dev-3f9c2ab",
        )

        assert report.scanner == "trivy"
        assert report.total == 2
        first = report.findings[0]
        assert first.id == "CVE-2024-0001"
        assert first.severity == Severity.CRITICAL
        assert first.package == "openssl"
        assert first.fixed_version == "3.1.5"
        assert report.findings[1].has_fix is False

    def test_duplicate_cves_collapse(self) -> None:
        """Test a CVE reported for several targets is counted once."""
        output = json.dumps(
            {
                "Results": [
                    {"Vulnerabilities": [{"VulnerabilityID": "CVE-1", "Severity": "HIGH"}]},
                    {"Vulnerabilities": [{"VulnerabilityID": "CVE-1", "Severity": "HIGH"}]},
                ]
            }
        )

        report = parse_trivy_output(output)

        assert report.total == 1
        assert report.counts()[Severity.HIGH] == 1

    def test_unknown_severity_dropped(self) -> None:
        report = parse_trivy_output(
            _trivy({"VulnerabilityID": "CVE-9", "Severity": "UNKNOWN"})
        )

        assert report.total == 0

    def test_null_results_are_empty(self) -> None:
        """Test Trivy's null Results/Vulnerabilities for clean images."""
        assert parse_trivy_output('{"Results": null}').total == 0
        assert parse_trivy_output('{"Results": [{"Vulnerabilities": null}]}').total == 0

    def test_invalid_json(self) -> None:
        with pytest.raises(ScanReportParseError, match="Invalid Trivy JSON") as exc_info:
            parse_trivy_output("not json")

        assert exc_info.value.scanner_format == "trivy"
        assert exc_info.value.exit_code == 19

    def test_missing_results_key(self) -> None:
        with pytest.raises(ScanReportParseError, match="Missing 'Results'"):
            parse_trivy_output('{"matches": []}')


class TestGrypeParser:
    """Tests for parse_grype_output."""

    def test_parses_fix_state(self) -> None:
        """Test only fix.state == fixed yields a fixed version."""
        output = json.dumps(
            {
                "matches": [
                    {
                        "vulnerability": {
                            "id": "GHSA-aaaa",
                            "severity": "High",
                            "fix": {"state": "fixed", "versions": ["2.0.1"]},
                        },
                        "artifact": {"name": "lodash", "version": "2.0.0"},
                    },
                    {
                        "vulnerability": {
                            "id": "CVE-2023-5",
                            "severity": "Critical",
                            "fix": {"state": "not-fixed", "versions": []},
                        },
                        "artifact": {"name": "glibc", "version": "2.36"},
                    },
                    {
                        "vulnerability": {"id": "CVE-2023-6", "severity": "Negligible"},
                        "artifact": {"name": "bash"},
                    },
                ]
            }
        )

        report = parse_grype_output(output)

        assert [f.id for f in report.findings] == ["GHSA-aaaa", "CVE-2023-5"]
        assert report.findings[0].severity == Severity.HIGH
        assert report.findings[0].fixed_version == "2.0.1"
        assert report.findings[0].package == "lodash"
        assert report.findings[1].has_fix is False

    def test_missing_matches_key(self) -> None:
        with pytest.raises(ScanReportParseError, match="Missing 'matches'"):
            parse_grype_output('{"Results": []}')


class TestParseScannerOutput:
    def test_dispatches_by_format(self) -> None:
        report = parse_scanner_output('{"matches": []}', "grype", image_ref="img:1")

        assert report.scanner == "grype"
        assert report.image_ref == "img:1"

    def test_unknown_format(self) -> None:
        with pytest.raises(ScanReportParseError, match="Unsupported scanner format"):
            parse_scanner_output("{}", "clair")


# =============================================================================
# Gate evaluation
# =============================================================================


class TestEvaluateSecurityGate:
    """Tests for evaluate_security_gate."""

    @pytest.mark.requirement("gate.override-empty")
    def test_empty_override_is_advisory(self, pipeline_config: PipelineConfig) -> None:
        """Test fail_on=[] passes even with critical findings and a strict environment."""
        report = _report(("CVE-1", Severity.CRITICAL), ("CVE-2", Severity.HIGH))
        production = pipeline_config.get_environment("production")

        evaluation = evaluate_security_gate(report, production, fail_on=[])

        assert evaluation.decision == GateDecision.PASS
        assert evaluation.advisory is True
        assert evaluation.offending == ()
        assert len(evaluation.findings) == 2

    @pytest.mark.requirement("gate.override-authoritative")
    def test_override_replaces_environment_threshold(
        self, pipeline_config: PipelineConfig
    ) -> None:
        """Test fail_on={CRITICAL} blocks only on the critical finding."""
        report = _report(("CVE-HIGH", Severity.HIGH), ("CVE-CRIT", Severity.CRITICAL))
        production = pipeline_config.get_environment("production")

        evaluation = evaluate_security_gate(report, production, fail_on=[Severity.CRITICAL])

        assert evaluation.decision == GateDecision.BLOCK
        assert [f.id for f in evaluation.offending] == ["CVE-CRIT"]
        assert evaluation.fail_on == (Severity.CRITICAL,)
        assert evaluation.reason is not None
        assert "CVE-CRIT" in evaluation.reason
        assert "CVE-HIGH" not in evaluation.reason

    def test_environment_threshold_applies_without_override(
        self, pipeline_config: PipelineConfig
    ) -> None:
        """Test staging (threshold HIGH) blocks on HIGH and CRITICAL only."""
        report = _report(
            ("CVE-M", Severity.MEDIUM),
            ("CVE-H", Severity.HIGH),
            ("CVE-C", Severity.CRITICAL),
        )

        evaluation = evaluate_security_gate(
            report, pipeline_config.get_environment("staging"), config=pipeline_config
        )

        assert evaluation.blocked
        assert [f.id for f in evaluation.offending] == ["CVE-C", "CVE-H"]

    def test_development_threshold_passes_high(self, pipeline_config: PipelineConfig) -> None:
        report = _report(("CVE-H", Severity.HIGH))

        evaluation = evaluate_security_gate(
            report, pipeline_config.get_environment("development"), config=pipeline_config
        )

        assert evaluation.passed

    def test_no_policy_is_advisory(self) -> None:
        """Test no environment and no override means the gate never blocks."""
        evaluation = evaluate_security_gate(_report(("CVE-C", Severity.CRITICAL)))

        assert evaluation.passed
        assert evaluation.advisory

    def test_clean_report_passes(self, pipeline_config: PipelineConfig) -> None:
        evaluation = evaluate_security_gate(
            VulnerabilityReport(), pipeline_config.get_environment("production")
        )

        assert evaluation.passed
        assert evaluation.advisory is False

    def test_offending_sorted_most_severe_then_id(self) -> None:
        report = _report(
            ("CVE-B", Severity.HIGH),
            ("CVE-Z", Severity.CRITICAL),
            ("CVE-A", Severity.HIGH),
        )

        evaluation = evaluate_security_gate(report, fail_on=["HIGH", "CRITICAL"])

        assert [f.id for f in evaluation.offending] == ["CVE-Z", "CVE-A", "CVE-B"]

    def test_ignore_unfixed(self) -> None:
        """Test findings without a fix never offend when ignore_unfixed is set."""
        report = VulnerabilityReport(
            findings=[
                Finding(id="CVE-NOFIX", severity=Severity.CRITICAL),
                Finding(id="CVE-FIX", severity=Severity.CRITICAL, fixed_version="1.2"),
            ]
        )

        evaluation = evaluate_security_gate(
            report, fail_on=[Severity.CRITICAL], ignore_unfixed=True
        )

        assert [f.id for f in evaluation.offending] == ["CVE-FIX"]
        assert evaluation.ignored_unfixed == 1

    def test_ignore_unfixed_can_pass(self) -> None:
        report = VulnerabilityReport(findings=[Finding(id="CVE-1", severity="CRITICAL")])

        evaluation = evaluate_security_gate(report, fail_on=["CRITICAL"], ignore_unfixed=True)

        assert evaluation.passed
        assert evaluation.ignored_unfixed == 1

    def test_unknown_override_severity_rejected(self) -> None:
        with pytest.raises(ValueError):
            resolve_fail_on(fail_on=["SEVERE"])


class TestThresholdPrecedence:
    """Global default versus per-environment thresholds."""

    def test_global_default_for_environment_without_threshold(self) -> None:
        """Test default_fail_on applies where an environment sets no threshold."""
        config = PipelineConfig.model_validate(
            {
                "environments": [{"name": "qa", "tag_prefix": "qa"}],
                "default_fail_on": ["CRITICAL"],
            }
        )

        fail_on = resolve_fail_on(config.get_environment("qa"), config=config)

        assert fail_on == {Severity.CRITICAL}

    def test_conflicting_global_and_environment_threshold(self) -> None:
        """Test a disagreeing global default is a configuration error."""
        with pytest.raises(ConfigurationError, match="default_fail_on"):
            parse_config(
                {
                    "environments": [
                        {"name": "qa", "tag_prefix": "qa", "severity_threshold": "HIGH"}
                    ],
                    "default_fail_on": ["CRITICAL"],
                }
            )

    def test_agreeing_global_and_environment_threshold(self) -> None:
        config = parse_config(
            {
                "environments": [
                    {"name": "qa", "tag_prefix": "qa", "severity_threshold": "HIGH"}
                ],
                "default_fail_on": ["HIGH", "CRITICAL"],
            }
        )

        assert config.effective_fail_on(config.environments[0]) == {
            Severity.HIGH,
            Severity.CRITICAL,
        }
