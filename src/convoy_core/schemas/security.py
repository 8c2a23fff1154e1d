"""Vulnerability report and security gate schemas.

Key Components:
    Severity: Ordered severity levels (LOW < MEDIUM < HIGH < CRITICAL)
    Finding: A single vulnerability finding from a scanner
    VulnerabilityReport: The set of findings for one image
    GateDecision: PASS or BLOCK
    GateEvaluation: Decision plus offending findings

Example:
    >>> report = VulnerabilityReport(findings=[
    ...     Finding(id="CVE-2024-0001", severity=Severity.CRITICAL),
    ... ])
    >>> report.counts()[Severity.CRITICAL]
    1
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    """Vulnerability severity levels with a fixed total order.

    Comparison uses LOW < MEDIUM < HIGH < CRITICAL, not string order.

    Examples:
        >>> Severity.HIGH > Severity.MEDIUM
        True
        >>> sorted(Severity.at_or_above(Severity.HIGH))
        [<Severity.HIGH: 'HIGH'>, <Severity.CRITICAL: 'CRITICAL'>]
    """

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def at_or_above(cls, threshold: Severity) -> frozenset[Severity]:
        """Return every severity at or above ``threshold``."""
        return frozenset(s for s in cls if s.rank >= threshold.rank)

    @classmethod
    def parse(cls, value: str) -> Severity | None:
        """Parse a scanner severity string, returning None for unranked levels."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


_SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
)


class GateDecision(str, Enum):
    """Security gate outcome."""

    PASS = "PASS"
    BLOCK = "BLOCK"


class Finding(BaseModel):
    """A single vulnerability finding.

    Attributes:
        id: Vulnerability identifier (e.g. CVE-2024-0001).
        severity: Ranked severity.
        package: Affected package name, if reported.
        installed_version: Installed package version, if reported.
        fixed_version: First fixed version; None when no fix exists.
        title: Short description, if reported.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Vulnerability identifier")
    severity: Severity = Field(..., description="Ranked severity")
    package: str | None = Field(default=None, description="Affected package")
    installed_version: str | None = Field(default=None, description="Installed version")
    fixed_version: str | None = Field(default=None, description="First fixed version")
    title: str | None = Field(default=None, description="Short description")

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def has_fix(self) -> bool:
        return bool(self.fixed_version and self.fixed_version.strip())


class VulnerabilityReport(BaseModel):
    """Set of findings for one scanned image.

    Duplicate ids are collapsed on construction, keeping the first occurrence,
    since scanners report the same CVE once per affected target.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    findings: tuple[Finding, ...] = Field(
        default_factory=tuple,
        description="Unique findings in scanner order",
    )
    scanner: str | None = Field(default=None, description="Scanner that produced the report")
    image_ref: str | None = Field(default=None, description="Scanned image reference")

    @field_validator("findings")
    @classmethod
    def dedupe_findings(cls, v: tuple[Finding, ...]) -> tuple[Finding, ...]:
        seen: set[str] = set()
        unique: list[Finding] = []
        for finding in v:
            if finding.id in seen:
                continue
            seen.add(finding.id)
            unique.append(finding)
        return tuple(unique)

    def counts(self) -> dict[Severity, int]:
        """Count findings by severity (every level present, zero if absent)."""
        result = {severity: 0 for severity in Severity}
        for finding in self.findings:
            result[finding.severity] += 1
        return result

    @property
    def total(self) -> int:
        return len(self.findings)


class GateEvaluation(BaseModel):
    """Result of evaluating a report against a severity policy.

    Attributes:
        decision: PASS or BLOCK.
        fail_on: Effective set of severities that block, sorted ascending.
        advisory: True when fail_on was empty (gate never blocks).
        offending: Findings that caused the block, most severe first.
        findings: All findings, surfaced for reporting.
        ignored_unfixed: Count of would-be offenders skipped for lacking a fix.
        reason: Human-readable explanation when blocked.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    decision: GateDecision
    fail_on: tuple[Severity, ...] = Field(default_factory=tuple)
    advisory: bool = False
    offending: tuple[Finding, ...] = Field(default_factory=tuple)
    findings: tuple[Finding, ...] = Field(default_factory=tuple)
    ignored_unfixed: int = Field(default=0, ge=0)
    reason: str | None = None

    @property
    def passed(self) -> bool:
        return self.decision == GateDecision.PASS

    @property
    def blocked(self) -> bool:
        return self.decision == GateDecision.BLOCK


__all__: list[str] = [
    "Finding",
    "GateDecision",
    "GateEvaluation",
    "Severity",
    "VulnerabilityReport",
]
