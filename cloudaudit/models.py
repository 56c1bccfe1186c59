"""
Cloud Audit Engine - Core types and constants.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_PROVIDERS = ("AWS", "GCP", "AZURE")
VALID_SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
VALID_AUDIT_STATUSES = ("pending", "running", "completed", "failed")
VALID_PHASE_STATUSES = ("pending", "running", "completed", "failed", "skipped")
VALID_FINDING_STATUSES = ("open", "resolved", "ignored", "false_positive")
VALID_FREQUENCIES = ("daily", "weekly", "monthly")
VALID_TRIGGERS = ("manual", "scheduled")
VALID_SCAN_LOG_STATUSES = ("success", "failed")


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored time uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat(timespec='seconds')


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def normalize_provider(provider: str) -> str:
    """Upper-case a provider tag; returns '' for None."""
    return (provider or '').strip().upper()


# ---------------------------------------------------------------------------
# Findings and results
# ---------------------------------------------------------------------------

@dataclass
class Finding:
    """One observed misconfiguration. finding_id is the catalogue check id."""

    finding_id: str
    severity: str
    title: str
    description: str = ""
    recommendation: str = ""
    resource: str = ""
    resource_type: str = ""
    region: str = ""

    def __post_init__(self):
        self.severity = (self.severity or '').upper()
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(
                f"Invalid severity '{self.severity}'. Must be one of {VALID_SEVERITIES}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckResult:
    """Outcome of one check unit: ok with findings, or err with a reason."""

    check_id: str
    ok: bool
    findings: List[Finding] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0

    @classmethod
    def success(cls, check_id: str, findings: List[Finding],
                duration_ms: int = 0) -> 'CheckResult':
        return cls(check_id=check_id, ok=True, findings=list(findings),
                   duration_ms=duration_ms)

    @classmethod
    def failure(cls, check_id: str, reason: str,
                duration_ms: int = 0) -> 'CheckResult':
        return cls(check_id=check_id, ok=False, error=reason,
                   duration_ms=duration_ms)


def count_by_severity(findings: Iterable[Finding]) -> Dict[str, int]:
    """Count findings per lower-case severity key."""
    counts = {'critical': 0, 'high': 0, 'medium': 0, 'low': 0}
    for finding in findings:
        counts[finding.severity.lower()] += 1
    return counts


@dataclass
class PhaseResult:
    phase_number: int
    name: str
    status: str
    findings: List[Finding] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    checks_total: int = 0
    checks_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def severity_counts(self) -> Dict[str, int]:
        return count_by_severity(self.findings)


@dataclass
class AuditSummary:
    """Aggregate handed to the alert sinks when an audit completes."""

    account_name: str
    provider: str
    total_findings: int
    critical: int
    high: int
    medium: int
    low: int
    risk_score: float
    audit_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
