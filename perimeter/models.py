"""Pydantic v2 models shared by parsers, service adapters and the supervisor."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventType(str, Enum):
    MALWARE = "malware"
    VULNERABILITY = "vulnerability"
    BEHAVIORAL = "behavioral"
    INTRUSION = "intrusion"
    FIREWALL = "firewall"
    SYSTEM = "system"
    SECURITY = "security"


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class AuditStatus(str, Enum):
    DISABLED = "disabled"
    NOT_INSTALLED = "not_installed"
    NOT_CONFIGURED = "not_configured"
    SECURE = "secure"
    ISSUES_FOUND = "issues_found"


_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S,%f",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_timestamp(value: Any) -> datetime:
    """Best-effort conversion of a tool timestamp to an aware UTC datetime.

    Accepts datetimes (naive ones are taken as local time), Unix epochs as
    numbers or numeric strings, fail2ban style ``YYYY-MM-DD HH:MM:SS,mmm``
    and ISO-8601 strings. Anything else yields the current time.
    """
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return utcnow()

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return utcnow()
        try:
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            pass
        for fmt in _TIMESTAMP_FORMATS:
            try:
                return datetime.strptime(text, fmt).astimezone(timezone.utc)
            except ValueError:
                continue
        iso = text[:-1] + "+00:00" if text.endswith("Z") else text
        # Falco emits nanosecond precision which fromisoformat rejects
        if "." in iso:
            head, _, tail = iso.partition(".")
            digits = ""
            for ch in tail:
                if not ch.isdigit():
                    break
                digits += ch
            iso = f"{head}.{digits[:6].ljust(6, '0')}{tail[len(digits):]}"
        try:
            return datetime.fromisoformat(iso).astimezone(timezone.utc)
        except ValueError:
            return utcnow()

    return utcnow()


class SecurityEvent(BaseModel):
    """A normalized event from any orchestrated security tool."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    type: EventType
    severity: Severity
    description: str = "Security event detected"
    location: Optional[str] = None
    user: Optional[str] = None
    service: str
    scan_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value: Any) -> datetime:
        return coerce_timestamp(value)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ServiceStatus(BaseModel):
    """Snapshot of a service's lifecycle probes."""

    name: str
    enabled: bool = False
    installed: bool = False
    configured: bool = False
    running: bool = False
    # Set when the capability is usable without the daemon running
    functional: Optional[bool] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        if not (self.enabled and self.installed and self.configured):
            return False
        if self.functional is not None:
            return self.functional
        return self.running

    @property
    def health_applicable(self) -> bool:
        return self.enabled

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["healthy"] = self.is_healthy
        return data


class AuditResult(BaseModel):
    """Outcome of one service audit."""

    service: str
    display_name: str
    status: AuditStatus
    issues: List[SecurityEvent] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_issues(self) -> bool:
        return len(self.issues) > 0

    def issue_count_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for issue in self.issues:
            counts[issue.severity.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["issue_counts"] = self.issue_count_by_severity()
        return data


class ManagedProcess(BaseModel):
    """Handle for a supervised background process, persisted beside its PID file."""

    name: str
    pid: int
    command: str
    started_at: datetime = Field(default_factory=utcnow)
    streaming: bool = False


class ScanResult(BaseModel):
    """Result of scanning a single file."""

    file_path: str
    has_threat: bool = False
    threat: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def clean(cls, file_path: str) -> "ScanResult":
        return cls(file_path=file_path)

    @classmethod
    def infected(cls, file_path: str, threat: str) -> "ScanResult":
        return cls(file_path=file_path, has_threat=True, threat=threat)


class CommandResult(BaseModel):
    """Captured outcome of an external command."""

    command: List[str] = Field(default_factory=list)
    return_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.timed_out and self.error is None


class AuditReport(BaseModel):
    """Aggregated audit across every registered service."""

    report_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    scan_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: List[AuditResult] = Field(default_factory=list)

    @property
    def total_issues(self) -> int:
        return sum(len(r.issues) for r in self.results)

    @property
    def critical_issues(self) -> int:
        return sum(
            1
            for r in self.results
            for i in r.issues
            if i.severity == Severity.CRITICAL
        )

    @property
    def high_issues(self) -> int:
        return sum(
            1
            for r in self.results
            for i in r.issues
            if i.severity == Severity.HIGH
        )

    def issue_count_by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for result in self.results:
            for severity, count in result.issue_count_by_severity().items():
                counts[severity] += count
        return counts

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "scan_id": self.scan_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "total_issues": self.total_issues,
            "critical_issues": self.critical_issues,
            "high_issues": self.high_issues,
            "issue_counts": self.issue_count_by_severity(),
            "results": [r.to_dict() for r in self.results],
        }


class HealthReport(BaseModel):
    """Health of every registered service at one point in time."""

    checked_at: datetime = Field(default_factory=utcnow)
    services: List[ServiceStatus] = Field(default_factory=list)

    @property
    def applicable(self) -> List[ServiceStatus]:
        return [s for s in self.services if s.health_applicable]

    @property
    def healthy(self) -> bool:
        return all(s.is_healthy for s in self.applicable)

    @property
    def unhealthy_services(self) -> List[str]:
        return [s.name for s in self.applicable if not s.is_healthy]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "unhealthy_services": self.unhealthy_services,
            "services": [s.to_dict() for s in self.services],
        }
