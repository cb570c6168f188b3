"""Tests for the pydantic data models."""

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from perimeter.models import (
    AuditReport,
    AuditResult,
    AuditStatus,
    CommandResult,
    EventType,
    HealthReport,
    ScanResult,
    SecurityEvent,
    ServiceStatus,
    Severity,
    coerce_timestamp,
)


def make_event(severity=Severity.HIGH, **kwargs):
    return SecurityEvent(type=EventType.SYSTEM, severity=severity, service="test", **kwargs)


class TestSeverity:
    def test_values(self):
        assert [s.value for s in Severity] == ["info", "low", "medium", "high", "critical"]

    def test_rank_ordering(self):
        assert Severity.INFO.rank < Severity.LOW.rank < Severity.MEDIUM.rank
        assert Severity.MEDIUM.rank < Severity.HIGH.rank < Severity.CRITICAL.rank


class TestCoerceTimestamp:
    def test_iso_with_zulu(self):
        ts = coerce_timestamp("2025-06-16T12:00:01Z")
        assert ts == datetime(2025, 6, 16, 12, 0, 1, tzinfo=timezone.utc)

    def test_nanoseconds_truncated(self):
        ts = coerce_timestamp("2025-06-16T12:00:01.123456789Z")
        assert ts.microsecond == 123456
        assert ts.tzinfo is not None

    def test_epoch_number_and_string(self):
        expected = datetime(2025, 6, 16, 12, 0, 1, tzinfo=timezone.utc)
        assert coerce_timestamp(expected.timestamp()) == expected
        assert coerce_timestamp(str(int(expected.timestamp()))) == expected

    def test_fail2ban_style(self):
        ts = coerce_timestamp("2025-06-16 12:00:01,123")
        assert ts == datetime(2025, 6, 16, 12, 0, 1, 123000).astimezone(timezone.utc)

    def test_aware_datetime_converted_to_utc(self):
        local = datetime(2025, 6, 16, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert coerce_timestamp(local) == datetime(2025, 6, 16, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday-ish", object()])
    def test_garbage_falls_back_to_now(self, value):
        before = datetime.now(timezone.utc)
        ts = coerce_timestamp(value)
        assert before - timedelta(seconds=1) <= ts <= datetime.now(timezone.utc)


class TestSecurityEvent:
    def test_defaults(self):
        event = make_event()
        assert event.description == "Security event detected"
        assert event.details == {}
        assert event.timestamp.tzinfo is not None

    def test_timestamp_string_normalized(self):
        event = make_event(timestamp="2025-06-16T12:00:01Z")
        assert event.timestamp == datetime(2025, 6, 16, 12, 0, 1, tzinfo=timezone.utc)

    def test_frozen(self):
        event = make_event()
        with pytest.raises(ValidationError):
            event.severity = Severity.LOW

    def test_invalid_severity(self):
        with pytest.raises(ValidationError):
            SecurityEvent(type=EventType.SYSTEM, severity="urgent", service="test")

    def test_invalid_type(self):
        with pytest.raises(ValidationError):
            SecurityEvent(type="weird", severity=Severity.LOW, service="test")

    def test_to_dict(self):
        data = make_event(severity=Severity.CRITICAL, location="/tmp/x").to_dict()
        assert data["severity"] == "critical"
        assert data["type"] == "system"
        assert data["location"] == "/tmp/x"
        assert isinstance(data["timestamp"], str)


class TestServiceStatus:
    def test_healthy_when_running(self):
        status = ServiceStatus(name="x", enabled=True, installed=True, configured=True, running=True)
        assert status.is_healthy

    def test_not_running_unhealthy(self):
        status = ServiceStatus(name="x", enabled=True, installed=True, configured=True)
        assert not status.is_healthy

    def test_functional_overrides_running(self):
        status = ServiceStatus(name="x", enabled=True, installed=True, configured=True, functional=True)
        assert status.is_healthy

    def test_disabled_not_applicable(self):
        status = ServiceStatus(name="x", enabled=False)
        assert not status.health_applicable
        assert status.to_dict()["healthy"] is False


class TestAuditResult:
    def test_issue_counts(self):
        result = AuditResult(
            service="x",
            display_name="X",
            status=AuditStatus.ISSUES_FOUND,
            issues=[make_event(Severity.HIGH), make_event(Severity.HIGH), make_event(Severity.LOW)],
        )
        assert result.has_issues
        assert result.issue_count_by_severity() == {
            "info": 0, "low": 1, "medium": 0, "high": 2, "critical": 0,
        }
        assert result.to_dict()["status"] == "issues_found"


class TestAuditReport:
    def test_totals(self):
        report = AuditReport(results=[
            AuditResult(service="a", display_name="A", status=AuditStatus.ISSUES_FOUND,
                        issues=[make_event(Severity.CRITICAL), make_event(Severity.HIGH)]),
            AuditResult(service="b", display_name="B", status=AuditStatus.ISSUES_FOUND,
                        issues=[make_event(Severity.CRITICAL)]),
            AuditResult(service="c", display_name="C", status=AuditStatus.SECURE),
        ])
        assert report.total_issues == 3
        assert report.critical_issues == 2
        assert report.high_issues == 1
        assert report.issue_count_by_severity()["critical"] == 2

    def test_duration(self):
        start = datetime(2025, 6, 16, 12, 0, tzinfo=timezone.utc)
        report = AuditReport(started_at=start, completed_at=start + timedelta(seconds=90))
        assert report.duration_seconds == 90.0
        assert AuditReport().duration_seconds is None

    def test_to_dict(self):
        data = AuditReport(scan_id="scan-1").to_dict()
        assert data["scan_id"] == "scan-1"
        assert data["total_issues"] == 0
        assert data["results"] == []


class TestHealthReport:
    def test_disabled_services_ignored(self):
        report = HealthReport(services=[
            ServiceStatus(name="a", enabled=True, installed=True, configured=True, running=True),
            ServiceStatus(name="b", enabled=False),
        ])
        assert report.healthy
        assert report.unhealthy_services == []

    def test_unhealthy(self):
        report = HealthReport(services=[ServiceStatus(name="a", enabled=True)])
        assert not report.healthy
        assert report.to_dict()["unhealthy_services"] == ["a"]


class TestHelpers:
    def test_scan_result_factories(self):
        assert ScanResult.clean("/a").has_threat is False
        infected = ScanResult.infected("/a", "Eicar")
        assert infected.has_threat and infected.threat == "Eicar"

    def test_command_result_ok(self):
        assert CommandResult(return_code=0).ok
        assert not CommandResult(return_code=1).ok
        assert not CommandResult(return_code=0, timed_out=True).ok
        assert not CommandResult(error="boom").ok
