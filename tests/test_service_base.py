"""Tests for the SecurityService lifecycle template and event helpers."""

import pytest

from perimeter.events import EventBus, RecentEvents
from perimeter.models import AuditStatus, EventType, SecurityEvent, Severity
from perimeter.service_base import normalize_severity

from .fakes import StubService


class TestLifecycle:
    def test_disabled_wins_over_everything(self):
        service = StubService(installed=False, configured=False, config={"enabled": False})
        result = service.run_audit()

        assert result.status == AuditStatus.DISABLED
        assert not service.audited

    def test_not_installed(self):
        result = StubService(installed=False).run_audit()
        assert result.status == AuditStatus.NOT_INSTALLED
        assert result.metadata["message"] == "Stub is not installed"

    def test_not_configured(self):
        assert StubService(configured=False).run_audit().status == AuditStatus.NOT_CONFIGURED

    def test_secure(self):
        result = StubService().run_audit()
        assert result.status == AuditStatus.SECURE
        assert result.metadata["checked"] is True

    def test_issues_found(self):
        result = StubService(issues=["one", "two"]).run_audit(scan_id="abc")
        assert result.status == AuditStatus.ISSUES_FOUND
        assert [i.description for i in result.issues] == ["one", "two"]
        assert all(i.scan_id == "abc" for i in result.issues)

    def test_failing_task_reported_as_issue(self):
        result = StubService(issues=RuntimeError("socket vanished")).run_audit()

        assert result.status == AuditStatus.ISSUES_FOUND
        assert result.issues[0].type == EventType.SYSTEM
        assert result.issues[0].severity == Severity.HIGH
        assert result.issues[0].details["error"] == "socket vanished"

    def test_failing_check_degrades(self):
        result = StubService(installed=OSError("permission denied")).run_audit()
        assert result.status == AuditStatus.NOT_INSTALLED


class TestStatus:
    def test_healthy(self):
        status = StubService().get_status()
        assert status.is_healthy
        assert status.message == "Stub is active."

    def test_uninstalled_skips_other_checks(self):
        status = StubService(installed=False, configured=True, running=True).get_status()
        assert not status.configured
        assert not status.running
        assert status.message == "Stub is not installed."

    def test_disabled_still_checked(self):
        status = StubService(config={"enabled": False}).get_status()
        assert status.installed
        assert not status.health_applicable
        assert status.message == "Stub is disabled in configuration."

    def test_not_running(self):
        service = StubService(running=False)
        assert not service.is_healthy()
        assert service.get_status().message == "Stub is installed and configured but not running."


class TestEventConversion:
    def test_service_name(self):
        assert StubService().service_name == "stub"
        assert StubService(config={"name": "custom"}).service_name == "custom"

    def test_generic_event_type(self):
        assert StubService().event_type == EventType.SECURITY

    def test_to_security_event(self):
        record = {
            "timestamp": "2025-06-16T12:00:01Z",
            "severity": "HIGH",
            "description": "Something odd",
            "location": "/etc/passwd",
            "user": "root",
            "rule": "odd-thing",
            "details": {"pid": 42},
        }
        event = StubService().to_security_event(record, scan_id="s1")

        assert event.severity == Severity.HIGH
        assert event.location == "/etc/passwd"
        assert event.user == "root"
        assert event.service == "stub"
        assert event.scan_id == "s1"
        assert event.details == {"pid": 42, "rule": "odd-thing"}

    def test_missing_fields_defaulted(self):
        event = StubService().to_security_event({})
        assert event.severity == Severity.MEDIUM
        assert event.description == "Security event detected"

    def test_record_event_publishes(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        service = StubService(event_bus=bus)

        event = service.make_event(Severity.LOW, "hello")
        service.record_event(event)

        assert seen == [event]
        assert service.recent_events.snapshot() == [event]

    @pytest.mark.parametrize("value,expected", [
        ("CRITICAL", Severity.CRITICAL),
        (" low ", Severity.LOW),
        ("nonsense", Severity.MEDIUM),
        (None, Severity.MEDIUM),
        (Severity.INFO, Severity.INFO),
    ])
    def test_normalize_severity(self, value, expected):
        table = {s.value: s for s in Severity}
        assert normalize_severity(value, table) == expected


class TestFileHelpers:
    def test_tail_file(self, tmp_path):
        path = tmp_path / "log"
        path.write_text("".join(f"line {i}\n" for i in range(10)))
        assert StubService.tail_file(path, 3) == "line 7\nline 8\nline 9\n"
        assert StubService.tail_file(tmp_path / "missing", 3) == ""

    def test_find_readable_file(self, tmp_path):
        present = tmp_path / "b.log"
        present.write_text("x")
        found = StubService.find_readable_file([None, tmp_path / "a.log", tmp_path, present])
        assert found == present

    def test_log_candidates(self):
        service = StubService(config={"log_path": "/custom.log"})
        assert service.log_candidates(["/default.log"]) == ["/custom.log", "/default.log"]


class TestRecentEvents:
    def make(self, n):
        return SecurityEvent(type=EventType.SYSTEM, severity=Severity.INFO, service="t", description=str(n))

    def test_newest_first_and_bounded(self):
        ring = RecentEvents(maxlen=3)
        for n in range(5):
            ring.add(self.make(n))

        assert [e.description for e in ring.snapshot()] == ["4", "3", "2"]
        assert [e.description for e in ring.snapshot(limit=1)] == ["4"]
        assert len(ring) == 3
        ring.clear()
        assert ring.snapshot() == []


class TestEventBus:
    def make(self, service):
        return SecurityEvent(type=EventType.SYSTEM, severity=Severity.INFO, service=service)

    def test_routing(self):
        bus = EventBus()
        everything, only_ufw = [], []
        bus.subscribe(everything.append)
        bus.subscribe(only_ufw.append, service="ufw")

        bus.publish(self.make("ufw"))
        bus.publish(self.make("falco"))

        assert [e.service for e in everything] == ["ufw", "falco"]
        assert [e.service for e in only_ufw] == ["ufw"]

    def test_failing_handler_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(self.make("ufw"))
        assert len(seen) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        bus.unsubscribe(seen.append)
        bus.publish(self.make("ufw"))
        assert seen == []
