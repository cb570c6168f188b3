"""Tests for the perimeter command line."""

import json

import pytest
import yaml
from click.testing import CliRunner

from perimeter import cli as cli_module
from perimeter.cli import cli
from perimeter.capabilities import MonitorService
from perimeter.models import Severity
from perimeter.registry import ServiceRegistry

from .fakes import StubService


@pytest.fixture
def config_file(tmp_path, state_dir):
    path = tmp_path / "perimeter.yaml"
    path.write_text(yaml.dump({
        "enabled": False,
        "state_dir": str(state_dir),
        "api_port": 8765,
    }))
    return str(path)


@pytest.fixture
def invoke(config_file):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, ["--config", config_file, "--log-level", "CRITICAL", *args])

    return _invoke


class TestCli:
    def test_missing_config(self, tmp_path):
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "health"])
        assert result.exit_code == 1
        assert "absent.yaml" in result.output

    def test_health_all_disabled(self, invoke):
        result = invoke("health")

        assert result.exit_code == 0
        assert "disabled" in result.output
        assert "Overall: healthy" in result.output

    def test_health_json(self, invoke):
        result = invoke("--json", "health")

        body = json.loads(result.output)
        assert body["healthy"] is True
        assert [s["name"] for s in body["services"]] == ["clamav", "falco", "trivy", "ufw", "fail2ban", "system"]

    def test_audit(self, invoke):
        result = invoke("audit", "--scan-id", "cli-1")

        assert result.exit_code == 0
        assert "Malware Protection (clamav): disabled" in result.output
        assert "Total issues: 0 (0 critical, 0 high)" in result.output

    def test_audit_json_named(self, invoke):
        result = invoke("--json", "audit", "-s", "ufw", "-s", "trivy")

        body = json.loads(result.output)
        assert [r["service"] for r in body["results"]] == ["ufw", "trivy"]
        assert all(r["status"] == "disabled" for r in body["results"])

    def test_audit_unknown_service(self, invoke):
        result = invoke("audit", "-s", "snort")
        assert result.exit_code == 1
        assert "Security service 'snort' is not registered" in result.output

    def test_monitor_rejects_non_monitor(self, invoke):
        result = invoke("monitor", "start", "--service", "ufw")
        assert result.exit_code == 1
        assert "does not support monitoring" in result.output

    def test_monitor_events_empty(self, invoke):
        result = invoke("monitor", "events")
        assert result.exit_code == 0
        assert "No recent events" in result.output

    def test_terminate_unknown(self, invoke):
        result = invoke("terminate", "nothing-here")
        assert result.exit_code == 0
        assert "Process nothing-here terminated" in result.output

    def test_processes_empty(self, invoke):
        result = invoke("processes")
        assert "No managed processes" in result.output

    def test_serve_uses_configured_port(self, invoke, monkeypatch):
        calls = []
        monkeypatch.setattr(cli_module, "run_server", lambda app, host, port: calls.append((host, port)))

        result = invoke("serve", "--host", "0.0.0.0")

        assert result.exit_code == 0
        assert calls == [("0.0.0.0", 8765)]


class ScriptedMonitor(StubService, MonitorService):
    """Monitor that reports a fixed number of events, then ends."""

    display_name = "Scripted Monitor"

    def __init__(self, beats=2, interrupt=False, **kwargs):
        super().__init__(**kwargs)
        self.beats = beats
        self.interrupt = interrupt
        self.started = []
        self.stopped = False

    def start_monitoring(self, duration=None, detach=False):
        self.started.append((duration, detach))
        return True

    def stop_monitoring(self):
        self.stopped = True
        return True

    def is_monitoring(self):
        if self.interrupt:
            raise KeyboardInterrupt
        if not self.beats:
            return False
        self.beats -= 1
        self.record_event(self.make_event(Severity.HIGH, f"beat {self.beats}"))
        return True

    def get_recent_events(self, limit=10):
        return self.recent_events.snapshot(limit)


@pytest.fixture
def monitor_registry(monkeypatch):
    registry = ServiceRegistry()
    registry.register("scripted", ScriptedMonitor)
    registry.register("impatient", lambda **kw: ScriptedMonitor(interrupt=True, **kw))
    monkeypatch.setattr(cli_module, "create_default_registry", lambda settings: registry)
    monkeypatch.setattr(cli_module, "POLL_INTERVAL", 0)
    return registry


class TestMonitorStart:
    def test_stays_attached_until_monitor_ends(self, invoke, monitor_registry):
        result = invoke("monitor", "start", "-s", "scripted", "-d", "5")

        monitor = monitor_registry.get("scripted")
        assert result.exit_code == 0
        assert monitor.started == [(5.0, False)]
        assert "[high] beat 1" in result.output
        assert "[high] beat 0" in result.output
        assert result.output.rstrip().endswith("Monitoring stopped")
        assert not monitor.stopped

    def test_ctrl_c_stops_monitor(self, invoke, monitor_registry):
        result = invoke("monitor", "start", "-s", "impatient")

        assert result.exit_code == 0
        assert monitor_registry.get("impatient").stopped
        assert "Monitoring stopped" in result.output

    def test_detach_returns_immediately(self, invoke, monitor_registry):
        result = invoke("monitor", "start", "-s", "scripted", "--detach")

        monitor = monitor_registry.get("scripted")
        assert result.exit_code == 0
        assert monitor.started == [(None, True)]
        assert monitor.beats == 2
        assert "in the background" in result.output
        assert "perimeter monitor stop --service scripted" in result.output
