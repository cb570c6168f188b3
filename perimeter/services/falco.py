"""Falco adapter: streamed runtime alerts turned into behavioral events."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..capabilities import MonitorService
from ..models import EventType, SecurityEvent, Severity
from ..parsers.falco import FalcoOutputParser
from ..service_base import SecurityService, normalize_severity

MONITOR_PROCESS = "falco"

PRIORITY_SEVERITY = {
    "emergency": Severity.CRITICAL,
    "alert": Severity.CRITICAL,
    "critical": Severity.CRITICAL,
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "notice": Severity.LOW,
    "informational": Severity.INFO,
    "info": Severity.INFO,
    "debug": Severity.INFO,
}


class FalcoService(SecurityService, MonitorService):
    """Runtime behavior monitoring through Falco."""

    display_name = "Runtime Security"
    severity_table = PRIORITY_SEVERITY
    default_severity = Severity.MEDIUM

    @property
    def binary(self) -> Optional[str]:
        configured = self.config.get("binary_path")
        if configured and os.access(configured, os.X_OK):
            return configured
        found = self.runner.which("falco")
        return str(found) if found else None

    @property
    def severity_filter(self) -> Severity:
        return normalize_severity(self.config.get("severity_filter", "warning"), PRIORITY_SEVERITY, Severity.MEDIUM)

    def is_installed(self) -> bool:
        return self.binary is not None

    def is_configured(self) -> bool:
        config_file = self.config.get("config_file")
        return bool(config_file) and Path(config_file).is_file()

    def is_running(self) -> bool:
        return self.runner.run(["pgrep", "-x", "falco"]).ok or self.is_monitoring()

    def status_details(self, status):
        return {
            **self.monitor_details(MONITOR_PROCESS),
            "config_file": self.config.get("config_file"),
            "rules_path": self.config.get("rules_path"),
            "log_path": self.config.get("log_path"),
            "severity_filter": self.severity_filter.value,
            "recent_event_count": len(self.recent_events),
        }

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def monitor_command(self) -> List[str]:
        cmd = [self.binary or "falco", "-o", "json_output=true"]
        config_file = self.config.get("config_file")
        if config_file and Path(config_file).is_file():
            cmd += ["-c", config_file]
        rules_path = self.config.get("rules_path")
        if rules_path and Path(rules_path).exists():
            cmd += ["-r", rules_path]
        return cmd

    def start_monitoring(self, duration: Optional[float] = None, detach: bool = False) -> bool:
        return self.launch_monitor(MONITOR_PROCESS, self.monitor_command(), self.handle_output_line, duration, detach)

    def stop_monitoring(self) -> bool:
        return self.processes.stop(MONITOR_PROCESS)

    def is_monitoring(self) -> bool:
        return self.processes.get_pid(MONITOR_PROCESS) is not None

    def handle_output_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        for event in self.events_from_output(line):
            self.record_event(event)

    def events_from_output(self, payload: str, scan_id: Optional[str] = None) -> List[SecurityEvent]:
        """Parse alert output and keep the events at or above the severity filter."""
        threshold = self.severity_filter.rank
        events = []
        for alert in FalcoOutputParser.parse(payload):
            event = self.to_security_event(self.normalize_alert(alert), scan_id)
            if event.severity.rank >= threshold:
                events.append(event)
        return events

    @staticmethod
    def normalize_alert(alert: Dict[str, Any]) -> Dict[str, Any]:
        """Bring JSON alerts into the same shape as parsed text alerts."""
        if "output_fields" not in alert and "output" not in alert:
            return alert
        fields = alert.get("output_fields") or {}
        return {
            "timestamp": alert.get("time"),
            "priority": str(alert.get("priority", "")).lower(),
            "rule": alert.get("rule"),
            "description": alert.get("output") or alert.get("rule"),
            "user": fields.get("user.name"),
            "process": fields.get("proc.name") or fields.get("proc.cmdline"),
            "details": {**fields, "tags": alert.get("tags", []), "source": alert.get("source")},
        }

    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        events = self.recent_events.snapshot(limit)
        if events:
            return events

        log_path = self.find_readable_file(self.monitor_log_candidates(MONITOR_PROCESS))
        if log_path is None:
            return []
        text = self.tail_file(log_path, max(limit * 20, 200))
        return list(reversed(self.events_from_output(text)))[:limit]

    def map_severity(self, record: Dict[str, Any]) -> Severity:
        return normalize_severity(record.get("priority"), PRIORITY_SEVERITY, self.default_severity)

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        process = record.get("process")
        return f"process:{process}" if process else None

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []

        if not self.is_running():
            issues.append(self.make_event(
                severity=Severity.MEDIUM,
                description="Falco is not running; runtime monitoring is inactive",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
            ))

        log_path = self.find_readable_file(self.log_candidates())
        metadata["log_path"] = str(log_path) if log_path else None
        if log_path is None:
            return issues

        text = self.tail_file(log_path, int(self.config.get("audit_log_lines", 500)))
        alerts = self.events_from_output(text, scan_id)
        metadata["alerts_at_or_above_filter"] = len(alerts)
        issues.extend(alerts)
        return issues
