"""ClamAV adapter: on-demand scans and clamonacc real-time detections."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..capabilities import MonitorService, ScannerService
from ..models import CommandResult, EventType, ScanResult, SecurityEvent, ServiceStatus, Severity
from ..parsers.clamav import ClamAVOutputParser
from ..service_base import SecurityService

MONITOR_PROCESS = "clamonacc"
DEFAULT_LOG_PATHS = ("/var/log/clamav/clamonacc.log", "/var/log/clamav/clamav.log")


class ClamAVService(SecurityService, ScannerService, MonitorService):
    """Malware scanning through clamscan/clamdscan plus clamonacc monitoring."""

    display_name = "Malware Protection"
    default_severity = Severity.CRITICAL

    def is_installed(self) -> bool:
        return (
            self.runner.run(["clamscan", "--version"]).ok
            or self.runner.run(["clamdscan", "--version"]).ok
        )

    def is_configured(self) -> bool:
        return (
            self.runner.run(["clamdscan", "--help"]).ok
            or self.runner.run(["clamscan", "--help"]).ok
        )

    def is_running(self) -> bool:
        return (
            self.runner.run(["pgrep", "clamd"]).ok
            or self.runner.run(["pgrep", "clamonacc"]).ok
        )

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        # clamscan works without the daemon
        return status.enabled and status.installed and status.configured

    def get_version(self) -> Optional[str]:
        result = self.runner.run(["clamscan", "--version"])
        if not result.ok:
            result = self.runner.run(["clamdscan", "--version"])
        return ClamAVOutputParser.parse_version(result.stdout) if result.ok else None

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        return {
            "version": self.get_version() if status.installed else None,
            "realtime": bool(self.config.get("realtime", False)),
            **self.monitor_details(MONITOR_PROCESS),
            "socket": self.config.get("socket"),
            "scan_paths": list(self.config.get("scan_paths", [])),
        }

    def status_message(self, status: ServiceStatus) -> str:
        if status.enabled and status.installed and status.configured:
            if status.running:
                return "ClamAV is active and protecting against malware."
            return "ClamAV is available for on-demand scanning but the daemon is not running."
        return super().status_message(status)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _run_scan(
        self,
        paths: Sequence[str],
        exclude_patterns: Optional[Sequence[str]] = None,
        summary: bool = False,
    ) -> CommandResult:
        if self.runner.run(["pgrep", "clamd"]).ok:
            cmd = ["clamdscan", "--multiscan", "--fdpass", "--infected"]
        else:
            cmd = ["clamscan", "-r", "--infected"]
            for pattern in exclude_patterns or []:
                cmd.append(f"--exclude={pattern}")
        if not summary:
            cmd.append("--no-summary")
        cmd.extend(paths)

        timeout = float(self.config.get("scan_timeout", 1800))
        self.logger.info(f"Running ClamAV scan of {len(paths)} path(s)")
        return self.runner.run(cmd, timeout=timeout)

    def scan_paths(
        self,
        paths: Sequence[str],
        exclude_patterns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Scan paths recursively and return ``{'file', 'threat'}`` detections."""
        if exclude_patterns is None:
            exclude_patterns = self.config.get("exclude_patterns", [])
        result = self._run_scan(paths, exclude_patterns)
        if result.timed_out or result.return_code == 2:
            self.logger.error(f"ClamAV scan failed: {result.error or result.stderr.strip()}")
        return ClamAVOutputParser.parse_infected_files(result.stdout)

    def scan_file(self, file_path: str) -> ScanResult:
        """Scan a single file. Exit code 1 means a threat was found."""
        result = self.runner.run(
            ["clamscan", "--no-summary", file_path],
            timeout=float(self.config.get("file_scan_timeout", 120)),
        )
        if result.return_code == 1:
            detections = ClamAVOutputParser.parse_infected_files(result.stdout)
            threat = detections[0]["threat"] if detections else "Unknown threat"
            return ScanResult.infected(file_path, threat)
        if result.return_code == 0:
            return ScanResult.clean(file_path)

        error = result.error or result.stderr.strip() or f"clamscan exited with code {result.return_code}"
        self.logger.error(f"Scanning {file_path} failed: {error}")
        return ScanResult(file_path=file_path, error=error)

    def update_definitions(self) -> bool:
        result = self.runner.run(["freshclam"], timeout=300)
        if not result.ok:
            self.logger.error(f"freshclam failed: {result.error or result.stderr.strip()}")
        return result.ok

    # ------------------------------------------------------------------
    # Real-time monitoring
    # ------------------------------------------------------------------

    def monitor_command(self) -> List[str]:
        cmd = ["clamonacc", "--foreground", "--fdpass", "--verbose"]
        watch_list = self.config.get("watch_list")
        if watch_list:
            cmd.append(f"--watch-list={watch_list}")
        return cmd

    def start_monitoring(self, duration: Optional[float] = None, detach: bool = False) -> bool:
        return self.launch_monitor(MONITOR_PROCESS, self.monitor_command(), self.handle_monitor_line, duration, detach)

    def stop_monitoring(self) -> bool:
        return self.processes.stop(MONITOR_PROCESS)

    def is_monitoring(self) -> bool:
        return self.processes.get_pid(MONITOR_PROCESS) is not None

    def handle_monitor_line(self, line: str) -> None:
        for detection in ClamAVOutputParser.parse_infected_files(line):
            event = self.to_security_event(detection)
            self.logger.critical(f"Malware detected: {detection['threat']} in {detection['file']}")
            self.record_event(event)

    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        events = self.recent_events.snapshot(limit)
        if events:
            return events

        log_path = self.find_readable_file(self.monitor_log_candidates(MONITOR_PROCESS, DEFAULT_LOG_PATHS))
        if log_path is None:
            return []
        text = self.tail_file(log_path, max(limit * 20, 200))
        return [self.to_security_event(r) for r in ClamAVOutputParser.parse_log_events(text, limit)]

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def map_severity(self, record: Dict[str, Any]) -> Severity:
        if record.get("severity"):
            return super().map_severity(record)
        threat = str(record.get("threat", "")).lower()
        if threat.startswith("pua.") or "adware" in threat:
            return Severity.MEDIUM
        if "eicar" in threat or ".test." in threat:
            return Severity.LOW
        return Severity.CRITICAL

    def describe(self, record: Dict[str, Any]) -> str:
        if record.get("threat"):
            return f"Detected {record['threat']} in {record.get('file', 'file')}"
        return super().describe(record)

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        return record.get("file") or record.get("location")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []

        if self.config.get("realtime") and not self.is_running():
            issues.append(self.make_event(
                severity=Severity.MEDIUM,
                description="Real-time scanning is enabled but no ClamAV daemon is running",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
            ))

        paths = [p for p in self.config.get("scan_paths", []) if Path(p).exists()]
        metadata["scan_paths"] = paths
        if not paths:
            metadata["message"] = "No existing scan paths configured"
            return issues

        result = self._run_scan(paths, self.config.get("exclude_patterns", []), summary=True)
        metadata["summary"] = ClamAVOutputParser.parse_scan_summary(result.stdout)

        if result.timed_out:
            issues.append(self.make_event(
                severity=Severity.HIGH,
                description=f"ClamAV scan timed out after {self.config.get('scan_timeout', 1800)}s",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
                details={"error": result.error},
            ))
        elif result.error or result.return_code == 2:
            issues.append(self.make_event(
                severity=Severity.MEDIUM,
                description="ClamAV scan reported errors",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
                details={"error": result.error or result.stderr.strip()},
            ))

        for detection in ClamAVOutputParser.parse_infected_files(result.stdout):
            issues.append(self.to_security_event(detection, scan_id))

        self.logger.info(f"ClamAV audit finished with {len(issues)} issue(s)")
        return issues
