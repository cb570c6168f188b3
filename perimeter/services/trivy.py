"""Trivy adapter: filesystem vulnerability scans."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..capabilities import VulnerabilityScannerService
from ..models import EventType, SecurityEvent, ServiceStatus, Severity
from ..parsers.trivy import TrivyOutputParser
from ..service_base import SecurityService

SEVERITY_LEVELS = {
    "CRITICAL": 4,
    "HIGH": 3,
    "MEDIUM": 2,
    "LOW": 1,
    "UNKNOWN": 0,
}

TRIVY_SEVERITY = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
    "unknown": Severity.INFO,
}


def filter_by_severity(records: List[Dict[str, Any]], threshold: str = "MEDIUM") -> List[Dict[str, Any]]:
    """Keep records whose Trivy severity is at or above ``threshold``."""
    minimum = SEVERITY_LEVELS.get(str(threshold).upper(), SEVERITY_LEVELS["MEDIUM"])
    return [
        r for r in records
        if SEVERITY_LEVELS.get(str(r.get("severity", "UNKNOWN")).upper(), 0) >= minimum
    ]


class TrivyService(SecurityService, VulnerabilityScannerService):
    """On-demand dependency vulnerability scanning with Trivy."""

    display_name = "Vulnerability Scanner"
    severity_table = TRIVY_SEVERITY
    default_severity = Severity.INFO

    def is_installed(self) -> bool:
        return self.runner.run(["trivy", "--version"]).ok

    def is_configured(self) -> bool:
        return any(Path(p).exists() for p in self.config.get("scan_paths", []))

    def is_running(self) -> bool:
        # No daemon; scans run on demand
        return False

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        return status.enabled and status.installed and status.configured

    def status_message(self, status: ServiceStatus) -> str:
        if status.is_healthy:
            return "Trivy is ready for on-demand vulnerability scans."
        return super().status_message(status)

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        return {
            "scan_paths": list(self.config.get("scan_paths", [])),
            "severity_threshold": self.config.get("severity_threshold", "MEDIUM"),
        }

    def build_command(self, path: str) -> List[str]:
        cmd = ["trivy", "fs", "--format", "json", "--quiet", "--scanners", "vuln"]
        for skip in self.config.get("exclude_paths", []):
            cmd += ["--skip-dirs", skip]
        cmd.append(path)
        return cmd

    def _scan(self, path: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        timeout = float(self.config.get("scan_timeout", 1800))
        result = self.runner.run(self.build_command(path), timeout=timeout)

        if result.timed_out:
            return [], f"Trivy scan of {path} timed out after {timeout:g}s"
        if result.error:
            return [], result.error

        records = TrivyOutputParser.parse_vulnerabilities(result.stdout)
        if not records and not result.stdout.lstrip().startswith("{"):
            records = TrivyOutputParser.parse_text_output(result.stdout)
        if result.return_code != 0 and not records:
            return [], result.stderr.strip() or f"trivy exited with code {result.return_code}"

        threshold = self.config.get("severity_threshold", "MEDIUM")
        return filter_by_severity(records, threshold), None

    def scan_path(self, path: str) -> List[Dict[str, Any]]:
        """Scan one path and return the vulnerability records above the threshold."""
        records, error = self._scan(path)
        if error:
            self.logger.error(error)
        return records

    def scan_for_vulnerabilities(
        self,
        paths: Optional[Sequence[str]] = None,
        scan_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        paths = paths if paths is not None else self.config.get("scan_paths", [])
        events: List[SecurityEvent] = []
        for path in paths:
            events.extend(self.to_security_event(r, scan_id) for r in self.scan_path(path))
        return events

    def describe(self, record: Dict[str, Any]) -> str:
        return (
            f"{record.get('cve', 'Unknown')}: {record.get('title', 'Unknown vulnerability')} "
            f"in {record.get('package_name', 'unknown')} {record.get('version', 'unknown')}"
        )

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        return record.get("package_name") or record.get("location")

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []
        scanned = []
        for path in self.config.get("scan_paths", []):
            if not Path(path).exists():
                continue
            scanned.append(path)
            records, error = self._scan(path)
            if error:
                self.logger.error(error)
                issues.append(self.make_event(
                    severity=Severity.MEDIUM,
                    description=f"Trivy scan of {path} failed",
                    event_type=EventType.SYSTEM,
                    scan_id=scan_id,
                    location=path,
                    details={"error": error},
                ))
                continue
            issues.extend(self.to_security_event(r, scan_id) for r in records)

        metadata["scanned_paths"] = scanned
        metadata["vulnerability_count"] = sum(1 for i in issues if i.type == EventType.VULNERABILITY)
        return issues
