"""Fail2ban adapter: jail status, bans and log events."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from ..capabilities import IntrusionPreventionService
from ..models import EventType, SecurityEvent, ServiceStatus, Severity
from ..parsers.fail2ban import Fail2banOutputParser
from ..service_base import SecurityService, normalize_severity

DEFAULT_LOG_PATHS = ("/var/log/fail2ban.log", "/var/log/fail2ban/fail2ban.log")

ACTION_SEVERITY = {
    "ban": Severity.HIGH,
    "unban": Severity.LOW,
    "found": Severity.MEDIUM,
}

LEVEL_SEVERITY = {
    "critical": Severity.CRITICAL,
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "notice": Severity.LOW,
    "info": Severity.INFO,
    "debug": Severity.INFO,
}


class Fail2banService(SecurityService, IntrusionPreventionService):
    """Intrusion prevention through fail2ban-client."""

    display_name = "Intrusion Prevention"

    @property
    def client(self) -> Optional[str]:
        path = self.runner.which("fail2ban-client")
        return str(path) if path else None

    @property
    def config_dir(self) -> Path:
        return Path(self.config.get("config_path", "/etc/fail2ban"))

    def _client(self, *args: str, timeout: float = 30):
        return self.runner.run([self.client or "fail2ban-client", *args], timeout=timeout)

    def is_installed(self) -> bool:
        return self.client is not None

    def is_configured(self) -> bool:
        if not self._client("--help").ok:
            return False
        if not self.config_dir.is_dir():
            return False
        return any((self.config_dir / name).is_file() for name in ("jail.conf", "jail.local"))

    def server_status(self) -> Dict[str, Any]:
        result = self._client("status")
        status = Fail2banOutputParser.parse_status(result.stdout)
        if not result.ok:
            status["error"] = result.error or result.stderr.strip() or None
        return status

    def is_running(self) -> bool:
        return self.server_status()["running"]

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        return status.enabled and status.installed

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        details = {
            "version": None,
            "jails": [],
            "enabled_jails": list(self.config.get("enabled_jails", [])),
            "ban_time": self.config.get("ban_time", 3600),
            "find_time": self.config.get("find_time", 600),
            "max_retry": self.config.get("max_retry", 5),
        }
        if status.installed:
            server = self.server_status()
            details["version"] = server["version"]
            details["jails"] = server["jails"]
            if server.get("error"):
                details["error"] = server["error"]
        return details

    # ------------------------------------------------------------------
    # Jails and bans
    # ------------------------------------------------------------------

    def get_jails(self) -> List[str]:
        return self.server_status()["jails"]

    def get_jail_status(self, jail: str) -> Dict[str, Any]:
        result = self._client("status", jail)
        status = Fail2banOutputParser.parse_jail_status(result.stdout)
        if status["jail"] is None:
            status["jail"] = jail
        return status

    def get_banned_ips(self, jail: Optional[str] = None) -> Dict[str, List[str]]:
        jails = [jail] if jail else self.get_jails()
        return {name: self.get_jail_status(name)["banned_ips"] for name in jails}

    def unban_ip(self, ip: str, jail: Optional[str] = None) -> bool:
        if jail:
            result = self._client("set", jail, "unbanip", ip)
        else:
            result = self._client("unban", ip)
        if result.ok:
            self.logger.info(f"Unbanned {ip}" + (f" from jail {jail}" if jail else ""))
        else:
            self.logger.error(f"Failed to unban {ip}: {result.error or result.stderr.strip()}")
        return result.ok

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        log_path = self.find_readable_file(self.log_candidates(DEFAULT_LOG_PATHS))
        if log_path is not None:
            text = self.tail_file(log_path, limit * 3)
            records = Fail2banOutputParser.parse_log_events(text, limit)
            if records:
                return [self.to_security_event(r) for r in records]
        return self.get_events_from_client(limit)

    def get_events_from_client(self, limit: int = 10) -> List[SecurityEvent]:
        """Fallback when the log is unreadable: report current bans."""
        events: List[SecurityEvent] = []
        for jail, ips in self.get_banned_ips().items():
            for ip in ips:
                events.append(self.to_security_event({"jail": jail, "action": "ban", "ip": ip}))
                if len(events) >= limit:
                    return events
        return events

    def map_severity(self, record: Dict[str, Any]) -> Severity:
        action = record.get("action")
        if action in ACTION_SEVERITY:
            return ACTION_SEVERITY[action]
        return normalize_severity(record.get("level"), LEVEL_SEVERITY, Severity.MEDIUM)

    def describe(self, record: Dict[str, Any]) -> str:
        action, ip, jail = record.get("action"), record.get("ip"), record.get("jail")
        if action == "ban":
            return f"IP {ip} was banned in jail {jail}"
        if action == "unban":
            return f"IP {ip} was unbanned from jail {jail}"
        if action == "found":
            return f"IP {ip} matched a failure filter in jail {jail}"
        return record.get("message") or super().describe(record)

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        return record.get("ip") or record.get("location")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []
        server = self.server_status()
        metadata["version"] = server["version"]
        metadata["jails"] = server["jails"]

        if not server["running"]:
            issues.append(self.make_event(
                severity=Severity.HIGH,
                description="Fail2ban server is not running",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
                details={"error": server.get("error")},
            ))
            return issues

        for jail in self.config.get("enabled_jails", []):
            if jail not in server["jails"]:
                issues.append(self.make_event(
                    severity=Severity.MEDIUM,
                    description=f"Jail {jail} is expected but not active",
                    scan_id=scan_id,
                    details={"jail": jail},
                ))

        banned = self.get_banned_ips()
        metadata["banned_ips"] = banned
        metadata["banned_ip_count"] = sum(len(ips) for ips in banned.values())
        return issues
