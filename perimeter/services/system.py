"""Host audit: pending package updates, SSH hardening and unattended upgrades."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import EventType, SecurityEvent, ServiceStatus, Severity
from ..service_base import SecurityService, is_running_in_container

UPGRADE_SUMMARY_RE = re.compile(r"(\d+) upgraded, (\d+) newly installed")
PASSWORD_AUTH_DISABLED_RE = re.compile(r"^\s*PasswordAuthentication\s+no\b", re.MULTILINE | re.IGNORECASE)
PASSWORD_AUTH_SET_RE = re.compile(r"^\s*PasswordAuthentication\s+\S+", re.MULTILINE | re.IGNORECASE)
PASSWORD_AUTH_DEFAULT_RE = re.compile(r"^#\s*PasswordAuthentication\s+yes\b", re.MULTILINE | re.IGNORECASE)

MAX_LISTED_UPDATES = 5


class SystemAuditService(SecurityService):
    """Checks the host itself rather than an external security tool."""

    display_name = "System Audit"

    @property
    def event_type(self) -> EventType:
        return EventType.SYSTEM

    def is_installed(self) -> bool:
        # Built in; nothing to install
        return True

    def is_configured(self) -> bool:
        return self.is_enabled()

    def is_running(self) -> bool:
        # No daemon; checks run during audits
        return False

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        return status.enabled

    def status_message(self, status: ServiceStatus) -> str:
        if status.is_healthy:
            return "System audit checks are available."
        return super().status_message(status)

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        return {
            "container": is_running_in_container(),
            "sshd_config": self.config.get("sshd_config", "/etc/ssh/sshd_config"),
        }

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_updates(self) -> Dict[str, Any]:
        """Count pending package updates and those coming from security pockets."""
        timeout = float(self.config.get("command_timeout", 120))
        if self.config.get("refresh_package_lists", False):
            refresh = self.runner.run(["apt-get", "update", "-qq"], timeout=timeout)
            if not refresh.ok:
                self.logger.warning(f"Refreshing package lists failed: {refresh.stderr.strip() or refresh.error}")

        listing = self.runner.run(["apt", "list", "--upgradable"], timeout=timeout)
        security = [
            line.strip() for line in listing.stdout.splitlines()
            if "security" in line.lower()
        ] if listing.ok else []

        total = 0
        simulation = self.runner.run(["apt-get", "-s", "upgrade"], timeout=timeout)
        if simulation.ok:
            match = UPGRADE_SUMMARY_RE.search(simulation.stdout)
            if match:
                total = int(match.group(1))

        return {
            "available": listing.ok or simulation.ok,
            "security_updates_count": len(security),
            "all_updates_count": max(total, len(security)),
            "details": security[:MAX_LISTED_UPDATES],
        }

    def check_ssh(self) -> Optional[bool]:
        """True when password logins are off, None when sshd_config is unreadable."""
        path = Path(self.config.get("sshd_config", "/etc/ssh/sshd_config"))
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            self.logger.debug(f"Cannot read {path}: {e}")
            return None
        if PASSWORD_AUTH_DISABLED_RE.search(content):
            return True
        if PASSWORD_AUTH_SET_RE.search(content):
            return False
        # Stock config ships the default commented out
        return bool(PASSWORD_AUTH_DEFAULT_RE.search(content))

    def check_auto_updates(self) -> bool:
        installed = self.runner.run(["dpkg", "-s", "unattended-upgrades"])
        if not installed.ok or "Status: install ok installed" not in installed.stdout:
            return False
        return self.runner.run(["systemctl", "is-enabled", "--quiet", "unattended-upgrades"]).ok

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []

        updates = self.check_updates()
        if updates["security_updates_count"]:
            issues.append(self.make_event(
                severity=Severity.CRITICAL,
                description=f"{updates['security_updates_count']} security updates available",
                scan_id=scan_id,
                details=updates,
            ))
        elif updates["all_updates_count"]:
            issues.append(self.make_event(
                severity=Severity.MEDIUM,
                description=f"{updates['all_updates_count']} system updates available",
                scan_id=scan_id,
                details=updates,
            ))

        failed = []
        ssh = self.check_ssh()
        if ssh is False:
            failed.append("ssh_config")
        if not self.check_auto_updates():
            failed.append("auto_updates")
        if failed:
            issues.append(self.make_event(
                severity=Severity.MEDIUM,
                description=f"{len(failed)} security controls need attention",
                scan_id=scan_id,
                details={"failed_controls": failed},
            ))

        counts = {s.value: 0 for s in Severity}
        for issue in issues:
            counts[issue.severity.value] += 1
        metadata["severity_counts"] = counts
        metadata["highest_severity"] = (
            max((i.severity for i in issues), key=lambda s: s.rank).value if issues else None
        )
        metadata["ssh_checked"] = ssh is not None
        metadata["updates_checked"] = updates["available"]
        return issues
