"""UFW adapter: firewall state, rules, log events and port exposure."""

import ipaddress
import re
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from ..capabilities import FirewallService
from ..models import SecurityEvent, ServiceStatus, Severity
from ..parsers.ufw import UfwOutputParser
from ..service_base import GENERIC_SEVERITY, SecurityService, normalize_severity

DEFAULT_CONFIG_PATHS = ("/etc/ufw/ufw.conf", "/lib/ufw/ufw-init", "/etc/default/ufw")
DEFAULT_LOG_PATHS = ("/var/log/ufw.log", "/var/log/kern.log", "/var/log/syslog")
ENABLED_RE = re.compile(r"^\s*ENABLED\s*=\s*yes\s*$", re.MULTILINE | re.IGNORECASE)

ACTION_SEVERITY = {
    "block": Severity.MEDIUM,
    "allow": Severity.LOW,
    "audit": Severity.INFO,
    "limit": Severity.MEDIUM,
}


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).is_loopback
    except ValueError:
        return False


class UfwService(SecurityService, FirewallService):
    """Host firewall through ufw."""

    display_name = "Firewall"
    severity_table = {**GENERIC_SEVERITY, **ACTION_SEVERITY}

    @property
    def binary(self) -> Optional[str]:
        path = self.runner.which("ufw")
        return str(path) if path else None

    def config_paths(self) -> List[str]:
        return list(self.config.get("config_paths", DEFAULT_CONFIG_PATHS))

    def is_installed(self) -> bool:
        return self.binary is not None

    def is_configured(self) -> bool:
        return self.find_readable_file(self.config_paths()) is not None

    def _enabled_in_conf(self) -> bool:
        conf = self.find_readable_file([p for p in self.config_paths() if p.endswith("ufw.conf")])
        if conf is None:
            return False
        return bool(ENABLED_RE.search(conf.read_text(errors="replace")))

    def firewall_status(self, verbose: bool = True) -> Optional[Dict[str, Any]]:
        args = ["status", "verbose"] if verbose else ["status", "numbered"]
        result = self.runner.run([self.binary or "ufw", *args], timeout=30)
        if not result.ok:
            return None
        return UfwOutputParser.parse_status_output(result.stdout)

    def is_running(self) -> bool:
        status = self.firewall_status()
        if status is not None:
            return status["active"]
        return self._enabled_in_conf()

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        return status.enabled and status.installed

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        details: Dict[str, Any] = {"log_path": self.config.get("log_path")}
        if status.installed:
            parsed = self.firewall_status()
            if parsed is not None:
                details["default_policies"] = parsed["default_policies"]
                details["rule_count"] = len(parsed["rules"])
        return details

    def get_rules(self) -> List[Dict[str, Any]]:
        status = self.firewall_status(verbose=False)
        return status["rules"] if status else []

    def reset(self) -> bool:
        result = self.runner.run([self.binary or "ufw", "--force", "reset"], timeout=60)
        if not result.ok:
            self.logger.error(f"ufw reset failed: {result.error or result.stderr.strip()}")
        return result.ok

    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        log_path = self.find_readable_file(self.log_candidates(DEFAULT_LOG_PATHS))
        if log_path is None:
            return []
        # ufw lines may be interleaved with other kernel messages
        text = self.tail_file(log_path, max(limit * 10, 500))
        return [self.to_security_event(r) for r in UfwOutputParser.parse_log_events(text, limit)]

    def listening_ports(self) -> Dict[int, List[str]]:
        """Map each listening TCP/UDP port to its bound addresses."""
        ports: Dict[int, List[str]] = {}
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, OSError) as e:
            self.logger.warning(f"Cannot list sockets: {e}")
            return ports
        for conn in connections:
            if not conn.laddr:
                continue
            if conn.type == socket.SOCK_STREAM and conn.status != psutil.CONN_LISTEN:
                continue
            ports.setdefault(conn.laddr.port, [])
            if conn.laddr.ip not in ports[conn.laddr.port]:
                ports[conn.laddr.port].append(conn.laddr.ip)
        return ports

    def check_ports(self) -> List[Dict[str, Any]]:
        """Compare listening sockets with the expected, public and restricted port lists."""
        expected = {int(p) for p in self.config.get("expected_ports", [])}
        public = {int(p) for p in self.config.get("public_ports", [])}
        restricted = {int(p) for p in self.config.get("restricted_ports", [])}
        listening = self.listening_ports()
        issues: List[Dict[str, Any]] = []

        for port in sorted(expected - set(listening)):
            issues.append({
                "port": port,
                "issue": "expected_port_closed",
                "severity": "low",
                "description": f"Expected port {port} is not listening",
            })

        for port, addresses in sorted(listening.items()):
            exposed = [a for a in addresses if not _is_loopback(a)]
            if not exposed:
                continue
            if port in restricted:
                issues.append({
                    "port": port,
                    "issue": "restricted_port_exposed",
                    "severity": "high",
                    "addresses": exposed,
                    "description": f"Restricted port {port} is listening on {', '.join(exposed)}",
                })
            elif public and port not in public and port not in expected:
                issues.append({
                    "port": port,
                    "issue": "unexpected_public_port",
                    "severity": "medium",
                    "addresses": exposed,
                    "description": f"Port {port} is listening publicly but is not in the allowed list",
                })
        return issues

    def map_severity(self, record: Dict[str, Any]) -> Severity:
        # Port issues carry a severity, log events only their action
        value = record.get("severity") or record.get("action")
        return normalize_severity(value, self.severity_table, self.default_severity)

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        if record.get("source"):
            return record["source"]
        if record.get("port") is not None:
            return f"port:{record['port']}"
        return record.get("location")

    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        issues: List[SecurityEvent] = []
        status = self.firewall_status()
        active = status["active"] if status is not None else self._enabled_in_conf()
        metadata["active"] = active

        if not active:
            issues.append(self.make_event(
                severity=Severity.HIGH,
                description="No active firewall detected",
                scan_id=scan_id,
            ))
        elif status is not None:
            metadata["default_policies"] = status["default_policies"]
            metadata["rule_count"] = len(status["rules"])
            if status["default_policies"].get("incoming") == "allow":
                issues.append(self.make_event(
                    severity=Severity.HIGH,
                    description="Default incoming policy allows all traffic",
                    scan_id=scan_id,
                    details={"default_policies": status["default_policies"]},
                ))

        for port_issue in self.check_ports():
            issues.append(self.to_security_event(port_issue, scan_id))
        return issues
