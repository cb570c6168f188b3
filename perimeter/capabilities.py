"""Narrow capability interfaces implemented by service adapters.

The registry dispatches on these classes, so a new tool only has to
implement the interfaces it supports.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from .models import EventType, ScanResult, SecurityEvent


class Capability(str, Enum):
    SCANNER = "scanner"
    MONITOR = "monitor"
    FIREWALL = "firewall"
    INTRUSION_PREVENTION = "intrusion_prevention"
    VULNERABILITY_SCANNER = "vulnerability_scanner"


class ScannerService(ABC):
    """On-demand malware scanning of files and directories."""

    @abstractmethod
    def scan_file(self, file_path: str) -> ScanResult:
        ...

    @abstractmethod
    def scan_paths(
        self,
        paths: Sequence[str],
        exclude_patterns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def update_definitions(self) -> bool:
        ...


class MonitorService(ABC):
    """Continuous monitoring that yields events over time."""

    @abstractmethod
    def start_monitoring(self, duration: Optional[float] = None, detach: bool = False) -> bool:
        """Start the monitor.

        A detached monitor outlives the calling process and writes its
        output to a log that get_recent_events() reads back.
        """

    @abstractmethod
    def stop_monitoring(self) -> bool:
        ...

    @abstractmethod
    def is_monitoring(self) -> bool:
        ...

    @abstractmethod
    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        ...


class FirewallService(ABC):
    """Host firewall status, rules and log events."""

    @abstractmethod
    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        ...

    @abstractmethod
    def get_rules(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def check_ports(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def reset(self) -> bool:
        ...


class IntrusionPreventionService(ABC):
    """Ban-based intrusion prevention with jails."""

    @abstractmethod
    def get_recent_events(self, limit: int = 10) -> List[SecurityEvent]:
        ...

    @abstractmethod
    def get_jails(self) -> List[str]:
        ...

    @abstractmethod
    def get_banned_ips(self, jail: Optional[str] = None) -> Dict[str, List[str]]:
        ...

    @abstractmethod
    def unban_ip(self, ip: str, jail: Optional[str] = None) -> bool:
        ...


class VulnerabilityScannerService(ABC):
    """Dependency and package vulnerability scanning."""

    @abstractmethod
    def scan_path(self, path: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def scan_for_vulnerabilities(
        self,
        paths: Optional[Sequence[str]] = None,
        scan_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        ...


CAPABILITY_CLASSES: Dict[Capability, Type[ABC]] = {
    Capability.SCANNER: ScannerService,
    Capability.MONITOR: MonitorService,
    Capability.FIREWALL: FirewallService,
    Capability.INTRUSION_PREVENTION: IntrusionPreventionService,
    Capability.VULNERABILITY_SCANNER: VulnerabilityScannerService,
}

# First match wins; a scanner that also monitors still reports malware
EVENT_TYPE_BY_CAPABILITY = (
    (ScannerService, EventType.MALWARE),
    (VulnerabilityScannerService, EventType.VULNERABILITY),
    (MonitorService, EventType.BEHAVIORAL),
    (IntrusionPreventionService, EventType.INTRUSION),
    (FirewallService, EventType.FIREWALL),
)


def resolve_capability(capability: Union[Capability, str, Type[ABC]]) -> Type[ABC]:
    """Turn a capability name, enum value or interface class into the interface class."""
    if isinstance(capability, type):
        return capability
    return CAPABILITY_CLASSES[Capability(capability)]


def capabilities_of(obj: Any) -> List[Capability]:
    return [cap for cap, cls in CAPABILITY_CLASSES.items() if isinstance(obj, cls)]
