"""Abstract base class for every orchestrated security tool.

Implements the lifecycle template: subclasses provide the installed,
configured and running probes plus their audit tasks, while run_audit()
evaluates the states in a fixed order and never raises.
"""

import logging
import re
import shlex
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .capabilities import EVENT_TYPE_BY_CAPABILITY, capabilities_of
from .command import CommandRunner
from .events import EventBus, RecentEvents
from .models import (
    AuditResult,
    AuditStatus,
    EventType,
    SecurityEvent,
    ServiceStatus,
    Severity,
)
from .process_manager import BackgroundProcessManager

logger = logging.getLogger(__name__)

EVENT_FIELDS = ("timestamp", "type", "severity", "description", "location", "user", "service", "scan_id")

GENERIC_SEVERITY: Dict[str, Severity] = {s.value: s for s in Severity}


def normalize_severity(
    value: Any,
    table: Dict[str, Severity],
    default: Severity = Severity.MEDIUM,
) -> Severity:
    """Map a tool's native severity token through ``table``."""
    if isinstance(value, Severity):
        return value
    if value is None:
        return default
    return table.get(str(value).lower().strip(), default)


def is_running_in_container() -> bool:
    if Path("/.dockerenv").exists() or Path("/run/.containerenv").exists():
        return True
    try:
        cgroup = Path("/proc/1/cgroup").read_text()
    except OSError:
        return False
    return any(marker in cgroup for marker in ("docker", "lxc", "kubepods"))


class SecurityService(ABC):
    """Base for service adapters.

    Subclasses must implement:
      - is_installed() / is_configured() / is_running()
      - audit_tasks(scan_id, metadata) -> list of SecurityEvent issues
    and usually override severity_table and describe().
    """

    display_name: str = "Security Service"
    severity_table: Dict[str, Severity] = GENERIC_SEVERITY
    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        runner: Optional[CommandRunner] = None,
        process_manager: Optional[BackgroundProcessManager] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = dict(config or {})
        self.runner = runner or CommandRunner()
        self.event_bus = event_bus
        self.recent_events = RecentEvents(maxlen=int(self.config.get("recent_events_limit", 100)))
        self._process_manager = process_manager
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def service_name(self) -> str:
        name = self.config.get("name")
        if name:
            return name
        return re.sub(r"service$", "", self.__class__.__name__.lower()) or "security"

    @property
    def event_type(self) -> EventType:
        for cls, event_type in EVENT_TYPE_BY_CAPABILITY:
            if isinstance(self, cls):
                return event_type
        return EventType.SECURITY

    @property
    def capabilities(self):
        return capabilities_of(self)

    @property
    def processes(self) -> BackgroundProcessManager:
        if self._process_manager is None:
            self._process_manager = BackgroundProcessManager(state_dir=self.config.get("state_dir"))
        return self._process_manager

    # ------------------------------------------------------------------
    # Lifecycle probes
    # ------------------------------------------------------------------

    def is_enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    @abstractmethod
    def is_installed(self) -> bool:
        """Whether the tool's binaries are present."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the tool's config files, sockets or paths are present."""

    @abstractmethod
    def is_running(self) -> bool:
        """Whether the tool's daemon is currently running."""

    def _probe(self, check: Callable[[], bool]) -> bool:
        try:
            return bool(check())
        except Exception as e:
            self.logger.warning(f"{self.service_name} probe {check.__name__} failed: {e}")
            return False

    def is_functional(self, status: ServiceStatus) -> Optional[bool]:
        """Override when the capability works without the daemon running."""
        return None

    def status_details(self, status: ServiceStatus) -> Dict[str, Any]:
        return {}

    def status_message(self, status: ServiceStatus) -> str:
        if not status.enabled:
            return f"{self.display_name} is disabled in configuration."
        if not status.installed:
            return f"{self.display_name} is not installed."
        if not status.configured:
            return f"{self.display_name} is installed but not properly configured."
        if not status.running:
            return f"{self.display_name} is installed and configured but not running."
        return f"{self.display_name} is active."

    def get_status(self) -> ServiceStatus:
        status = ServiceStatus(
            name=self.service_name,
            enabled=self.is_enabled(),
            installed=self._probe(self.is_installed),
        )
        if status.installed:
            status.configured = self._probe(self.is_configured)
            status.running = self._probe(self.is_running)
        status.functional = self.is_functional(status)
        try:
            status.details = self.status_details(status)
        except Exception as e:
            self.logger.warning(f"Collecting {self.service_name} status details failed: {e}")
            status.details = {"error": str(e)}
        status.message = self.status_message(status)
        return status

    def is_healthy(self) -> bool:
        return self.get_status().is_healthy

    # ------------------------------------------------------------------
    # Audit template
    # ------------------------------------------------------------------

    @abstractmethod
    def audit_tasks(self, scan_id: Optional[str], metadata: Dict[str, Any]) -> List[SecurityEvent]:
        """Run the service-specific checks and return the issues found.

        ``metadata`` may be filled in with anything worth reporting.
        """

    def run_audit(self, scan_id: Optional[str] = None) -> AuditResult:
        """Evaluate disabled, not_installed, not_configured, then the audit tasks.

        Never raises: a failing task is reported as an issue.
        """
        result = AuditResult(
            service=self.service_name,
            display_name=self.display_name,
            status=AuditStatus.DISABLED,
        )

        if not self.is_enabled():
            result.metadata["message"] = f"{self.display_name} is disabled"
            return result

        if not self._probe(self.is_installed):
            result.status = AuditStatus.NOT_INSTALLED
            result.metadata["message"] = f"{self.display_name} is not installed"
            return result

        if not self._probe(self.is_configured):
            result.status = AuditStatus.NOT_CONFIGURED
            result.metadata["message"] = f"{self.display_name} is installed but not configured"
            return result

        self._log_progress(f"Audit started (scan_id={scan_id})")
        try:
            issues = list(self.audit_tasks(scan_id, result.metadata))
        except Exception as e:
            self.logger.error(f"{self.service_name} audit failed: {e}", exc_info=True)
            issues = [self.make_event(
                severity=Severity.HIGH,
                description=f"{self.display_name} audit failed: {e}",
                event_type=EventType.SYSTEM,
                scan_id=scan_id,
                details={"error": str(e)},
            )]

        result.issues = issues
        result.status = AuditStatus.ISSUES_FOUND if issues else AuditStatus.SECURE
        self._log_progress(f"Audit finished: {result.status.value}, {len(issues)} issue(s)")
        return result

    def _log_progress(self, message: str) -> None:
        log_path = self.service_log_path()
        if log_path is None:
            return
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(f"{datetime.now().isoformat()} {message}\n")
        except OSError as e:
            self.logger.debug(f"Cannot write audit progress to {log_path}: {e}")

    def service_log_path(self) -> Optional[Path]:
        state_dir = self.config.get("state_dir")
        if not state_dir:
            return None
        return Path(state_dir) / "logs" / self.service_name / "audit.log"

    # ------------------------------------------------------------------
    # Event conversion
    # ------------------------------------------------------------------

    def map_severity(self, record: Dict[str, Any]) -> Severity:
        return normalize_severity(record.get("severity"), self.severity_table, self.default_severity)

    def describe(self, record: Dict[str, Any]) -> str:
        return record.get("description") or "Security event detected"

    def event_location(self, record: Dict[str, Any]) -> Optional[str]:
        return record.get("location")

    def to_security_event(self, record: Dict[str, Any], scan_id: Optional[str] = None) -> SecurityEvent:
        """Classify an intermediate parser record as a canonical event.

        Fields missing from the record are defaulted; everything that is not
        a top-level event field is kept under ``details``.
        """
        details = dict(record.get("details") or {})
        details.update({k: v for k, v in record.items() if k not in EVENT_FIELDS and k != "details"})
        return SecurityEvent(
            timestamp=record.get("timestamp"),
            type=self.event_type,
            severity=self.map_severity(record),
            description=self.describe(record),
            location=self.event_location(record),
            user=record.get("user"),
            service=self.service_name,
            scan_id=scan_id,
            details=details,
        )

    def make_event(
        self,
        severity: Union[Severity, str],
        description: str,
        event_type: Optional[EventType] = None,
        scan_id: Optional[str] = None,
        location: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        return SecurityEvent(
            type=event_type or self.event_type,
            severity=severity,
            description=description,
            location=location,
            service=self.service_name,
            scan_id=scan_id,
            details=details or {},
        )

    def record_event(self, event: SecurityEvent) -> None:
        self.recent_events.add(event)
        if self.event_bus is not None:
            self.event_bus.publish(event)

    # ------------------------------------------------------------------
    # Monitor processes
    # ------------------------------------------------------------------

    def launch_monitor(
        self,
        process_name: str,
        command: List[str],
        on_line: Callable[[str], None],
        duration: Optional[float] = None,
        detach: bool = False,
    ) -> bool:
        """Start ``command`` as the monitor process called ``process_name``.

        Attached monitors stream their output into ``on_line`` and live as
        long as this process. Detached monitors survive it and append their
        output to ``processes.log_file(process_name)``.
        """
        pm = self.processes
        if pm.get_pid(process_name):
            self.logger.info(f"{process_name} is already running")
            return True

        if detach:
            pid = pm.start(shlex.join(command), name=process_name, log_output=True)
        else:
            # A previous run may still be relaying its last lines
            pm.wait(process_name, timeout=pm.stop_grace_period)
            pm.off(process_name)
            pm.on(process_name, "output", on_line)
            pm.on(process_name, "error", lambda line: self.logger.debug(f"{process_name}: {line}"))
            pid = pm.start(command, name=process_name, stream_output=True)

        if pid is None:
            self.logger.error(f"Failed to start {process_name}")
            return False

        if duration:
            pm.schedule_termination(process_name, duration)
        return True

    def monitor_details(self, process_name: str) -> Dict[str, Any]:
        process = self.processes.get_process(process_name)
        if process is None:
            return {"monitoring": False}
        return {
            "monitoring": True,
            "monitor_pid": process.pid,
            "monitor_started_at": process.started_at.isoformat(),
            "monitor_detached": not process.streaming,
        }

    def monitor_log_candidates(self, process_name: str, default_paths: Sequence[str] = ()) -> List[str]:
        """Log files to read events back from, the detached monitor's own log first."""
        return [str(self.processes.log_file(process_name)), *self.log_candidates(default_paths)]

    # ------------------------------------------------------------------
    # Filesystem helpers
    # ------------------------------------------------------------------

    @staticmethod
    def find_readable_file(paths: Iterable[Union[str, Path]]) -> Optional[Path]:
        for candidate in paths:
            if not candidate:
                continue
            path = Path(candidate)
            try:
                if path.is_file():
                    with open(path, "rb"):
                        return path
            except OSError:
                continue
        return None

    @staticmethod
    def tail_file(path: Union[str, Path], lines: int = 100) -> str:
        """Return the last ``lines`` lines of a text file, or '' if unreadable."""
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return "".join(deque(f, maxlen=lines))
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return ""

    def log_candidates(self, default_paths: Sequence[str] = ()) -> List[str]:
        return [p for p in [self.config.get("log_path"), *default_paths] if p]
