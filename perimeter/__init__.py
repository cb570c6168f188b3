from .config import ConfigManager, PerimeterConfig
from .models import (
    AuditResult, AuditStatus, EventType, ManagedProcess,
    SecurityEvent, ServiceStatus, Severity
)
from .pipeline import AuditPipeline
from .process_manager import BackgroundProcessManager
from .registry import ServiceNotFoundError, ServiceRegistry, create_default_registry

__version__ = "1.0.0"
__all__ = [
    "ConfigManager",
    "PerimeterConfig",
    "AuditPipeline",
    "BackgroundProcessManager",
    "ServiceRegistry",
    "ServiceNotFoundError",
    "create_default_registry",
    "AuditResult",
    "AuditStatus",
    "EventType",
    "ManagedProcess",
    "SecurityEvent",
    "ServiceStatus",
    "Severity"
]
