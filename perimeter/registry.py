"""Registry of service adapters, resolved lazily by name or capability."""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Type, Union

from .capabilities import (
    Capability,
    FirewallService,
    IntrusionPreventionService,
    MonitorService,
    ScannerService,
    VulnerabilityScannerService,
    resolve_capability,
)
from .command import CommandRunner
from .config import PerimeterConfig
from .events import EventBus
from .process_manager import BackgroundProcessManager
from .service_base import SecurityService
from .services import DEFAULT_SERVICE_CLASSES

logger = logging.getLogger(__name__)

Driver = Union[Type[SecurityService], Callable[..., SecurityService]]


class ServiceNotFoundError(KeyError):
    """Raised when a service name has not been registered."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Security service '{self.name}' is not registered"


def short_name(cls: type) -> str:
    """``ClamAVService`` -> ``clamav``."""
    return re.sub(r"service$", "", cls.__name__.lower())


class ServiceRegistry:
    """Write-once, read-many map from names to lazily built adapters.

    Adapters are instantiated on first lookup and cached per name. A class
    registered under several names resolves to one shared instance.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        process_manager: Optional[BackgroundProcessManager] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.runner = runner
        self.process_manager = process_manager
        self.event_bus = event_bus or EventBus()
        self._drivers: Dict[str, Driver] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._aliases: Dict[str, str] = {}
        self._instances: Dict[str, SecurityService] = {}

    def register(self, name: str, driver: Driver, config: Optional[Dict[str, Any]] = None) -> None:
        config = dict(config or {})
        config["name"] = name
        self._drivers[name] = driver
        self._configs[name] = config
        self._instances.pop(name, None)
        logger.debug(f"Registered service {name}")

    def register_class(self, cls: Type[SecurityService], config: Optional[Dict[str, Any]] = None) -> str:
        """Register under the short name and alias the qualified class name to it."""
        config = dict(config or {})
        name = config.get("name") or short_name(cls)
        self.register(name, cls, config)
        self._aliases[f"{cls.__module__}.{cls.__qualname__}"] = name
        return name

    def _canonical(self, name: str) -> str:
        return self._aliases.get(name, name)

    def has(self, name: str) -> bool:
        return self._canonical(name) in self._drivers

    def names(self) -> List[str]:
        return list(self._drivers)

    def get(self, name: str) -> SecurityService:
        key = self._canonical(name)
        if key not in self._drivers:
            raise ServiceNotFoundError(name)
        if key not in self._instances:
            self._instances[key] = self._build(key)
        return self._instances[key]

    def _build(self, name: str) -> SecurityService:
        driver = self._drivers[name]
        kwargs: Dict[str, Any] = {"config": self._configs[name], "event_bus": self.event_bus}
        if self.runner is not None:
            kwargs["runner"] = self.runner
        if self.process_manager is not None:
            kwargs["process_manager"] = self.process_manager
        return driver(**kwargs)

    def all(self) -> List[SecurityService]:
        return [self.get(name) for name in self._drivers]

    def filter_by_capability(self, capability: Union[Capability, str, type]) -> List[SecurityService]:
        """Adapters implementing ``capability``, in registration order."""
        interface = resolve_capability(capability)
        matches: List[SecurityService] = []
        for name, driver in self._drivers.items():
            if isinstance(driver, type) and not issubclass(driver, interface):
                continue
            service = self.get(name)
            if isinstance(service, interface) and service not in matches:
                matches.append(service)
        return matches

    def scanners(self) -> List[SecurityService]:
        return self.filter_by_capability(ScannerService)

    def monitors(self) -> List[SecurityService]:
        return self.filter_by_capability(MonitorService)

    def vulnerability_scanners(self) -> List[SecurityService]:
        return self.filter_by_capability(VulnerabilityScannerService)

    def firewalls(self) -> List[SecurityService]:
        return self.filter_by_capability(FirewallService)

    def intrusion_prevention(self) -> List[SecurityService]:
        return self.filter_by_capability(IntrusionPreventionService)


def create_default_registry(
    config: Optional[PerimeterConfig] = None,
    runner: Optional[CommandRunner] = None,
) -> ServiceRegistry:
    """Registry with the bundled adapters configured from ``config``."""
    config = config or PerimeterConfig()
    process_manager = BackgroundProcessManager(state_dir=config.state_dir)
    registry = ServiceRegistry(runner=runner, process_manager=process_manager)
    for name, cls in DEFAULT_SERVICE_CLASSES.items():
        registry.register_class(cls, config.service_config(name))
    return registry
