"""Tests for ServiceRegistry."""

import pytest

from perimeter.capabilities import Capability, MonitorService
from perimeter.config import PerimeterConfig
from perimeter.registry import ServiceNotFoundError, ServiceRegistry, create_default_registry
from perimeter.services import ClamAVService, FalcoService, UfwService

from .fakes import FakeRunner


@pytest.fixture
def registry(state_dir):
    return create_default_registry(PerimeterConfig(state_dir=str(state_dir)), runner=FakeRunner())


class TestServiceRegistry:
    def test_default_names(self, registry):
        assert registry.names() == ["clamav", "falco", "trivy", "ufw", "fail2ban", "system"]

    def test_lazy_singleton(self, registry):
        first = registry.get("clamav")
        assert isinstance(first, ClamAVService)
        assert registry.get("clamav") is first

    def test_qualified_alias(self, registry):
        alias = f"{ClamAVService.__module__}.{ClamAVService.__qualname__}"
        assert registry.has(alias)
        assert registry.get(alias) is registry.get("clamav")

    def test_unknown_service(self, registry):
        with pytest.raises(ServiceNotFoundError) as exc_info:
            registry.get("snort")
        assert str(exc_info.value) == "Security service 'snort' is not registered"
        assert isinstance(exc_info.value, KeyError)
        assert not registry.has("snort")

    def test_shared_runner_and_config(self, registry, state_dir):
        service = registry.get("trivy")
        assert isinstance(service.runner, FakeRunner)
        assert service.config["name"] == "trivy"
        assert service.config["state_dir"] == str(state_dir)
        assert service.event_bus is registry.event_bus
        assert service.processes is registry.process_manager

    @pytest.mark.parametrize("capability,expected", [
        (Capability.SCANNER, ["clamav"]),
        ("monitor", ["clamav", "falco"]),
        (MonitorService, ["clamav", "falco"]),
        (Capability.FIREWALL, ["ufw"]),
        (Capability.INTRUSION_PREVENTION, ["fail2ban"]),
        (Capability.VULNERABILITY_SCANNER, ["trivy"]),
    ])
    def test_filter_by_capability(self, registry, capability, expected):
        assert [s.service_name for s in registry.filter_by_capability(capability)] == expected

    def test_convenience_getters(self, registry):
        assert [s.service_name for s in registry.monitors()] == ["clamav", "falco"]
        assert [s.service_name for s in registry.scanners()] == ["clamav"]
        assert [s.service_name for s in registry.firewalls()] == ["ufw"]
        assert [s.service_name for s in registry.intrusion_prevention()] == ["fail2ban"]
        assert [s.service_name for s in registry.vulnerability_scanners()] == ["trivy"]

    def test_shared_instance_not_duplicated(self):
        registry = ServiceRegistry(runner=FakeRunner())
        registry.register_class(FalcoService)
        assert registry.filter_by_capability(Capability.MONITOR) == [registry.get("falco")]

    def test_factory_driver(self):
        registry = ServiceRegistry(runner=FakeRunner())
        registry.register("edge-firewall", lambda **kwargs: UfwService(**kwargs), {"log_path": "/x"})

        service = registry.get("edge-firewall")
        assert service.service_name == "edge-firewall"
        assert registry.firewalls() == [service]

    def test_reregister_replaces_instance(self):
        registry = ServiceRegistry(runner=FakeRunner())
        registry.register("ufw", UfwService)
        first = registry.get("ufw")
        registry.register("ufw", UfwService, {"enabled": False})
        assert registry.get("ufw") is not first
        assert not registry.get("ufw").is_enabled()

    def test_global_disable(self, state_dir):
        config = PerimeterConfig(enabled=False, state_dir=str(state_dir))
        registry = create_default_registry(config, runner=FakeRunner())
        assert not any(s.is_enabled() for s in registry.all())
