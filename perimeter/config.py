import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field

ENV_PREFIX = "PERIMETER_"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Per-tool defaults; values from the config file are merged over these
DEFAULT_SERVICES: Dict[str, Dict[str, Any]] = {
    "clamav": {
        "enabled": True,
        "socket": "/var/run/clamav/clamd.ctl",
        "realtime": True,
        "scan_paths": ["/"],
        "exclude_patterns": ["/vendor/", "/node_modules/", "/storage/logs/"],
        "scan_timeout": 1800,
        "health_check_timeout": 300,
        "watch_list": None,
        "log_path": "/var/log/clamav/clamonacc.log",
    },
    "falco": {
        "enabled": True,
        "binary_path": None,
        "config_file": "/etc/falco/falco.yaml",
        "rules_path": "/etc/falco/rules.d",
        "log_path": "/var/log/falco.log",
        "json_output": True,
        "severity_filter": "warning",
        "audit_log_lines": 500,
    },
    "trivy": {
        "enabled": True,
        "scan_paths": ["/"],
        "severity_threshold": "MEDIUM",
        "scan_timeout": 1800,
        "exclude_paths": ["/proc", "/sys", "/dev", "/run", "/tmp"],
    },
    "ufw": {
        "enabled": True,
        "log_path": "/var/log/ufw.log",
        "expected_ports": [],
        "public_ports": [],
        "restricted_ports": [],
    },
    "fail2ban": {
        "enabled": True,
        "log_path": "/var/log/fail2ban.log",
        "config_path": "/etc/fail2ban",
        "jail_config_path": "/etc/fail2ban/jail.local",
        "enabled_jails": ["sshd", "apache-auth", "php-fpm"],
        "ban_time": 3600,
        "max_retry": 5,
        "find_time": 600,
    },
    "system": {
        "enabled": True,
        "sshd_config": "/etc/ssh/sshd_config",
        "refresh_package_lists": False,
        "command_timeout": 120,
    },
}

LIST_KEYS = {
    "scan_paths",
    "exclude_patterns",
    "exclude_paths",
    "expected_ports",
    "public_ports",
    "restricted_ports",
    "enabled_jails",
    "config_paths",
}


class PerimeterConfig(BaseModel):
    """Top-level configuration."""

    enabled: bool = True
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    state_dir: Optional[str] = None
    recent_events_limit: int = 100
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    services: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: copy.deepcopy(DEFAULT_SERVICES)
    )

    def service_config(self, name: str) -> Dict[str, Any]:
        """Config for one service, with the shared settings it needs filled in."""
        config = dict(self.services.get(name, {}))
        config.setdefault("name", name)
        config.setdefault("recent_events_limit", self.recent_events_limit)
        if self.state_dir:
            config.setdefault("state_dir", self.state_dir)
        if not self.enabled:
            config["enabled"] = False
        return config


def coerce_value(key: str, value: str) -> Any:
    """Convert an environment string into the type the config key expects."""
    lowered = value.strip().lower()
    if key in LIST_KEYS:
        items = [item.strip() for item in value.split("|") if item.strip()]
        return [int(i) if i.isdigit() else i for i in items]
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none"):
        return None
    try:
        return int(value)
    except ValueError:
        return value


class ConfigManager:
    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.config: Optional[PerimeterConfig] = None
        self.load_config()

    def load_config(self) -> PerimeterConfig:
        """Load configuration from file, defaults and environment"""
        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
            with open(self.config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}

        # Section may be nested under a top-level 'perimeter' key
        if isinstance(config_data.get("perimeter"), dict):
            config_data = config_data["perimeter"]

        services = copy.deepcopy(DEFAULT_SERVICES)
        for name, overrides in (config_data.get("services") or {}).items():
            services.setdefault(name, {}).update(overrides or {})
        config_data["services"] = services

        config_data = self._merge_env_vars(config_data)
        self.config = PerimeterConfig(**config_data)
        return self.config

    def _merge_env_vars(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge PERIMETER_* environment variables into the configuration"""
        services = config_data["services"]

        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            config_key = key[len(ENV_PREFIX):].lower()

            # Service keys (e.g. PERIMETER_CLAMAV_SCAN_TIMEOUT)
            section, _, nested_key = config_key.partition('_')
            if section in services and nested_key:
                services[section][nested_key] = coerce_value(nested_key, value)
            elif config_key in PerimeterConfig.model_fields and config_key != "services":
                config_data[config_key] = coerce_value(config_key, value)

        return config_data

    def get_config(self) -> PerimeterConfig:
        """Get current configuration"""
        if self.config is None:
            self.load_config()
        return self.config

    def get_section(self, service: str) -> Dict[str, Any]:
        """Get the resolved configuration for one service"""
        return self.get_config().service_config(service)

    def save_config(self, path: Optional[Union[str, Path]] = None):
        """Save configuration to file"""
        target = Path(path) if path else self.config_path
        if self.config is None or target is None:
            return
        with open(target, 'w') as f:
            yaml.dump({"perimeter": self.config.model_dump()}, f, default_flow_style=False)


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None):
    """Configure root logging to stderr and, optionally, a log file"""
    handlers = [logging.StreamHandler()]
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_dir) / 'perimeter.log'))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
