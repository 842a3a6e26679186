"""
Configuration management for camlink.
"""

import copy
import os
import yaml
from pathlib import Path
from typing import Any, List, Optional
import logging

from camlink.models.device import DeviceConfig

logger = logging.getLogger(__name__)


class Config:
    """Application configuration manager."""

    DEFAULT_CONFIG = {
        "connection": {
            "port": 80,
            "timeout": 3.0,          # seconds, watchdog probe
            "check_interval": 5.0,   # seconds, 0 disables the watchdog
            "connect_timeout": 15.0
        },
        "calls": {
            "timeout": 7.0,
            "retries": 1,
            "backoff": 0.3,
            "serialize": True
        },
        "events": {
            "poll_interval": 1.0,
            "message_limit": 10,
            "pull_timeout": "PT5S"
        },
        "snapshot": {
            "ttl": 60.0,
            "fetch_timeout": 5.0
        },
        "capabilities": {
            # Services callable without an advertised capability
            "ungated_services": ["events", "recording"]
        },
        "discovery": {
            "timeout": 5.0
        },
        "logging": {
            "level": "INFO"
        },
        # Format: [{"address": ..., "port": ..., "name": ..., "username": ..., "password": ...}]
        "devices": []
    }

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_dir: Configuration directory path. Defaults to user's config dir.
        """
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            # Use platform-appropriate config directory
            if os.name == "nt":  # Windows
                self.config_dir = Path(os.environ.get("APPDATA", "~")) / "camlink"
            else:  # Linux/macOS
                self.config_dir = Path.home() / ".config" / "camlink"

        self.config_dir = self.config_dir.expanduser()
        self.config_file = self.config_dir / "config.yaml"

        self.config_dir.mkdir(parents=True, exist_ok=True)

        # Load or create configuration
        self._config = self._load_config()

    def _load_config(self) -> dict:
        """Load configuration from file or create default."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r") as f:
                    config = yaml.safe_load(f) or {}

                # Merge with defaults for any missing keys
                return self._merge_config(self.DEFAULT_CONFIG, config)

            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading config {self.config_file}: {e}")
                return copy.deepcopy(self.DEFAULT_CONFIG)
        else:
            config = copy.deepcopy(self.DEFAULT_CONFIG)
            self._save_config(config)
            return config

    def _merge_config(self, default: dict, loaded: dict) -> dict:
        """Merge loaded config with defaults, keeping loaded values."""
        result = copy.deepcopy(default)

        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _save_config(self, config: dict = None):
        if config is None:
            config = self._config

        try:
            with open(self.config_file, "w") as f:
                yaml.safe_dump(config, f, default_flow_style=False)
        except OSError as e:
            logger.error(f"Error saving config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "calls.timeout")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """
        Set a configuration value and persist it.

        Args:
            key: Dot-notation key (e.g., "calls.timeout")
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        self._save_config()

    def device_configs(self) -> List[DeviceConfig]:
        """Build DeviceConfig objects from the devices list, filling connection defaults."""
        devices = []

        for entry in self.get("devices") or []:
            if not isinstance(entry, dict):
                logger.warning(f"Ignoring malformed device entry: {entry!r}")
                continue

            devices.append(DeviceConfig(
                address=str(entry.get("address") or ""),
                port=int(entry.get("port", self.get("connection.port", 80))),
                name=entry.get("name"),
                username=entry.get("username"),
                password=entry.get("password"),
                timeout=float(entry.get("timeout", self.get("connection.timeout", 3.0))),
                check_interval=float(entry.get("check_interval", self.get("connection.check_interval", 5.0))),
                connect_timeout=float(entry.get("connect_timeout", self.get("connection.connect_timeout", 15.0))),
            ))

        return devices
