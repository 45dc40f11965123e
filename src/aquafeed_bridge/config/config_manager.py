"""Configuration management for the AquaFeed bridge with hot-reload and validation."""

import copy
import json
import logging
import os
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent

from jsonschema import ValidationError, validate
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

ENV_PREFIX = "AQUAFEED_"

CONFIG_FILES: dict[str, str] = {
    "system": "system.json",
}

DEFAULTS: dict[str, dict] = {
    "system": {
        "version": "1.0",
        "logging": {"level": "INFO"},
        "mqtt": {
            "url": "",
            "username": "",
            "password": "",
            "client_id": "",
            "subscribe_topics": ["iot/default_topic"],
            "default_publish_topic": "iot/commands/default",
            "default_qos": 1,
            "keepalive": 60,
            "connect_timeout": 10.0,
            "acquire_timeout": 30.0,
            "reconnect_period": 5.0,
            "max_reconnect_attempts": 0,
            "plain_text_prefixes": ["iot/schedule/"],
            "ca_cert": "",
            "cert_file": "",
            "key_file": "",
        },
        "storage": {
            "backend": "json",
            "log_root": "user_mqtt_logs",
            "path": "/data/logs",
        },
        "influxdb": {
            "url": "http://localhost:8086",
            "token": "",
            "org": "",
            "bucket": "aquafeed",
            "measurement": "mqtt_log",
            "timeout": 10000,
        },
        "api": {
            "enabled": True,
            "host": "0.0.0.0",  # nosec B104 - Configurable bind address  # noqa: S104
            "port": 5000,
            "debug": False,
            "request_timeout": 45.0,
        },
    },
}

SCHEMAS: dict[str, dict] = {
    "system": {
        "type": "object",
        "properties": {
            "version": {"type": "string"},
            "logging": {"type": "object"},
            "mqtt": {
                "type": "object",
                "properties": {
                    "url": {"type": "string"},
                    "client_id": {"type": "string"},
                    "subscribe_topics": {
                        "anyOf": [
                            {"type": "string"},
                            {"type": "array", "items": {"type": "string"}},
                        ],
                    },
                    "default_qos": {"type": ["integer", "string"]},
                    "keepalive": {"type": "integer", "minimum": 0},
                    "connect_timeout": {"type": "number", "exclusiveMinimum": 0},
                    "acquire_timeout": {"type": "number", "exclusiveMinimum": 0},
                    "reconnect_period": {"type": "number", "exclusiveMinimum": 0},
                    "max_reconnect_attempts": {"type": "integer", "minimum": 0},
                },
            },
            "storage": {
                "type": "object",
                "properties": {
                    "backend": {"type": "string"},
                    "log_root": {"type": "string"},
                },
            },
            "influxdb": {"type": "object"},
            "api": {"type": "object"},
        },
        "required": ["version", "logging", "mqtt", "storage", "influxdb", "api"],
    },
}


def merge_defaults(config: dict, default: dict) -> dict:
    """Recursively merge default values into config, filling in missing keys."""
    for k, v in default.items():
        if k not in config:
            config[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(config[k], dict):
            merge_defaults(config[k], v)
    return config


def resolve_key_path(config: dict, parts: list[str]) -> list[str]:
    """
    Group underscore-split env var parts into existing config keys.

    ``["mqtt", "client", "id"]`` resolves to ``["mqtt", "client_id"]`` when
    ``mqtt.client_id`` exists. Parts that match nothing are kept one per level.
    """
    keys: list[str] = []
    node: object = config
    i = 0
    while i < len(parts):
        j = len(parts)
        if isinstance(node, dict):
            # Longest existing key wins
            while j > i + 1 and "_".join(parts[i:j]) not in node:
                j -= 1
        else:
            j = i + 1
        key = "_".join(parts[i:j])
        keys.append(key)
        node = node.get(key) if isinstance(node, dict) else None
        i = j
    return keys


class ConfigError(Exception):
    """Custom exception for configuration errors."""


class ConfigReloadHandler(FileSystemEventHandler):
    """Watches for file modifications and triggers a reload callback."""

    def __init__(self, reload_callback: Callable[[str], None]) -> None:
        """
        Initialize the handler.

        Args:
            reload_callback: Function to call with the path of the modified file.
        """
        self.reload_callback = reload_callback

    def on_modified(self, event: "FileSystemEvent") -> None:
        """
        Handle file modification events.

        Args:
            event: The file system event.
        """
        if event.is_directory:
            return
        self.reload_callback(str(event.src_path))


class ConfigManager:
    """Manages bridge configuration files with hot-reload, schema validation, and env var overrides."""

    def __init__(
        self,
        config_dir: str = "/data",
        *,
        enable_watchers: bool = True,
    ) -> None:
        """
        Initialize the ConfigManager.

        Args:
            config_dir: Directory where config files are stored.
            enable_watchers: Whether to enable file watchers (default: True).
        """
        self.config_dir: str = config_dir
        self.configs: dict[str, dict] = {}
        self._listeners: list[Callable[[str, dict], None]] = []
        self.logger = logging.getLogger("aquafeed_bridge.config")
        self._enable_watchers = enable_watchers
        self._load_all_configs()
        if self._enable_watchers:
            self._setup_watchers()

    def _load_all_configs(self) -> None:
        """
        Load all config files, create defaults if missing, and apply env overrides.
        Raises ConfigError if validation fails.
        """
        for key, filename in CONFIG_FILES.items():
            self.configs[key] = self._load_json(filename, DEFAULTS[key])
            self._validate_config(key)
        self._apply_env_overrides()

    def _load_json(self, filename: str, default: dict) -> dict:
        """
        Load a JSON config file, or create it with defaults if missing or invalid.

        Args:
            filename: The config file name.
            default: The default config dict.

        Returns:
            The loaded or default config dict.
        """
        path = os.path.join(self.config_dir, filename)
        if os.path.exists(path):
            try:
                with open(path) as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    msg = f"Config {filename} must be a dict"
                    raise TypeError(msg)
                return merge_defaults(data, default)
            except (json.JSONDecodeError, TypeError, OSError):
                self.logger.exception(
                    "Failed to load %s. Restoring default config.",
                    filename,
                )
        config = copy.deepcopy(default)
        self._save_json(filename, config)
        return config

    def _save_json(self, filename: str, data: dict) -> None:
        """
        Save a config dict to a JSON file.

        Raises:
            ConfigError: If saving fails.
        """
        path = os.path.join(self.config_dir, filename)
        try:
            os.makedirs(self.config_dir, exist_ok=True)
            with open(path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            self.logger.exception("Failed to save %s", filename)
            raise ConfigError(f"Failed to save {filename}: {e}") from e

    def _validate_config(self, key: str) -> None:
        """
        Validate a config dict against its schema.

        Raises:
            ConfigError: If validation fails.
        """
        schema = SCHEMAS.get(key, {})
        if not schema:
            return
        try:
            validate(instance=self.configs[key], schema=schema)
        except ValidationError as e:
            self.logger.exception("Validation error in %s config: %s", key, e.message)
            raise ConfigError(f"Validation error in {key} config: {e.message}") from e

    def _apply_env_overrides(self) -> None:
        """
        Apply AQUAFEED_ environment variable overrides to configs.

        Format: AQUAFEED_SECTION_KEY1_KEY2=VALUE (e.g. AQUAFEED_SYSTEM_MQTT_URL=mqtt://broker).
        """
        for env_key, value in os.environ.items():
            if not env_key.startswith(ENV_PREFIX):
                continue
            try:
                parts = env_key[len(ENV_PREFIX) :].lower().split("_")
                section = parts[0]
                if section not in self.configs or len(parts) < 2:  # noqa: PLR2004
                    continue
                keys = resolve_key_path(self.configs[section], parts[1:])
                d = self.configs[section]
                for k in keys[:-1]:
                    d = d.setdefault(k, {})
                try:
                    parsed_value = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    parsed_value = value
                d[keys[-1]] = parsed_value
                merge_defaults(self.configs[section], DEFAULTS[section])
                self.logger.info(
                    "Applied env override: %s -> %s %s",
                    env_key,
                    section,
                    ".".join(keys),
                )
            except (KeyError, IndexError, TypeError, AttributeError):
                self.logger.exception("Failed to apply env override %s", env_key)

    def _setup_watchers(self) -> None:
        """Set up file watchers for hot-reload capability using watchdog."""
        self._observer = Observer()
        handler = ConfigReloadHandler(self._on_config_change)
        self._observer.schedule(handler, self.config_dir, recursive=False)
        self._observer_thread = threading.Thread(
            target=self._observer.start,
            daemon=True,
        )
        self._observer_thread.start()

    def cleanup(self) -> None:
        """Clean up resources, including stopping file watchers."""
        if not self._enable_watchers:
            return
        if hasattr(self, "_observer") and self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=1.0)
        if hasattr(self, "_observer_thread") and self._observer_thread.is_alive():
            self._observer_thread.join(timeout=1.0)

    def _on_config_change(self, path: str) -> None:
        """
        Handle config file changes; reload, re-validate, and notify listeners.

        Args:
            path: The path of the changed config file.
        """
        for key, filename in CONFIG_FILES.items():
            if os.path.join(self.config_dir, filename) == path:
                self.logger.info("Detected change in %s, reloading...", filename)
                self.configs[key] = self._load_json(filename, DEFAULTS[key])
                try:
                    self._validate_config(key)
                except ConfigError:
                    self.logger.exception(
                        "Config %s failed validation after reload.",
                        key,
                    )
                self._apply_env_overrides()
                self._notify_listeners(key, self.configs[key])

    def get_config(self, key: str) -> dict:
        """
        Get a config by key.

        Raises:
            KeyError: If the config key is not found.
        """
        if key not in self.configs:
            raise KeyError(f"Config '{key}' not found.")
        return self.configs[key]

    def save_config(self, key: str) -> None:
        """
        Save a config by key back to its file.

        Raises:
            KeyError: If the config key is not recognized.
        """
        if key not in CONFIG_FILES:
            raise KeyError(f"Config '{key}' not recognized.")
        self._save_json(CONFIG_FILES[key], self.configs[key])

    def register_listener(self, callback: Callable[[str, dict], None]) -> None:
        """Register a callback to be notified with (key, config) when a config changes."""
        self._listeners.append(callback)

    def _notify_listeners(self, key: str, config: dict) -> None:
        """Notify all registered listeners of a config change."""
        for cb in self._listeners:
            try:
                cb(key, config)
            except Exception:  # noqa: PERF203
                self.logger.exception("Listener callback failed")
