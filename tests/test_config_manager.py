"""Tests for ConfigManager and CLI config management in aquafeed_bridge.config.config_manager."""

import json
import os

import pytest

from aquafeed_bridge.cli import main
from aquafeed_bridge.config.config_manager import (
    DEFAULTS,
    ConfigError,
    ConfigManager,
    resolve_key_path,
)


@pytest.fixture
def temp_config_dir(tmp_path: pytest.TempPathFactory) -> str:
    """Fixture for temporary config directory."""
    return str(tmp_path)


@pytest.fixture(autouse=True)
def quiet_cli_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the CLI from reconfiguring the root logger during tests."""
    monkeypatch.setattr("aquafeed_bridge.cli.setup_logging", lambda config_manager: None)


def run_cli(args: list[str], config_dir: str, capsys: pytest.CaptureFixture) -> tuple[int, str, str]:
    """Run the CLI in-process and return (exit_code, stdout, stderr)."""
    code = main(["--config-dir", config_dir, *args])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_load_defaults_when_missing(self, temp_config_dir: str) -> None:
        """Test loading defaults when config is missing."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        for key in DEFAULTS:
            assert cm.get_config(key) == DEFAULTS[key]
        assert os.path.exists(os.path.join(temp_config_dir, "system.json"))

    def test_save_and_reload(self, temp_config_dir: str) -> None:
        """Test saving and reloading config section."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        sys_cfg = cm.get_config("system")
        sys_cfg["mqtt"]["url"] = "mqtt://broker.local"
        cm.save_config("system")
        cm2 = ConfigManager(str(temp_config_dir), enable_watchers=False)
        assert cm2.get_config("system")["mqtt"]["url"] == "mqtt://broker.local"

    def test_partial_file_merged_with_defaults(self, temp_config_dir: str) -> None:
        """Keys missing from the file are filled from the defaults."""
        path = os.path.join(temp_config_dir, "system.json")
        with open(path, "w") as f:
            json.dump({"version": "1.0", "mqtt": {"url": "mqtt://x"}}, f)

        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        mqtt = cm.get_config("system")["mqtt"]
        assert mqtt["url"] == "mqtt://x"
        assert mqtt["reconnect_period"] == DEFAULTS["system"]["mqtt"]["reconnect_period"]

    def test_schema_validation_invalid(self, temp_config_dir: str) -> None:
        """Test schema validation for invalid config."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        cm.configs["system"]["mqtt"]["keepalive"] = -5
        with pytest.raises(ConfigError):
            cm._validate_config("system")

    def test_env_override_applied(
        self,
        temp_config_dir: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test environment variable override is applied."""
        monkeypatch.setenv("AQUAFEED_SYSTEM_LOGGING_LEVEL", '"WARNING"')
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        assert cm.get_config("system")["logging"]["level"] == "WARNING"

    def test_env_override_underscore_keys(
        self,
        temp_config_dir: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Underscored keys such as client_id are matched whole."""
        monkeypatch.setenv("AQUAFEED_SYSTEM_MQTT_CLIENT_ID", "aquafeed-bridge")
        monkeypatch.setenv("AQUAFEED_SYSTEM_MQTT_RECONNECT_PERIOD", "2.5")
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        mqtt = cm.get_config("system")["mqtt"]
        assert mqtt["client_id"] == "aquafeed-bridge"
        assert mqtt["reconnect_period"] == 2.5

    def test_invalid_json_falls_back_to_default(self, temp_config_dir: str) -> None:
        """Test fallback to default config on invalid JSON."""
        path = os.path.join(temp_config_dir, "system.json")
        with open(path, "w") as f:
            f.write("{ invalid json }")
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        assert cm.get_config("system") == DEFAULTS["system"]

    def test_unknown_section(self, temp_config_dir: str) -> None:
        """Unknown sections raise KeyError."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        with pytest.raises(KeyError):
            cm.get_config("devices")

    def test_register_and_notify_listener(self, temp_config_dir: str) -> None:
        """Test registering and notifying config listeners."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        called = {}

        def listener(key: str, config: dict) -> None:
            """Handle config changes as a listener callback."""
            called["key"] = key
            called["config"] = config

        cm.register_listener(listener)
        cm._notify_listeners("system", {"foo": "bar"})
        assert called["key"] == "system"
        assert called["config"] == {"foo": "bar"}

    def test_file_change_reloads_and_notifies(self, temp_config_dir: str) -> None:
        """A modified system.json is reloaded and listeners see the new values."""
        cm = ConfigManager(str(temp_config_dir), enable_watchers=False)
        seen = []
        cm.register_listener(lambda key, config: seen.append(config["mqtt"]["url"]))
        path = os.path.join(temp_config_dir, "system.json")
        data = json.loads(open(path).read())
        data["mqtt"]["url"] = "mqtt://reloaded"
        with open(path, "w") as f:
            json.dump(data, f)

        cm._on_config_change(path)

        assert seen == ["mqtt://reloaded"]


@pytest.mark.parametrize(
    ("parts", "expected"),
    [
        (["mqtt", "client", "id"], ["mqtt", "client_id"]),
        (["mqtt", "default", "publish", "topic"], ["mqtt", "default_publish_topic"]),
        (["api", "port"], ["api", "port"]),
        (["new", "thing"], ["new", "thing"]),
    ],
)
def test_resolve_key_path(parts: list[str], expected: list[str]) -> None:
    """Env var parts are grouped into existing keys."""
    assert resolve_key_path(DEFAULTS["system"], parts) == expected


def test_cli_list_sections(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Test CLI list command for config sections."""
    code, out, _err = run_cli(["list"], temp_config_dir, capsys)
    assert code == 0
    assert "system" in out


def test_cli_show_section(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Test CLI show command for config section."""
    code, out, _err = run_cli(["show", "system"], temp_config_dir, capsys)
    assert code == 0
    assert "version" in out
    assert "mqtt" in out


def test_cli_set_and_show_value(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Test CLI set and show value commands."""
    code, _out, _err = run_cli(
        ["set", "system", "mqtt", "url", "mqtt://broker.local"],
        temp_config_dir,
        capsys,
    )
    assert code == 0
    code, out, _err = run_cli(["show", "system", "mqtt", "url"], temp_config_dir, capsys)
    assert code == 0
    assert "mqtt://broker.local" in out


def test_cli_show_invalid_section(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Test CLI show command for invalid section."""
    code, _out, err = run_cli(["show", "notasection"], temp_config_dir, capsys)
    assert code == 1
    assert "Error" in err


def test_cli_show_missing_key(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Test CLI show command for a key that does not exist."""
    code, _out, err = run_cli(["show", "system", "notakey"], temp_config_dir, capsys)
    assert code == 1
    assert "notakey" in err


def test_cli_status_without_broker(temp_config_dir: str, capsys: pytest.CaptureFixture) -> None:
    """Bridge commands exit 1 when broker settings are missing."""
    code, _out, err = run_cli(["status"], temp_config_dir, capsys)
    assert code == 1
    assert "Missing required MQTT configuration" in err
