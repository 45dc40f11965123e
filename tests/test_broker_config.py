"""Tests for broker settings resolution and topic helpers."""

import pytest

from aquafeed_bridge.config.broker import (
    DEFAULT_RECONNECT_PERIOD,
    build_broker_config,
    parse_topic_list,
    resolve_broker_config,
)
from aquafeed_bridge.exceptions import ConfigurationError
from aquafeed_bridge.mqtt.topics import (
    AquaFeedTopics,
    validate_publish_topic,
    validate_topic_filter,
)
from tests.support.mocks.mock_mqtt import MockConfigManager

BASE = {"url": "mqtt://broker.test", "client_id": "bridge"}


class TestBuildBrokerConfig:
    """URL parsing, defaults and validation."""

    def test_defaults(self) -> None:
        """Unspecified settings take documented defaults."""
        config = build_broker_config(BASE)

        assert config.hostname == "broker.test"
        assert config.port == 1883
        assert config.transport == "tcp"
        assert config.tls is False
        assert config.subscribe_topics == ("iot/default_topic",)
        assert config.default_publish_topic == "iot/commands/default"
        assert config.reconnect_period == DEFAULT_RECONNECT_PERIOD
        assert config.plain_text_prefixes == ("iot/schedule/",)

    def test_client_id_gets_random_suffix(self) -> None:
        """Each build appends a fresh suffix to the configured seed."""
        first = build_broker_config(BASE)
        second = build_broker_config(BASE)

        assert first.client_id.startswith("bridge-")
        assert first.client_id != second.client_id
        assert first.client_id_seed == "bridge"

    def test_client_id_reused_when_given(self) -> None:
        """An existing id is kept."""
        assert build_broker_config(BASE, client_id="bridge-abc").client_id == "bridge-abc"

    @pytest.mark.parametrize(
        ("url", "port", "transport", "tls"),
        [
            ("mqtts://b.test", 8883, "tcp", True),
            ("ws://b.test/mqtt", 80, "websockets", False),
            ("wss://b.test:9001/mqtt", 9001, "websockets", True),
            ("tcp://b.test:1999", 1999, "tcp", False),
        ],
    )
    def test_url_schemes(self, url: str, port: int, transport: str, tls: bool) -> None:
        """Scheme selects port, transport and TLS."""
        config = build_broker_config({**BASE, "url": url})

        assert config.port == port
        assert config.transport == transport
        assert config.tls is tls

    def test_websocket_path(self) -> None:
        """The URL path is the websocket path."""
        assert build_broker_config({**BASE, "url": "ws://b.test/mqtt"}).websocket_path == "/mqtt"

    def test_credentials_from_url(self) -> None:
        """Userinfo in the URL is used when no explicit credentials are set."""
        config = build_broker_config({**BASE, "url": "mqtt://user:pw@b.test"})

        assert config.username == "user"
        assert config.password == "pw"

    def test_comma_separated_topics(self) -> None:
        """A topic string is split on commas."""
        config = build_broker_config({**BASE, "subscribe_topics": "a/b, c/#,"})
        assert config.subscribe_topics == ("a/b", "c/#")

    @pytest.mark.parametrize("field", ["url", "client_id"])
    def test_missing_required_field(self, field: str) -> None:
        """url and client_id are required."""
        with pytest.raises(ConfigurationError) as exc_info:
            build_broker_config({**BASE, field: ""})
        assert exc_info.value.missing_fields == [field]

    @pytest.mark.parametrize("url", ["http://b.test", "broker.test", "mqtt://"])
    def test_unsupported_url(self, url: str) -> None:
        """Unknown schemes and missing hosts are rejected."""
        with pytest.raises(ConfigurationError):
            build_broker_config({**BASE, "url": url})

    @pytest.mark.parametrize("qos", [3, -1, "high"])
    def test_invalid_qos(self, qos) -> None:
        """QoS must be 0, 1 or 2."""
        with pytest.raises(ConfigurationError, match="QoS"):
            build_broker_config({**BASE, "default_qos": qos})

    def test_connection_fields_ignore_topics(self) -> None:
        """Topic changes do not require a new session."""
        a = build_broker_config(BASE, client_id="x")
        b = build_broker_config({**BASE, "subscribe_topics": ["other"]}, client_id="x")
        c = build_broker_config({**BASE, "url": "mqtt://other.test"}, client_id="x")

        assert a.connection_fields() == b.connection_fields()
        assert a.connection_fields() != c.connection_fields()


def test_parse_topic_list_default() -> None:
    """No topics configured means the default topic."""
    assert parse_topic_list(None) == ["iot/default_topic"]


def test_resolve_missing_mqtt_section(tmp_path) -> None:
    """A config without an mqtt section fails fast."""
    config = MockConfigManager(str(tmp_path))
    del config.configs["system"]["mqtt"]

    with pytest.raises(ConfigurationError) as exc_info:
        resolve_broker_config(config)
    assert exc_info.value.missing_fields == ["mqtt"]


class TestTopics:
    """Topic construction and validation."""

    def test_schedule_topics(self) -> None:
        """Schedule topics live under iot/schedule."""
        topics = AquaFeedTopics()
        assert topics.schedule_enabled() == "iot/schedule/enabled"
        assert topics.schedule_detailed_config() == "iot/schedule/detailed_config"

    def test_device_command_topic(self) -> None:
        """Device commands go under the default publish topic."""
        topics = AquaFeedTopics("iot/commands/default/")
        assert topics.device_command("f1") == "iot/commands/default/f1"

    def test_is_schedule_topic(self) -> None:
        """Only topics below the schedule prefix match."""
        topics = AquaFeedTopics()
        assert topics.is_schedule_topic("iot/schedule/enabled")
        assert not topics.is_schedule_topic("iot/schedules")

    def test_topic_info(self) -> None:
        """Schedule topics are retained at QoS 1."""
        info = AquaFeedTopics().get_topic_info("schedule_enabled")
        assert info.retain is True
        assert info.qos == 1
        assert set(AquaFeedTopics().list_all_patterns()) == {
            "schedule_enabled",
            "schedule_detailed_config",
            "device_command",
        }

    @pytest.mark.parametrize(
        ("topic", "valid"),
        [
            ("iot/#", True),
            ("#", True),
            ("iot/+/status", True),
            ("iot/#/x", False),
            ("iot/a+", False),
            ("", False),
        ],
    )
    def test_topic_filters(self, topic: str, valid: bool) -> None:
        """Wildcards must occupy whole levels; # only last."""
        assert validate_topic_filter(topic) is valid

    @pytest.mark.parametrize(
        ("topic", "valid"),
        [("iot/schedule/enabled", True), ("iot/+", False), ("a/#", False), ("", False)],
    )
    def test_publish_topics(self, topic: str, valid: bool) -> None:
        """Publish topics have no wildcards."""
        assert validate_publish_topic(topic) is valid
