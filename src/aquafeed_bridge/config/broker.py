"""Broker settings resolved from the system configuration."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from aquafeed_bridge.exceptions import ConfigurationError

if TYPE_CHECKING:
    from .config_manager import ConfigManager

logger = logging.getLogger("aquafeed_bridge.config.broker")

# Fixed period between reconnect attempts once a session has been established.
DEFAULT_RECONNECT_PERIOD = 5.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_ACQUIRE_TIMEOUT = 30.0
DEFAULT_KEEPALIVE = 60
DEFAULT_SUBSCRIBE_TOPIC = "iot/default_topic"
DEFAULT_PUBLISH_TOPIC = "iot/commands/default"
DEFAULT_PLAIN_TEXT_PREFIXES = ("iot/schedule/",)

VALID_QOS = (0, 1, 2)

# scheme -> (default port, transport, tls)
URL_SCHEMES: dict[str, tuple[int, str, bool]] = {
    "mqtt": (1883, "tcp", False),
    "tcp": (1883, "tcp", False),
    "mqtts": (8883, "tcp", True),
    "ssl": (8883, "tcp", True),
    "tls": (8883, "tcp", True),
    "ws": (80, "websockets", False),
    "wss": (443, "websockets", True),
}


def generate_client_id(seed: str) -> str:
    """Append a random suffix so several bridge instances can share one seed."""
    return f"{seed}-{secrets.token_hex(4)}"


def parse_topic_list(value: Any) -> list[str]:
    """Accept a list or a comma separated string of topics."""
    if value is None:
        return [DEFAULT_SUBSCRIBE_TOPIC]
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [t.strip() for t in items if t.strip()]


@dataclass(frozen=True)
class BrokerConfig:
    """Connection and topic settings for the single broker session."""

    url: str
    hostname: str
    port: int
    transport: str
    tls: bool
    client_id_seed: str
    client_id: str
    username: str | None = None
    password: str | None = None
    websocket_path: str | None = None
    subscribe_topics: tuple[str, ...] = (DEFAULT_SUBSCRIBE_TOPIC,)
    default_publish_topic: str = DEFAULT_PUBLISH_TOPIC
    default_qos: int = 1
    keepalive: int = DEFAULT_KEEPALIVE
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT
    reconnect_period: float = DEFAULT_RECONNECT_PERIOD
    max_reconnect_attempts: int = 0
    plain_text_prefixes: tuple[str, ...] = DEFAULT_PLAIN_TEXT_PREFIXES
    ca_cert: str | None = None
    cert_file: str | None = None
    key_file: str | None = None

    def connection_fields(self) -> tuple[Any, ...]:
        """Fields whose change requires a fresh broker session."""
        return (
            self.hostname,
            self.port,
            self.transport,
            self.tls,
            self.username,
            self.password,
            self.client_id_seed,
            self.ca_cert,
            self.cert_file,
            self.key_file,
        )


def _parse_qos(value: Any) -> int:
    try:
        qos = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid MQTT QoS level: {value!r}") from e
    if qos not in VALID_QOS:
        raise ConfigurationError(f"Invalid MQTT QoS level: {qos}. Must be 0, 1, or 2")
    return qos


def build_broker_config(
    mqtt_config: dict[str, Any],
    *,
    client_id: str | None = None,
) -> BrokerConfig:
    """
    Build a BrokerConfig from the ``mqtt`` config section.

    Args:
        mqtt_config: The ``mqtt`` section of the system config.
        client_id: Reuse an already generated client id instead of a new one.

    Raises:
        ConfigurationError: If url or client_id is missing or a value is invalid.
    """
    missing = [name for name in ("url", "client_id") if not mqtt_config.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required MQTT configuration fields: {missing}",
            missing_fields=missing,
        )

    url = str(mqtt_config["url"])
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme not in URL_SCHEMES or not parsed.hostname:
        raise ConfigurationError(f"Unsupported MQTT broker URL: {url}")
    default_port, transport, tls = URL_SCHEMES[scheme]
    try:
        port = parsed.port or default_port
    except ValueError as e:
        raise ConfigurationError(f"Invalid MQTT port in URL: {url}") from e

    seed = str(mqtt_config["client_id"])
    username = mqtt_config.get("username") or parsed.username or None
    password = mqtt_config.get("password") or parsed.password or None

    prefixes = mqtt_config.get("plain_text_prefixes", DEFAULT_PLAIN_TEXT_PREFIXES)
    if isinstance(prefixes, str):
        prefixes = [prefixes]

    return BrokerConfig(
        url=url,
        hostname=parsed.hostname,
        port=port,
        transport=transport,
        tls=tls,
        websocket_path=(parsed.path or None) if transport == "websockets" else None,
        client_id_seed=seed,
        client_id=client_id or generate_client_id(seed),
        username=username,
        password=password,
        subscribe_topics=tuple(parse_topic_list(mqtt_config.get("subscribe_topics"))),
        default_publish_topic=mqtt_config.get("default_publish_topic")
        or DEFAULT_PUBLISH_TOPIC,
        default_qos=_parse_qos(mqtt_config.get("default_qos", 1)),
        keepalive=int(mqtt_config.get("keepalive", DEFAULT_KEEPALIVE)),
        connect_timeout=float(
            mqtt_config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT),
        ),
        acquire_timeout=float(
            mqtt_config.get("acquire_timeout", DEFAULT_ACQUIRE_TIMEOUT),
        ),
        reconnect_period=float(
            mqtt_config.get("reconnect_period", DEFAULT_RECONNECT_PERIOD),
        ),
        max_reconnect_attempts=int(mqtt_config.get("max_reconnect_attempts", 0)),
        plain_text_prefixes=tuple(prefixes),
        ca_cert=mqtt_config.get("ca_cert") or None,
        cert_file=mqtt_config.get("cert_file") or None,
        key_file=mqtt_config.get("key_file") or None,
    )


def resolve_broker_config(config_manager: ConfigManager) -> BrokerConfig:
    """
    Resolve broker settings from the ``system`` config, failing fast.

    Raises:
        ConfigurationError: If required broker settings are absent.
    """
    try:
        mqtt_config = config_manager.get_config("system").get("mqtt")
    except KeyError as e:
        raise ConfigurationError("System configuration is not loaded") from e
    if not mqtt_config:
        raise ConfigurationError(
            "MQTT configuration is missing",
            missing_fields=["mqtt"],
        )

    broker = build_broker_config(mqtt_config)
    logger.info(
        "MQTT configuration validated: broker=%s:%d, client_id=%s, topics=%s",
        broker.hostname,
        broker.port,
        broker.client_id,
        ",".join(broker.subscribe_topics),
    )
    return broker
