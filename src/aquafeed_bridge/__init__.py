"""AquaFeed bridge: MQTT session, command publishing and inbound message logging."""

__version__ = "0.1.0"
