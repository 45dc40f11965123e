"""Flask REST API for the AquaFeed bridge."""

from .api import BridgeAPI
from .validation import APIError

__all__ = [
    "APIError",
    "BridgeAPI",
]
