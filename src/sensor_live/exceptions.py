"""Error taxonomy for the live telemetry client."""
from __future__ import annotations


class SensorLiveError(Exception):
    """Base error for the live telemetry client."""


class ChannelConnectionError(SensorLiveError, ConnectionError):
    """Raised when the push channel could not be opened or was forcibly closed."""


class BaselineFetchError(SensorLiveError):
    """Raised when the initial stats of one sensor instance could not be loaded."""

    def __init__(self, instance_id: str, message: str) -> None:
        super().__init__(f"{instance_id}: {message}")
        self.instance_id = instance_id


class AverageRefreshError(SensorLiveError):
    """Raised when the rolling average of one sensor instance could not be refreshed."""

    def __init__(self, instance_id: str, message: str) -> None:
        super().__init__(f"{instance_id}: {message}")
        self.instance_id = instance_id


class PayloadError(SensorLiveError, ValueError):
    """Raised when a pushed or fetched payload cannot be decoded into a reading."""
