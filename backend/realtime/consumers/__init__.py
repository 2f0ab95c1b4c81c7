"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .driver_consumer import DriverConsumer
from .ride_consumer import RideConsumer

__all__ = [
    "BaseConsumer",
    "DriverConsumer",
    "RideConsumer",
]
