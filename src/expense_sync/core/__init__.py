"""Core infrastructure shared by the sync engine and its adapters."""

from .async_utils import run_sync
from .client import RemoteStoreClient
from .clock import Clock, MonotonicClock, system_clock

__all__ = [
    "Clock",
    "MonotonicClock",
    "RemoteStoreClient",
    "run_sync",
    "system_clock",
]
