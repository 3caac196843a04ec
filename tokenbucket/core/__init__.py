"""Core utilities for tokenbucket."""

from tokenbucket.core.clock import Clock, ManualClock, MonotonicClock
from tokenbucket.core.config import BucketConfig, Settings, settings
from tokenbucket.core.logging import get_logger, setup_logging

__all__ = [
    "Clock",
    "ManualClock",
    "MonotonicClock",
    "BucketConfig",
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
]
