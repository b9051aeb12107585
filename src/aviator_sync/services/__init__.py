"""
Services module - event bus and logging
"""

from .event_bus import EventBus, Events
from .logger import JsonFormatter, PerformanceLogger, cleanup_logging, setup_logging

__all__ = [
    "EventBus",
    "Events",
    "JsonFormatter",
    "PerformanceLogger",
    "cleanup_logging",
    "setup_logging",
]
