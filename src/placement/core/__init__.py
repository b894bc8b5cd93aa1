"""Cross-cutting helpers: clock, settings and logging."""

from .clock import Clock, FrozenClock, SystemClock
from .logging_config import configure_logging
from .settings import EngineSettings, get_settings

__all__ = [
    "Clock",
    "FrozenClock",
    "SystemClock",
    "configure_logging",
    "EngineSettings",
    "get_settings",
]
