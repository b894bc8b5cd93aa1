"""Clock abstractions for the placement engine.

Runtime code depends on :class:`Clock` instead of calling ``datetime.now`` or
``time.monotonic`` directly, so scheduling-cycle dates and audit timestamps are
reproducible in tests through :class:`FrozenClock`.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "UTC"


def _system_now() -> datetime:
    return datetime.now(UTC)


def _coerce_aware(value: datetime, *, timezone: ZoneInfo) -> datetime:
    """Ensure *value* is timezone-aware and normalised to *timezone*."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(timezone)


def validate_timezone(tz_name: str) -> ZoneInfo:
    """Return a :class:`ZoneInfo` for *tz_name* or raise ``ValueError``."""

    candidate = (tz_name or "").strip()
    if not candidate:
        raise ValueError("CONFIG_TZ_INVALID: timezone name is empty")
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"CONFIG_TZ_INVALID: unknown timezone {candidate!r}") from exc


class Clock(ABC):
    """Abstract clock interface."""

    timezone: ZoneInfo

    @abstractmethod
    def now(self) -> datetime:
        """Return the current datetime in :attr:`timezone`."""

    @abstractmethod
    def monotonic(self) -> float:
        """Return a monotonic reading in seconds."""

    def today(self) -> date:
        """Return the current scheduling-cycle date."""

        return self.now().date()

    @classmethod
    def for_timezone(cls, tz_name: str = DEFAULT_TIMEZONE) -> "SystemClock":
        return SystemClock(timezone=validate_timezone(tz_name))


@dataclass(slots=True)
class SystemClock(Clock):
    """Clock backed by the process wall clock."""

    timezone: ZoneInfo
    now_factory: Callable[[], datetime] = field(default=_system_now, repr=False)

    def now(self) -> datetime:
        return _coerce_aware(self.now_factory(), timezone=self.timezone)

    def monotonic(self) -> float:
        return time.monotonic()


class FrozenClock(Clock):
    """Clock returning a controllable instant; wall and monotonic advance together."""

    def __init__(self, start: datetime, *, timezone: str = DEFAULT_TIMEZONE) -> None:
        if start.tzinfo is None:
            raise ValueError("CONFIG_CLOCK_FROZEN: start instant must be timezone-aware")
        self.timezone = validate_timezone(timezone)
        self._wall = start
        self._mono = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return _coerce_aware(self._wall, timezone=self.timezone)

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._wall += timedelta(seconds=seconds)
            self._mono += seconds


__all__ = ["Clock", "FrozenClock", "SystemClock", "validate_timezone", "DEFAULT_TIMEZONE"]
