"""Outbox records written in the same transaction as execution results."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from placement.core.clock import Clock
from placement.infrastructure.persistence.models import OutboxMessageModel

from .backoff import BackoffPolicy

OutboxStatus = Literal["PENDING", "SENT", "FAILED"]
OUTBOX_STATUSES = ("PENDING", "SENT", "FAILED")
_MAX_PAYLOAD_BYTES = 32768


@dataclass(slots=True)
class OutboxEvent:
    event_id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime
    available_at: datetime
    retry_count: int = 0
    status: OutboxStatus = "PENDING"

    def to_model(self) -> OutboxMessageModel:
        payload_json = json.dumps(self.payload, ensure_ascii=False, sort_keys=True, default=str)
        if len(payload_json.encode("utf-8")) > _MAX_PAYLOAD_BYTES:
            raise ValueError("PAYLOAD_TOO_LARGE: outbox payload exceeds 32 KiB")
        if self.status not in OUTBOX_STATUSES:
            raise ValueError(f"OUTBOX_STATUS_INVALID: {self.status}")
        if self.retry_count < 0:
            raise ValueError("NEGATIVE_RETRY_COUNT: retry_count must be >= 0")
        return OutboxMessageModel(
            event_id=self.event_id,
            aggregate_type=self.aggregate_type,
            aggregate_id=self.aggregate_id,
            event_type=self.event_type,
            payload_json=payload_json,
            occurred_at=self.occurred_at,
            available_at=self.available_at,
            retry_count=self.retry_count,
            status=self.status,
        )


@dataclass(slots=True)
class OutboxMessage:
    """Wrapper around a loaded ``OutboxMessageModel`` with scheduling helpers."""

    model: OutboxMessageModel

    @property
    def status(self) -> OutboxStatus:
        return self.model.status  # type: ignore[return-value]

    @status.setter
    def status(self, value: OutboxStatus) -> None:
        if value not in OUTBOX_STATUSES:
            raise ValueError(f"OUTBOX_STATUS_INVALID: {value}")
        self.model.status = value

    def payload(self) -> dict[str, Any]:
        return json.loads(self.model.payload_json)

    def next_available_at(self, *, clock: Clock, backoff: BackoffPolicy) -> tuple[datetime, float]:
        """Return the next attempt time and the delay it represents.

        The delay is measured against the monotonic clock so that wall-clock
        jumps between the two readings do not shorten it.
        """

        mono_before = clock.monotonic()
        delay = backoff.next_delay(self.model.retry_count)
        remaining = mono_before + delay - clock.monotonic()
        if remaining <= 0:
            remaining = backoff.base_seconds
        return clock.now() + timedelta(seconds=remaining), delay


__all__ = ["OutboxEvent", "OutboxMessage", "OutboxStatus", "OUTBOX_STATUSES"]
