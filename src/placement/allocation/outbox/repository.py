"""Persistence helpers for outbox rows."""
from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from placement.infrastructure.persistence.models import OutboxMessageModel

from .models import OutboxEvent, OutboxMessage


class OutboxRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, event: OutboxEvent) -> None:
        self._session.add(event.to_model())

    def list_due(self, *, now: datetime, limit: int) -> Sequence[OutboxMessage]:
        stmt = (
            select(OutboxMessageModel)
            .where(
                OutboxMessageModel.status == "PENDING",
                OutboxMessageModel.available_at <= now,
            )
            .order_by(OutboxMessageModel.available_at, OutboxMessageModel.occurred_at, OutboxMessageModel.event_id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [OutboxMessage(model=row) for row in self._session.execute(stmt).scalars()]

    def count_by_status(self) -> dict[str, int]:
        stmt = select(OutboxMessageModel.status, func.count()).group_by(OutboxMessageModel.status)
        return {status: int(count) for status, count in self._session.execute(stmt)}


__all__ = ["OutboxRepository"]
