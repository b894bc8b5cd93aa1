"""Relay that drains pending outbox rows into the notification dispatcher."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from placement.core.clock import Clock
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from ..providers import NotificationDispatcher
from ..uow import UnitOfWorkFactory
from .backoff import BackoffPolicy
from .models import OutboxMessage
from .repository import OutboxRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OutboxRelay:
    """Publishes due outbox events in order; failures are rescheduled, never raised."""

    uow_factory: UnitOfWorkFactory
    dispatcher: NotificationDispatcher
    clock: Clock
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    batch_size: int = 50
    metrics: PlacementMetrics | None = None

    def dispatch_once(self) -> int:
        sent = 0
        with self.uow_factory("outbox_relay") as uow:
            repo = OutboxRepository(uow.session)
            for message in repo.list_due(now=self.clock.now(), limit=self.batch_size):
                model = message.model
                headers = {
                    "x-event-id": model.event_id,
                    "x-aggregate-id": model.aggregate_id,
                    "x-aggregate-type": model.aggregate_type,
                }
                try:
                    self.dispatcher.dispatch(
                        event_type=model.event_type,
                        payload=message.payload(),
                        headers=headers,
                    )
                except Exception as exc:  # pylint: disable=broad-except
                    self.schedule_next(message=message, exc=exc)
                    continue

                message.status = "SENT"
                model.published_at = self.clock.now()
                model.last_error = None
                self._count("SENT")
                logger.info(
                    "notification event published",
                    extra={"event_id": model.event_id, "aggregate_id": model.aggregate_id, "code": "SENT"},
                )
                sent += 1
        return sent

    def schedule_next(self, *, message: OutboxMessage, exc: Exception) -> None:
        model = message.model
        model.retry_count += 1
        if model.retry_count > self.backoff.max_retries:
            message.status = "FAILED"
            model.last_error = f"MAX_RETRIES_REACHED:{exc}"[:256]
            self._count("FAILED")
            logger.error(
                "notification event abandoned after retry budget",
                extra={"event_id": model.event_id, "retry_count": model.retry_count, "code": "MAX_RETRIES_REACHED"},
            )
            return

        next_at, delay = message.next_available_at(clock=self.clock, backoff=self.backoff)
        model.available_at = next_at
        model.last_error = f"RETRYING:{exc}"[:256]
        code = "BACKOFF_CAPPED" if delay >= self.backoff.cap_seconds else "RETRYING"
        self._count("RETRY")
        logger.warning(
            "notification dispatch failed; retry scheduled",
            extra={"event_id": model.event_id, "retry_count": model.retry_count, "delay": delay, "code": code},
        )

    def run_loop(self, *, once: bool = False, sleep: float = 1.0) -> None:
        while True:
            sent = self.dispatch_once()
            if once:
                return
            if sent == 0:
                time.sleep(sleep)

    def _count(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.outbox_dispatch.labels(status=status).inc()


__all__ = ["OutboxRelay"]
