"""Transactional outbox feeding the notification dispatcher."""

from .backoff import BackoffPolicy
from .idempotency import derive_event_id
from .models import OutboxEvent, OutboxMessage
from .relay import OutboxRelay
from .repository import OutboxRepository

__all__ = [
    "BackoffPolicy",
    "OutboxEvent",
    "OutboxMessage",
    "OutboxRelay",
    "OutboxRepository",
    "derive_event_id",
]
