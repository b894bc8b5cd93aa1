"""Deterministic identifiers for execution events."""
from __future__ import annotations

from uuid import UUID, uuid5

EVENT_NAMESPACE = UUID("5f0c1c9e-8a53-4c1b-9d65-0f3b7e2a4c11")


def event_key(execution_id: str, assignment_id: str) -> str:
    return f"{execution_id.strip()}|{assignment_id.strip()}"


def derive_event_id(execution_id: str, assignment_id: str) -> UUID:
    """Same (execution, assignment) pair always yields the same event id."""

    return uuid5(EVENT_NAMESPACE, event_key(execution_id, assignment_id))


__all__ = ["EVENT_NAMESPACE", "derive_event_id", "event_key"]
