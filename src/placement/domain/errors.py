# -*- coding: utf-8 -*-
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, eq=False)
class PlacementError(Exception):
    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class ValidationError(PlacementError):
    def __init__(self, reason: str, message: str, **details: Any):
        super().__init__(reason, message, details)


class InvalidTransitionError(ValidationError):
    def __init__(self, batch_id: str, current: str, requested: str, reason: str = "INVALID_TRANSITION"):
        super().__init__(
            reason,
            f"Batch {batch_id} cannot move from {current} to {requested}",
            batch_id=batch_id,
            current=current,
            requested=requested,
        )


class EligibilityError(PlacementError):
    """Names the stale_eligibility outcome.

    The executor reports it per pair in ExecutionResult instead of raising it.
    """

    code = "STALE_ELIGIBILITY"

    def __init__(self, assignment_id: str, reasons: list[str]):
        super().__init__(
            self.code,
            f"Assignment {assignment_id} is no longer eligible",
            {"assignment_id": assignment_id, "reasons": list(reasons)},
        )


class InsufficientCapacityError(PlacementError):
    def __init__(self, window: str, available: int, requested: int):
        super().__init__(
            "INSUFFICIENT_CAPACITY",
            f"Window {window} has {available} spots, {requested} requested",
            {"window": window, "available": available, "requested": requested},
        )


class ConcurrencyConflictError(PlacementError):
    def __init__(self, resource: str, attempts: int):
        super().__init__(
            "CONCURRENCY_CONFLICT",
            f"Concurrency conflict on resource {resource} after {attempts} attempts",
            {"resource": resource, "attempts": attempts},
        )


class NotFoundError(PlacementError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(
            f"{kind.upper()}_NOT_FOUND",
            f"Unknown {kind} {identifier}",
            {"kind": kind, "id": identifier},
        )


class AlreadyAssignedError(PlacementError):
    """Names the already_assigned outcome, an idempotent no-op rather than a failure.

    Reported per pair by the executor, never raised by it.
    """

    code = "ALREADY_ASSIGNED"

    def __init__(self, assignment_id: str, site_id: str):
        super().__init__(
            self.code,
            f"Assignment {assignment_id} is already assigned to site {site_id}",
            {"assignment_id": assignment_id, "site_id": site_id},
        )


class LedgerHaltedError(PlacementError):
    def __init__(self, window: str, reason: str | None):
        super().__init__(
            "LEDGER_HALTED",
            f"Writes to window {window} are halted pending operator review",
            {"window": window, "reason": reason},
        )


class LedgerInvariantError(PlacementError):
    def __init__(self, window: str, available: int, max_capacity: int):
        super().__init__(
            "LEDGER_INVARIANT_VIOLATION",
            f"Window {window} would hold {available} of {max_capacity} spots",
            {"window": window, "available": available, "max_capacity": max_capacity},
        )


__all__ = [
    "PlacementError",
    "ValidationError",
    "InvalidTransitionError",
    "EligibilityError",
    "InsufficientCapacityError",
    "ConcurrencyConflictError",
    "NotFoundError",
    "AlreadyAssignedError",
    "LedgerHaltedError",
    "LedgerInvariantError",
]
