"""Optimistic-concurrency capacity ledger.

Every mutation of ``available_spots`` goes through :class:`CapacityLedger`. A
write reads the row, computes the new counters and issues a single ``UPDATE``
guarded by the version it read. Losing writers re-read and try again under a
bounded :mod:`tenacity` policy; once the budget is spent the caller receives
:class:`ConcurrencyConflictError`.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from placement.core.clock import Clock
from placement.core.settings import LedgerRetryConfig
from placement.domain.errors import (
    ConcurrencyConflictError,
    InsufficientCapacityError,
    LedgerHaltedError,
    LedgerInvariantError,
    NotFoundError,
    PlacementError,
    ValidationError,
)
from placement.infrastructure.monitoring.metrics import PlacementMetrics
from placement.infrastructure.persistence.models import CapacityWindowModel

from .contracts import AuditRecord, CapacityWindow, LedgerOperation, WindowKey
from .repositories import AuditRepository, WindowRepository, window_snapshot
from .uow import UnitOfWorkError, UnitOfWorkFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StaleWriteError(Exception):
    """The row changed between read and conditional write; the attempt is retried."""


class _InvariantBreach(Exception):
    def __init__(self, window_id: int, key: WindowKey, available: int, max_capacity: int) -> None:
        super().__init__(f"{key}: {available}/{max_capacity}")
        self.window_id = window_id
        self.key = key
        self.available = available
        self.max_capacity = max_capacity


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (StaleWriteError, OperationalError)):
        return True
    return isinstance(exc, UnitOfWorkError) and isinstance(exc.__cause__, OperationalError)


class CapacityLedger:
    """Authoritative counters of remaining capacity per window."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        clock: Clock,
        retry: LedgerRetryConfig | None = None,
        metrics: PlacementMetrics | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._clock = clock
        self._retry = retry or LedgerRetryConfig()
        self._metrics = metrics or PlacementMetrics()

    # -- reads -----------------------------------------------------------

    def get(self, key: WindowKey) -> CapacityWindow:
        with self._uow_factory() as uow:
            model = WindowRepository(uow.session).get(key)
            if model is None:
                raise NotFoundError("window", str(key))
            return window_snapshot(model)

    def list_windows(self, *, program_id: str | None = None, site_id: str | None = None) -> list[CapacityWindow]:
        with self._uow_factory() as uow:
            rows = WindowRepository(uow.session).list_all(program_id=program_id, site_id=site_id)
            return [window_snapshot(row) for row in rows]

    def audit_trail(self, key: WindowKey) -> list[AuditRecord]:
        with self._uow_factory() as uow:
            model = WindowRepository(uow.session).get(key)
            if model is None:
                raise NotFoundError("window", str(key))
            return AuditRepository(uow.session).for_window(model.id)

    # -- writes ----------------------------------------------------------

    def reserve(self, key: WindowKey, n: int = 1, *, actor: str) -> CapacityWindow:
        """Consume ``n`` spots or raise :class:`InsufficientCapacityError`."""

        return self._write("reserve", key, n, actor)

    def release(self, key: WindowKey, n: int = 1, *, actor: str) -> CapacityWindow:
        """Return ``n`` spots, capped at ``max_capacity``."""

        return self._write("release", key, n, actor)

    def apply_reserve(self, session: Session, key: WindowKey, n: int = 1, *, actor: str) -> CapacityWindow:
        """Single reserve attempt inside a caller-owned transaction."""

        return self._apply(session, key, "reserve", n, actor)

    def apply_release(self, session: Session, key: WindowKey, n: int = 1, *, actor: str) -> CapacityWindow:
        """Single release attempt inside a caller-owned transaction."""

        return self._apply(session, key, "release", n, actor)

    def configure_window(self, key: WindowKey, max_capacity: int, *, actor: str) -> CapacityWindow:
        """Create a window or change its maximum, shifting available spots by the same delta."""

        if max_capacity < 0:
            raise ValidationError("MAX_CAPACITY_NEGATIVE", "max_capacity must be >= 0", window=str(key))
        if key.period_end < key.period_start:
            raise ValidationError("PERIOD_INVALID", "period_end precedes period_start", window=str(key))

        def attempt() -> CapacityWindow:
            with self._uow_factory("configure") as uow:
                return self._configure_once(uow.session, key, max_capacity, actor)

        window = self.run_with_retry("configure", str(key), attempt)
        self._metrics.ledger_operations.labels(operation="configure", outcome="ok").inc()
        logger.info(
            "capacity window configured",
            extra={"code": "WINDOW_CONFIGURED", "window": str(key), "max_capacity": max_capacity, "actor": actor},
        )
        return window

    def run_with_retry(self, operation: str, resource: str, fn: Callable[[], T]) -> T:
        """Run *fn* under the ledger's optimistic-concurrency retry policy.

        *fn* must open its own transaction so that each attempt re-reads state.
        """

        retrying = Retrying(
            stop=stop_after_attempt(self._retry.attempts),
            wait=wait_exponential(
                multiplier=self._retry.backoff_base_seconds,
                max=self._retry.backoff_cap_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: self._on_retry(operation, resource, state),
            reraise=False,
        )
        try:
            return retrying(fn)
        except RetryError as exc:
            self._metrics.ledger_exhaustions.labels(operation=operation).inc()
            self._metrics.ledger_operations.labels(operation=operation, outcome="conflict").inc()
            logger.warning(
                "ledger retry budget exhausted",
                extra={"code": "LEDGER_CONFLICT", "window": resource, "attempts": self._retry.attempts},
            )
            raise ConcurrencyConflictError(resource, self._retry.attempts) from exc
        except _InvariantBreach as breach:
            self._halt(breach)
            raise LedgerInvariantError(str(breach.key), breach.available, breach.max_capacity) from breach

    # -- internals -------------------------------------------------------

    def _write(self, operation: LedgerOperation, key: WindowKey, n: int, actor: str) -> CapacityWindow:
        def attempt() -> CapacityWindow:
            with self._uow_factory(operation) as uow:
                return self._apply(uow.session, key, operation, n, actor)

        try:
            window = self.run_with_retry(operation, str(key), attempt)
        except PlacementError as error:
            if not isinstance(error, ConcurrencyConflictError):
                self._metrics.ledger_operations.labels(operation=operation, outcome=error.error_code.lower()).inc()
            raise
        self._metrics.ledger_operations.labels(operation=operation, outcome="ok").inc()
        logger.info(
            "capacity %s applied",
            operation,
            extra={
                "code": operation.upper(),
                "window": str(key),
                "available": window.available_spots,
                "actor": actor,
            },
        )
        return window

    def _apply(self, session: Session, key: WindowKey, operation: LedgerOperation, n: int, actor: str) -> CapacityWindow:
        if n <= 0:
            raise ValidationError("SPOTS_NOT_POSITIVE", "spot count must be positive", window=str(key), n=n)
        repo = WindowRepository(session)
        model = repo.get(key)
        if model is None:
            raise NotFoundError("window", str(key))
        if model.halted:
            raise LedgerHaltedError(str(key), model.halt_reason)

        current = model.available_spots
        maximum = model.max_capacity
        if operation == "reserve":
            if current < n:
                raise InsufficientCapacityError(str(key), current, n)
            new_available = current - n
        elif current <= maximum:
            new_available = min(current + n, maximum)
        else:
            # already above maximum; leave it to the post-write check instead of clamping
            new_available = current + n

        return self._commit_counters(
            session,
            model,
            operation=operation,
            new_available=new_available,
            new_max=maximum,
            actor=actor,
        )

    def _configure_once(self, session: Session, key: WindowKey, max_capacity: int, actor: str) -> CapacityWindow:
        repo = WindowRepository(session)
        model = repo.get(key)
        now = self._clock.now()
        if model is None:
            model = CapacityWindowModel(
                site_id=key.site_id,
                program_id=key.program_id,
                period_start=key.period_start,
                period_end=key.period_end,
                max_capacity=max_capacity,
                available_spots=max_capacity,
                version=0,
                halted=False,
                updated_at=now,
            )
            repo.add(model)
            try:
                session.flush()
            except IntegrityError as exc:
                raise StaleWriteError() from exc
            AuditRepository(session).append(
                model,
                operation="configure",
                delta=max_capacity,
                resulting_available=max_capacity,
                actor=actor,
                now=now,
            )
            return window_snapshot(model)

        if model.halted:
            raise LedgerHaltedError(str(key), model.halt_reason)
        new_available = model.available_spots + (max_capacity - model.max_capacity)
        if new_available < 0:
            raise ValidationError(
                "CAPACITY_BELOW_COMMITTED",
                "max_capacity is below the number of spots already reserved",
                window=str(key),
                reserved=model.max_capacity - model.available_spots,
            )
        return self._commit_counters(
            session,
            model,
            operation="configure",
            new_available=new_available,
            new_max=max_capacity,
            actor=actor,
        )

    def _commit_counters(
        self,
        session: Session,
        model: CapacityWindowModel,
        *,
        operation: LedgerOperation,
        new_available: int,
        new_max: int,
        actor: str,
    ) -> CapacityWindow:
        now = self._clock.now()
        key = WindowKey(model.site_id, model.program_id, model.period_start, model.period_end)
        window_id = model.id
        version = model.version
        delta = new_available - model.available_spots
        repo = WindowRepository(session)
        if not repo.conditional_set(
            window_id=window_id,
            expected_version=version,
            available_spots=new_available,
            max_capacity=new_max,
            now=now,
        ):
            raise StaleWriteError()

        persisted = session.execute(
            select(CapacityWindowModel.available_spots, CapacityWindowModel.max_capacity).where(
                CapacityWindowModel.id == window_id
            )
        ).one()
        if not 0 <= persisted.available_spots <= persisted.max_capacity:
            raise _InvariantBreach(window_id, key, persisted.available_spots, persisted.max_capacity)

        AuditRepository(session).append(
            model,
            operation=operation,
            delta=delta,
            resulting_available=persisted.available_spots,
            actor=actor,
            now=now,
        )
        session.expire(model)
        return CapacityWindow(
            key=key,
            max_capacity=persisted.max_capacity,
            available_spots=persisted.available_spots,
            version=version + 1,
        )

    def _halt(self, breach: _InvariantBreach) -> None:
        reason = f"available={breach.available} max={breach.max_capacity}"
        with self._uow_factory("halt") as uow:
            repo = WindowRepository(uow.session)
            repo.halt(breach.window_id, reason, self._clock.now())
            halted = repo.count_halted()
        self._metrics.halted_windows.set(halted)
        self._metrics.ledger_operations.labels(operation="write", outcome="invariant_violation").inc()
        logger.critical(
            "capacity invariant violated; window halted",
            extra={
                "code": "LEDGER_INVARIANT_VIOLATION",
                "window": str(breach.key),
                "available": breach.available,
                "max_capacity": breach.max_capacity,
            },
        )

    def _on_retry(self, operation: str, resource: str, state: RetryCallState) -> None:
        self._metrics.ledger_retries.labels(operation=operation).inc()
        logger.debug(
            "ledger write conflicted; retrying",
            extra={"code": "LEDGER_RETRY", "window": resource, "attempt": state.attempt_number},
        )


__all__ = ["CapacityLedger", "StaleWriteError"]
