"""Validate, reserve and commit (assignment, site) pairs for one batch."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Sequence
from uuid import uuid4

from placement.core.clock import Clock
from placement.domain.errors import (
    AlreadyAssignedError,
    ConcurrencyConflictError,
    InsufficientCapacityError,
    LedgerHaltedError,
    LedgerInvariantError,
    NotFoundError,
    PlacementError,
    ValidationError,
)
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from .contracts import (
    POOLED_STATUSES,
    RETRYABLE_OUTCOMES,
    AssignmentPair,
    ExecutionMode,
    ExecutionOutcome,
    ExecutionResult,
    WindowKey,
)
from .eligibility import EligibilityFilter
from .ledger import CapacityLedger, StaleWriteError
from .outbox import OutboxEvent, OutboxRepository, derive_event_id
from .providers import StudentDirectory
from .repositories import (
    AssignmentRepository,
    BatchRepository,
    ExecutionResultRepository,
    WindowRepository,
    window_key_of,
    window_snapshot,
)
from .uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

EXECUTION_EVENT = "placement.execution_result"
EXECUTION_MODES = ("atomic", "best_effort")


@dataclass(slots=True)
class CancellationToken:
    """Cooperative cancellation flag checked before each pair."""

    _flag: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._flag.set()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()


@dataclass(frozen=True)
class _Decision:
    outcome: ExecutionOutcome
    detail: str | None = None
    window: WindowKey | None = None


@dataclass(frozen=True)
class _Plan:
    """A validated pair bound to a concrete window, ready to reserve."""

    pair: AssignmentPair
    previous_status: str
    version: int
    window: WindowKey
    window_id: int


def _pair_order(pair: AssignmentPair) -> tuple:
    return (pair.assignment_id, pair.site_id, pair.period_start or date.min, pair.period_end or date.min)


class BatchAssignmentExecutor:
    """Runs the validate-then-reserve-then-commit protocol in assignment_id order."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        ledger: CapacityLedger,
        eligibility: EligibilityFilter,
        directory: StudentDirectory,
        clock: Clock,
        metrics: PlacementMetrics | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._ledger = ledger
        self._eligibility = eligibility
        self._directory = directory
        self._clock = clock
        self._metrics = metrics or PlacementMetrics()

    def execute(
        self,
        batch_id: str,
        pairs: Sequence[AssignmentPair],
        *,
        mode: ExecutionMode = "best_effort",
        actor: str = "system",
        execution_id: str | None = None,
        token: CancellationToken | None = None,
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        """Process *pairs* and return one result per pair.

        Per-pair failures are reported as outcomes. Only an unknown batch, a batch
        that is not active, an unknown mode or a reused execution id raise.
        """

        if mode not in EXECUTION_MODES:
            raise ValidationError("MODE_INVALID", f"Unknown execution mode {mode}", mode=mode)
        execution_id = execution_id or uuid4().hex
        token = token or CancellationToken()
        cycle = as_of or self._clock.today()
        self._check_preconditions(batch_id, execution_id)

        ordered = sorted(pairs, key=_pair_order)
        if mode == "atomic":
            decisions = self._run_atomic(batch_id, ordered, actor=actor, token=token, as_of=cycle)
        else:
            decisions = self._run_best_effort(batch_id, ordered, actor=actor, token=token, as_of=cycle)

        results = [
            ExecutionResult(
                execution_id=execution_id,
                assignment_id=pair.assignment_id,
                site_id=pair.site_id,
                outcome=decision.outcome,
                timestamp=self._clock.now(),
                actor=actor,
                detail=decision.detail,
                window=decision.window,
            )
            for pair, decision in decisions
        ]
        self._record(batch_id, mode, results)
        for result in results:
            self._metrics.execution_outcomes.labels(mode=mode, outcome=result.outcome).inc()
        logger.info(
            "batch execution finished",
            extra={
                "code": "EXECUTION_DONE",
                "execution_id": execution_id,
                "batch_id": batch_id,
                "mode": mode,
                "committed": sum(1 for result in results if result.outcome == "committed"),
                "pairs": len(results),
            },
        )
        return results

    def retry(
        self,
        batch_id: str,
        execution_id: str,
        *,
        mode: ExecutionMode = "best_effort",
        actor: str = "system",
        new_execution_id: str | None = None,
        token: CancellationToken | None = None,
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        """Re-run the capacity-failed and cancelled pairs of a previous execution."""

        with self._uow_factory() as uow:
            rows = ExecutionResultRepository(uow.session).for_execution(execution_id)
            previous = [(row.batch_id, row.assignment_id, row.site_id, row.outcome) for row in rows]
        if not previous or any(row[0] != batch_id for row in previous):
            raise NotFoundError("execution", execution_id)
        retryable: dict[str, AssignmentPair] = {}
        for _, assignment_id, site_id, outcome in previous:
            if outcome in RETRYABLE_OUTCOMES:
                retryable.setdefault(assignment_id, AssignmentPair(assignment_id=assignment_id, site_id=site_id))
        pairs = list(retryable.values())
        if not pairs:
            return []
        return self.execute(
            batch_id,
            pairs,
            mode=mode,
            actor=actor,
            execution_id=new_execution_id,
            token=token,
            as_of=as_of,
        )

    # -- modes -----------------------------------------------------------

    def _run_best_effort(
        self,
        batch_id: str,
        ordered: Sequence[AssignmentPair],
        *,
        actor: str,
        token: CancellationToken,
        as_of: date,
    ) -> list[tuple[AssignmentPair, _Decision]]:
        decisions: list[tuple[AssignmentPair, _Decision]] = []
        seen: set[str] = set()
        for pair in ordered:
            if token.cancelled:
                decisions.append((pair, _Decision("cancelled", "EXECUTION_CANCELLED")))
                continue
            if pair.assignment_id in seen:
                decisions.append((pair, _Decision("validation_error", "DUPLICATE_PAIR")))
                continue
            seen.add(pair.assignment_id)
            prepared = self._prepare(pair, batch_id, as_of)
            if isinstance(prepared, _Decision):
                decisions.append((pair, prepared))
                continue
            refused = self._reserve(prepared, actor)
            decisions.append((pair, refused or self._commit(prepared, actor)))
        return decisions

    def _run_atomic(
        self,
        batch_id: str,
        ordered: Sequence[AssignmentPair],
        *,
        actor: str,
        token: CancellationToken,
        as_of: date,
    ) -> list[tuple[AssignmentPair, _Decision]]:
        settled: dict[str, _Decision] = {}
        reserved: list[tuple[int, _Plan]] = []
        failure: tuple[int, _Decision] | None = None
        seen: set[str] = set()

        for position, pair in enumerate(ordered):
            if token.cancelled:
                failure = (position, _Decision("cancelled", "EXECUTION_CANCELLED"))
                break
            if pair.assignment_id in seen:
                failure = (position, _Decision("validation_error", "DUPLICATE_PAIR"))
                break
            seen.add(pair.assignment_id)
            prepared = self._prepare(pair, batch_id, as_of)
            if isinstance(prepared, _Decision):
                if prepared.outcome == "already_assigned":
                    settled[pair.assignment_id] = prepared
                    continue
                failure = (position, prepared)
                break
            refused = self._reserve(prepared, actor)
            if refused is not None:
                failure = (position, refused)
                break
            reserved.append((position, prepared))

        if failure is None:
            committed: list[_Plan] = []
            for index, (position, plan) in enumerate(reserved):
                decision = self._commit(plan, actor)
                settled[plan.pair.assignment_id] = decision
                if decision.outcome == "committed":
                    committed.append(plan)
                elif decision.outcome != "already_assigned":
                    failure = (position, decision)
                    for done in committed:
                        self._revert(done, actor)
                    for _, pending in reserved[index + 1:]:
                        self._release(pending, actor)
                    break
            if failure is None:
                return [(pair, settled[pair.assignment_id]) for pair in ordered]
        else:
            for _, plan in reserved:
                self._release(plan, actor)

        root_position, root = failure
        root_id = ordered[root_position].assignment_id
        logger.warning(
            "atomic execution aborted",
            extra={"code": "ATOMIC_ABORTED", "batch_id": batch_id, "root": root_id, "outcome": root.outcome},
        )
        return [
            (pair, root if position == root_position else _Decision(root.outcome, f"ABORTED_BY:{root_id}"))
            for position, pair in enumerate(ordered)
        ]

    # -- protocol steps --------------------------------------------------

    def _prepare(self, pair: AssignmentPair, batch_id: str, as_of: date) -> _Plan | _Decision:
        """Resolve the window and re-run eligibility on the current snapshot."""

        with self._uow_factory() as uow:
            model = AssignmentRepository(uow.session).get(pair.assignment_id)
            if model is None:
                return _Decision("validation_error", "ASSIGNMENT_NOT_FOUND")
            if model.status in ("assigned", "completed"):
                current = window_key_of(model.window) if model.window is not None else None
                if model.assigned_site_id == pair.site_id:
                    return _Decision("already_assigned", AlreadyAssignedError.code, current)
                return _Decision("validation_error", "ASSIGNED_TO_DIFFERENT_SITE", current)
            if model.batch_id != batch_id:
                return _Decision("validation_error", "NOT_A_MEMBER")
            if model.status not in POOLED_STATUSES:
                return _Decision("validation_error", f"ASSIGNMENT_{model.status.upper()}")
            student_id, status, version = model.student_id, model.status, model.version
            rows = WindowRepository(uow.session).list_all(program_id=model.program_id, site_id=pair.site_id)
            windows = [
                (row.id, window_snapshot(row))
                for row in rows
                if (pair.period_start is None or row.period_start == pair.period_start)
                and (pair.period_end is None or row.period_end == pair.period_end)
            ]

        if not windows:
            return _Decision("validation_error", "WINDOW_NOT_FOUND")
        student = self._directory.get_student(student_id)
        eligible = []
        first_refusal = None
        for window_id, window in windows:
            verdict = self._eligibility.is_eligible(student, window, as_of=as_of)
            if verdict.eligible:
                eligible.append((window_id, window))
            elif first_refusal is None:
                first_refusal = (window, verdict)
        if not eligible:
            window, verdict = first_refusal
            return _Decision("stale_eligibility", ",".join(verdict.codes), window.key)

        window_id, window = next(
            ((wid, w) for wid, w in eligible if w.available_spots > 0 and not w.halted),
            eligible[0],
        )
        return _Plan(pair=pair, previous_status=status, version=version, window=window.key, window_id=window_id)

    def _reserve(self, plan: _Plan, actor: str) -> _Decision | None:
        try:
            self._ledger.reserve(plan.window, 1, actor=actor)
        except (InsufficientCapacityError, ConcurrencyConflictError, LedgerHaltedError, LedgerInvariantError) as error:
            return _Decision("insufficient_capacity", error.error_code, plan.window)
        except NotFoundError as error:
            return _Decision("validation_error", error.error_code, plan.window)
        return None

    def _commit(self, plan: _Plan, actor: str) -> _Decision:
        """Flip the assignment to assigned, guarded by the version read in validation."""

        assigned_at = self._clock.now()

        def attempt() -> bool:
            with self._uow_factory("commit") as uow:
                return AssignmentRepository(uow.session).conditional_update(
                    plan.pair.assignment_id,
                    expected_version=plan.version,
                    status="assigned",
                    assigned_site_id=plan.pair.site_id,
                    window_id=plan.window_id,
                    assigned_at=assigned_at,
                )

        try:
            won = self._ledger.run_with_retry("commit", plan.pair.assignment_id, attempt)
        except ConcurrencyConflictError as error:
            self._release(plan, actor)
            return _Decision("insufficient_capacity", error.error_code, plan.window)
        if won:
            return _Decision("committed", None, plan.window)

        self._release(plan, actor)
        with self._uow_factory() as uow:
            model = AssignmentRepository(uow.session).get(plan.pair.assignment_id)
            same_site = (
                model is not None
                and model.status in ("assigned", "completed")
                and model.assigned_site_id == plan.pair.site_id
            )
        if same_site:
            return _Decision("already_assigned", AlreadyAssignedError.code, plan.window)
        return _Decision("validation_error", "ASSIGNMENT_CHANGED", plan.window)

    def _release(self, plan: _Plan, actor: str) -> None:
        try:
            self._ledger.release(plan.window, 1, actor=actor)
        except PlacementError as error:
            logger.error(
                "compensating release failed",
                extra={"code": "COMPENSATION_FAILED", "window": str(plan.window), "error": error.error_code},
            )

    def _revert(self, plan: _Plan, actor: str) -> None:
        """Undo a commit made earlier in the same atomic call."""

        def attempt() -> None:
            with self._uow_factory("revert") as uow:
                reverted = AssignmentRepository(uow.session).conditional_update(
                    plan.pair.assignment_id,
                    expected_version=plan.version + 1,
                    status=plan.previous_status,
                    assigned_site_id=None,
                    window_id=None,
                    assigned_at=None,
                )
                if not reverted:
                    raise StaleWriteError()
                self._ledger.apply_release(uow.session, plan.window, 1, actor=actor)

        try:
            self._ledger.run_with_retry("release", plan.pair.assignment_id, attempt)
        except PlacementError as error:
            logger.error(
                "atomic revert failed",
                extra={"code": "COMPENSATION_FAILED", "assignment_id": plan.pair.assignment_id, "error": error.error_code},
            )

    # -- bookkeeping -----------------------------------------------------

    def _check_preconditions(self, batch_id: str, execution_id: str) -> None:
        with self._uow_factory() as uow:
            batch = BatchRepository(uow.session).get(batch_id)
            if batch is None:
                raise NotFoundError("batch", batch_id)
            if batch.status != "active":
                raise ValidationError(
                    "BATCH_NOT_ACTIVE",
                    f"Batch {batch_id} is {batch.status}; executions require an active batch",
                    batch_id=batch_id,
                    status=batch.status,
                )
            if ExecutionResultRepository(uow.session).for_execution(execution_id):
                raise ValidationError("EXECUTION_ID_REUSED", f"Execution {execution_id} already ran", execution_id=execution_id)

    def _record(self, batch_id: str, mode: str, results: Sequence[ExecutionResult]) -> None:
        """Persist every result; each assignment gets one notification event per execution.

        Results are in processing order, so a repeated assignment_id (a duplicate
        pair) keeps the event of the pair that was actually attempted.
        """

        notified: set[str] = set()
        with self._uow_factory("record") as uow:
            result_repo = ExecutionResultRepository(uow.session)
            outbox = OutboxRepository(uow.session)
            for result in results:
                result_repo.add(result, batch_id=batch_id, mode=mode)
                if result.assignment_id in notified:
                    continue
                notified.add(result.assignment_id)
                event_id = str(derive_event_id(result.execution_id, result.assignment_id))
                outbox.add(
                    OutboxEvent(
                        event_id=event_id,
                        aggregate_type="Assignment",
                        aggregate_id=result.assignment_id,
                        event_type=EXECUTION_EVENT,
                        payload={
                            "event_id": event_id,
                            "execution_id": result.execution_id,
                            "batch_id": batch_id,
                            "assignment_id": result.assignment_id,
                            "site_id": result.site_id,
                            "outcome": result.outcome,
                            "detail": result.detail,
                            "window": str(result.window) if result.window is not None else None,
                            "mode": mode,
                            "actor": result.actor,
                            "occurred_at": result.timestamp.isoformat(),
                        },
                        occurred_at=result.timestamp,
                        available_at=result.timestamp,
                    )
                )


__all__ = ["BatchAssignmentExecutor", "CancellationToken", "EXECUTION_EVENT"]
