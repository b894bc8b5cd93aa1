"""Batch state machine and membership, orchestrating ranking and execution."""
from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, Sequence
from uuid import uuid4

from placement.core.clock import Clock
from placement.domain.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    PlacementError,
    ValidationError,
)
from placement.infrastructure.persistence.models import AssignmentModel, BatchModel

from .contracts import (
    POOLED_STATUSES,
    SETTLED_STATUSES,
    AssignmentPair,
    AssignmentSnapshot,
    BatchSnapshot,
    BatchStatus,
    BatchSummary,
    ExecutionMode,
    ExecutionResult,
    MembershipResult,
    Suggestion,
)
from .executor import BatchAssignmentExecutor, CancellationToken
from .ledger import CapacityLedger, StaleWriteError
from .ranking import SuggestionRanker
from .repositories import AssignmentRepository, BatchRepository, assignment_snapshot, window_key_of
from .uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, str] = {
    "draft": "active",
    "active": "completed",
    "completed": "archived",
}
OPEN_STATUSES = frozenset({"draft", "active"})


class BatchLifecycleManager:
    """Owns batch transitions and membership; hands selections to the executor."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        ledger: CapacityLedger,
        ranker: SuggestionRanker,
        executor: BatchAssignmentExecutor,
        clock: Clock,
    ) -> None:
        self._uow_factory = uow_factory
        self._ledger = ledger
        self._ranker = ranker
        self._executor = executor
        self._clock = clock
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    # -- pool and batches ------------------------------------------------

    def register_assignment(self, student_id: str, program_id: str) -> AssignmentSnapshot:
        """Put a student into the unassigned pool."""

        student_id = (student_id or "").strip()
        program_id = (program_id or "").strip()
        if not student_id or not program_id:
            raise ValidationError("ASSIGNMENT_INVALID", "student_id and program_id are required")
        with self._uow_factory("register") as uow:
            model = AssignmentModel(
                student_id=student_id,
                program_id=program_id,
                status="unassigned",
                version=0,
                created_at=self._clock.now(),
            )
            AssignmentRepository(uow.session).add(model)
            uow.session.flush()
            return assignment_snapshot(model)

    def create_batch(
        self,
        name: str,
        program_filter: str | None = None,
        *,
        description: str | None = None,
        created_by: str | None = None,
    ) -> BatchSnapshot:
        name = (name or "").strip()
        if not name:
            raise ValidationError("BATCH_NAME_REQUIRED", "Batch name must not be empty")
        now = self._clock.now()
        with self._uow_factory("create_batch") as uow:
            model = BatchModel(
                name=name,
                description=description,
                program_filter=(program_filter or "").strip() or None,
                status="draft",
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            repo = BatchRepository(uow.session)
            repo.add(model)
            uow.session.flush()
            snapshot = repo.snapshot(model)
        logger.info("batch created", extra={"code": "BATCH_CREATED", "batch_id": snapshot.batch_id})
        return snapshot

    def get_batch(self, batch_id: str) -> BatchSnapshot:
        with self._uow_factory() as uow:
            repo = BatchRepository(uow.session)
            return repo.snapshot(self._load_batch(repo, batch_id))

    def batch_summary(self, batch_id: str) -> BatchSummary:
        with self._uow_factory() as uow:
            batch = self._load_batch(BatchRepository(uow.session), batch_id)
            members = AssignmentRepository(uow.session).members(batch_id)
            counts = Counter(member.status for member in members)
            return BatchSummary(
                batch_id=batch_id,
                status=batch.status,
                member_count=len(members),
                status_counts=dict(sorted(counts.items())),
            )

    def get_assignment(self, assignment_id: str) -> AssignmentSnapshot:
        with self._uow_factory() as uow:
            model = AssignmentRepository(uow.session).get(assignment_id)
            if model is None:
                raise NotFoundError("assignment", assignment_id)
            return assignment_snapshot(model)

    # -- membership ------------------------------------------------------

    def add_students(self, batch_id: str, assignment_ids: Iterable[str]) -> MembershipResult:
        """Attach pooled assignments to a draft or active batch; failures are per item."""

        added: list[str] = []
        errors: dict[str, PlacementError] = {}
        with self._uow_factory("add_students") as uow:
            batches = BatchRepository(uow.session)
            assignments = AssignmentRepository(uow.session)
            batch = self._load_batch(batches, batch_id)
            if batch.status not in OPEN_STATUSES:
                raise ValidationError(
                    "BATCH_NOT_OPEN",
                    f"Batch {batch_id} is {batch.status}; members can only change in draft or active",
                    batch_id=batch_id,
                    status=batch.status,
                )
            for assignment_id in dict.fromkeys(assignment_ids):
                model = assignments.get(assignment_id)
                if model is None:
                    errors[assignment_id] = NotFoundError("assignment", assignment_id)
                    continue
                if model.batch_id == batch_id:
                    continue
                error = self._membership_error(batches, batch, model)
                if error is not None:
                    errors[assignment_id] = error
                    continue
                if not assignments.conditional_update(assignment_id, expected_version=model.version, batch_id=batch_id):
                    errors[assignment_id] = ConcurrencyConflictError(assignment_id, 1)
                    continue
                added.append(assignment_id)
            self._touch(batch)
        logger.info(
            "students added to batch",
            extra={"code": "MEMBERS_ADDED", "batch_id": batch_id, "added": len(added), "rejected": len(errors)},
        )
        return MembershipResult(added=tuple(added), errors=errors)

    def remove_student(self, batch_id: str, assignment_id: str, *, actor: str = "system") -> AssignmentSnapshot:
        """Release the held spot if any, then mark the assignment removed and detach it."""

        def attempt() -> AssignmentSnapshot:
            with self._uow_factory("remove_student") as uow:
                batch = self._load_batch(BatchRepository(uow.session), batch_id)
                if batch.status == "archived":
                    raise ValidationError("BATCH_ARCHIVED", f"Batch {batch_id} is archived", batch_id=batch_id)
                repo = AssignmentRepository(uow.session)
                model = repo.get(assignment_id)
                if model is None:
                    raise NotFoundError("assignment", assignment_id)
                if model.status == "removed":
                    return assignment_snapshot(model)
                if model.batch_id != batch_id:
                    raise ValidationError(
                        "NOT_A_MEMBER",
                        f"Assignment {assignment_id} is not a member of batch {batch_id}",
                        batch_id=batch_id,
                        assignment_id=assignment_id,
                    )
                if model.status == "assigned" and model.window is not None:
                    self._ledger.apply_release(uow.session, window_key_of(model.window), 1, actor=actor)
                if not repo.conditional_update(
                    assignment_id,
                    expected_version=model.version,
                    status="removed",
                    batch_id=None,
                    assigned_site_id=None,
                    window_id=None,
                ):
                    raise StaleWriteError()
                uow.session.expire(model)
                return assignment_snapshot(model)

        snapshot = self._ledger.run_with_retry("release", assignment_id, attempt)
        logger.info(
            "student removed from batch",
            extra={"code": "MEMBER_REMOVED", "batch_id": batch_id, "assignment_id": assignment_id, "actor": actor},
        )
        return snapshot

    def mark_suggested(self, batch_id: str, assignment_ids: Iterable[str]) -> tuple[str, ...]:
        """Record human review: unassigned members become suggested."""

        marked: list[str] = []
        with self._uow_factory("mark_suggested") as uow:
            batch = self._load_batch(BatchRepository(uow.session), batch_id)
            if batch.status not in OPEN_STATUSES:
                raise ValidationError("BATCH_NOT_OPEN", f"Batch {batch_id} is {batch.status}", batch_id=batch_id)
            repo = AssignmentRepository(uow.session)
            for assignment_id in dict.fromkeys(assignment_ids):
                model = repo.get(assignment_id)
                if model is None or model.batch_id != batch_id or model.status != "unassigned":
                    continue
                if repo.conditional_update(assignment_id, expected_version=model.version, status="suggested"):
                    marked.append(assignment_id)
        return tuple(marked)

    # -- state machine ---------------------------------------------------

    def transition(self, batch_id: str, new_status: BatchStatus) -> BatchSnapshot:
        with self._uow_factory("transition") as uow:
            repo = BatchRepository(uow.session)
            batch = self._load_batch(repo, batch_id)
            current = batch.status
            if TRANSITIONS.get(current) != new_status:
                raise InvalidTransitionError(batch_id, current, new_status)
            if new_status == "completed":
                pending = sorted(
                    member.assignment_id
                    for member in AssignmentRepository(uow.session).members(batch_id)
                    if member.status not in SETTLED_STATUSES
                )
                if pending:
                    raise InvalidTransitionError(batch_id, current, new_status, reason="MEMBERS_UNSETTLED")
            batch.status = new_status
            self._touch(batch)
            snapshot = repo.snapshot(batch)
        logger.info(
            "batch transitioned",
            extra={"code": "BATCH_TRANSITION", "batch_id": batch_id, "from": current, "to": new_status},
        )
        return snapshot

    # -- orchestration ---------------------------------------------------

    def generate_suggestions(self, batch_id: str, *, as_of: date | None = None) -> list[Suggestion]:
        return self._ranker.generate(batch_id, as_of=as_of)

    def execute(
        self,
        batch_id: str,
        pairs: Sequence[AssignmentPair],
        *,
        mode: ExecutionMode = "best_effort",
        actor: str = "system",
        execution_id: str | None = None,
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        execution_id = execution_id or uuid4().hex
        with self._registered(execution_id) as token:
            return self._executor.execute(
                batch_id,
                pairs,
                mode=mode,
                actor=actor,
                execution_id=execution_id,
                token=token,
                as_of=as_of,
            )

    def retry_execution(
        self,
        batch_id: str,
        execution_id: str,
        *,
        mode: ExecutionMode = "best_effort",
        actor: str = "system",
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        new_id = uuid4().hex
        with self._registered(new_id) as token:
            return self._executor.retry(
                batch_id,
                execution_id,
                mode=mode,
                actor=actor,
                new_execution_id=new_id,
                token=token,
                as_of=as_of,
            )

    def cancel_execution(self, execution_id: str) -> bool:
        """Flag an in-flight execution; returns False when none is running."""

        with self._tokens_lock:
            token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel()
        logger.info("execution cancellation requested", extra={"code": "EXECUTION_CANCEL", "execution_id": execution_id})
        return True

    # -- helpers ---------------------------------------------------------

    @contextmanager
    def _registered(self, execution_id: str) -> Iterator[CancellationToken]:
        token = CancellationToken()
        with self._tokens_lock:
            if execution_id in self._tokens:
                raise ValidationError(
                    "EXECUTION_IN_FLIGHT",
                    f"Execution {execution_id} is already running",
                    execution_id=execution_id,
                )
            self._tokens[execution_id] = token
        try:
            yield token
        finally:
            with self._tokens_lock:
                self._tokens.pop(execution_id, None)

    @staticmethod
    def _load_batch(repo: BatchRepository, batch_id: str) -> BatchModel:
        batch = repo.get(batch_id)
        if batch is None:
            raise NotFoundError("batch", batch_id)
        return batch

    def _membership_error(self, batches: BatchRepository, batch: BatchModel, model: AssignmentModel) -> PlacementError | None:
        if model.status not in POOLED_STATUSES:
            return ValidationError(
                "ASSIGNMENT_NOT_POOLED",
                f"Assignment {model.assignment_id} is {model.status}",
                assignment_id=model.assignment_id,
                status=model.status,
            )
        if batch.program_filter and model.program_id != batch.program_filter:
            return ValidationError(
                "PROGRAM_FILTER_MISMATCH",
                f"Assignment {model.assignment_id} belongs to program {model.program_id}",
                assignment_id=model.assignment_id,
                program_id=model.program_id,
                program_filter=batch.program_filter,
            )
        if model.batch_id is not None:
            other = batches.get(model.batch_id)
            if other is not None and other.status != "archived":
                return ValidationError(
                    "ALREADY_IN_BATCH",
                    f"Assignment {model.assignment_id} already belongs to batch {model.batch_id}",
                    assignment_id=model.assignment_id,
                    batch_id=model.batch_id,
                )
        return None

    def _touch(self, batch: BatchModel) -> None:
        batch.updated_at = self._clock.now()


__all__ = ["BatchLifecycleManager", "TRANSITIONS"]
