"""Engine facade exposing the batch placement operations."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Sequence

from placement.core.clock import Clock
from placement.core.settings import EngineSettings
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from .contracts import (
    AssignmentPair,
    AssignmentSnapshot,
    AuditRecord,
    BatchSnapshot,
    BatchStatus,
    BatchSummary,
    CapacityWindow,
    ExecutionMode,
    ExecutionResult,
    MembershipResult,
    Suggestion,
    WindowKey,
)
from .eligibility import EligibilityFilter
from .executor import BatchAssignmentExecutor
from .ledger import CapacityLedger
from .lifecycle import BatchLifecycleManager
from .outbox import BackoffPolicy, OutboxRelay
from .providers import NotificationDispatcher, SiteRegistry, StudentDirectory
from .ranking import SuggestionRanker, default_pairs
from .uow import SessionFactory, UnitOfWorkFactory, uow_factory_for


@dataclass(slots=True)
class PlacementEngine:
    """Single entry point wiring ledger, ranking, execution and lifecycle together."""

    ledger: CapacityLedger
    ranker: SuggestionRanker
    executor: BatchAssignmentExecutor
    lifecycle: BatchLifecycleManager
    metrics: PlacementMetrics

    def create_batch(
        self,
        name: str,
        program_filter: str | None = None,
        *,
        description: str | None = None,
        created_by: str | None = None,
    ) -> BatchSnapshot:
        return self.lifecycle.create_batch(name, program_filter, description=description, created_by=created_by)

    def register_assignment(self, student_id: str, program_id: str) -> AssignmentSnapshot:
        return self.lifecycle.register_assignment(student_id, program_id)

    def add_students(self, batch_id: str, assignment_ids: Iterable[str]) -> MembershipResult:
        return self.lifecycle.add_students(batch_id, assignment_ids)

    def remove_student(self, batch_id: str, assignment_id: str, *, actor: str = "system") -> AssignmentSnapshot:
        return self.lifecycle.remove_student(batch_id, assignment_id, actor=actor)

    def mark_suggested(self, batch_id: str, assignment_ids: Iterable[str]) -> tuple[str, ...]:
        return self.lifecycle.mark_suggested(batch_id, assignment_ids)

    def transition(self, batch_id: str, new_status: BatchStatus) -> BatchSnapshot:
        return self.lifecycle.transition(batch_id, new_status)

    def get_batch(self, batch_id: str) -> BatchSnapshot:
        return self.lifecycle.get_batch(batch_id)

    def batch_summary(self, batch_id: str) -> BatchSummary:
        return self.lifecycle.batch_summary(batch_id)

    def get_assignment(self, assignment_id: str) -> AssignmentSnapshot:
        return self.lifecycle.get_assignment(assignment_id)

    def generate_suggestions(self, batch_id: str, *, as_of: date | None = None) -> list[Suggestion]:
        return self.lifecycle.generate_suggestions(batch_id, as_of=as_of)

    def default_pairs(self, suggestions: Iterable[Suggestion]) -> list[AssignmentPair]:
        return default_pairs(suggestions)

    def execute_assignment(
        self,
        batch_id: str,
        pairs: Sequence[AssignmentPair],
        mode: ExecutionMode = "best_effort",
        *,
        actor: str = "system",
        execution_id: str | None = None,
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        return self.lifecycle.execute(
            batch_id,
            pairs,
            mode=mode,
            actor=actor,
            execution_id=execution_id,
            as_of=as_of,
        )

    def retry_execution(
        self,
        batch_id: str,
        execution_id: str,
        mode: ExecutionMode = "best_effort",
        *,
        actor: str = "system",
        as_of: date | None = None,
    ) -> list[ExecutionResult]:
        return self.lifecycle.retry_execution(batch_id, execution_id, mode=mode, actor=actor, as_of=as_of)

    def cancel_execution(self, execution_id: str) -> bool:
        return self.lifecycle.cancel_execution(execution_id)

    def get_capacity(self, key: WindowKey) -> CapacityWindow:
        return self.ledger.get(key)

    def list_capacity(self, *, program_id: str | None = None, site_id: str | None = None) -> list[CapacityWindow]:
        return self.ledger.list_windows(program_id=program_id, site_id=site_id)

    def configure_window(self, key: WindowKey, max_capacity: int, *, actor: str = "system") -> CapacityWindow:
        return self.ledger.configure_window(key, max_capacity, actor=actor)

    def capacity_audit(self, key: WindowKey) -> list[AuditRecord]:
        return self.ledger.audit_trail(key)


def build_engine(
    session_factory: SessionFactory,
    *,
    directory: StudentDirectory,
    registry: SiteRegistry,
    clock: Clock,
    settings: EngineSettings | None = None,
    metrics: PlacementMetrics | None = None,
) -> PlacementEngine:
    """Create a :class:`PlacementEngine` over *session_factory*."""

    settings = settings or EngineSettings()
    metrics = metrics or PlacementMetrics()
    uow_factory: UnitOfWorkFactory = uow_factory_for(session_factory)
    ledger = CapacityLedger(uow_factory=uow_factory, clock=clock, retry=settings.ledger, metrics=metrics)
    eligibility = EligibilityFilter()
    ranker = SuggestionRanker(
        uow_factory=uow_factory,
        ledger=ledger,
        eligibility=eligibility,
        directory=directory,
        registry=registry,
        clock=clock,
        config=settings.ranking,
        metrics=metrics,
    )
    executor = BatchAssignmentExecutor(
        uow_factory=uow_factory,
        ledger=ledger,
        eligibility=eligibility,
        directory=directory,
        clock=clock,
        metrics=metrics,
    )
    lifecycle = BatchLifecycleManager(
        uow_factory=uow_factory,
        ledger=ledger,
        ranker=ranker,
        executor=executor,
        clock=clock,
    )
    return PlacementEngine(ledger=ledger, ranker=ranker, executor=executor, lifecycle=lifecycle, metrics=metrics)


def build_relay(
    session_factory: SessionFactory,
    *,
    dispatcher: NotificationDispatcher,
    clock: Clock,
    settings: EngineSettings | None = None,
    metrics: PlacementMetrics | None = None,
) -> OutboxRelay:
    settings = settings or EngineSettings()
    return OutboxRelay(
        uow_factory=uow_factory_for(session_factory),
        dispatcher=dispatcher,
        clock=clock,
        backoff=BackoffPolicy.from_config(settings.outbox),
        batch_size=settings.outbox.batch_size,
        metrics=metrics,
    )


__all__ = ["PlacementEngine", "build_engine", "build_relay"]
