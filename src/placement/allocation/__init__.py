"""Batch placement public API."""

from .contracts import (
    AssignmentPair,
    AssignmentSnapshot,
    AuditRecord,
    BatchSnapshot,
    BatchSummary,
    CapacityWindow,
    EligibilityVerdict,
    ExcludedWindow,
    ExecutionResult,
    MembershipResult,
    SiteCandidate,
    SiteProfile,
    StudentProfile,
    Suggestion,
    WindowKey,
)
from .eligibility import EligibilityFilter
from .executor import BatchAssignmentExecutor, CancellationToken
from .ledger import CapacityLedger
from .lifecycle import BatchLifecycleManager
from .outbox import BackoffPolicy, OutboxEvent, OutboxRelay, OutboxRepository, derive_event_id
from .providers import NotificationDispatcher, SiteRegistry, StudentDirectory
from .ranking import SuggestionRanker, default_pairs
from .service import PlacementEngine, build_engine, build_relay
from .uow import SQLAlchemyUnitOfWork, UnitOfWorkFactory, uow_factory_for

__all__ = [
    "AssignmentPair",
    "AssignmentSnapshot",
    "AuditRecord",
    "BatchSnapshot",
    "BatchSummary",
    "CapacityWindow",
    "EligibilityVerdict",
    "ExcludedWindow",
    "ExecutionResult",
    "MembershipResult",
    "SiteCandidate",
    "SiteProfile",
    "StudentProfile",
    "Suggestion",
    "WindowKey",
    "EligibilityFilter",
    "BatchAssignmentExecutor",
    "CancellationToken",
    "CapacityLedger",
    "BatchLifecycleManager",
    "BackoffPolicy",
    "OutboxEvent",
    "OutboxRelay",
    "OutboxRepository",
    "derive_event_id",
    "NotificationDispatcher",
    "SiteRegistry",
    "StudentDirectory",
    "SuggestionRanker",
    "default_pairs",
    "PlacementEngine",
    "build_engine",
    "build_relay",
    "SQLAlchemyUnitOfWork",
    "UnitOfWorkFactory",
    "uow_factory_for",
]
