"""Core contracts and literals for batch placement."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import FrozenSet, Literal, Mapping, Tuple

from placement.domain.errors import PlacementError
from placement.domain.reasons import Reason

AssignmentStatus = Literal["unassigned", "suggested", "assigned", "completed", "removed"]
BatchStatus = Literal["draft", "active", "completed", "archived"]
ExecutionMode = Literal["atomic", "best_effort"]
ExecutionOutcome = Literal[
    "committed",
    "insufficient_capacity",
    "stale_eligibility",
    "already_assigned",
    "validation_error",
    "cancelled",
]
LedgerOperation = Literal["reserve", "release", "configure"]

POOLED_STATUSES: FrozenSet[str] = frozenset({"unassigned", "suggested"})
SETTLED_STATUSES: FrozenSet[str] = frozenset({"assigned", "removed"})
RETRYABLE_OUTCOMES: FrozenSet[str] = frozenset({"insufficient_capacity", "cancelled"})


@dataclass(frozen=True, order=True)
class WindowKey:
    """Identity of a capacity window."""

    site_id: str
    program_id: str
    period_start: date
    period_end: date

    def __str__(self) -> str:
        return f"{self.site_id}/{self.program_id}/{self.period_start.isoformat()}..{self.period_end.isoformat()}"


@dataclass(frozen=True)
class CapacityWindow:
    """Read snapshot of one ledger row."""

    key: WindowKey
    max_capacity: int
    available_spots: int
    version: int
    halted: bool = False
    halt_reason: str | None = None

    @property
    def site_id(self) -> str:
        return self.key.site_id

    @property
    def program_id(self) -> str:
        return self.key.program_id

    @property
    def period_start(self) -> date:
        return self.key.period_start

    @property
    def period_end(self) -> date:
        return self.key.period_end

    @property
    def headroom_ratio(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        return min(max(self.available_spots / self.max_capacity, 0.0), 1.0)


@dataclass(frozen=True)
class AuditRecord:
    window: WindowKey
    operation: LedgerOperation
    delta: int
    resulting_available: int
    actor: str
    timestamp: datetime


@dataclass(frozen=True)
class StudentProfile:
    """Directory entry consumed by eligibility and preference scoring."""

    student_id: str
    program_id: str
    outstanding_prerequisites: FrozenSet[str] = frozenset()
    name: str | None = None
    preferred_site_ids: Tuple[str, ...] = ()
    preferred_locations: FrozenSet[str] = frozenset()

    @property
    def has_preferences(self) -> bool:
        return bool(self.preferred_site_ids or self.preferred_locations)


@dataclass(frozen=True)
class SiteProfile:
    """Site metadata supplied by the site registry."""

    site_id: str
    name: str
    location: str | None = None
    historical_success_rate: float = 0.0
    program_success_rates: Mapping[str, float] = field(default_factory=dict)

    def success_rate(self, program_id: str) -> float:
        rate = self.program_success_rates.get(program_id, self.historical_success_rate)
        return min(max(float(rate), 0.0), 1.0)


@dataclass(frozen=True)
class AssignmentSnapshot:
    assignment_id: str
    student_id: str
    program_id: str
    status: AssignmentStatus
    assigned_site_id: str | None
    batch_id: str | None
    window: WindowKey | None
    assigned_at: datetime | None
    version: int


@dataclass(frozen=True)
class BatchSnapshot:
    batch_id: str
    name: str
    description: str | None
    program_filter: str | None
    status: BatchStatus
    created_by: str | None
    created_at: datetime
    member_ids: Tuple[str, ...]


@dataclass(frozen=True)
class BatchSummary:
    batch_id: str
    status: BatchStatus
    member_count: int
    status_counts: Mapping[str, int]

    @property
    def assigned_ratio(self) -> float:
        active = self.member_count - self.status_counts.get("removed", 0)
        if active <= 0:
            return 0.0
        return self.status_counts.get("assigned", 0) / active


@dataclass(frozen=True)
class MembershipResult:
    """Per-item outcome of adding students to a batch."""

    added: Tuple[str, ...]
    errors: Mapping[str, PlacementError]

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class EligibilityVerdict:
    eligible: bool
    reasons: Tuple[Reason, ...] = ()

    @property
    def codes(self) -> Tuple[str, ...]:
        return tuple(str(reason.code) for reason in self.reasons)


@dataclass(frozen=True)
class SiteCandidate:
    site_id: str
    site_name: str
    window: WindowKey
    score: int
    reasoning: Tuple[str, ...]
    available_spots: int
    max_capacity: int
    factors: Tuple[Tuple[str, float], ...]


@dataclass(frozen=True)
class ExcludedWindow:
    window: WindowKey
    reasons: Tuple[Reason, ...]


@dataclass(frozen=True)
class Suggestion:
    """Ranked, ephemeral recommendation for one assignment."""

    assignment_id: str
    student_id: str
    student_name: str | None
    program_id: str
    candidates: Tuple[SiteCandidate, ...]
    excluded: Tuple[ExcludedWindow, ...] = ()

    @property
    def confidence_score(self) -> int:
        return self.candidates[0].score if self.candidates else 0

    @property
    def confidence_label(self) -> str:
        score = self.confidence_score
        if score >= 80:
            return "High Confidence"
        if score >= 60:
            return "Medium Confidence"
        return "Low Confidence"


@dataclass(frozen=True)
class AssignmentPair:
    """One (assignment, site) selection handed to the executor."""

    assignment_id: str
    site_id: str
    period_start: date | None = None
    period_end: date | None = None

    @classmethod
    def from_candidate(cls, assignment_id: str, candidate: SiteCandidate) -> "AssignmentPair":
        return cls(
            assignment_id=assignment_id,
            site_id=candidate.site_id,
            period_start=candidate.window.period_start,
            period_end=candidate.window.period_end,
        )


@dataclass(frozen=True)
class ExecutionResult:
    execution_id: str
    assignment_id: str
    site_id: str
    outcome: ExecutionOutcome
    timestamp: datetime
    actor: str
    detail: str | None = None
    window: WindowKey | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in ("committed", "already_assigned")


__all__ = [
    "AssignmentStatus",
    "BatchStatus",
    "ExecutionMode",
    "ExecutionOutcome",
    "LedgerOperation",
    "POOLED_STATUSES",
    "SETTLED_STATUSES",
    "RETRYABLE_OUTCOMES",
    "WindowKey",
    "CapacityWindow",
    "AuditRecord",
    "StudentProfile",
    "SiteProfile",
    "AssignmentSnapshot",
    "BatchSnapshot",
    "BatchSummary",
    "MembershipResult",
    "EligibilityVerdict",
    "SiteCandidate",
    "ExcludedWindow",
    "Suggestion",
    "AssignmentPair",
    "ExecutionResult",
]
