"""Deterministic scoring of candidate capacity windows per unassigned student."""
from __future__ import annotations

import logging
from datetime import date, datetime
from time import perf_counter
from typing import Iterable, Mapping, Sequence

from placement.core.clock import Clock
from placement.core.settings import RankingConfig
from placement.domain.errors import NotFoundError
from placement.domain.reasons import ReasonCode, build_reason, describe_factor
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from .contracts import (
    POOLED_STATUSES,
    AssignmentPair,
    AssignmentSnapshot,
    CapacityWindow,
    ExcludedWindow,
    SiteCandidate,
    SiteProfile,
    StudentProfile,
    Suggestion,
)
from .eligibility import EligibilityFilter
from .ledger import CapacityLedger
from .providers import SiteRegistry, StudentDirectory
from .repositories import AssignmentRepository, BatchRepository, assignment_snapshot
from .uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

FACTORS = ("headroom", "success", "preference", "recency")
NEUTRAL_PREFERENCE = 0.5
PREFERENCE_RANK_STEP = 0.1


def headroom_factor(window: CapacityWindow) -> float:
    return window.headroom_ratio


def success_factor(site: SiteProfile | None, program_id: str) -> float:
    if site is None:
        return 0.0
    return site.success_rate(program_id)


def preference_factor(student: StudentProfile, site_id: str, site: SiteProfile | None) -> float:
    """1.0 for the first preferred site, decaying by rank down to 0.5.

    A site in a preferred location scores 0.5, as does any site when the student
    stated no preferences at all.
    """

    if not student.has_preferences:
        return NEUTRAL_PREFERENCE
    if site_id in student.preferred_site_ids:
        rank = student.preferred_site_ids.index(site_id)
        return max(1.0 - PREFERENCE_RANK_STEP * rank, NEUTRAL_PREFERENCE)
    if site is not None and site.location and site.location in student.preferred_locations:
        return NEUTRAL_PREFERENCE
    return 0.0


def recency_factor(last_assigned: datetime | None, as_of: date, horizon_days: int) -> float:
    if last_assigned is None:
        return 1.0
    days = max((as_of - last_assigned.date()).days, 0)
    return min(days / horizon_days, 1.0)


def combine(factors: Mapping[str, float], weights: Mapping[str, float]) -> tuple[int, list[tuple[str, float]]]:
    """Return the 0-100 score and each factor's weighted contribution."""

    total = sum(weights.values())
    contributions = [(name, weights[name] / total * factors[name]) for name in FACTORS]
    raw = sum(value for _, value in contributions)
    score = int(round(raw * 100))
    return min(max(score, 0), 100), contributions


def reasoning_for(
    factors: Mapping[str, float],
    contributions: Sequence[tuple[str, float]],
    limit: int,
) -> tuple[str, ...]:
    dominant = sorted(
        (item for item in contributions if item[1] > 0),
        key=lambda item: (-item[1], item[0]),
    )
    return tuple(describe_factor(name, factors[name]) for name, _ in dominant[:limit])


def candidate_sort_key(candidate: SiteCandidate) -> tuple:
    return (-candidate.score, candidate.site_id, candidate.window.period_start, candidate.window.period_end)


def default_pairs(suggestions: Iterable[Suggestion]) -> list[AssignmentPair]:
    """Top candidate per suggestion, as the initial executor selection."""

    return [
        AssignmentPair.from_candidate(suggestion.assignment_id, suggestion.candidates[0])
        for suggestion in suggestions
        if suggestion.candidates
    ]


class SuggestionRanker:
    """Produces read-only suggestions; never mutates ledger or assignment state."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        ledger: CapacityLedger,
        eligibility: EligibilityFilter,
        directory: StudentDirectory,
        registry: SiteRegistry,
        clock: Clock,
        config: RankingConfig | None = None,
        metrics: PlacementMetrics | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._ledger = ledger
        self._eligibility = eligibility
        self._directory = directory
        self._registry = registry
        self._clock = clock
        self._config = config or RankingConfig()
        self._metrics = metrics or PlacementMetrics()

    def generate(self, batch_id: str, *, as_of: date | None = None) -> list[Suggestion]:
        started = perf_counter()
        cycle = as_of or self._clock.today()
        with self._uow_factory() as uow:
            batch = BatchRepository(uow.session).get(batch_id)
            if batch is None:
                raise NotFoundError("batch", batch_id)
            assignments = [
                assignment_snapshot(model)
                for model in AssignmentRepository(uow.session).members(batch_id)
                if model.status in POOLED_STATUSES
            ]

        windows_by_program: dict[str, list[CapacityWindow]] = {}
        for program_id in sorted({assignment.program_id for assignment in assignments}):
            windows_by_program[program_id] = self._ledger.list_windows(program_id=program_id)

        site_ids = {window.site_id for windows in windows_by_program.values() for window in windows}
        with self._uow_factory() as uow:
            last_assigned = AssignmentRepository(uow.session).last_assigned_at(site_ids)
        sites = {site_id: self._registry.get_site(site_id) for site_id in sorted(site_ids)}

        suggestions = [
            self._suggest(
                assignment,
                windows_by_program.get(assignment.program_id, []),
                sites=sites,
                last_assigned=last_assigned,
                as_of=cycle,
            )
            for assignment in assignments
        ]
        self._metrics.suggestion_duration.observe(perf_counter() - started)
        logger.info(
            "suggestions generated",
            extra={"code": "SUGGESTIONS_READY", "batch_id": batch_id, "assignments": len(suggestions)},
        )
        return suggestions

    def score_window(
        self,
        student: StudentProfile,
        window: CapacityWindow,
        *,
        site: SiteProfile | None,
        last_assigned: datetime | None,
        as_of: date,
    ) -> SiteCandidate:
        factors = {
            "headroom": headroom_factor(window),
            "success": success_factor(site, window.program_id),
            "preference": preference_factor(student, window.site_id, site),
            "recency": recency_factor(last_assigned, as_of, self._config.recency_horizon_days),
        }
        score, contributions = combine(factors, self._config.weights.as_dict())
        return SiteCandidate(
            site_id=window.site_id,
            site_name=site.name if site is not None else window.site_id,
            window=window.key,
            score=score,
            reasoning=reasoning_for(factors, contributions, self._config.max_reasoning),
            available_spots=window.available_spots,
            max_capacity=window.max_capacity,
            factors=tuple((name, factors[name]) for name in FACTORS),
        )

    def _suggest(
        self,
        assignment: AssignmentSnapshot,
        windows: Sequence[CapacityWindow],
        *,
        sites: Mapping[str, SiteProfile | None],
        last_assigned: Mapping[str, datetime],
        as_of: date,
    ) -> Suggestion:
        student = self._directory.get_student(assignment.student_id)
        candidates: list[SiteCandidate] = []
        excluded: list[ExcludedWindow] = []
        for window in windows:
            verdict = self._eligibility.is_eligible(student, window, as_of=as_of)
            reasons = list(verdict.reasons)
            if window.halted:
                reasons.append(build_reason(ReasonCode.WINDOW_HALTED))
            elif window.available_spots <= 0:
                reasons.append(build_reason(ReasonCode.CAPACITY_FULL))
            if reasons:
                excluded.append(ExcludedWindow(window=window.key, reasons=tuple(reasons)))
                continue
            candidates.append(
                self.score_window(
                    student,
                    window,
                    site=sites.get(window.site_id),
                    last_assigned=last_assigned.get(window.site_id),
                    as_of=as_of,
                )
            )
        candidates.sort(key=candidate_sort_key)
        return Suggestion(
            assignment_id=assignment.assignment_id,
            student_id=assignment.student_id,
            student_name=student.name if student is not None else None,
            program_id=assignment.program_id,
            candidates=tuple(candidates),
            excluded=tuple(excluded),
        )


__all__ = [
    "SuggestionRanker",
    "default_pairs",
    "headroom_factor",
    "success_factor",
    "preference_factor",
    "recency_factor",
    "combine",
    "reasoning_for",
]
