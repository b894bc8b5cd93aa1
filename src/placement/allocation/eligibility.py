"""Eligibility rules deciding whether a student may occupy a capacity window."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, Protocol, Sequence

from placement.domain.reasons import ReasonCode, build_reason

from .contracts import CapacityWindow, EligibilityVerdict, StudentProfile


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    details: Dict[str, object]


class Rule(Protocol):
    code: ReasonCode

    def check(self, student: StudentProfile, window: CapacityWindow, as_of: date) -> RuleResult:
        """Evaluate the rule on one (student, window) pair."""


@dataclass(frozen=True)
class ProgramMatchRule:
    """The student's enrolled program must be the window's program."""

    code: ReasonCode = ReasonCode.PROGRAM_MISMATCH

    def check(self, student: StudentProfile, window: CapacityWindow, as_of: date) -> RuleResult:
        if student.program_id == window.program_id:
            return RuleResult(passed=True, details={})
        return RuleResult(
            passed=False,
            details={"student_program": student.program_id, "window_program": window.program_id},
        )


@dataclass(frozen=True)
class PrerequisitesClearedRule:
    code: ReasonCode = ReasonCode.PREREQUISITE_OUTSTANDING

    def check(self, student: StudentProfile, window: CapacityWindow, as_of: date) -> RuleResult:
        outstanding = sorted(student.outstanding_prerequisites)
        return RuleResult(passed=not outstanding, details={"outstanding": outstanding} if outstanding else {})


@dataclass(frozen=True)
class WindowOpenRule:
    """A window whose period ends on or before the cycle date is expired."""

    code: ReasonCode = ReasonCode.WINDOW_EXPIRED

    def check(self, student: StudentProfile, window: CapacityWindow, as_of: date) -> RuleResult:
        if window.period_end > as_of:
            return RuleResult(passed=True, details={})
        return RuleResult(
            passed=False,
            details={"period_end": window.period_end.isoformat(), "as_of": as_of.isoformat()},
        )


DEFAULT_RULES: tuple[Rule, ...] = (ProgramMatchRule(), PrerequisitesClearedRule(), WindowOpenRule())


class EligibilityFilter:
    """Pure evaluation of the eligibility rules; every failing rule is reported."""

    def __init__(self, rules: Sequence[Rule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    def is_eligible(
        self,
        student: StudentProfile | None,
        window: CapacityWindow,
        *,
        as_of: date,
    ) -> EligibilityVerdict:
        if student is None:
            return EligibilityVerdict(eligible=False, reasons=(build_reason(ReasonCode.STUDENT_UNKNOWN),))
        reasons = tuple(
            build_reason(rule.code) for rule in self._rules if not rule.check(student, window, as_of).passed
        )
        return EligibilityVerdict(eligible=not reasons, reasons=reasons)


__all__ = [
    "EligibilityFilter",
    "ProgramMatchRule",
    "PrerequisitesClearedRule",
    "WindowOpenRule",
    "RuleResult",
    "DEFAULT_RULES",
]
