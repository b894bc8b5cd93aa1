# -*- coding: utf-8 -*-
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Dict


class ReasonCode(StrEnum):
    PROGRAM_MISMATCH = "PROGRAM_MISMATCH"
    PREREQUISITE_OUTSTANDING = "PREREQUISITE_OUTSTANDING"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    STUDENT_UNKNOWN = "STUDENT_UNKNOWN"
    CAPACITY_FULL = "CAPACITY_FULL"
    WINDOW_HALTED = "WINDOW_HALTED"


_MESSAGES: Dict[ReasonCode, str] = {
    ReasonCode.PROGRAM_MISMATCH: "Student is enrolled in a different program than the window.",
    ReasonCode.PREREQUISITE_OUTSTANDING: "Student has an outstanding prerequisite.",
    ReasonCode.WINDOW_EXPIRED: "Window period ends before the current scheduling cycle.",
    ReasonCode.STUDENT_UNKNOWN: "Student is not listed in the student directory.",
    ReasonCode.CAPACITY_FULL: "Window has no remaining capacity.",
    ReasonCode.WINDOW_HALTED: "Window is halted pending operator review.",
}


@dataclass(frozen=True, slots=True)
class Reason:
    code: ReasonCode
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def build_reason(code: ReasonCode) -> Reason:
    return Reason(code=code, message=_MESSAGES[code])


# Factor name -> phrases for high / moderate / low normalized values.
FACTOR_PHRASES: Dict[str, tuple[str, str, str]] = {
    "success": (
        "high historical success rate",
        "moderate historical success rate",
        "limited placement history",
    ),
    "headroom": (
        "ample remaining capacity",
        "some remaining capacity",
        "few spots remaining",
    ),
    "preference": (
        "matches student site preference",
        "fits student location preference",
        "outside stated preferences",
    ),
    "recency": (
        "no recent placements at this site",
        "moderately recent placement at this site",
        "recently received a placement",
    ),
}


def describe_factor(factor: str, value: float) -> str:
    high, moderate, low = FACTOR_PHRASES[factor]
    if value >= 0.75:
        return high
    if value >= 0.4:
        return moderate
    return low


__all__ = ["ReasonCode", "Reason", "build_reason", "describe_factor", "FACTOR_PHRASES"]
