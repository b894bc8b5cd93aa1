"""Request and response bodies for the placement HTTP API."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from placement.allocation.contracts import (
    AssignmentPair,
    BatchSnapshot,
    BatchSummary,
    CapacityWindow,
    ExecutionResult,
    MembershipResult,
    Suggestion,
    WindowKey,
)
from placement.domain.errors import PlacementError


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="forbid")


class ErrorBody(BaseModel):
    error: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: PlacementError) -> "ErrorBody":
        return cls(error=error.error_code, message=error.message, details=dict(error.details))


class CreateBatchRequest(_Request):
    name: str = Field(min_length=1, max_length=256)
    program_filter: str | None = Field(default=None, validation_alias=AliasChoices("programFilter", "program_filter"))
    description: str | None = None
    created_by: str | None = Field(default=None, validation_alias=AliasChoices("createdBy", "created_by"))

    @field_validator("program_filter", "description", "created_by", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class AddStudentsRequest(_Request):
    assignment_ids: list[str] = Field(
        min_length=1,
        validation_alias=AliasChoices("assignmentIds", "assignment_ids"),
    )


class TransitionRequest(_Request):
    status: Literal["draft", "active", "completed", "archived"] = Field(
        validation_alias=AliasChoices("status", "newStatus", "new_status"),
    )


class PairBody(_Request):
    assignment_id: str = Field(min_length=1, validation_alias=AliasChoices("assignmentId", "assignment_id"))
    site_id: str = Field(min_length=1, validation_alias=AliasChoices("siteId", "site_id"))
    period_start: date | None = Field(default=None, validation_alias=AliasChoices("periodStart", "period_start"))
    period_end: date | None = Field(default=None, validation_alias=AliasChoices("periodEnd", "period_end"))

    def to_pair(self) -> AssignmentPair:
        return AssignmentPair(
            assignment_id=self.assignment_id,
            site_id=self.site_id,
            period_start=self.period_start,
            period_end=self.period_end,
        )


class ExecutionRequest(_Request):
    pairs: list[PairBody] = Field(min_length=1)
    mode: Literal["atomic", "best_effort"] = Field(default="best_effort")
    actor: str = Field(default="api", min_length=1, max_length=128)
    execution_id: str | None = Field(
        default=None,
        max_length=36,
        validation_alias=AliasChoices("executionId", "execution_id"),
    )
    as_of: date | None = Field(default=None, validation_alias=AliasChoices("asOf", "as_of"))


class RetryRequest(_Request):
    mode: Literal["atomic", "best_effort"] = Field(default="best_effort")
    actor: str = Field(default="api", min_length=1, max_length=128)
    as_of: date | None = Field(default=None, validation_alias=AliasChoices("asOf", "as_of"))


class RemoveStudentResponse(BaseModel):
    assignment_id: str
    status: str


class BatchResponse(BaseModel):
    batch_id: str
    name: str
    description: str | None
    program_filter: str | None
    status: str
    created_by: str | None
    created_at: datetime
    member_ids: list[str]

    @classmethod
    def from_snapshot(cls, snapshot: BatchSnapshot) -> "BatchResponse":
        return cls(
            batch_id=snapshot.batch_id,
            name=snapshot.name,
            description=snapshot.description,
            program_filter=snapshot.program_filter,
            status=snapshot.status,
            created_by=snapshot.created_by,
            created_at=snapshot.created_at,
            member_ids=list(snapshot.member_ids),
        )


class BatchSummaryResponse(BaseModel):
    batch_id: str
    status: str
    member_count: int
    status_counts: dict[str, int]
    assigned_ratio: float

    @classmethod
    def from_summary(cls, summary: BatchSummary) -> "BatchSummaryResponse":
        return cls(
            batch_id=summary.batch_id,
            status=summary.status,
            member_count=summary.member_count,
            status_counts=dict(summary.status_counts),
            assigned_ratio=summary.assigned_ratio,
        )


class MembershipResponse(BaseModel):
    added: list[str]
    errors: dict[str, ErrorBody]

    @classmethod
    def from_result(cls, result: MembershipResult) -> "MembershipResponse":
        return cls(
            added=list(result.added),
            errors={key: ErrorBody.from_error(error) for key, error in result.errors.items()},
        )


class WindowBody(BaseModel):
    site_id: str
    program_id: str
    period_start: date
    period_end: date

    @classmethod
    def from_key(cls, key: WindowKey) -> "WindowBody":
        return cls(
            site_id=key.site_id,
            program_id=key.program_id,
            period_start=key.period_start,
            period_end=key.period_end,
        )


class CapacityResponse(WindowBody):
    max_capacity: int
    available_spots: int
    version: int
    halted: bool
    halt_reason: str | None = None

    @classmethod
    def from_window(cls, window: CapacityWindow) -> "CapacityResponse":
        return cls(
            site_id=window.site_id,
            program_id=window.program_id,
            period_start=window.period_start,
            period_end=window.period_end,
            max_capacity=window.max_capacity,
            available_spots=window.available_spots,
            version=window.version,
            halted=window.halted,
            halt_reason=window.halt_reason,
        )


class CandidateBody(BaseModel):
    site_id: str
    site_name: str
    window: WindowBody
    score: int
    reasoning: list[str]
    available_spots: int
    max_capacity: int
    factors: dict[str, float]


class ExcludedBody(BaseModel):
    window: WindowBody
    reasons: list[str]


class SuggestionResponse(BaseModel):
    assignment_id: str
    student_id: str
    student_name: str | None
    program_id: str
    confidence_score: int
    confidence_label: str
    candidates: list[CandidateBody]
    excluded: list[ExcludedBody]

    @classmethod
    def from_suggestion(cls, suggestion: Suggestion) -> "SuggestionResponse":
        return cls(
            assignment_id=suggestion.assignment_id,
            student_id=suggestion.student_id,
            student_name=suggestion.student_name,
            program_id=suggestion.program_id,
            confidence_score=suggestion.confidence_score,
            confidence_label=suggestion.confidence_label,
            candidates=[
                CandidateBody(
                    site_id=candidate.site_id,
                    site_name=candidate.site_name,
                    window=WindowBody.from_key(candidate.window),
                    score=candidate.score,
                    reasoning=list(candidate.reasoning),
                    available_spots=candidate.available_spots,
                    max_capacity=candidate.max_capacity,
                    factors=dict(candidate.factors),
                )
                for candidate in suggestion.candidates
            ],
            excluded=[
                ExcludedBody(
                    window=WindowBody.from_key(item.window),
                    reasons=[str(reason.code) for reason in item.reasons],
                )
                for item in suggestion.excluded
            ],
        )


class ExecutionResultBody(BaseModel):
    assignment_id: str
    site_id: str
    outcome: str
    detail: str | None
    window: WindowBody | None
    actor: str
    timestamp: datetime

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecutionResultBody":
        return cls(
            assignment_id=result.assignment_id,
            site_id=result.site_id,
            outcome=result.outcome,
            detail=result.detail,
            window=WindowBody.from_key(result.window) if result.window is not None else None,
            actor=result.actor,
            timestamp=result.timestamp,
        )


class ExecutionResponse(BaseModel):
    execution_id: str | None
    results: list[ExecutionResultBody]

    @classmethod
    def from_results(cls, results: list[ExecutionResult]) -> "ExecutionResponse":
        execution_id = results[0].execution_id if results else None
        return cls(execution_id=execution_id, results=[ExecutionResultBody.from_result(item) for item in results])


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool
