"""Session-scoped repositories over the placement tables."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from placement.infrastructure.persistence.models import (
    AssignmentModel,
    BatchModel,
    CapacityAuditModel,
    CapacityWindowModel,
    ExecutionResultModel,
)

from .contracts import (
    AssignmentSnapshot,
    AuditRecord,
    BatchSnapshot,
    CapacityWindow,
    ExecutionResult,
    WindowKey,
)


def window_key_of(model: CapacityWindowModel) -> WindowKey:
    return WindowKey(
        site_id=model.site_id,
        program_id=model.program_id,
        period_start=model.period_start,
        period_end=model.period_end,
    )


def window_snapshot(model: CapacityWindowModel) -> CapacityWindow:
    return CapacityWindow(
        key=window_key_of(model),
        max_capacity=model.max_capacity,
        available_spots=model.available_spots,
        version=model.version,
        halted=bool(model.halted),
        halt_reason=model.halt_reason,
    )


def assignment_snapshot(model: AssignmentModel) -> AssignmentSnapshot:
    return AssignmentSnapshot(
        assignment_id=model.assignment_id,
        student_id=model.student_id,
        program_id=model.program_id,
        status=model.status,
        assigned_site_id=model.assigned_site_id,
        batch_id=model.batch_id,
        window=window_key_of(model.window) if model.window is not None else None,
        assigned_at=model.assigned_at,
        version=model.version,
    )


class WindowRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, key: WindowKey) -> CapacityWindowModel | None:
        stmt = select(CapacityWindowModel).where(
            CapacityWindowModel.site_id == key.site_id,
            CapacityWindowModel.program_id == key.program_id,
            CapacityWindowModel.period_start == key.period_start,
            CapacityWindowModel.period_end == key.period_end,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_by_id(self, window_id: int) -> CapacityWindowModel | None:
        return self._session.get(CapacityWindowModel, window_id)

    def list_all(self, *, program_id: str | None = None, site_id: str | None = None) -> Sequence[CapacityWindowModel]:
        stmt = select(CapacityWindowModel)
        if program_id is not None:
            stmt = stmt.where(CapacityWindowModel.program_id == program_id)
        if site_id is not None:
            stmt = stmt.where(CapacityWindowModel.site_id == site_id)
        stmt = stmt.order_by(
            CapacityWindowModel.site_id,
            CapacityWindowModel.program_id,
            CapacityWindowModel.period_start,
            CapacityWindowModel.period_end,
        )
        return self._session.execute(stmt).scalars().all()

    def add(self, model: CapacityWindowModel) -> None:
        self._session.add(model)

    def conditional_set(
        self,
        *,
        window_id: int,
        expected_version: int,
        available_spots: int,
        max_capacity: int,
        now: datetime,
    ) -> bool:
        """Write new counters only if nobody bumped the version since it was read."""

        stmt = (
            update(CapacityWindowModel)
            .where(
                CapacityWindowModel.id == window_id,
                CapacityWindowModel.version == expected_version,
            )
            .values(
                available_spots=available_spots,
                max_capacity=max_capacity,
                version=expected_version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount == 1

    def halt(self, window_id: int, reason: str, now: datetime) -> None:
        stmt = (
            update(CapacityWindowModel)
            .where(CapacityWindowModel.id == window_id)
            .values(halted=True, halt_reason=reason[:256], updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self._session.execute(stmt)

    def count_halted(self) -> int:
        stmt = select(func.count()).select_from(CapacityWindowModel).where(CapacityWindowModel.halted.is_(True))
        return int(self._session.execute(stmt).scalar_one())


class AuditRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, window: CapacityWindowModel, *, operation: str, delta: int, resulting_available: int, actor: str, now: datetime) -> None:
        self._session.add(
            CapacityAuditModel(
                window_id=window.id,
                site_id=window.site_id,
                program_id=window.program_id,
                period_start=window.period_start,
                period_end=window.period_end,
                operation=operation,
                delta=delta,
                resulting_available=resulting_available,
                actor=actor,
                occurred_at=now,
            )
        )

    def for_window(self, window_id: int) -> list[AuditRecord]:
        stmt = (
            select(CapacityAuditModel)
            .where(CapacityAuditModel.window_id == window_id)
            .order_by(CapacityAuditModel.id)
        )
        return [
            AuditRecord(
                window=WindowKey(row.site_id, row.program_id, row.period_start, row.period_end),
                operation=row.operation,
                delta=row.delta,
                resulting_available=row.resulting_available,
                actor=row.actor,
                timestamp=row.occurred_at,
            )
            for row in self._session.execute(stmt).scalars()
        ]


class AssignmentRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, assignment_id: str) -> AssignmentModel | None:
        return self._session.get(AssignmentModel, assignment_id)

    def add(self, model: AssignmentModel) -> None:
        self._session.add(model)

    def members(self, batch_id: str) -> Sequence[AssignmentModel]:
        stmt = (
            select(AssignmentModel)
            .where(AssignmentModel.batch_id == batch_id)
            .order_by(AssignmentModel.assignment_id)
        )
        return self._session.execute(stmt).scalars().all()

    def conditional_update(self, assignment_id: str, *, expected_version: int, **values: object) -> bool:
        stmt = (
            update(AssignmentModel)
            .where(
                AssignmentModel.assignment_id == assignment_id,
                AssignmentModel.version == expected_version,
            )
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount == 1

    def last_assigned_at(self, site_ids: Iterable[str]) -> dict[str, datetime]:
        ids = sorted(set(site_ids))
        if not ids:
            return {}
        stmt = (
            select(AssignmentModel.assigned_site_id, func.max(AssignmentModel.assigned_at))
            .where(
                AssignmentModel.assigned_site_id.in_(ids),
                AssignmentModel.assigned_at.is_not(None),
            )
            .group_by(AssignmentModel.assigned_site_id)
        )
        return {site_id: assigned_at for site_id, assigned_at in self._session.execute(stmt)}

    def count_assigned(self, window_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(AssignmentModel)
            .where(AssignmentModel.window_id == window_id, AssignmentModel.status == "assigned")
        )
        return int(self._session.execute(stmt).scalar_one())


class BatchRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, batch_id: str) -> BatchModel | None:
        return self._session.get(BatchModel, batch_id)

    def add(self, model: BatchModel) -> None:
        self._session.add(model)

    def snapshot(self, model: BatchModel) -> BatchSnapshot:
        members = AssignmentRepository(self._session).members(model.batch_id)
        return BatchSnapshot(
            batch_id=model.batch_id,
            name=model.name,
            description=model.description,
            program_filter=model.program_filter,
            status=model.status,
            created_by=model.created_by,
            created_at=model.created_at,
            member_ids=tuple(member.assignment_id for member in members),
        )


class ExecutionResultRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, result: ExecutionResult, *, batch_id: str, mode: str) -> None:
        self._session.add(
            ExecutionResultModel(
                execution_id=result.execution_id,
                batch_id=batch_id,
                assignment_id=result.assignment_id,
                site_id=result.site_id,
                mode=mode,
                outcome=result.outcome,
                detail=(result.detail or None) and result.detail[:256],
                actor=result.actor,
                occurred_at=result.timestamp,
            )
        )

    def for_execution(self, execution_id: str) -> Sequence[ExecutionResultModel]:
        stmt = (
            select(ExecutionResultModel)
            .where(ExecutionResultModel.execution_id == execution_id)
            .order_by(ExecutionResultModel.id)
        )
        return self._session.execute(stmt).scalars().all()


__all__ = [
    "WindowRepository",
    "AuditRepository",
    "AssignmentRepository",
    "BatchRepository",
    "ExecutionResultRepository",
    "window_key_of",
    "window_snapshot",
    "assignment_snapshot",
]
