# -*- coding: utf-8 -*-
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

ASSIGNMENT_STATUSES = ("unassigned", "suggested", "assigned", "completed", "removed")
BATCH_STATUSES = ("draft", "active", "completed", "archived")
EXECUTION_OUTCOMES = (
    "committed",
    "insufficient_capacity",
    "stale_eligibility",
    "already_assigned",
    "validation_error",
    "cancelled",
)


def _new_id() -> str:
    return uuid4().hex


def _literal_check(column: str, values: tuple[str, ...], name: str) -> CheckConstraint:
    quoted = ",".join(f"'{value}'" for value in values)
    return CheckConstraint(f"{column} IN ({quoted})", name=name)


class CapacityWindowModel(Base):
    """Authoritative remaining capacity per (site, program, period)."""

    __tablename__ = "capacity_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False)
    program_id = Column(String(64), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    max_capacity = Column(Integer, nullable=False)
    available_spots = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    halted = Column(Boolean, nullable=False, default=False)
    halt_reason = Column(String(256), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("site_id", "program_id", "period_start", "period_end", name="ux_window_key"),
        CheckConstraint("available_spots >= 0", name="ck_window_available_non_negative"),
        CheckConstraint("max_capacity >= 0", name="ck_window_max_non_negative"),
        CheckConstraint("period_end >= period_start", name="ck_window_period_order"),
        Index("ix_window_program_site", "program_id", "site_id"),
    )


class CapacityAuditModel(Base):
    """Append-only trail of every ledger write."""

    __tablename__ = "capacity_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    window_id = Column(Integer, ForeignKey("capacity_windows.id", ondelete="CASCADE"), nullable=False)
    site_id = Column(String(64), nullable=False)
    program_id = Column(String(64), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    operation = Column(String(16), nullable=False)
    delta = Column(Integer, nullable=False)
    resulting_available = Column(Integer, nullable=False)
    actor = Column(String(128), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        _literal_check("operation", ("reserve", "release", "configure"), "ck_audit_operation"),
        Index("ix_audit_window", "window_id", "id"),
    )


class BatchModel(Base):
    __tablename__ = "batches"

    batch_id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    program_filter = Column(String(64), nullable=True)
    status = Column(Enum(*BATCH_STATUSES, name="batch_status", native_enum=False), nullable=False, default="draft")
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    assignments = relationship("AssignmentModel", back_populates="batch")

    __table_args__ = (_literal_check("status", BATCH_STATUSES, "ck_batch_status_literal"),)


class AssignmentModel(Base):
    """One student's placement record; rows are never deleted."""

    __tablename__ = "assignments"

    assignment_id = Column(String(36), primary_key=True, default=_new_id)
    student_id = Column(String(64), nullable=False)
    program_id = Column(String(64), nullable=False)
    status = Column(
        Enum(*ASSIGNMENT_STATUSES, name="assignment_status", native_enum=False),
        nullable=False,
        default="unassigned",
    )
    assigned_site_id = Column(String(64), nullable=True)
    window_id = Column(Integer, ForeignKey("capacity_windows.id"), nullable=True)
    batch_id = Column(String(36), ForeignKey("batches.batch_id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)

    batch = relationship("BatchModel", back_populates="assignments")
    window = relationship("CapacityWindowModel")

    __table_args__ = (
        _literal_check("status", ASSIGNMENT_STATUSES, "ck_assignment_status_literal"),
        CheckConstraint(
            "status != 'assigned' OR (assigned_site_id IS NOT NULL AND window_id IS NOT NULL)",
            name="ck_assigned_has_site",
        ),
        Index("ix_assignment_batch", "batch_id"),
        Index("ix_assignment_site", "assigned_site_id", "assigned_at"),
    )


class ExecutionResultModel(Base):
    __tablename__ = "execution_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(36), nullable=False)
    batch_id = Column(String(36), ForeignKey("batches.batch_id"), nullable=False)
    assignment_id = Column(String(36), nullable=False)
    site_id = Column(String(64), nullable=False)
    mode = Column(String(16), nullable=False)
    outcome = Column(Enum(*EXECUTION_OUTCOMES, name="execution_outcome", native_enum=False), nullable=False)
    detail = Column(String(256), nullable=True)
    actor = Column(String(128), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        _literal_check("outcome", EXECUTION_OUTCOMES, "ck_execution_outcome_literal"),
        _literal_check("mode", ("atomic", "best_effort"), "ck_execution_mode_literal"),
        Index("ix_execution_lookup", "execution_id", "assignment_id"),
    )


class OutboxMessageModel(Base):
    """Transport-agnostic outbox records relayed to the notification dispatcher."""

    __tablename__ = "outbox_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    event_id = Column(String(36), nullable=False, unique=True)
    aggregate_type = Column(String(64), nullable=False)
    aggregate_id = Column(String(64), nullable=False)
    event_type = Column(String(96), nullable=False)
    payload_json = Column(Text, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum("PENDING", "SENT", "FAILED", name="outbox_status", native_enum=False),
        nullable=False,
        default="PENDING",
    )
    published_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(String(256), nullable=True)

    __table_args__ = (
        CheckConstraint("length(payload_json) <= 32768", name="ck_outbox_payload_size"),
        CheckConstraint("retry_count >= 0", name="ck_outbox_retry_non_negative"),
        _literal_check("status", ("PENDING", "SENT", "FAILED"), "ck_outbox_status_literal"),
        Index("ix_outbox_dispatch", "status", "available_at"),
    )


__all__ = [
    "Base",
    "CapacityWindowModel",
    "CapacityAuditModel",
    "BatchModel",
    "AssignmentModel",
    "ExecutionResultModel",
    "OutboxMessageModel",
    "ASSIGNMENT_STATUSES",
    "BATCH_STATUSES",
    "EXECUTION_OUTCOMES",
]
