"""SQLAlchemy persistence for the placement engine."""

from .models import (
    AssignmentModel,
    Base,
    BatchModel,
    CapacityAuditModel,
    CapacityWindowModel,
    ExecutionResultModel,
    OutboxMessageModel,
)
from .session import create_session_factory, init_schema, make_engine, make_session_factory

__all__ = [
    "AssignmentModel",
    "Base",
    "BatchModel",
    "CapacityAuditModel",
    "CapacityWindowModel",
    "ExecutionResultModel",
    "OutboxMessageModel",
    "create_session_factory",
    "init_schema",
    "make_engine",
    "make_session_factory",
]
