"""Transaction boundary shared by every ledger, execution and lifecycle write."""
from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
DEFAULT_OPERATION = "placement"


class UnitOfWorkError(RuntimeError):
    """A placement transaction could not be committed.

    ``operation`` names the engine step that owned the transaction; the driver
    error is chained as ``__cause__``.
    """

    def __init__(self, operation: str, reason: str = "COMMIT_FAILED") -> None:
        super().__init__(f"{reason}:{operation}")
        self.operation = operation
        self.reason = reason


class UnitOfWork(AbstractContextManager):
    """Commits on a clean exit, rolls back when the block raised."""

    session: Session
    operation: str

    def commit(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def rollback(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc is not None:
                self.rollback()
            elif not self._rolled_back:
                self.commit()
        finally:
            self.close()
        return False

    _rolled_back = False


class SQLAlchemyUnitOfWork(UnitOfWork):
    """One session per placement step; ``operation`` labels failures and logs."""

    def __init__(self, session_factory: SessionFactory, operation: str = DEFAULT_OPERATION) -> None:
        self.session = session_factory()
        self.operation = operation
        self._rolled_back = False

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(
                "placement transaction failed to commit",
                extra={"code": "UOW_COMMIT_FAILED", "operation": self.operation, "error": type(exc).__name__},
            )
            raise UnitOfWorkError(self.operation) from exc

    def rollback(self) -> None:
        self._rolled_back = True
        self.session.rollback()

    def close(self) -> None:
        self.session.close()


class UnitOfWorkFactory(Protocol):
    def __call__(self, operation: str = DEFAULT_OPERATION) -> UnitOfWork:
        """Open a unit of work for the named engine step."""


def uow_factory_for(session_factory: SessionFactory) -> UnitOfWorkFactory:
    def factory(operation: str = DEFAULT_OPERATION) -> UnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, operation)

    return factory


__all__ = [
    "SessionFactory",
    "SQLAlchemyUnitOfWork",
    "UnitOfWork",
    "UnitOfWorkError",
    "UnitOfWorkFactory",
    "uow_factory_for",
]
