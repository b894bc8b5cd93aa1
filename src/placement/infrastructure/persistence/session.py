# -*- coding: utf-8 -*-
from __future__ import annotations

from time import perf_counter

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from placement.core.settings import DatabaseConfig
from placement.infrastructure.monitoring.metrics import PlacementMetrics

from .models import Base


def make_engine(config: DatabaseConfig, *, metrics: PlacementMetrics | None = None) -> Engine:
    is_sqlite = config.dsn.startswith("sqlite")
    connect_args: dict[str, object] = {}
    if is_sqlite:
        connect_args = {"check_same_thread": False, "timeout": config.busy_timeout_seconds}
    engine = create_engine(config.dsn, echo=config.echo, connect_args=connect_args)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - driver specific
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    if metrics is not None:

        @event.listens_for(engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):  # pragma: no cover - timing
            context._query_start_time = perf_counter()

        @event.listens_for(engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):  # pragma: no cover - timing
            started = getattr(context, "_query_start_time", None)
            if started is not None:
                metrics.db_query_duration.observe(perf_counter() - started)

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def create_session_factory(config: DatabaseConfig, *, metrics: PlacementMetrics | None = None) -> sessionmaker:
    """Build an engine for *config*, create missing tables and return a session factory."""

    engine = make_engine(config, metrics=metrics)
    init_schema(engine)
    return make_session_factory(engine)


__all__ = ["make_engine", "make_session_factory", "init_schema", "create_session_factory"]
