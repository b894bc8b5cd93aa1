"""Settings-driven construction of the placement HTTP application."""
from __future__ import annotations

import logging

from fastapi import FastAPI

from placement.allocation.providers import SiteRegistry, StudentDirectory
from placement.allocation.service import build_engine
from placement.core.clock import Clock, SystemClock
from placement.core.logging_config import configure_logging
from placement.core.settings import EngineSettings, get_settings
from placement.infrastructure.monitoring.metrics import PlacementMetrics
from placement.infrastructure.persistence import create_session_factory

from .routes import create_app

logger = logging.getLogger(__name__)


def create_application(
    settings: EngineSettings | None = None,
    *,
    directory: StudentDirectory,
    registry: SiteRegistry,
    clock: Clock | None = None,
    metrics: PlacementMetrics | None = None,
) -> FastAPI:
    """Wire logging, clock, database and engine from *settings* (``PLACEMENT_*`` env by default)."""

    settings = settings or get_settings()
    configure_logging(settings.service_name, settings.log_level, json_logs=settings.json_logs)
    clock = clock or SystemClock.for_timezone(settings.timezone)
    metrics = metrics or PlacementMetrics()
    session_factory = create_session_factory(settings.database, metrics=metrics)
    engine = build_engine(
        session_factory,
        directory=directory,
        registry=registry,
        clock=clock,
        settings=settings,
        metrics=metrics,
    )

    app = create_app(engine, metrics=metrics)
    app.state.settings = settings
    app.state.clock = clock
    app.state.session_factory = session_factory
    logger.info(
        "placement api configured",
        extra={"code": "APP_CONFIGURED", "service": settings.service_name, "timezone": settings.timezone},
    )
    return app


__all__ = ["create_application"]
