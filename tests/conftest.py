from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from placement.allocation import PlacementEngine, build_engine
from placement.core.clock import FrozenClock
from placement.core.settings import DatabaseConfig, EngineSettings, LedgerRetryConfig
from placement.infrastructure.monitoring.metrics import PlacementMetrics
from placement.infrastructure.persistence import init_schema, make_engine, make_session_factory
from tests.support import START, DictDirectory, DictRegistry


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def db_engine(tmp_path):
    engine = make_engine(DatabaseConfig(dsn=f"sqlite:///{tmp_path / 'placement.db'}", busy_timeout_seconds=30))
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture()
def metrics() -> PlacementMetrics:
    return PlacementMetrics(CollectorRegistry())


@pytest.fixture()
def settings() -> EngineSettings:
    return EngineSettings(ledger=LedgerRetryConfig(attempts=12, backoff_base_seconds=0.005, backoff_cap_seconds=0.05))


@pytest.fixture()
def directory() -> DictDirectory:
    return DictDirectory()


@pytest.fixture()
def registry() -> DictRegistry:
    return DictRegistry()


@pytest.fixture()
def placement(session_factory, directory, registry, clock, settings, metrics) -> PlacementEngine:
    return build_engine(
        session_factory,
        directory=directory,
        registry=registry,
        clock=clock,
        settings=settings,
        metrics=metrics,
    )
