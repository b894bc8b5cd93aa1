from __future__ import annotations

import threading

import pytest
from sqlalchemy import update

from placement.domain.errors import (
    InsufficientCapacityError,
    LedgerHaltedError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from placement.infrastructure.persistence.models import CapacityWindowModel
from tests.support import window_key


def test_configure_creates_full_window_and_audits(placement) -> None:
    key = window_key("SITE-A")
    window = placement.configure_window(key, 3, actor="capacity-sync")

    assert (window.max_capacity, window.available_spots, window.version) == (3, 3, 0)
    trail = placement.capacity_audit(key)
    assert [(r.operation, r.delta, r.resulting_available, r.actor) for r in trail] == [
        ("configure", 3, 3, "capacity-sync")
    ]


def test_reserve_decrements_and_bumps_version(placement) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 2, actor="capacity-sync")

    window = placement.ledger.reserve(key, 1, actor="tester")

    assert window.available_spots == 1
    assert window.version == 1
    assert placement.get_capacity(key).available_spots == 1
    last = placement.capacity_audit(key)[-1]
    assert (last.operation, last.delta, last.resulting_available) == ("reserve", -1, 1)


def test_reserve_beyond_available_fails_without_side_effects(placement) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 1, actor="capacity-sync")
    placement.ledger.reserve(key, actor="tester")

    with pytest.raises(InsufficientCapacityError) as excinfo:
        placement.ledger.reserve(key, actor="tester")

    assert excinfo.value.details["available"] == 0
    window = placement.get_capacity(key)
    assert (window.available_spots, window.version) == (0, 1)
    assert len(placement.capacity_audit(key)) == 2


def test_release_is_capped_at_max_capacity(placement) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 3, actor="capacity-sync")
    placement.ledger.reserve(key, actor="tester")

    window = placement.ledger.release(key, 2, actor="tester")

    assert window.available_spots == 3
    assert placement.capacity_audit(key)[-1].delta == 1
    again = placement.ledger.release(key, actor="tester")
    assert again.available_spots == 3
    assert placement.capacity_audit(key)[-1].delta == 0


def test_unknown_window_is_not_found(placement) -> None:
    key = window_key("NOWHERE")
    with pytest.raises(NotFoundError) as excinfo:
        placement.get_capacity(key)
    assert excinfo.value.error_code == "WINDOW_NOT_FOUND"
    with pytest.raises(NotFoundError):
        placement.ledger.reserve(key, actor="tester")
    with pytest.raises(NotFoundError):
        placement.ledger.release(key, actor="tester")


def test_reconfigure_shifts_available_by_delta(placement) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 4, actor="capacity-sync")
    placement.ledger.reserve(key, 3, actor="tester")

    grown = placement.configure_window(key, 6, actor="capacity-sync")
    assert (grown.max_capacity, grown.available_spots) == (6, 3)

    with pytest.raises(ValidationError) as excinfo:
        placement.configure_window(key, 2, actor="capacity-sync")
    assert excinfo.value.error_code == "CAPACITY_BELOW_COMMITTED"
    assert placement.get_capacity(key).max_capacity == 6


def test_configure_rejects_negative_capacity(placement) -> None:
    with pytest.raises(ValidationError):
        placement.configure_window(window_key("SITE-A"), -1, actor="capacity-sync")


def test_list_windows_filters_and_orders(placement) -> None:
    placement.configure_window(window_key("SITE-B"), 1, actor="sync")
    placement.configure_window(window_key("SITE-A"), 1, actor="sync")
    placement.configure_window(window_key("SITE-A", program_id="MED"), 1, actor="sync")

    nursing = placement.list_capacity(program_id="NURS")
    assert [w.site_id for w in nursing] == ["SITE-A", "SITE-B"]
    assert len(placement.list_capacity(site_id="SITE-A")) == 2


def test_invariant_violation_halts_window(placement, session_factory, metrics) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 3, actor="capacity-sync")
    with session_factory() as session:
        session.execute(update(CapacityWindowModel).values(available_spots=5))
        session.commit()

    with pytest.raises(LedgerInvariantError):
        placement.ledger.reserve(key, actor="tester")

    window = placement.get_capacity(key)
    assert window.halted is True
    assert window.available_spots == 5
    assert metrics.registry.get_sample_value("placement_halted_windows") == 1.0
    with pytest.raises(LedgerHaltedError):
        placement.ledger.reserve(key, actor="tester")
    with pytest.raises(LedgerHaltedError):
        placement.ledger.release(key, actor="tester")


def test_concurrent_reservations_never_oversell(placement, metrics) -> None:
    key = window_key("SITE-A")
    placement.configure_window(key, 5, actor="capacity-sync")
    barrier = threading.Barrier(10)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            placement.ledger.reserve(key, actor="worker")
            outcome = "ok"
        except InsufficientCapacityError:
            outcome = "full"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["full"] * 5 + ["ok"] * 5
    window = placement.get_capacity(key)
    assert window.available_spots == 0
    assert window.version == 5
    reserves = [r for r in placement.capacity_audit(key) if r.operation == "reserve"]
    assert len(reserves) == 5
    assert metrics.registry.get_sample_value(
        "placement_ledger_operations_total", {"operation": "reserve", "outcome": "ok"}
    ) == 5.0
