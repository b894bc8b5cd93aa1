from __future__ import annotations

import json
import threading

import pytest
from sqlalchemy import select

from placement.allocation import AssignmentPair, CancellationToken, StudentProfile
from placement.allocation.outbox import derive_event_id
from placement.domain.errors import AlreadyAssignedError, NotFoundError, ValidationError
from placement.infrastructure.persistence.models import ExecutionResultModel, OutboxMessageModel
from tests.support import PROGRAM, enroll, open_batch, window_key


def _pairs(ids, site_id="SITE-A"):
    return [AssignmentPair(assignment_id, site_id) for assignment_id in ids]


def _outcomes(results):
    return {result.assignment_id: (result.outcome, result.detail) for result in results}


@pytest.fixture()
def three_students(placement, directory):
    ids = sorted(enroll(placement, directory, f"S{index}") for index in range(1, 4))
    return ids, open_batch(placement, ids)


def test_capacity_shortfall_commits_in_assignment_order(placement, three_students, metrics) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 2, actor="sync")

    results = placement.execute_assignment(batch_id, _pairs(reversed(ids)), actor="coordinator")

    assert [r.assignment_id for r in results] == ids
    assert [r.outcome for r in results] == ["committed", "committed", "insufficient_capacity"]
    assert results[2].detail == "INSUFFICIENT_CAPACITY"
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 0
    assigned = placement.get_assignment(ids[0])
    assert (assigned.status, assigned.assigned_site_id, assigned.window) == ("assigned", "SITE-A", window_key("SITE-A"))
    assert placement.get_assignment(ids[2]).status == "unassigned"
    assert metrics.registry.get_sample_value(
        "placement_execution_outcomes_total", {"mode": "best_effort", "outcome": "committed"}
    ) == 2.0


def test_rerunning_the_same_selection_is_idempotent(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 2, actor="sync")
    placement.execute_assignment(batch_id, _pairs(ids))

    again = placement.execute_assignment(batch_id, _pairs(ids))

    assert [r.outcome for r in again] == ["already_assigned", "already_assigned", "insufficient_capacity"]
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 0
    assert [a.operation for a in placement.capacity_audit(window_key("SITE-A"))].count("reserve") == 2


def test_pair_for_a_different_site_is_rejected(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    placement.configure_window(window_key("SITE-B"), 3, actor="sync")
    placement.execute_assignment(batch_id, _pairs(ids[:1]))

    [result] = placement.execute_assignment(batch_id, _pairs(ids[:1], "SITE-B"))

    assert (result.outcome, result.detail) == ("validation_error", "ASSIGNED_TO_DIFFERENT_SITE")
    assert placement.get_capacity(window_key("SITE-B")).available_spots == 3


def test_unknown_window_and_duplicates_are_validation_errors(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    placement.configure_window(window_key("SITE-B"), 3, actor="sync")

    results = placement.execute_assignment(
        batch_id,
        [
            AssignmentPair(ids[0], "SITE-B"),
            AssignmentPair(ids[0], "SITE-A"),
            AssignmentPair(ids[1], "SITE-Z"),
        ],
    )

    assert [(r.site_id, r.outcome, r.detail) for r in results] == [
        ("SITE-A", "committed", None),
        ("SITE-B", "validation_error", "DUPLICATE_PAIR"),
        ("SITE-Z", "validation_error", "WINDOW_NOT_FOUND"),
    ]
    assert placement.get_capacity(window_key("SITE-B")).available_spots == 3


def test_eligibility_is_rechecked_at_execution(placement, directory, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    student_id = placement.get_assignment(ids[1]).student_id
    directory.add(StudentProfile(student_id, PROGRAM, outstanding_prerequisites=frozenset({"CPR"})))

    results = placement.execute_assignment(batch_id, _pairs(ids))

    assert _outcomes(results)[ids[1]] == ("stale_eligibility", "PREREQUISITE_OUTSTANDING")
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 1


def test_atomic_failure_compensates_every_reservation(placement, directory) -> None:
    first = enroll(placement, directory, "S1")
    contenders = [enroll(placement, directory, "S2"), enroll(placement, directory, "S3")]
    batch_id = open_batch(placement, [first, *contenders])
    placement.configure_window(window_key("SITE-A"), 5, actor="sync")
    placement.configure_window(window_key("SITE-B"), 1, actor="sync")
    root = max(contenders)

    results = placement.execute_assignment(
        batch_id,
        [AssignmentPair(first, "SITE-A"), *_pairs(contenders, "SITE-B")],
        mode="atomic",
    )

    outcomes = _outcomes(results)
    assert outcomes[root] == ("insufficient_capacity", "INSUFFICIENT_CAPACITY")
    assert outcomes[first] == ("insufficient_capacity", f"ABORTED_BY:{root}")
    assert outcomes[min(contenders)] == ("insufficient_capacity", f"ABORTED_BY:{root}")
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 5
    assert placement.get_capacity(window_key("SITE-B")).available_spots == 1
    assert {placement.get_assignment(i).status for i in (first, *contenders)} == {"unassigned"}


def test_atomic_success_commits_everything(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")

    results = placement.execute_assignment(batch_id, _pairs(ids), mode="atomic")

    assert {r.outcome for r in results} == {"committed"}
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 0


def test_pre_cancelled_token_touches_nothing(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    token = CancellationToken()
    token.cancel()

    results = placement.executor.execute(batch_id, _pairs(ids), token=token)

    assert {(r.outcome, r.detail) for r in results} == {("cancelled", "EXECUTION_CANCELLED")}
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 3


def test_cancel_mid_run_then_retry_remaining(placement, directory, three_students, monkeypatch) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    original = directory.get_student
    requests = []

    def cancelling(student_id):
        requests.append(placement.cancel_execution("exec-1"))
        return original(student_id)

    monkeypatch.setattr(directory, "get_student", cancelling)

    results = placement.execute_assignment(batch_id, _pairs(ids), execution_id="exec-1")

    assert requests[0] is True
    assert [r.outcome for r in results] == ["committed", "cancelled", "cancelled"]
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 2

    retried = placement.retry_execution(batch_id, "exec-1")

    assert [(r.assignment_id, r.outcome) for r in retried] == [(ids[1], "committed"), (ids[2], "committed")]
    assert {r.execution_id for r in retried} != {"exec-1"}
    assert placement.get_capacity(window_key("SITE-A")).available_spots == 0


def test_retry_after_capacity_grows(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 2, actor="sync")
    placement.execute_assignment(batch_id, _pairs(ids), execution_id="first")
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")

    [result] = placement.retry_execution(batch_id, "first")

    assert (result.assignment_id, result.outcome) == (ids[2], "committed")
    with pytest.raises(NotFoundError):
        placement.retry_execution(batch_id, "never-ran")


def test_batch_level_preconditions_raise(placement, directory, three_students) -> None:
    ids, batch_id = three_students
    draft = placement.create_batch("Draft").batch_id

    with pytest.raises(NotFoundError):
        placement.execute_assignment("missing", _pairs(ids))
    with pytest.raises(ValidationError) as not_active:
        placement.execute_assignment(draft, _pairs(ids))
    assert not_active.value.error_code == "BATCH_NOT_ACTIVE"
    with pytest.raises(ValidationError) as bad_mode:
        placement.execute_assignment(batch_id, _pairs(ids), mode="all_or_nothing")
    assert bad_mode.value.error_code == "MODE_INVALID"

    placement.execute_assignment(batch_id, _pairs(ids[:1]), execution_id="used")
    with pytest.raises(ValidationError) as reused:
        placement.execute_assignment(batch_id, _pairs(ids), execution_id="used")
    assert reused.value.error_code == "EXECUTION_ID_REUSED"
    assert placement.cancel_execution("unknown") is False


def test_concurrent_batches_compete_for_last_spot(placement, directory) -> None:
    placement.configure_window(window_key("SITE-A"), 1, actor="sync")
    batches = []
    for index in range(2):
        assignment_id = enroll(placement, directory, f"S{index}")
        batches.append((open_batch(placement, [assignment_id], name=f"Batch {index}"), assignment_id))
    barrier = threading.Barrier(len(batches))
    results = []
    errors = []

    def run(batch_id: str, assignment_id: str) -> None:
        barrier.wait()
        try:
            results.extend(placement.execute_assignment(batch_id, _pairs([assignment_id])))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=item) for item in batches]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors
    assert sorted(r.outcome for r in results) == ["committed", "insufficient_capacity"]
    window = placement.get_capacity(window_key("SITE-A"))
    assert window.available_spots == 0
    assert sum(placement.get_assignment(a).status == "assigned" for _, a in batches) == 1


def test_results_are_written_to_the_outbox(placement, session_factory, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 2, actor="sync")

    results = placement.execute_assignment(batch_id, _pairs(ids), execution_id="exec-9", actor="coordinator")

    with session_factory() as session:
        rows = session.execute(select(OutboxMessageModel)).scalars().all()
    by_event = {row.event_id: row for row in rows}
    assert set(by_event) == {str(derive_event_id("exec-9", r.assignment_id)) for r in results}
    for result in results:
        row = by_event[str(derive_event_id("exec-9", result.assignment_id))]
        payload = json.loads(row.payload_json)
        assert row.status == "PENDING"
        assert row.aggregate_id == result.assignment_id
        assert payload["outcome"] == result.outcome
        assert payload["batch_id"] == batch_id
        assert payload["actor"] == "coordinator"


@pytest.mark.parametrize(
    ("mode", "first", "available", "status"),
    [
        ("best_effort", ("committed", None), 1, "assigned"),
        ("atomic", ("validation_error", "ABORTED_BY:{id}"), 2, "unassigned"),
    ],
)
def test_repeated_assignment_is_reported_per_pair(
    placement, session_factory, three_students, mode, first, available, status
) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 2, actor="sync")
    execution_id = f"repeat-{mode}"

    results = placement.execute_assignment(
        batch_id,
        [AssignmentPair(ids[0], "SITE-A"), AssignmentPair(ids[0], "SITE-A")],
        mode=mode,
        execution_id=execution_id,
    )

    outcome, detail = first
    assert [(r.outcome, r.detail) for r in results] == [
        (outcome, detail.format(id=ids[0]) if detail else None),
        ("validation_error", "DUPLICATE_PAIR"),
    ]
    assert placement.get_capacity(window_key("SITE-A")).available_spots == available
    assert placement.get_assignment(ids[0]).status == status
    with session_factory() as session:
        recorded = session.execute(
            select(ExecutionResultModel.outcome).where(ExecutionResultModel.execution_id == execution_id)
        ).scalars().all()
        events = session.execute(select(OutboxMessageModel)).scalars().all()
    assert sorted(recorded) == sorted(r.outcome for r in results)
    [event] = events
    assert event.event_id == str(derive_event_id(execution_id, ids[0]))
    assert json.loads(event.payload_json)["outcome"] == outcome


def test_idempotent_rerun_reports_already_assigned_code(placement, three_students) -> None:
    ids, batch_id = three_students
    placement.configure_window(window_key("SITE-A"), 1, actor="sync")
    placement.execute_assignment(batch_id, _pairs(ids[:1]))

    [again] = placement.execute_assignment(batch_id, _pairs(ids[:1]))

    assert (again.outcome, again.detail) == ("already_assigned", AlreadyAssignedError.code)
    assert again.succeeded
