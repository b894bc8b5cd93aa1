from __future__ import annotations

from datetime import date, datetime

import pytest

from placement.allocation import AssignmentPair, SiteProfile, StudentProfile
from placement.allocation.ranking import combine, preference_factor, recency_factor
from placement.domain.errors import NotFoundError
from placement.domain.reasons import ReasonCode
from tests.support import enroll, open_batch, window_key


def _site(registry, site_id: str, rate: float, location: str | None = None) -> None:
    registry.add(SiteProfile(site_id=site_id, name=f"{site_id} Hospital", location=location, historical_success_rate=rate))


def test_score_and_reasoning_for_single_window(placement, directory, registry) -> None:
    _site(registry, "SITE-A", 0.8)
    placement.configure_window(window_key("SITE-A"), 4, actor="sync")
    placement.ledger.reserve(window_key("SITE-A"), 2, actor="sync")
    batch_id = open_batch(placement, [enroll(placement, directory, "S1")])

    [suggestion] = placement.generate_suggestions(batch_id)

    [candidate] = suggestion.candidates
    assert candidate.site_name == "SITE-A Hospital"
    assert candidate.score == 68
    assert candidate.reasoning == (
        "high historical success rate",
        "some remaining capacity",
        "no recent placements at this site",
    )
    assert dict(candidate.factors) == {"headroom": 0.5, "success": 0.8, "preference": 0.5, "recency": 1.0}
    assert suggestion.confidence_score == 68
    assert suggestion.confidence_label == "Medium Confidence"


def test_program_mismatch_excludes_window_despite_capacity(placement, directory, registry) -> None:
    _site(registry, "SITE-A", 0.9)
    placement.configure_window(window_key("SITE-A"), 5, actor="sync")
    placement.configure_window(window_key("SITE-B", program_id="MED"), 5, actor="sync")
    assignment_id = enroll(placement, directory, "S1")
    # the directory now reports a different enrolment than the pooled assignment
    directory.add(StudentProfile("S1", "MED"))
    batch_id = open_batch(placement, [assignment_id])

    [suggestion] = placement.generate_suggestions(batch_id)

    assert suggestion.candidates == ()
    assert suggestion.confidence_label == "Low Confidence"
    [excluded] = suggestion.excluded
    assert excluded.window == window_key("SITE-A")
    assert [reason.code for reason in excluded.reasons] == [ReasonCode.PROGRAM_MISMATCH]


def test_full_and_expired_windows_are_excluded(placement, directory, registry) -> None:
    placement.configure_window(window_key("SITE-A"), 0, actor="sync")
    placement.configure_window(window_key("SITE-B", start=date(2024, 11, 1), end=date(2025, 1, 6)), 3, actor="sync")
    placement.configure_window(window_key("SITE-C"), 3, actor="sync")
    batch_id = open_batch(placement, [enroll(placement, directory, "S1")])

    [suggestion] = placement.generate_suggestions(batch_id)

    assert [c.site_id for c in suggestion.candidates] == ["SITE-C"]
    reasons = {item.window.site_id: [r.code for r in item.reasons] for item in suggestion.excluded}
    assert reasons == {
        "SITE-A": [ReasonCode.CAPACITY_FULL],
        "SITE-B": [ReasonCode.WINDOW_EXPIRED],
    }


def test_ties_break_by_site_id(placement, directory, registry) -> None:
    for site_id in ("SITE-C", "SITE-A", "SITE-B"):
        _site(registry, site_id, 0.6)
        placement.configure_window(window_key(site_id), 3, actor="sync")
    batch_id = open_batch(placement, [enroll(placement, directory, "S1")])

    [suggestion] = placement.generate_suggestions(batch_id)

    assert [c.site_id for c in suggestion.candidates] == ["SITE-A", "SITE-B", "SITE-C"]
    assert len({c.score for c in suggestion.candidates}) == 1


def test_generation_is_deterministic_and_read_only(placement, directory, registry) -> None:
    for index, site_id in enumerate(("SITE-A", "SITE-B", "SITE-C")):
        _site(registry, site_id, 0.3 + 0.2 * index, location="North" if index == 2 else "South")
        placement.configure_window(window_key(site_id), 2 + index, actor="sync")
    ids = [
        enroll(placement, directory, "S1", preferred_site_ids=("SITE-B",)),
        enroll(placement, directory, "S2", preferred_locations=frozenset({"North"})),
        enroll(placement, directory, "S3"),
    ]
    batch_id = open_batch(placement, ids)
    before = placement.list_capacity()

    first = placement.generate_suggestions(batch_id)
    second = placement.generate_suggestions(batch_id)

    assert first == second
    assert [s.assignment_id for s in first] == sorted(ids)
    assert placement.list_capacity() == before
    assert {placement.get_assignment(i).status for i in ids} == {"unassigned"}


def test_preferred_site_outranks_better_capacity(placement, directory, registry) -> None:
    _site(registry, "SITE-A", 0.5)
    _site(registry, "SITE-B", 0.5)
    placement.configure_window(window_key("SITE-A"), 10, actor="sync")
    placement.configure_window(window_key("SITE-B"), 10, actor="sync")
    placement.ledger.reserve(window_key("SITE-B"), 3, actor="sync")
    batch_id = open_batch(placement, [enroll(placement, directory, "S1", preferred_site_ids=("SITE-B",))])

    [suggestion] = placement.generate_suggestions(batch_id)

    assert [c.site_id for c in suggestion.candidates] == ["SITE-B", "SITE-A"]
    assert "matches student site preference" in suggestion.candidates[0].reasoning


def test_recent_placement_lowers_site_rank(placement, directory, registry) -> None:
    _site(registry, "SITE-A", 0.5)
    _site(registry, "SITE-B", 0.5)
    placement.configure_window(window_key("SITE-A"), 10, actor="sync")
    placement.configure_window(window_key("SITE-B"), 10, actor="sync")
    first = enroll(placement, directory, "S1")
    second = enroll(placement, directory, "S2")
    placement.execute_assignment(open_batch(placement, [first], name="Early"), [AssignmentPair(first, "SITE-A")])
    placement.ledger.reserve(window_key("SITE-B"), 1, actor="sync")
    batch_id = open_batch(placement, [second], name="Late")

    [suggestion] = placement.generate_suggestions(batch_id)

    assert [c.site_id for c in suggestion.candidates] == ["SITE-B", "SITE-A"]
    assert dict(suggestion.candidates[1].factors)["recency"] == 0.0


def test_only_pooled_members_are_ranked(placement, directory, registry) -> None:
    placement.configure_window(window_key("SITE-A"), 5, actor="sync")
    first = enroll(placement, directory, "S1")
    second = enroll(placement, directory, "S2")
    batch_id = open_batch(placement, [first, second])
    placement.execute_assignment(batch_id, [AssignmentPair(first, "SITE-A")])

    suggestions = placement.generate_suggestions(batch_id)

    assert [s.assignment_id for s in suggestions] == [second]


def test_default_pairs_pick_top_candidate(placement, directory, registry) -> None:
    _site(registry, "SITE-A", 0.2)
    _site(registry, "SITE-B", 0.9)
    placement.configure_window(window_key("SITE-A"), 3, actor="sync")
    placement.configure_window(window_key("SITE-B"), 3, actor="sync")
    assignment_id = enroll(placement, directory, "S1")
    batch_id = open_batch(placement, [assignment_id])

    pairs = placement.default_pairs(placement.generate_suggestions(batch_id))

    assert pairs == [AssignmentPair(assignment_id, "SITE-B", window_key("SITE-B").period_start, window_key("SITE-B").period_end)]


def test_unknown_batch_is_not_found(placement) -> None:
    with pytest.raises(NotFoundError):
        placement.generate_suggestions("missing")


def test_factor_helpers() -> None:
    ranked = StudentProfile("S1", "NURS", preferred_site_ids=("A", "B", "C"))
    assert [preference_factor(ranked, site, None) for site in ("A", "B", "C", "D")] == pytest.approx([1.0, 0.9, 0.8, 0.0])
    located = StudentProfile("S2", "NURS", preferred_locations=frozenset({"North"}))
    assert preference_factor(located, "X", SiteProfile("X", "X", location="North")) == 0.5
    assert preference_factor(StudentProfile("S3", "NURS"), "X", None) == 0.5

    assert recency_factor(None, date(2025, 1, 6), 30) == 1.0
    assert recency_factor(datetime(2024, 12, 22), date(2025, 1, 6), 30) == pytest.approx(0.5)
    assert recency_factor(datetime(2024, 6, 1), date(2025, 1, 6), 30) == 1.0

    score, _ = combine({"headroom": 1.0, "success": 1.0, "preference": 1.0, "recency": 1.0}, {"headroom": 2.0, "success": 2.0, "preference": 0.0, "recency": 0.0})
    assert score == 100
