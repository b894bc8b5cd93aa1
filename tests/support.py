from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable

from placement.allocation import PlacementEngine, SiteProfile, StudentProfile, WindowKey

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
PERIOD_START = date(2025, 2, 1)
PERIOD_END = date(2025, 4, 30)
PROGRAM = "NURS"


class DictDirectory:
    def __init__(self) -> None:
        self.students: dict[str, StudentProfile] = {}
        self.lookups = 0

    def add(self, profile: StudentProfile) -> None:
        self.students[profile.student_id] = profile

    def get_student(self, student_id: str) -> StudentProfile | None:
        self.lookups += 1
        return self.students.get(student_id)


class DictRegistry:
    def __init__(self) -> None:
        self.sites: dict[str, SiteProfile] = {}

    def add(self, profile: SiteProfile) -> None:
        self.sites[profile.site_id] = profile

    def get_site(self, site_id: str) -> SiteProfile | None:
        return self.sites.get(site_id)


def window_key(site_id: str, program_id: str = PROGRAM, start: date = PERIOD_START, end: date = PERIOD_END) -> WindowKey:
    return WindowKey(site_id=site_id, program_id=program_id, period_start=start, period_end=end)


def enroll(
    engine: PlacementEngine,
    directory: DictDirectory,
    student_id: str,
    program_id: str = PROGRAM,
    **profile: object,
) -> str:
    directory.add(StudentProfile(student_id=student_id, program_id=program_id, **profile))
    return engine.register_assignment(student_id, program_id).assignment_id


def open_batch(engine: PlacementEngine, assignment_ids: Iterable[str], *, name: str = "Spring", program_filter: str | None = None) -> str:
    batch = engine.create_batch(name, program_filter, created_by="coordinator")
    result = engine.add_students(batch.batch_id, assignment_ids)
    assert result.ok, result.errors
    engine.transition(batch.batch_id, "active")
    return batch.batch_id


