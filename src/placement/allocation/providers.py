"""Interfaces of the external collaborators the engine reads from or writes to."""
from __future__ import annotations

from typing import Any, Protocol

from .contracts import SiteProfile, StudentProfile


class StudentDirectory(Protocol):
    """Read-only source of enrolment and prerequisite status."""

    def get_student(self, student_id: str) -> StudentProfile | None:
        """Return the student's profile or ``None`` when unknown."""


class SiteRegistry(Protocol):
    """Read-only source of site metadata used for scoring."""

    def get_site(self, site_id: str) -> SiteProfile | None:
        """Return the site's profile or ``None`` when unknown."""


class NotificationDispatcher(Protocol):
    """Write-only sink for execution result events."""

    def dispatch(self, *, event_type: str, payload: dict[str, Any], headers: dict[str, str]) -> None:
        """Deliver one event downstream."""
