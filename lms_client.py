"""Read-only lookups against the LMS REST API and the local lesson map."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

import db
from env_validation import lms_settings
from errors import UpstreamFetchError
from extractors import normalize_email

LOGGER = logging.getLogger("lms.client")

ALLOWED_PATHS = ("/users", "/groups", "/courses", "/chapters", "/contents")

CourseRef = Tuple[str, str]


class LessonCourseLookup(Protocol):
    def lookup_course(self, lesson_id: str) -> Optional[CourseRef]:
        """Return ``(course_id, course_name)`` for a lesson or ``None`` when unknown."""
        ...


class LmsClient:
    """Minimal REST client; every failure surfaces as ``UpstreamFetchError``."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        page_size: int = 100,
    ) -> None:
        if not base_url:
            raise ValueError("LMS base URL is required")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_env(cls) -> "LmsClient":
        settings = lms_settings()
        if not settings["base_url"]:
            raise UpstreamFetchError("LMS_API_URL is not configured")
        return cls(settings["base_url"], settings["token"])

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not path.startswith(ALLOWED_PATHS):
            raise ValueError(f"Endpoint not allowed: {path}")
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            LOGGER.warning("LMS request to %s failed: %s", path, exc)
            raise UpstreamFetchError(f"LMS request to {path} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise UpstreamFetchError(
                f"LMS responded {response.status_code} for {path}", status_code=response.status_code
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFetchError(f"LMS returned invalid JSON for {path}") from exc
        if not isinstance(data, dict):
            raise UpstreamFetchError(f"LMS returned an unexpected body for {path}")
        return data

    # ------------------------------------------------------------------
    def lesson_course(self, lesson_id: str) -> CourseRef:
        """Resolve a lesson to its course via ``contents -> chapters -> courses``."""

        content = self._get(f"/contents/{lesson_id}")
        chapter_id = content.get("chapter_id")
        if not chapter_id:
            raise UpstreamFetchError(f"Lesson {lesson_id} has no chapter")
        chapter = self._get(f"/chapters/{chapter_id}")
        course_id = chapter.get("course_id")
        if not course_id:
            raise UpstreamFetchError(f"Chapter {chapter_id} has no course")
        course = self._get(f"/courses/{course_id}")
        name = str(course.get("name") or "").strip()
        if not name:
            raise UpstreamFetchError(f"Course {course_id} has no name")
        return str(course_id), name

    def lookup_course(self, lesson_id: str) -> Optional[CourseRef]:
        return self.lesson_course(lesson_id)

    def group_roster(self, group_id: str) -> List[str]:
        """Emails of every user in an LMS group, following pagination."""

        emails: List[str] = []
        page = 1
        while True:
            data = self._get(
                "/users",
                {"query[group_id]": group_id, "page": page, "limit": self.page_size},
            )
            for user in data.get("items") or []:
                email = normalize_email(user.get("email"))
                if email and email not in emails:
                    emails.append(email)
            pagination = (data.get("meta") or {}).get("pagination") or {}
            next_page = pagination.get("next_page")
            if not next_page or next_page == page:
                return emails
            page = next_page

    def lookup_roster(self, teacher_id: str) -> List[str]:
        # teachers are identified by the LMS group they own
        return self.group_roster(teacher_id)


class StoredLessonCourseMap:
    """Lesson lookup backed by pairs learned from lesson webhooks."""

    def lookup_course(self, lesson_id: str) -> Optional[CourseRef]:
        known = db.get_lesson_course(lesson_id)
        if known is None:
            return None
        return known["course_id"], known["course_name"]


class FallbackLessonCourseLookup:
    """Try the local map first, then the LMS."""

    def __init__(self, *lookups: LessonCourseLookup) -> None:
        self.lookups = lookups

    def lookup_course(self, lesson_id: str) -> Optional[CourseRef]:
        failure: Optional[UpstreamFetchError] = None
        for lookup in self.lookups:
            try:
                found = lookup.lookup_course(lesson_id)
            except UpstreamFetchError as exc:
                failure = exc
                continue
            if found is not None:
                return found
        if failure is not None:
            raise failure
        return None
