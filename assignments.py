"""Teacher assignments, the assignment catalog and completion matching."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol, Tuple

import db
from capture import utc_now_iso
from errors import DownstreamMatchError
from extractors import clean_title, derive_topic, normalize_email, parse_timestamp, to_iso
from schemas import ActivityEvent, CatalogItem, MatchOutcome, StudentAssignment

logger = logging.getLogger(__name__)


class RosterLookup(Protocol):
    def lookup_roster(self, teacher_id: str) -> List[str]:
        ...


# -------------- catalog --------------
def create_catalog_item(
    title: str,
    *,
    topic: str = "",
    level: str = "",
    content_type: str = "lesson",
    course_id: str = "",
    lesson_id: str = "",
    quiz_id: str = "",
    source_key: str = "",
    is_active: bool = True,
) -> CatalogItem:
    if not str(title or "").strip():
        raise ValueError("Catalog title must not be empty")
    item = CatalogItem(
        title=clean_title(title),
        topic=derive_topic(title, topic),
        level=level,
        content_type=str(content_type or "lesson").lower(),
        course_id=str(course_id or ""),
        lesson_id=str(lesson_id or ""),
        quiz_id=str(quiz_id or ""),
        source_key=source_key,
        is_active=is_active,
    )
    return db.insert_catalog_item(item)


# -------------- assignment creation --------------
def assignment_key(teacher_email: str, student_email: str, catalog_id: int, assigned_at: str) -> str:
    assigned_day = (assigned_at or "")[:10]
    return f"assign:{teacher_email}:{student_email}:catalog:{catalog_id}:{assigned_day}"


def _catalog_snapshot(item: CatalogItem) -> dict:
    return {
        "title": item.title,
        "topic": item.topic,
        "level": item.level,
        "content_type": item.content_type,
        "course_id": item.course_id,
        "lesson_id": item.lesson_id,
        "quiz_id": item.quiz_id,
    }


def create_assignments(
    teacher_email: str,
    student_emails: Iterable[str],
    catalog_id: int,
    *,
    due_at: Optional[str] = None,
    assigned_at: Optional[str] = None,
) -> List[StudentAssignment]:
    """Assign a catalog item to each student.

    Re-assigning the same item on the same day updates the existing record;
    an archived one becomes ``assigned`` again.
    """

    teacher = normalize_email(teacher_email)
    if "@" not in teacher:
        raise ValueError("Invalid or missing teacher email")
    students = [normalize_email(email) for email in student_emails if normalize_email(email)]
    if not students:
        raise ValueError("At least one student email is required")
    if due_at is not None:
        parsed_due = parse_timestamp(due_at)
        if parsed_due is None:
            raise ValueError(f"Invalid due date: {due_at}")
        due_at = to_iso(parsed_due)

    item = db.get_catalog_item(catalog_id)
    if item is None:
        raise LookupError(f"Catalog item {catalog_id} not found")
    if not item.is_active:
        raise ValueError(f"Catalog item {catalog_id} is not active")

    assigned_at = to_iso(parse_timestamp(assigned_at)) if assigned_at else utc_now_iso()
    snapshot = _catalog_snapshot(item)
    results: List[StudentAssignment] = []
    for student in students:
        key = assignment_key(teacher, student, item.id, assigned_at)
        existing = db.get_assignment_by_dedupe_key(key)
        if existing is None:
            created = db.insert_assignment(
                StudentAssignment(
                    teacher_email=teacher,
                    student_email=student,
                    catalog_id=item.id,
                    assigned_at=assigned_at,
                    due_at=due_at,
                    dedupe_key=key,
                    **snapshot,
                )
            )
            if created is not None:
                results.append(created)
                continue
            existing = db.get_assignment_by_dedupe_key(key)
        patch = dict(snapshot, due_at=due_at)
        if existing.status == "archived":
            patch["status"] = "assigned"
            logger.info("Re-activating archived assignment %s", existing.id)
        results.append(db.update_assignment(existing.id, patch))
    logger.info("Assigned catalog item %s to %s student(s) for %s", item.id, len(results), teacher)
    return results


def assign_to_roster(
    roster_lookup: RosterLookup,
    teacher_id: str,
    teacher_email: str,
    catalog_id: int,
    *,
    due_at: Optional[str] = None,
    assigned_at: Optional[str] = None,
) -> List[StudentAssignment]:
    students = roster_lookup.lookup_roster(teacher_id)
    return create_assignments(teacher_email, students, catalog_id, due_at=due_at, assigned_at=assigned_at)


# -------------- completion matching --------------
def event_identifiers(event: ActivityEvent) -> Tuple[Optional[str], Optional[str]]:
    """``(lesson_id, quiz_id)`` from metadata, falling back to ``content_id``."""

    event_type = event.canonical_type
    lesson_id = str(event.metadata.get("lesson_id") or "") or None
    quiz_id = str(event.metadata.get("quiz_id") or "") or None
    if lesson_id is None and event_type == "lesson_completed":
        lesson_id = event.content_id or None
    if quiz_id is None and event_type == "quiz_attempted":
        quiz_id = event.content_id or None
    return lesson_id, quiz_id


def find_outstanding(event: ActivityEvent) -> List[StudentAssignment]:
    event_type = event.canonical_type
    if event.is_archived or event_type not in ("quiz_attempted", "lesson_completed"):
        return []
    lesson_id, quiz_id = event_identifiers(event)
    matches: List[StudentAssignment] = []
    if lesson_id:
        matches = db.find_assignments(student_email=event.student_email, lesson_id=lesson_id, status="assigned")
    if not matches and quiz_id and event_type == "quiz_attempted":
        matches = db.find_assignments(student_email=event.student_email, quiz_id=quiz_id, status="assigned")
    return matches


def complete_assignments(event: ActivityEvent) -> List[int]:
    completed: List[int] = []
    for assignment in find_outstanding(event):
        metadata = dict(assignment.metadata)
        metadata["completion"] = {
            "title": assignment.title or event.content_title,
            "event_title": event.content_title,
            "score_percent": event.score_percent,
        }
        db.update_assignment(
            assignment.id,
            {
                "status": "completed",
                "completed_at": event.occurred_at,
                "completed_by_event_id": event.id,
                "metadata": metadata,
            },
        )
        completed.append(assignment.id)
    if completed:
        logger.info("Event %s completed assignment(s) %s", event.id, completed)
    return completed


def try_complete_assignments(event: ActivityEvent) -> MatchOutcome:
    """Run the matcher without letting a failure reach the caller."""

    try:
        return MatchOutcome(event_id=event.id, completed=complete_assignments(event))
    except Exception as exc:
        error = DownstreamMatchError(f"assignment matching failed for event {event.id}: {exc}")
        logger.warning("%s", error, exc_info=True)
        return MatchOutcome(event_id=event.id, error=str(error))
