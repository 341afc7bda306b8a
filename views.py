"""Read-side aggregations for the dashboards. Archived events never count."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

import db
from assignments import RosterLookup
from attempts import QUIZ_TYPES
from extractors import normalize_email, parse_timestamp

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def student_score_history(email: str) -> List[Dict[str, Any]]:
    events = db.find_events(
        student_email=normalize_email(email), event_type=QUIZ_TYPES, order_by="occurred_at"
    )
    history = []
    for event in events:
        if event.is_archived:
            continue
        history.append(
            {
                "id": event.id,
                "content_title": event.content_title,
                "course_name": event.course_name,
                "occurred_at": event.occurred_at,
                "score_percent": event.score_percent,
                "attempt_number": event.metadata.get("attempt_number"),
                "source": event.source,
            }
        )
    return history


def teacher_activity(roster_lookup: RosterLookup, teacher_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent events of the students on a teacher's roster."""

    students = sorted({normalize_email(email) for email in roster_lookup.lookup_roster(teacher_id)} - {""})
    if not students:
        return []
    events = [event for event in db.find_events(student_email=students) if not event.is_archived]
    events.sort(key=lambda event: (parse_timestamp(event.occurred_at) or _EPOCH, event.id), reverse=True)
    return [
        {
            "id": event.id,
            "student_email": event.student_email,
            "event_type": event.canonical_type,
            "content_title": event.content_title,
            "course_name": event.course_name,
            "occurred_at": event.occurred_at,
            "score_percent": event.score_percent,
        }
        for event in events[:limit]
    ]


def assignment_completion(teacher_email: str) -> List[Dict[str, Any]]:
    counts: Dict[int, Counter] = defaultdict(Counter)
    titles: Dict[int, str] = {}
    for assignment in db.find_assignments(teacher_email=normalize_email(teacher_email)):
        counts[assignment.catalog_id][assignment.status] += 1
        titles.setdefault(assignment.catalog_id, assignment.title)
    return [
        {
            "catalog_id": catalog_id,
            "title": titles[catalog_id],
            "assigned": counter.get("assigned", 0),
            "completed": counter.get("completed", 0),
            "archived": counter.get("archived", 0),
        }
        for catalog_id, counter in sorted(counts.items())
    ]
