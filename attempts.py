"""Per-student attempt numbering for quiz events."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Tuple

import db
from extractors import parse_timestamp
from schemas import EVENT_TYPE_ALIASES, ActivityEvent

logger = logging.getLogger(__name__)

QUIZ_TYPES = ("quiz_attempted",) + tuple(
    alias for alias, canonical in EVENT_TYPE_ALIASES.items() if canonical == "quiz_attempted"
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

GroupKey = Tuple[str, str, str]


def group_key(event: ActivityEvent) -> GroupKey:
    return (event.student_email, event.content_title, event.course_name)


def _order(event: ActivityEvent) -> Tuple[datetime, int]:
    return (parse_timestamp(event.occurred_at) or _EPOCH, event.id or 0)


def assign_attempt_numbers(events: Iterable[ActivityEvent]) -> Dict[int, int]:
    """Map each event id to its 1-based attempt number.

    Events are ordered by ``occurred_at``; equal timestamps keep creation
    (``id``) order. The result depends only on the set of events passed in.
    """

    ordered = sorted(events, key=_order)
    return {event.id: number for number, event in enumerate(ordered, start=1)}


def _group_members(student_email: str, content_title: str, course_name: str) -> List[ActivityEvent]:
    events = db.find_events(
        student_email=student_email,
        content_title=content_title,
        course_name=course_name,
        event_type=QUIZ_TYPES,
    )
    return [event for event in events if not event.is_archived]


def renumber_group(student_email: str, content_title: str, course_name: str) -> int:
    """Recompute the group's attempt numbers and persist changed ones.

    Returns the number of events written.
    """

    members = _group_members(student_email, content_title, course_name)
    numbers = assign_attempt_numbers(members)
    changed = 0
    for event in members:
        number = numbers[event.id]
        if event.metadata.get("attempt_number") == number:
            continue
        metadata = dict(event.metadata)
        metadata["attempt_number"] = number
        db.update_event(event.id, {"metadata": metadata})
        changed += 1
    if changed:
        logger.info(
            "Renumbered %s attempt(s) for %s / %s / %s", changed, student_email, content_title, course_name
        )
    return changed


def renumber_event_group(event: ActivityEvent) -> int:
    if event.canonical_type != "quiz_attempted":
        return 0
    return renumber_group(*group_key(event))


def renumber_all() -> Tuple[int, int]:
    """Renumber every quiz group; returns ``(groups, events_written)``."""

    groups = set()
    for event in db.iter_events(event_type=QUIZ_TYPES):
        if not event.is_archived:
            groups.add(group_key(event))
    written = 0
    for key in sorted(groups):
        written += renumber_group(*key)
    return len(groups), written
