"""Repair and backfill jobs over stored events.

Each event repair is a patch function ``(event) -> patch | None`` applied
record by record by :func:`run_repair`. A patch is only produced when the
stored record differs from the repaired one, so running a job twice leaves
the same state as running it once.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import assignments
import attempts
import db
from capture import list_captures, load_payload, utc_now_iso
from csv_columns import CSV_COLUMNS
from env_validation import error_sample_limit, lms_settings
from errors import AmbiguousScoreError, ExtractionError, UpstreamFetchError, UnsupportedEventError
from extractors import (
    clean_title,
    derive_topic,
    extract,
    normalize_email,
    parse_csv_text,
    parse_timestamp,
)
from ingest import CREATED, UNKNOWN_COURSE, UPDATED, after_write, prepare_draft, write_event
from lms_client import FallbackLessonCourseLookup, LessonCourseLookup, LmsClient, StoredLessonCourseMap
from schemas import EVENT_TYPE_ALIASES, ActivityEvent, ArchiveReport, DraftEvent, RepairSummary, normalize_event_type
from scoring import RULE_PERCENT_COLUMN, normalize_score, parse_percent_text, should_replace_score

logger = logging.getLogger(__name__)

Patch = Dict[str, Any]
PatchFn = Callable[[ActivityEvent], Optional[Patch]]

LESSON_TYPES = ("lesson_completed",) + tuple(
    alias for alias, canonical in EVENT_TYPE_ALIASES.items() if canonical == "lesson_completed"
)
UNKNOWN_LESSON = "Unknown Lesson"


class StillUnknown(Exception):
    """The record cannot be repaired with the information available."""


# -------------- engine --------------
def run_repair(
    job: str,
    patch_fn: PatchFn,
    events: Iterable[ActivityEvent],
    *,
    on_patched: Optional[Callable[[ActivityEvent, Patch], None]] = None,
) -> RepairSummary:
    """Apply ``patch_fn`` to every event, one write per changed record.

    Per-record problems are counted; ``StoreUnavailableError`` aborts the job.
    """

    summary = RepairSummary(job=job)
    limit = error_sample_limit()
    for event in events:
        summary.total += 1
        try:
            patch = patch_fn(event)
        except (StillUnknown, UpstreamFetchError) as exc:
            summary.still_unknown += 1
            logger.debug("%s: event %s still unknown: %s", job, event.id, exc)
            continue
        except ExtractionError as exc:
            if exc.field == "raw_payload":
                summary.missing_raw_payload += 1
                logger.warning("%s: event %s has no usable raw payload", job, event.id)
            else:
                summary.record_error({"id": event.id, "field": exc.field, "reason": str(exc)}, limit)
            continue
        except (UnsupportedEventError, AmbiguousScoreError, ValueError) as exc:
            summary.record_error({"id": event.id, "reason": str(exc)}, limit)
            continue
        if not patch:
            summary.skipped += 1
            continue
        db.update_event(event.id, patch)
        summary.record_change({"id": event.id, "fields": sorted(patch)}, limit)
        if on_patched is not None:
            on_patched(event, patch)
    logger.info(
        "Repair %s finished: total=%s updated=%s skipped=%s still_unknown=%s missing_raw=%s errors=%s",
        job,
        summary.total,
        summary.updated,
        summary.skipped,
        summary.still_unknown,
        summary.missing_raw_payload,
        summary.errors,
    )
    return summary


def _active(events: Iterable[ActivityEvent]) -> List[ActivityEvent]:
    return [event for event in events if not event.is_archived]


def _raw_payload(event: ActivityEvent) -> Any:
    if not event.raw_payload:
        raise ExtractionError("raw_payload")
    try:
        return json.loads(event.raw_payload)
    except json.JSONDecodeError as exc:
        raise ExtractionError("raw_payload", f"undecodable raw payload: {exc}") from exc


def _dialect_for(source: str, payload: Any) -> str:
    if source == "webhook":
        return "webhook"
    if source == "csv_import":
        return "csv"
    if isinstance(payload, Mapping) and CSV_COLUMNS.looks_like_csv_row(payload.keys()):
        return "csv"
    return "legacy"


def redraft(event: ActivityEvent) -> DraftEvent:
    """Re-run extraction over the event's stored raw payload."""

    payload = _raw_payload(event)
    return extract(payload, event.source, _dialect_for(event.source, payload))


def _renumber_touched(event: ActivityEvent, patch: Patch) -> None:
    # group key fields may have changed; both the old and the new group need numbers
    attempts.renumber_event_group(event)
    updated = db.get_event(event.id)
    if updated is not None and attempts.group_key(updated) != attempts.group_key(event):
        attempts.renumber_event_group(updated)


# -------------- score repair --------------
_COUNT_KEYS = ("correct_count", "incorrect_count", "total_questions", "raw_percent_score")


def patch_score(event: ActivityEvent) -> Optional[Patch]:
    draft = redraft(event)
    score = normalize_score(draft.score_inputs)
    metadata = dict(event.metadata)
    for key in _COUNT_KEYS:
        value = draft.metadata.get(key)
        if metadata.get(key) in (None, "") and value not in (None, ""):
            metadata[key] = value

    patch: Patch = {}
    replace, reason = should_replace_score(event.score_percent, score)
    if replace:
        patch["score_percent"] = score.score_percent
        metadata["score_rule"] = score.rule
        metadata.pop("score_flag", None)
        logger.info(
            "Score repair event=%s before=%s after=%s rule=%s (%s)",
            event.id,
            event.score_percent,
            score.score_percent,
            score.rule,
            reason,
        )
    elif score.flag and not event.has_finite_score:
        metadata["score_flag"] = score.flag
    if metadata != event.metadata:
        patch["metadata"] = metadata
    return patch or None


def repair_scores() -> RepairSummary:
    events = _active(db.iter_events(event_type=attempts.QUIZ_TYPES))
    return run_repair("repair_scores", patch_score, events)


# -------------- course names --------------
def _lesson_id(event: ActivityEvent) -> str:
    lesson_id = str(event.metadata.get("lesson_id") or "")
    if not lesson_id and event.canonical_type == "lesson_completed":
        lesson_id = event.content_id
    return lesson_id


def make_course_patch(lookup: LessonCourseLookup) -> PatchFn:
    def patch_course(event: ActivityEvent) -> Optional[Patch]:
        if event.course_name and event.course_name != UNKNOWN_COURSE:
            return None
        lesson_id = _lesson_id(event)
        if not lesson_id:
            raise StillUnknown("no lesson id")
        found = lookup.lookup_course(lesson_id)
        if found is None:
            raise StillUnknown(f"lesson {lesson_id} not mapped")
        course_id, course_name = found
        patch: Patch = {"course_name": course_name}
        if not event.course_id and course_id:
            patch["course_id"] = course_id
        return patch

    return patch_course


def default_course_lookup() -> LessonCourseLookup:
    if lms_settings()["base_url"]:
        return FallbackLessonCourseLookup(StoredLessonCourseMap(), LmsClient.from_env())
    return StoredLessonCourseMap()


def repair_course_names(lookup: Optional[LessonCourseLookup] = None) -> RepairSummary:
    lookup = lookup or default_course_lookup()
    events = [
        event
        for event in _active(db.iter_events(event_type=attempts.QUIZ_TYPES + LESSON_TYPES))
        if not event.course_name or event.course_name == UNKNOWN_COURSE
    ]
    return run_repair("repair_course_names", make_course_patch(lookup), events, on_patched=_renumber_touched)


# -------------- lesson names --------------
def patch_lesson_name(event: ActivityEvent) -> Optional[Patch]:
    if event.lesson_name and event.lesson_name != UNKNOWN_LESSON:
        return None
    payload = _raw_payload(event)
    inner = payload.get("payload") if isinstance(payload, Mapping) else None
    if not isinstance(inner, Mapping):
        inner = payload if isinstance(payload, Mapping) else {}
    lesson = inner.get("lesson")
    name = str(lesson.get("name") or "").strip() if isinstance(lesson, Mapping) else ""
    if not name:
        return None
    return {"lesson_name": name}


def backfill_lesson_names() -> RepairSummary:
    events = [
        event
        for event in _active(db.iter_events(event_type=LESSON_TYPES))
        if not event.lesson_name or event.lesson_name == UNKNOWN_LESSON
    ]
    return run_repair("backfill_lesson_names", patch_lesson_name, events)


# -------------- identity keys --------------
def patch_event_keys(event: ActivityEvent) -> Optional[Patch]:
    patch: Patch = {}
    email = normalize_email(event.student_email)
    if email and email != event.student_email:
        patch["student_email"] = email
    canonical = normalize_event_type(event.event_type)
    if canonical and canonical != event.event_type:
        patch["event_type"] = canonical
    return patch or None


def normalize_event_keys() -> RepairSummary:
    return run_repair(
        "normalize_event_keys", patch_event_keys, list(db.iter_events()), on_patched=_renumber_touched
    )


# -------------- attempt numbers --------------
def recompute_attempt_numbers() -> RepairSummary:
    events = _active(db.iter_events(event_type=attempts.QUIZ_TYPES))
    groups: Dict[attempts.GroupKey, List[ActivityEvent]] = defaultdict(list)
    for event in events:
        groups[attempts.group_key(event)].append(event)
    numbers: Dict[int, int] = {}
    for members in groups.values():
        numbers.update(attempts.assign_attempt_numbers(members))

    def patch_attempt(event: ActivityEvent) -> Optional[Patch]:
        number = numbers[event.id]
        if event.metadata.get("attempt_number") == number:
            return None
        return {"metadata": dict(event.metadata, attempt_number=number)}

    return run_repair("recompute_attempt_numbers", patch_attempt, events)


# -------------- replay captures --------------
def rebuild_from_captures(source: Optional[str] = None) -> RepairSummary:
    """Replay stored captures through the ingest pipeline in repair mode.

    Missing events are created, existing ones patched; nothing is fetched
    from the LMS.
    """

    summary = RepairSummary(job="rebuild_from_captures")
    limit = error_sample_limit()
    for capture in list_captures(source):
        summary.total += 1
        payload = load_payload(capture)
        try:
            draft, key = prepare_draft(payload, capture.source, _dialect_for(capture.source, payload))
        except UnsupportedEventError:
            summary.skipped += 1
            continue
        except ExtractionError as exc:
            summary.record_error({"capture": capture.id, "field": exc.field, "reason": str(exc)}, limit)
            continue
        result = write_event(draft, mode="repair", key=key)
        if result.outcome not in (CREATED, UPDATED):
            summary.skipped += 1
            continue
        summary.record_change({"capture": capture.id, "id": result.event.id, "outcome": result.outcome}, limit)
        after_write(result)
    logger.info("Replayed %s capture(s): %s written", summary.total, summary.updated)
    return summary


# -------------- scores from a CSV export --------------
def _nearest(candidates: List[ActivityEvent], when: Optional[datetime]) -> ActivityEvent:
    if when is None or len(candidates) == 1:
        return candidates[0]

    def distance(event: ActivityEvent) -> Tuple[float, int]:
        occurred = parse_timestamp(event.occurred_at)
        gap = abs((occurred - when).total_seconds()) if occurred else float("inf")
        return gap, event.id

    return min(candidates, key=distance)


def repair_scores_from_csv(csv_text: str) -> RepairSummary:
    """Fill missing scores of CSV-imported quiz events from a fresh export.

    Rows match on email, title and (when given) course name; the event with
    the closest completion time wins and is only written when it has no
    score yet. Never creates events.
    """

    summary = RepairSummary(job="repair_scores_from_csv")
    limit = error_sample_limit()
    stored = _active(db.iter_events(event_type=attempts.QUIZ_TYPES, source="csv_import"))
    filled = {event.id for event in stored if event.has_finite_score}
    for index, row in enumerate(parse_csv_text(csv_text), start=1):
        summary.total += 1
        fields = CSV_COLUMNS.canonicalize(row)
        email = normalize_email(fields.get("student_email"))
        title = fields.get("content_title", "").lower()
        course = fields.get("course_name", "")
        if not email or not title:
            summary.skipped += 1
            continue
        try:
            score = parse_percent_text(fields.get("percent_score"))
        except AmbiguousScoreError as exc:
            summary.record_error({"row": index, "field": "percent_score", "reason": str(exc)}, limit)
            continue
        if score is None:
            summary.skipped += 1
            continue
        candidates = [
            event
            for event in stored
            if event.student_email == email
            and event.content_title.lower() == title
            and (not course or event.course_name == course)
        ]
        if not candidates:
            summary.still_unknown += 1
            continue
        target = _nearest(candidates, parse_timestamp(fields.get("occurred_at")))
        if target.id in filled:
            summary.skipped += 1
            continue
        metadata = dict(target.metadata, score_rule=RULE_PERCENT_COLUMN)
        metadata.setdefault("raw_percent_score", fields.get("percent_score"))
        metadata.pop("score_flag", None)
        db.update_event(target.id, {"score_percent": score, "metadata": metadata})
        logger.info(
            "Score repair event=%s before=%s after=%s rule=%s", target.id, target.score_percent, score, RULE_PERCENT_COLUMN
        )
        filled.add(target.id)
        summary.record_change({"id": target.id, "row": index, "score_percent": score}, limit)
    return summary


# -------------- catalog titles --------------
def clean_catalog_titles() -> RepairSummary:
    summary = RepairSummary(job="clean_catalog_titles")
    limit = error_sample_limit()
    for item in db.list_catalog():
        summary.total += 1
        patch = {}
        title = clean_title(item.title)
        topic = derive_topic(item.title, item.topic)
        if title != item.title:
            patch["title"] = title
        if topic != item.topic:
            patch["topic"] = topic
        if not patch:
            summary.skipped += 1
            continue
        db.update_catalog_item(item.id, patch)
        summary.record_change({"catalog_id": item.id, "before": item.title, **patch}, limit)
    return summary


# -------------- archival and deletion --------------
def _student_events(email: str, source: Optional[str]) -> List[ActivityEvent]:
    filters: Dict[str, Any] = {"student_email": normalize_email(email)}
    if source:
        filters["source"] = source
    return list(db.iter_events(**filters))


def _backup(email: str, events: List[ActivityEvent]) -> Dict[str, Any]:
    return {
        "student_email": normalize_email(email),
        "taken_at": utc_now_iso(),
        "count": len(events),
        "events": [event.model_dump() for event in events],
    }


def _renumber_groups(events: Iterable[ActivityEvent]) -> None:
    for key in sorted({attempts.group_key(event) for event in events if event.canonical_type == "quiz_attempted"}):
        attempts.renumber_group(*key)


def _archive(event: ActivityEvent, reason: str, archived_at: str) -> None:
    metadata = dict(event.metadata, archived=True, archived_at=archived_at, archived_reason=reason)
    db.update_event(event.id, {"metadata": metadata})


def archive_student_events(
    email: str,
    *,
    source: Optional[str] = None,
    reason: str = "",
    execute: bool = False,
) -> ArchiveReport:
    """Soft delete a student's events; without ``execute`` only the backup is returned."""

    events = _student_events(email, source)
    report = ArchiveReport(
        student_email=normalize_email(email),
        preview=not execute,
        total=len(events),
        already_archived=sum(1 for event in events if event.is_archived),
        backup=_backup(email, events),
    )
    if not execute:
        return report
    archived_at = utc_now_iso()
    targets = _active(events)
    for event in targets:
        _archive(event, reason or "archived by admin", archived_at)
        report.affected += 1
    _renumber_groups(targets)
    logger.info("Archived %s event(s) for %s", report.affected, report.student_email)
    return report


def collapse_duplicate_results(execute: bool = False) -> RepairSummary:
    """Archive all but one quiz event per result id.

    The kept record is the oldest one carrying a finite score, else the
    oldest one overall.
    """

    summary = RepairSummary(job="collapse_duplicate_results")
    limit = error_sample_limit()
    groups: Dict[str, List[ActivityEvent]] = defaultdict(list)
    for event in _active(db.iter_events(event_type=attempts.QUIZ_TYPES)):
        summary.total += 1
        result_id = str(event.metadata.get("result_id") or "").strip()
        if result_id:
            groups[result_id].append(event)

    archived_at = utc_now_iso()
    touched: List[ActivityEvent] = []
    for result_id, members in sorted(groups.items()):
        if len(members) < 2:
            continue
        members.sort(key=lambda event: event.id)
        scored = [event for event in members if event.has_finite_score]
        keeper = scored[0] if scored else members[0]
        for event in members:
            if event.id == keeper.id:
                continue
            if execute:
                _archive(event, f"duplicate of event {keeper.id}", archived_at)
                touched.append(event)
                summary.record_change({"id": event.id, "kept": keeper.id, "result_id": result_id}, limit)
            elif len(summary.changes) < limit:
                summary.changes.append({"id": event.id, "kept": keeper.id, "result_id": result_id, "preview": True})
    if execute:
        _renumber_groups(touched)
    summary.skipped = summary.total - summary.updated
    return summary


def delete_student_events(
    email: str,
    *,
    source: Optional[str] = None,
    execute: bool = False,
) -> ArchiveReport:
    """Physically delete a student's events after producing a backup snapshot."""

    events = _student_events(email, source)
    report = ArchiveReport(
        student_email=normalize_email(email),
        preview=not execute,
        total=len(events),
        already_archived=sum(1 for event in events if event.is_archived),
        backup=_backup(email, events),
    )
    if not execute:
        return report
    for event in events:
        db.delete_event(event.id)
        report.affected += 1
    _renumber_groups(events)
    logger.warning("Deleted %s event(s) for %s", report.affected, report.student_email)
    return report


# -------------- assignment matching --------------
def rematch_assignments() -> RepairSummary:
    summary = RepairSummary(job="rematch_assignments")
    limit = error_sample_limit()
    for event in _active(db.iter_events(event_type=attempts.QUIZ_TYPES + LESSON_TYPES)):
        summary.total += 1
        outcome = assignments.try_complete_assignments(event)
        if outcome.error:
            summary.record_error({"id": event.id, "reason": outcome.error}, limit)
        elif outcome.completed:
            summary.record_change({"id": event.id, "completed": outcome.completed}, limit)
        else:
            summary.skipped += 1
    return summary


# -------------- dispatch --------------
EVENT_JOBS = {
    "repair_scores": repair_scores,
    "repair_course_names": repair_course_names,
    "backfill_lesson_names": backfill_lesson_names,
    "normalize_event_keys": normalize_event_keys,
    "recompute_attempt_numbers": recompute_attempt_numbers,
    "clean_catalog_titles": clean_catalog_titles,
    "rematch_assignments": rematch_assignments,
}

JOB_NAMES = tuple(sorted(EVENT_JOBS)) + (
    "archive_student_events",
    "collapse_duplicate_results",
    "delete_student_events",
    "rebuild_from_captures",
    "repair_scores_from_csv",
)


def run_job(
    job: str,
    *,
    email: Optional[str] = None,
    source: Optional[str] = None,
    reason: str = "",
    execute: bool = False,
    csv_text: Optional[str] = None,
) -> RepairSummary | ArchiveReport:
    """Run a job by name with the options the CLI and the admin endpoint accept."""

    if job in EVENT_JOBS:
        return EVENT_JOBS[job]()
    if job == "collapse_duplicate_results":
        return collapse_duplicate_results(execute=execute)
    if job == "rebuild_from_captures":
        return rebuild_from_captures(source)
    if job == "repair_scores_from_csv":
        if not csv_text:
            raise ValueError("repair_scores_from_csv requires CSV text")
        return repair_scores_from_csv(csv_text)
    if job in ("archive_student_events", "delete_student_events"):
        if not email:
            raise ValueError(f"{job} requires a student email")
        if job == "archive_student_events":
            return archive_student_events(email, source=source, reason=reason, execute=execute)
        return delete_student_events(email, source=source, execute=execute)
    raise ValueError(f"Unknown repair job: {job}")
