"""Canonical event writer and the ingestion pipeline entry points."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import attempts
import assignments
import db
from capture import capture_raw
from csv_columns import CSV_COLUMNS
from dedupe import candidate_keys, key_for_draft
from env_validation import error_sample_limit, internal_email_domain
from errors import ExtractionError, UnsupportedEventError
from extractors import extract, parse_csv_text, webhook_topic
from schemas import ActivityEvent, BatchSummary, DraftEvent, IngestResult, MatchOutcome, normalize_event_type
from scoring import RULE_NONE, ScoreResult, normalize_score, should_replace_score

logger = logging.getLogger(__name__)

CREATED = "created"
DUPLICATE = "duplicate"
UPDATED = "updated"
UNCHANGED = "unchanged"

UNKNOWN_COURSE = "Unknown Course"

_FILLABLE_FIELDS = (
    "student_user_id",
    "student_display_name",
    "course_id",
    "course_name",
    "content_id",
    "content_title",
    "lesson_name",
    "raw_event_id",
)


@dataclass
class WriteResult:
    outcome: str
    event: Optional[ActivityEvent]
    score: ScoreResult
    patch: Dict[str, Any] = field(default_factory=dict)


def score_draft(draft: DraftEvent) -> ScoreResult:
    if normalize_event_type(draft.event_type) != "quiz_attempted":
        return ScoreResult(None, RULE_NONE)
    return normalize_score(draft.score_inputs)


def _is_blank(field_name: str, value: Any) -> bool:
    if value is None or value == "":
        return True
    return field_name == "course_name" and value == UNKNOWN_COURSE


def merge_patch(existing: ActivityEvent, draft: DraftEvent, score: ScoreResult) -> Dict[str, Any]:
    """Patch that fills gaps in ``existing`` from ``draft``.

    Non-empty stored fields are left alone; the score only changes when
    ``should_replace_score`` allows it. Applying the patch and merging again
    yields an empty patch.
    """

    patch: Dict[str, Any] = {}
    for name in _FILLABLE_FIELDS:
        incoming = getattr(draft, name)
        if incoming and incoming != UNKNOWN_COURSE and _is_blank(name, getattr(existing, name)):
            patch[name] = incoming
    if not existing.raw_payload and draft.raw_payload:
        patch["raw_payload"] = draft.raw_payload

    metadata = dict(existing.metadata)
    for key, value in draft.metadata.items():
        if metadata.get(key) in (None, "") and value not in (None, ""):
            metadata[key] = value

    replace, reason = should_replace_score(existing.score_percent, score)
    if replace:
        patch["score_percent"] = score.score_percent
        metadata["score_rule"] = score.rule
        metadata.pop("score_flag", None)
        logger.info(
            "Score of event %s replaced: %s -> %s (rule=%s, %s)",
            existing.id,
            existing.score_percent,
            score.score_percent,
            score.rule,
            reason,
        )
    elif score.flag and existing.score_percent is None:
        metadata["score_flag"] = score.flag

    if metadata != existing.metadata:
        patch["metadata"] = metadata
    return patch


def _find_existing(key: str, draft: DraftEvent) -> Optional[ActivityEvent]:
    for candidate in candidate_keys(key, draft.result_id, draft.raw_event_id):
        found = db.find_event_by_dedupe_key(candidate)
        if found is not None:
            return found
    return None


def _new_event(draft: DraftEvent, key: str, score: ScoreResult) -> ActivityEvent:
    metadata = dict(draft.metadata)
    if score.score_percent is not None:
        metadata["score_rule"] = score.rule
    if score.flag:
        metadata["score_flag"] = score.flag
    return ActivityEvent(
        student_email=draft.student_email,
        student_user_id=draft.student_user_id,
        student_display_name=draft.student_display_name,
        course_id=draft.course_id,
        course_name=draft.course_name,
        event_type=normalize_event_type(draft.event_type),
        content_id=draft.content_id,
        content_title=draft.content_title,
        lesson_name=draft.lesson_name,
        occurred_at=draft.occurred_at,
        source=draft.source,
        raw_event_id=draft.raw_event_id,
        raw_payload=draft.raw_payload,
        dedupe_key=key,
        score_percent=score.score_percent,
        metadata=metadata,
    )


def write_event(draft: DraftEvent, *, mode: str = "ingest", key: Optional[str] = None) -> WriteResult:
    """Create the canonical event for ``draft`` unless its key is taken.

    ``mode="ingest"`` reports a taken key as a duplicate; ``mode="repair"``
    patches the stored record in place instead. ``key`` defaults to the key
    built from ``draft`` itself.
    """

    if mode not in ("ingest", "repair"):
        raise ValueError(f"Unknown write mode: {mode}")
    if not draft.raw_payload:
        raise ExtractionError("raw_payload", "raw payload is mandatory for new events")

    score = score_draft(draft)
    key = key or key_for_draft(draft)
    existing = _find_existing(key, draft)

    if existing is None:
        created = db.insert_event_if_absent(_new_event(draft, key, score))
        if created is not None:
            logger.info("Created %s event %s (%s)", created.event_type, created.id, key)
            return WriteResult(CREATED, created, score)
        # lost the race to a concurrent writer
        existing = db.find_event_by_dedupe_key(key)

    if mode == "ingest":
        logger.info("Duplicate %s event skipped (%s)", draft.event_type, key)
        return WriteResult(DUPLICATE, existing, score)

    patch = merge_patch(existing, draft, score)
    if not patch:
        return WriteResult(UNCHANGED, existing, score)
    updated = db.update_event(existing.id, patch)
    logger.info("Repaired event %s: %s", existing.id, sorted(patch))
    return WriteResult(UPDATED, updated, score, patch)


# -------------- lesson -> course enrichment --------------
def apply_lesson_course_map(draft: DraftEvent) -> DraftEvent:
    """Learn lesson->course pairs from events that carry both; fill events that lack the course."""

    lesson_id = str(draft.metadata.get("lesson_id") or "")
    if not lesson_id:
        return draft
    if draft.course_name and draft.course_name != UNKNOWN_COURSE:
        db.upsert_lesson_course(lesson_id, draft.course_id, draft.course_name, draft.occurred_at)
        return draft
    known = db.get_lesson_course(lesson_id)
    if known is None:
        return draft
    return draft.model_copy(
        update={"course_name": known["course_name"], "course_id": draft.course_id or known["course_id"]}
    )


# -------------- pipeline --------------
def after_write(result: WriteResult) -> Optional[MatchOutcome]:
    """Renumber the event's attempt group and run the assignment matcher."""

    event = result.event
    if event is None or result.outcome not in (CREATED, UPDATED):
        return None
    if attempts.renumber_event_group(event):
        event = db.get_event(event.id)
        result.event = event
    return assignments.try_complete_assignments(event)


def _check_domain(draft: DraftEvent, domain: Optional[str]) -> None:
    if domain and not draft.student_email.endswith("@" + domain):
        raise ExtractionError("student_email", f"email outside {domain}: {draft.student_email}")


def allowed_domain_for(source: str) -> Optional[str]:
    """Email domain enforced for ``source``; only CSV exports are filtered."""

    return internal_email_domain() if source == "csv_import" else None


def prepare_draft(payload: Any, source: str, dialect: Optional[str] = None) -> Tuple[DraftEvent, str]:
    """Extract, filter and enrich ``payload``; return the draft with its dedupe key.

    The key comes from the draft as extracted, so a lesson->course pair learned
    later never changes the identity of an event.
    """

    draft = extract(payload, source, dialect)
    _check_domain(draft, allowed_domain_for(source))
    key = key_for_draft(draft)
    return apply_lesson_course_map(draft), key


def ingest_payload(payload: Mapping[str, Any], source: str, *, dialect: Optional[str] = None) -> IngestResult:
    """Capture, extract, write, renumber and match a single payload."""

    topic = webhook_topic(payload) if source == "webhook" else ""
    raw_event_id = payload.get("id") if topic and isinstance(payload, Mapping) else None
    capture = capture_raw(source, payload, raw_event_id=raw_event_id, topic=topic)

    try:
        draft, key = prepare_draft(payload, source, dialect)
    except UnsupportedEventError as exc:
        logger.info("Captured %s payload %s without canonical event: %s", source, capture.id, exc)
        return IngestResult(status="ignored", capture_id=capture.id, reason=str(exc))
    except ExtractionError as exc:
        logger.warning("Rejected %s payload %s: %s", source, capture.id, exc)
        return IngestResult(status="rejected", capture_id=capture.id, reason=str(exc), field=exc.field)

    result = write_event(draft, mode="ingest", key=key)
    match = after_write(result)
    if match is not None and match.error:
        logger.warning("Event %s stored but matching failed: %s", match.event_id, match.error)
    return IngestResult(
        status=result.outcome,
        event=result.event,
        capture_id=capture.id,
        score_flag=result.score.flag,
        match=match,
    )


def ingest_webhook(body: Mapping[str, Any]) -> IngestResult:
    return ingest_payload(body, "webhook")


def _tally(summary: BatchSummary, index: int, result: IngestResult, limit: int) -> None:
    if result.status == CREATED:
        summary.imported += 1
    elif result.status == DUPLICATE:
        summary.duplicates += 1
    elif result.status == UPDATED:
        summary.updated += 1
    elif result.status == "ignored":
        summary.skipped += 1
    elif result.status == "rejected":
        summary.record_error({"row": index, "field": result.field, "reason": result.reason}, limit)
    if result.score_flag:
        summary.flagged_scores += 1
    if result.match is not None and result.match.error:
        summary.match_errors += 1


def _import(rows: Iterable[Any], source: str, dialect_for) -> BatchSummary:
    summary = BatchSummary()
    limit = error_sample_limit()
    for index, row in enumerate(rows, start=1):
        summary.total += 1
        if not isinstance(row, Mapping):
            summary.record_error({"row": index, "field": "row", "reason": "row must be an object"}, limit)
            continue
        result = ingest_payload(row, source, dialect=dialect_for(row))
        _tally(summary, index, result, limit)
    logger.info(
        "Import from %s finished: %s imported, %s duplicates, %s errors of %s",
        source,
        summary.imported,
        summary.duplicates,
        summary.errors,
        summary.total,
    )
    return summary


def import_csv_rows(rows: Iterable[Mapping[str, Any]], *, source: str = "csv_import") -> BatchSummary:
    return _import(rows, source, lambda row: "csv")


def import_csv_text(csv_text: str, *, source: str = "csv_import") -> BatchSummary:
    return import_csv_rows(parse_csv_text(csv_text), source=source)


def import_rest_rows(rows: Iterable[Mapping[str, Any]], *, source: str = "rest_backfill") -> BatchSummary:
    """Import pre-shaped rows; rows using CSV export headers go through the CSV extractor."""

    def dialect_for(row: Mapping[str, Any]) -> str:
        return "csv" if CSV_COLUMNS.looks_like_csv_row(row.keys()) else "legacy"

    return _import(rows, source, dialect_for)
