"""Per-dialect field extraction into ``DraftEvent`` records.

Every inbound shape (webhook JSON, CSV rows, legacy/REST rows) is handled by
exactly one extractor. Extractors tolerate missing optional fields and raise
``ExtractionError`` only when the student, the content or the event time
cannot be identified.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from capture import serialize_payload
from csv_columns import CSV_COLUMNS
from errors import ExtractionError, UnsupportedEventError
from schemas import DraftEvent, ScoreInputs, normalize_event_type
from scoring import to_number

logger = logging.getLogger(__name__)

DEFAULT_DIALECTS = {
    "webhook": "webhook",
    "csv_import": "csv",
    "rest_backfill": "legacy",
    "manual_test": "legacy",
}

_HUMAN_DATE_FORMATS = (
    "%B %d, %Y %H:%M",
    "%B %d, %Y %H:%M:%S",
    "%b %d, %Y %H:%M",
    "%b %d, %Y %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)

_DASHED_SUFFIX = re.compile(r"\s*-\s*(part|item)\s*\d+\s*$", re.IGNORECASE)
_BARE_SUFFIX = re.compile(r"\s*\b(part|item)\s*\d+\s*$", re.IGNORECASE)
_TOPIC_PREFIX = re.compile(r"^(.*?)\s*-\s*(part|item)\s*\d+\s*$", re.IGNORECASE)


# -------------- shared helpers --------------
def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601, epoch seconds (or milliseconds) and LMS export dates as UTC."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = float(value) / 1000 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if not text:
            return None
        if re.fullmatch(r"\d{9,13}(\.\d+)?", text):
            return parse_timestamp(float(text))
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _HUMAN_DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""

    if value is None:
        return None
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def parse_csv_date(value: Any) -> Optional[str]:
    return to_iso(parse_timestamp(value))


def clean_title(title: Any) -> str:
    """Strip trailing ``- Part N`` / ``Part N`` / ``- Item N`` / ``Item N`` suffixes."""

    original = _text(title)
    cleaned = _DASHED_SUFFIX.sub("", original)
    cleaned = _BARE_SUFFIX.sub("", cleaned).strip()
    return cleaned or original


def derive_topic(original_title: Any, existing_topic: Any = None) -> str:
    existing = _text(existing_topic)
    if existing:
        return existing
    original = _text(original_title)
    match = _TOPIC_PREFIX.match(original)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return clean_title(original)


def parse_csv_text(text: str) -> List[Dict[str, str]]:
    """Parse CSV text with a header row into trimmed row mappings."""

    if not text or not text.strip():
        return []
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff").strip()))
    header: Optional[List[str]] = None
    rows: List[Dict[str, str]] = []
    for cells in reader:
        if not cells or all(not cell.strip() for cell in cells):
            continue
        if header is None:
            header = [cell.strip() for cell in cells]
            continue
        row = {}
        for idx, name in enumerate(header):
            if not name:
                continue
            row[name] = cells[idx].strip() if idx < len(cells) else ""
        rows.append(row)
    return rows


def _require(value: str, field: str) -> str:
    if not value:
        raise ExtractionError(field)
    return value


def _count(value: Any) -> Optional[float]:
    # Some webhook versions send ``correct_count: true`` for single-question quizzes.
    if value is True:
        return 1.0
    return to_number(value)


def _compact(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in metadata.items() if value not in (None, "")}


# -------------- webhook dialect --------------
def webhook_topic(body: Any) -> str:
    """``resource.action`` of a webhook wrapper, or ``""`` when absent."""

    if not isinstance(body, Mapping):
        return ""
    resource, action = _text(body.get("resource")), _text(body.get("action"))
    return f"{resource}.{action}" if resource and action else ""


def _webhook_event_type(wrapper: Mapping[str, Any], inner: Mapping[str, Any]) -> str:
    resource = _text(wrapper.get("resource"))
    action = _text(wrapper.get("action"))
    if resource or action:
        topic = f"{resource}.{action}"
        event_type = normalize_event_type(topic)
        if event_type is None:
            raise UnsupportedEventError(topic)
        return event_type
    if isinstance(inner.get("quiz"), Mapping):
        return "quiz_attempted"
    if isinstance(inner.get("lesson"), Mapping):
        return "lesson_completed"
    if inner.get("email") and not isinstance(inner.get("user"), Mapping):
        return "user_signin"
    raise ExtractionError("event_type", "cannot determine webhook event type")


def _webhook_occurred_at(wrapper: Mapping[str, Any], inner: Mapping[str, Any]) -> str:
    for candidate in (
        inner.get("completed_at"),
        wrapper.get("created_at"),
        wrapper.get("timestamp"),
        inner.get("created_at"),
    ):
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return to_iso(parsed)
    raise ExtractionError("occurred_at")


def extract_webhook(body: Mapping[str, Any]) -> DraftEvent:
    if not isinstance(body, Mapping):
        raise ExtractionError("payload", "webhook body must be a JSON object")
    if isinstance(body.get("payload"), Mapping):
        wrapper, inner = body, body["payload"]
    else:
        wrapper, inner = body, body

    event_type = _webhook_event_type(wrapper, inner)
    user = _mapping(inner.get("user"))
    if event_type == "user_signin" and not user:
        # sign-in bodies carry the user at the top level
        user = inner
    course = _mapping(inner.get("course"))
    chapter = _mapping(inner.get("chapter"))
    lesson = _mapping(inner.get("lesson"))
    quiz = _mapping(inner.get("quiz"))

    email = _require(normalize_email(user.get("email")), "student_email")
    display_name = f"{_text(user.get('first_name'))} {_text(user.get('last_name'))}".strip()

    content_id = content_title = lesson_name = ""
    if event_type == "quiz_attempted":
        content_id, content_title = _text(quiz.get("id")), _text(quiz.get("name"))
        lesson_name = _text(lesson.get("name"))
    elif event_type == "lesson_completed":
        content_id, content_title = _text(lesson.get("id")), _text(lesson.get("name"))
        lesson_name = content_title
    if event_type != "user_signin" and not (content_id or content_title):
        raise ExtractionError("content")

    result_id = _text(inner.get("result_id")) or None
    metadata = _compact(
        {
            "result_id": result_id,
            "lesson_id": _text(lesson.get("id")),
            "quiz_id": _text(quiz.get("id")),
            "chapter_id": _text(chapter.get("id")),
            "chapter_name": _text(chapter.get("name")),
            "lesson_type": _text(lesson.get("lesson_type")),
            "source_attempts": to_number(inner.get("attempts")),
            "raw_score": to_number(inner.get("score")),
            "max_score": to_number(inner.get("max_score")),
            "correct_count": _count(inner.get("correct_count")),
            "incorrect_count": _count(inner.get("incorrect_count")),
        }
    )

    return DraftEvent(
        event_type=event_type,
        source="webhook",
        student_email=email,
        occurred_at=_webhook_occurred_at(wrapper, inner),
        student_user_id=_text(user.get("id")),
        student_display_name=display_name,
        course_id=_text(course.get("id")),
        course_name=_text(course.get("name")),
        content_id=content_id,
        content_title=content_title,
        lesson_name=lesson_name,
        raw_event_id=_text(wrapper.get("id")) if wrapper is not inner else "",
        raw_payload=serialize_payload(body),
        result_id=result_id,
        score_inputs=ScoreInputs(
            grade=inner.get("grade") if event_type == "quiz_attempted" else None,
            correct_count=_count(inner.get("correct_count")),
            incorrect_count=_count(inner.get("incorrect_count")),
        ),
        metadata=metadata,
    )


# -------------- CSV dialect --------------
def extract_csv_row(row: Mapping[str, Any], *, source: str = "csv_import") -> DraftEvent:
    if not isinstance(row, Mapping):
        raise ExtractionError("row", "CSV row must be a mapping")
    fields = CSV_COLUMNS.canonicalize(row)

    declared_type = fields.get("event_type")
    event_type = normalize_event_type(declared_type) if declared_type else "quiz_attempted"
    if event_type is None:
        raise UnsupportedEventError(declared_type)

    for name in CSV_COLUMNS.required_fields():
        # sign-in rows carry no content
        if not (name == "content_title" and event_type == "user_signin"):
            _require(fields.get(name, ""), name)
    email = _require(normalize_email(fields.get("student_email")), "student_email")
    title = fields.get("content_title", "")
    raw_date = fields.get("occurred_at")
    occurred_at = parse_csv_date(raw_date)
    if occurred_at is None:
        raise ExtractionError(
            "occurred_at",
            f"unparseable completion date: {raw_date!r}" if raw_date else None,
        )

    display_name = (
        fields.get("student_name")
        or f"{fields.get('first_name', '')} {fields.get('last_name', '')}".strip()
        or email.split("@")[0]
    )
    result_id = fields.get("result_id") or None
    correct = to_number(fields.get("correct_count"))
    total = to_number(fields.get("total_questions"))

    return DraftEvent(
        event_type=event_type,
        source=source,
        student_email=email,
        occurred_at=occurred_at,
        student_user_id=fields.get("student_user_id", ""),
        student_display_name=display_name,
        course_id=fields.get("course_id", ""),
        course_name=fields.get("course_name", ""),
        content_id=fields.get("content_id", ""),
        content_title=title,
        lesson_name=title if event_type == "lesson_completed" else "",
        raw_payload=serialize_payload(dict(row)),
        result_id=result_id,
        score_inputs=ScoreInputs(
            grade=fields.get("grade"),
            correct_count=correct,
            incorrect_count=to_number(fields.get("incorrect_count")),
            total_questions=total,
            percent_text=fields.get("percent_score"),
        ),
        metadata=_compact(
            {
                "result_id": result_id,
                "lesson_id": fields.get("lesson_id"),
                "quiz_id": fields.get("content_id"),
                "raw_percent_score": fields.get("percent_score"),
                "correct_count": correct,
                "total_questions": total,
                "source_attempts": to_number(fields.get("attempts")),
            }
        ),
    )


# -------------- legacy / REST dialect --------------
def _pick(row: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = row.get(name)
        if value is not None and value != "":
            return value
    return None


def extract_legacy(row: Mapping[str, Any], *, source: str = "rest_backfill") -> DraftEvent:
    if not isinstance(row, Mapping):
        raise ExtractionError("row", "legacy row must be a mapping")

    declared_type = _pick(row, "eventType", "event_type")
    event_type = normalize_event_type(declared_type) if declared_type else "quiz_attempted"
    if event_type is None:
        raise UnsupportedEventError(str(declared_type))

    email = _require(normalize_email(_pick(row, "studentEmail", "student_email", "email")), "student_email")
    title = _text(_pick(row, "contentTitle", "content_title", "quizName", "lessonName"))
    content_id = _text(_pick(row, "contentId", "content_id"))
    if event_type != "user_signin" and not (title or content_id):
        raise ExtractionError("content")
    occurred = parse_timestamp(_pick(row, "occurredAt", "occurred_at", "completedAt"))
    if occurred is None:
        raise ExtractionError("occurred_at")

    extra = _mapping(row.get("metadata"))
    score = to_number(_pick(row, "score"))
    max_score = to_number(_pick(row, "maxScore", "max_score"))
    result_id = _text(_pick(row, "resultId", "result_id") or extra.get("result_id") or extra.get("resultId")) or None
    lesson_id = _text(_pick(row, "lessonId", "lesson_id") or extra.get("lesson_id") or extra.get("lessonId"))
    quiz_id = _text(_pick(row, "quizId", "quiz_id") or extra.get("quiz_id") or extra.get("quizId"))

    return DraftEvent(
        event_type=event_type,
        source=source,
        student_email=email,
        occurred_at=to_iso(occurred),
        student_user_id=_text(_pick(row, "studentUserId", "student_user_id", "thinkificUserId")),
        student_display_name=_text(_pick(row, "studentDisplayName", "student_display_name")),
        course_id=_text(_pick(row, "courseId", "course_id")),
        course_name=_text(_pick(row, "courseName", "course_name")),
        content_id=content_id,
        content_title=title,
        lesson_name=_text(_pick(row, "lessonName", "lesson_name")),
        raw_event_id=_text(_pick(row, "rawEventId", "raw_event_id")),
        raw_payload=serialize_payload(dict(row)),
        result_id=result_id,
        score_inputs=ScoreInputs(
            grade=_pick(row, "grade"),
            correct_count=score if max_score is not None else to_number(_pick(row, "correctCount", "correct_count")),
            incorrect_count=to_number(_pick(row, "incorrectCount", "incorrect_count")),
            total_questions=max_score,
            percent_text=_pick(row, "scorePercent", "score_percent", "percentScore"),
        ),
        metadata=_compact(
            {
                "result_id": result_id,
                "lesson_id": lesson_id,
                "quiz_id": quiz_id,
                "level": _text(extra.get("level")),
                "raw_score": score,
                "max_score": max_score,
                "source_attempts": to_number(_pick(row, "attempts", "attemptNumber")),
            }
        ),
    )


_EXTRACTORS: Dict[str, Callable[..., DraftEvent]] = {
    "webhook": lambda payload, source: extract_webhook(payload),
    "csv": lambda payload, source: extract_csv_row(payload, source=source),
    "legacy": lambda payload, source: extract_legacy(payload, source=source),
}


def extract(payload: Mapping[str, Any], source: str, dialect: Optional[str] = None) -> DraftEvent:
    """Dispatch ``payload`` to the extractor for ``dialect`` (or ``source``'s default)."""

    dialect = dialect or DEFAULT_DIALECTS.get(source)
    if dialect not in _EXTRACTORS:
        raise ValueError(f"Unknown dialect {dialect!r} for source {source!r}")
    if dialect == "webhook" and source != "webhook":
        raise ValueError("webhook dialect is reserved for the webhook source")
    return _EXTRACTORS[dialect](payload, source)
