"""Pydantic schemas for canonical activity records and batch summaries."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

__all__ = [
    "EventType",
    "Source",
    "ImportSource",
    "EVENT_TYPES",
    "EVENT_TYPE_ALIASES",
    "normalize_event_type",
    "ScoreInputs",
    "DraftEvent",
    "ActivityEvent",
    "StudentAssignment",
    "CatalogItem",
    "RawCapture",
    "IngestResult",
    "MatchOutcome",
    "BatchSummary",
    "RepairSummary",
    "ArchiveReport",
]

EventType = Literal["quiz_attempted", "lesson_completed", "user_signin"]
Source = Literal["webhook", "csv_import", "rest_backfill", "manual_test"]
ImportSource = Literal["csv_import", "rest_backfill", "manual_test"]
AssignmentStatus = Literal["assigned", "completed", "archived"]

EVENT_TYPES: tuple[str, ...] = ("quiz_attempted", "lesson_completed", "user_signin")

# Legacy dotted spellings still present in older rows.
EVENT_TYPE_ALIASES: dict[str, str] = {
    "quiz.attempted": "quiz_attempted",
    "lesson.completed": "lesson_completed",
    "user.signin": "user_signin",
}


def normalize_event_type(value: Any) -> Optional[str]:
    """Return the underscore form of ``value`` or ``None`` when it is not tracked."""

    if value is None:
        return None
    text = str(value).strip().lower()
    if text in EVENT_TYPES:
        return text
    return EVENT_TYPE_ALIASES.get(text)


class ScoreInputs(BaseModel):
    """Every score representation a payload may carry, before normalisation."""

    grade: Any = None
    correct_count: Optional[float] = None
    incorrect_count: Optional[float] = None
    total_questions: Optional[float] = None
    percent_text: Any = None


class DraftEvent(BaseModel):
    """Partial canonical record produced by a field extractor."""

    event_type: str
    source: Source
    student_email: str
    occurred_at: str
    student_user_id: str = ""
    student_display_name: str = ""
    course_id: str = ""
    course_name: str = ""
    content_id: str = ""
    content_title: str = ""
    lesson_name: str = ""
    raw_event_id: str = ""
    raw_payload: Optional[str] = None
    result_id: Optional[str] = None
    score_inputs: ScoreInputs = Field(default_factory=ScoreInputs)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ActivityEvent(BaseModel):
    id: Optional[int] = None
    student_email: str
    student_user_id: str = ""
    student_display_name: str = ""
    course_id: str = ""
    course_name: str = ""
    # Kept as ``str`` because dotted legacy spellings coexist until migrated.
    event_type: str
    content_id: str = ""
    content_title: str = ""
    lesson_name: str = ""
    occurred_at: str
    source: Source
    raw_event_id: str = ""
    raw_payload: Optional[str] = None
    dedupe_key: str
    score_percent: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def canonical_type(self) -> Optional[str]:
        return normalize_event_type(self.event_type)

    @property
    def is_archived(self) -> bool:
        return bool(self.metadata.get("archived"))

    @property
    def has_finite_score(self) -> bool:
        return self.score_percent is not None and math.isfinite(self.score_percent)


class StudentAssignment(BaseModel):
    id: Optional[int] = None
    teacher_email: str
    student_email: str
    catalog_id: int
    title: str = ""
    topic: str = ""
    level: str = ""
    content_type: str = ""
    course_id: str = ""
    lesson_id: str = ""
    quiz_id: str = ""
    status: AssignmentStatus = "assigned"
    assigned_at: str
    due_at: Optional[str] = None
    completed_at: Optional[str] = None
    completed_by_event_id: Optional[int] = None
    dedupe_key: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CatalogItem(BaseModel):
    id: Optional[int] = None
    title: str
    topic: str = ""
    level: str = ""
    content_type: Literal["lesson", "quiz"] = "lesson"
    course_id: str = ""
    lesson_id: str = ""
    quiz_id: str = ""
    source_key: str = ""
    is_active: bool = True


class RawCapture(BaseModel):
    id: Optional[int] = None
    source: Source
    topic: str = ""
    raw_event_id: str = ""
    payload: str
    payload_hash: str
    received_at: str


class MatchOutcome(BaseModel):
    event_id: Optional[int] = None
    completed: List[int] = Field(default_factory=list)
    error: Optional[str] = None


class IngestResult(BaseModel):
    status: Literal["created", "duplicate", "updated", "unchanged", "rejected", "ignored"]
    event: Optional[ActivityEvent] = None
    capture_id: Optional[int] = None
    reason: Optional[str] = None
    field: Optional[str] = None
    score_flag: Optional[str] = None
    match: Optional[MatchOutcome] = None


class BatchSummary(BaseModel):
    """Structured outcome of a bulk import; never a bare pass/fail."""

    total: int = 0
    imported: int = 0
    updated: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    flagged_scores: int = 0
    match_errors: int = 0
    error_details: List[Dict[str, Any]] = Field(default_factory=list)

    def record_error(self, detail: Dict[str, Any], limit: int) -> None:
        self.errors += 1
        if len(self.error_details) < limit:
            self.error_details.append(detail)


class RepairSummary(BaseModel):
    job: str
    total: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    still_unknown: int = 0
    missing_raw_payload: int = 0
    error_details: List[Dict[str, Any]] = Field(default_factory=list)
    changes: List[Dict[str, Any]] = Field(default_factory=list)

    def record_error(self, detail: Dict[str, Any], limit: int) -> None:
        self.errors += 1
        if len(self.error_details) < limit:
            self.error_details.append(detail)

    def record_change(self, change: Dict[str, Any], limit: int) -> None:
        self.updated += 1
        if len(self.changes) < limit:
            self.changes.append(change)


class ArchiveReport(BaseModel):
    """Backup snapshot plus the outcome of an archive or delete request."""

    student_email: str
    preview: bool
    total: int
    affected: int = 0
    already_archived: int = 0
    backup: Dict[str, Any] = Field(default_factory=dict)
