"""Deterministic identity keys for activity events."""

from __future__ import annotations

import hashlib
from typing import List, Optional

from extractors import normalize_email, parse_timestamp, to_iso
from schemas import DraftEvent, normalize_event_type

FINGERPRINT_LENGTH = 40


def _norm(value: Optional[str]) -> str:
    return " ".join(str(value or "").split()).lower()


def build_dedupe_key(
    event_type: str,
    *,
    result_id: Optional[str] = None,
    student_email: str = "",
    content: str = "",
    course: str = "",
    occurred_at: str = "",
) -> str:
    """Return ``"{type}:{result_id}"`` or ``"{type}:fp:{digest}"``.

    The fingerprint covers the normalised email, content, course and event
    time. Two distinct events sharing all of those to the second produce the
    same key and collapse into one record.
    """

    canonical_type = normalize_event_type(event_type)
    if canonical_type is None:
        raise ValueError(f"Unsupported event type: {event_type}")

    result = str(result_id or "").strip()
    if result:
        return f"{canonical_type}:{result}"

    moment = to_iso(parse_timestamp(occurred_at)) or str(occurred_at or "").strip()
    material = "|".join(
        (canonical_type, normalize_email(student_email), _norm(content), _norm(course), moment)
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
    return f"{canonical_type}:fp:{digest}"


def key_for_draft(draft: DraftEvent) -> str:
    return build_dedupe_key(
        draft.event_type,
        result_id=draft.result_id,
        student_email=draft.student_email,
        content=draft.content_id or draft.content_title,
        course=draft.course_id or draft.course_name,
        occurred_at=draft.occurred_at,
    )


def candidate_keys(
    key: str,
    result_id: Optional[str] = None,
    raw_event_id: Optional[str] = None,
) -> List[str]:
    """Keys under which the same event may already be stored.

    Older ingestion paths keyed quiz results by the bare result id and
    webhooks by ``wh:{delivery id}``.
    """

    keys = [key]
    result = str(result_id or "").strip()
    if result and result not in keys:
        keys.append(result)
    delivery = str(raw_event_id or "").strip()
    if delivery:
        keys.append(f"wh:{delivery}")
    return keys
