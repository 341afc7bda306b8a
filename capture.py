"""Verbatim capture of inbound payloads before any interpretation."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, get_args

import db
from schemas import RawCapture, Source

logger = logging.getLogger(__name__)

SOURCES = get_args(Source)


def serialize_payload(payload: Any) -> str:
    """Serialise ``payload`` as JSON text, preserving key order."""

    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def payload_hash(payload: Any) -> str:
    canonical = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"


def capture_raw(
    source: str,
    payload: Any,
    *,
    raw_event_id: Optional[str] = None,
    topic: Optional[str] = None,
) -> RawCapture:
    """Persist ``payload`` as received.

    Re-delivering an identical body from the same source returns the
    existing capture instead of storing a second copy.
    """

    if source not in SOURCES:
        raise ValueError(f"Unknown source: {source}")
    capture = RawCapture(
        source=source,
        topic=topic or "",
        raw_event_id=str(raw_event_id or ""),
        payload=serialize_payload(payload),
        payload_hash=payload_hash(payload),
        received_at=utc_now_iso(),
    )
    stored = db.insert_raw_capture(capture)
    logger.debug("Captured %s payload %s as #%s", source, stored.payload_hash[:12], stored.id)
    return stored


def list_captures(
    source: Optional[str] = None,
    topic: Optional[str] = None,
    *,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[RawCapture]:
    filters = {}
    if source is not None:
        filters["source"] = source
    if topic is not None:
        filters["topic"] = topic
    return db.list_raw_captures(limit=limit, offset=offset, **filters)


def load_payload(capture: RawCapture) -> Any:
    return json.loads(capture.payload)
