"""Error taxonomy shared by the ingestion pipeline and the repair jobs."""

from __future__ import annotations

from typing import Any, Optional


class ExtractionError(ValueError):
    """A raw payload lacks a field required to identify the event."""

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"missing required field: {field}")


class UnsupportedEventError(ValueError):
    """The payload describes an event type the canonical store does not track."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"unsupported event type: {event_type}")


class AmbiguousScoreError(ValueError):
    """A score value cannot be placed in the 0-100 range by any rule.

    Soft error: the event is still stored with ``score_percent = None`` and the
    reason is recorded in ``metadata.score_flag``.
    """

    def __init__(self, raw_value: Any, reason: str) -> None:
        self.raw_value = raw_value
        self.reason = reason
        super().__init__(f"ambiguous score {raw_value!r}: {reason}")


class DownstreamMatchError(RuntimeError):
    """Assignment matching failed after the canonical event was written."""


class UpstreamFetchError(RuntimeError):
    """An external LMS lookup failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class StoreUnavailableError(RuntimeError):
    """The entity store cannot be reached; the whole operation must abort."""
