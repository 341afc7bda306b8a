import math

import pytest
from pydantic import ValidationError

from schemas import ActivityEvent, BatchSummary, CatalogItem, RepairSummary, normalize_event_type


def _event(**overrides) -> ActivityEvent:
    data = {
        "student_email": "a@x.com",
        "event_type": "quiz.attempted",
        "occurred_at": "2026-03-01T10:00:00.000Z",
        "source": "webhook",
        "dedupe_key": "quiz_attempted:r-1",
    }
    data.update(overrides)
    return ActivityEvent(**data)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("quiz_attempted", "quiz_attempted"),
        ("Quiz.Attempted", "quiz_attempted"),
        (" lesson.completed ", "lesson_completed"),
        ("user_signin", "user_signin"),
        ("enrollment.created", None),
        (None, None),
    ],
)
def test_normalize_event_type(value, expected):
    assert normalize_event_type(value) == expected


def test_activity_event_properties():
    event = _event(score_percent=math.nan, metadata={"archived": True})
    assert event.canonical_type == "quiz_attempted"
    assert event.is_archived
    assert not event.has_finite_score
    assert _event(score_percent=0.0).has_finite_score


def test_source_is_restricted():
    with pytest.raises(ValidationError):
        _event(source="ftp")


def test_catalog_content_type_is_restricted():
    with pytest.raises(ValidationError):
        CatalogItem(title="Quiz", content_type="video")


def test_error_samples_are_bounded_but_counted():
    summary = BatchSummary()
    for idx in range(5):
        summary.record_error({"row": idx}, limit=3)
    assert summary.errors == 5
    assert [detail["row"] for detail in summary.error_details] == [0, 1, 2]

    repair = RepairSummary(job="repair_scores")
    repair.record_change({"id": 1}, limit=0)
    assert repair.updated == 1
    assert repair.changes == []
