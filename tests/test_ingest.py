import pytest

import db
import ingest
from capture import list_captures
from errors import ExtractionError
from extractors import extract_webhook
from schemas import ActivityEvent

CSV_HEADER = "Student Email,Survey/Quiz Name,Course Name,% Score,Date Completed (UTC)\n"
E2E_LINE = 'a@modalmath.com,Quiz 1,K,76,"March 1, 2026 10:00"\n'

LESSON_ROW = {
    "eventType": "lesson_completed",
    "studentEmail": "kid@modalmath.com",
    "contentTitle": "Fractions Lesson",
    "lessonId": "77",
    "courseName": "Grade 3 Math",
    "occurredAt": "2026-03-01T09:00:00Z",
}
QUIZ_ROW = {
    "eventType": "quiz_attempted",
    "studentEmail": "kid@modalmath.com",
    "contentTitle": "Fractions Quiz",
    "lessonId": "77",
    "score": 8,
    "maxScore": 10,
    "occurredAt": "2026-03-01T10:00:00Z",
}


def test_webhook_is_captured_stored_and_numbered(temp_db, webhook_body):
    result = ingest.ingest_webhook(webhook_body())
    assert result.status == "created"
    assert result.capture_id is not None
    event = result.event
    assert event.dedupe_key == "quiz_attempted:r-1"
    assert event.score_percent == pytest.approx(85.0)
    assert event.metadata["score_rule"] == "grade"
    assert event.metadata["attempt_number"] == 1
    assert list_captures()[0].topic == "quiz.attempted"
    assert list_captures()[0].raw_event_id == "wh-r-1"


def test_webhook_redelivery_is_a_duplicate(temp_db, webhook_body):
    first = ingest.ingest_webhook(webhook_body())
    second = ingest.ingest_webhook(webhook_body())
    assert second.status == "duplicate"
    assert second.event.id == first.event.id
    assert second.capture_id == first.capture_id
    assert db.count_events() == 1


def test_legacy_keys_are_recognised_as_duplicates(temp_db, webhook_body):
    for key in ("r-1", "wh:wh-r-2"):
        db.insert_event_if_absent(
            ActivityEvent(
                student_email="kid@modalmath.com",
                event_type="quiz_attempted",
                occurred_at="2026-03-01T10:00:00.000Z",
                source="webhook",
                raw_payload="{}",
                dedupe_key=key,
            )
        )
    assert ingest.ingest_webhook(webhook_body("r-1")).status == "duplicate"
    assert ingest.ingest_webhook(webhook_body("r-2")).status == "duplicate"
    assert db.count_events() == 2


def test_untracked_topic_is_captured_but_ignored(temp_db):
    body = {"id": "e-1", "resource": "enrollment", "action": "created", "payload": {"user": {"email": "a@x.com"}}}
    result = ingest.ingest_webhook(body)
    assert result.status == "ignored"
    assert db.count_events() == 0
    assert list_captures(topic="enrollment.created")[0].id == result.capture_id


def test_rejected_webhook_keeps_its_capture(temp_db, webhook_body):
    body = webhook_body()
    body["payload"]["user"].pop("email")
    result = ingest.ingest_webhook(body)
    assert result.status == "rejected"
    assert result.field == "student_email"
    assert len(list_captures()) == 1


def test_csv_import_end_to_end(temp_db):
    summary = ingest.import_csv_text(CSV_HEADER + E2E_LINE + E2E_LINE)
    assert summary.total == 2
    assert summary.imported == 1
    assert summary.duplicates == 1
    assert summary.errors == 0

    [event] = db.find_events()
    assert event.source == "csv_import"
    assert event.student_email == "a@modalmath.com"
    assert event.content_title == "Quiz 1"
    assert event.course_name == "K"
    assert event.score_percent == 76.0
    assert event.occurred_at == "2026-03-01T10:00:00.000Z"
    assert event.metadata["score_rule"] == "percent_column"
    assert event.metadata["attempt_number"] == 1


def test_csv_import_reports_bounded_errors(temp_db, monkeypatch):
    monkeypatch.setenv("ERROR_SAMPLE_LIMIT", "2")
    bad_rows = ',Quiz 1,K,76,"March 1, 2026 10:00"\n' * 4 + 'b@x.com,Quiz 1,K,76,\n'
    summary = ingest.import_csv_text(CSV_HEADER + E2E_LINE + bad_rows)
    assert summary.total == 6
    assert summary.imported == 1
    assert summary.errors == 5
    assert len(summary.error_details) == 2
    assert summary.error_details[0] == {"row": 2, "field": "student_email", "reason": "missing required field: student_email"}


def test_flagged_score_is_stored_as_null(temp_db):
    summary = ingest.import_csv_text(CSV_HEADER + 'a@x.com,Quiz 1,K,150,"March 1, 2026 10:00"\n')
    assert summary.imported == 1
    assert summary.flagged_scores == 1
    [event] = db.find_events()
    assert event.score_percent is None
    assert "outside 0-100" in event.metadata["score_flag"]


def test_internal_domain_filter(temp_db, monkeypatch):
    monkeypatch.setenv("INTERNAL_EMAIL_DOMAIN", "modalmath.com")
    summary = ingest.import_csv_text(
        CSV_HEADER + E2E_LINE + 'someone@gmail.com,Quiz 1,K,50,"March 1, 2026 10:00"\n'
    )
    assert summary.imported == 1
    assert summary.errors == 1
    assert summary.error_details[0]["field"] == "student_email"


def test_rest_rows_pick_dialect_per_row(temp_db):
    rows = [
        {"Student Email": "a@x.com", "Quiz Name": "Quiz 1", "% Score": "80", "Date Completed": "2026-03-01 10:00"},
        {
            "eventType": "lesson_completed",
            "studentEmail": "a@x.com",
            "contentId": "77",
            "contentTitle": "Counting",
            "occurredAt": "2026-03-01T11:00:00Z",
        },
        "not a row",
    ]
    summary = ingest.import_rest_rows(rows)
    assert summary.imported == 2
    assert summary.errors == 1
    assert {event.source for event in db.find_events()} == {"rest_backfill"}
    assert {event.event_type for event in db.find_events()} == {"quiz_attempted", "lesson_completed"}


def test_write_event_requires_raw_payload(temp_db, webhook_body):
    draft = extract_webhook(webhook_body()).model_copy(update={"raw_payload": None})
    with pytest.raises(ExtractionError) as excinfo:
        ingest.write_event(draft)
    assert excinfo.value.field == "raw_payload"
    assert db.count_events() == 0


def test_repair_mode_fills_gaps_and_is_idempotent(temp_db, webhook_body):
    draft = extract_webhook(webhook_body())
    created = ingest.write_event(draft)
    db.update_event(created.event.id, {"course_name": "", "score_percent": 30.0})

    repaired = ingest.write_event(draft, mode="repair")
    assert repaired.outcome == ingest.UPDATED
    assert set(repaired.patch) == {"course_name", "score_percent"}
    assert repaired.event.course_name == "Grade 3 Math"
    assert repaired.event.score_percent == pytest.approx(85.0)

    again = ingest.write_event(draft, mode="repair")
    assert again.outcome == ingest.UNCHANGED
    assert again.patch == {}


def test_merge_patch_never_lowers_a_good_score(temp_db, webhook_body):
    created = ingest.write_event(extract_webhook(webhook_body(grade=0.95)))
    lower = extract_webhook(webhook_body(grade=0.40))
    result = ingest.write_event(lower, mode="repair")
    assert result.outcome == ingest.UNCHANGED
    assert db.get_event(created.event.id).score_percent == pytest.approx(95.0)


def test_unknown_write_mode_rejected(temp_db, webhook_body):
    with pytest.raises(ValueError):
        ingest.write_event(extract_webhook(webhook_body()), mode="upsert")


def test_lesson_course_map_fills_missing_course(temp_db, webhook_body):
    ingest.ingest_webhook(
        {
            "id": "d-1",
            "resource": "lesson",
            "action": "completed",
            "created_at": "2026-02-01T08:00:00Z",
            "payload": {
                "user": {"id": 42, "email": "kid@modalmath.com"},
                "lesson": {"id": 77, "name": "Fractions Lesson"},
                "course": {"id": 5, "name": "Grade 3 Math"},
            },
        }
    )
    body = webhook_body()
    body["payload"].pop("course")
    result = ingest.ingest_webhook(body)
    assert result.event.course_name == "Grade 3 Math"
    assert result.event.course_id == "5"


def test_second_attempt_gets_next_number(temp_db, webhook_body):
    ingest.ingest_webhook(webhook_body("r-2", completed_at="2026-03-02T10:00:00Z"))
    ingest.ingest_webhook(webhook_body("r-1"))
    numbers = {event.dedupe_key: event.metadata["attempt_number"] for event in db.find_events()}
    assert numbers == {"quiz_attempted:r-1": 1, "quiz_attempted:r-2": 2}


def test_reimporting_the_same_csv_counts_duplicates_only(temp_db):
    first = ingest.import_csv_text(CSV_HEADER + E2E_LINE)
    second = ingest.import_csv_text(CSV_HEADER + E2E_LINE)
    assert (first.imported, first.duplicates) == (1, 0)
    assert (second.imported, second.duplicates) == (0, 1)
    [event] = db.find_events()
    assert event.dedupe_key.startswith("quiz_attempted:fp:")


def test_reimport_after_lesson_course_is_learned_counts_duplicates(temp_db):
    first = ingest.import_rest_rows([QUIZ_ROW, LESSON_ROW])
    second = ingest.import_rest_rows([QUIZ_ROW, LESSON_ROW])
    assert (first.imported, first.duplicates) == (2, 0)
    assert (second.imported, second.duplicates) == (0, 2)
    assert db.count_events(event_type="quiz_attempted") == 1


def test_enriched_course_does_not_change_the_dedupe_key(temp_db):
    ingest.import_rest_rows([LESSON_ROW])
    quiz = ingest.ingest_payload(QUIZ_ROW, "rest_backfill", dialect="legacy").event
    assert quiz.course_name == "Grade 3 Math"
    assert quiz.dedupe_key == ingest.prepare_draft(QUIZ_ROW, "rest_backfill", "legacy")[1]
    assert ingest.ingest_payload(QUIZ_ROW, "rest_backfill", dialect="legacy").status == "duplicate"


def test_domain_filter_applies_to_csv_exports_only(temp_db, monkeypatch):
    monkeypatch.setenv("INTERNAL_EMAIL_DOMAIN", "modalmath.com")
    assert ingest.allowed_domain_for("csv_import") == "modalmath.com"
    assert ingest.allowed_domain_for("rest_backfill") is None
    assert ingest.allowed_domain_for("webhook") is None
