import assignments
import db
import ingest
import views
from schemas import ActivityEvent


class StaticRoster:
    def __init__(self, students):
        self.students = students

    def lookup_roster(self, teacher_id):
        return list(self.students)


def _store(key, **overrides):
    data = dict(
        student_email="a@x.com",
        event_type="quiz_attempted",
        content_title="Quiz 1",
        course_name="K",
        occurred_at="2026-03-01T10:00:00.000Z",
        source="csv_import",
        raw_payload="{}",
        dedupe_key=key,
    )
    data.update(overrides)
    return db.insert_event_if_absent(ActivityEvent(**data))


def test_student_score_history_skips_archived(temp_db, webhook_body):
    ingest.ingest_webhook(webhook_body("r-2", completed_at="2026-03-02T10:00:00Z"))
    ingest.ingest_webhook(webhook_body("r-1"))
    _store("archived", student_email="kid@modalmath.com", metadata={"archived": True})

    history = views.student_score_history(" KID@modalmath.com")
    assert [row["attempt_number"] for row in history] == [1, 2]
    assert [row["occurred_at"] for row in history] == ["2026-03-01T10:00:00.000Z", "2026-03-02T10:00:00.000Z"]


def test_teacher_activity_is_newest_first_and_limited(temp_db):
    _store("k1", occurred_at="2026-03-01T10:00:00.000Z")
    _store("k2", student_email="b@x.com", occurred_at="2026-03-03T10:00:00.000Z")
    _store("k3", student_email="c@x.com", occurred_at="2026-03-04T10:00:00.000Z")
    _store("k4", occurred_at="2026-03-05T10:00:00.000Z", metadata={"archived": True})

    roster = StaticRoster(["A@x.com", "b@x.com", ""])
    rows = views.teacher_activity(roster, "group-7")
    assert [row["student_email"] for row in rows] == ["b@x.com", "a@x.com"]
    assert len(views.teacher_activity(roster, "group-7", limit=1)) == 1
    assert views.teacher_activity(StaticRoster([]), "group-7") == []


def test_assignment_completion_counts_statuses(temp_db):
    item = assignments.create_catalog_item("Quiz 1", content_type="quiz", quiz_id="900")
    assignments.create_assignments("t@x.com", ["a@x.com", "b@x.com"], item.id)
    assignments.try_complete_assignments(_store("k1", content_id="900"))

    assert views.assignment_completion("T@x.com") == [
        {"catalog_id": item.id, "title": "Quiz 1", "assigned": 1, "completed": 1, "archived": 0}
    ]
    assert views.assignment_completion("other@x.com") == []
