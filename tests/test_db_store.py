import sqlite3

import pytest

import db
from errors import StoreUnavailableError
from schemas import ActivityEvent, CatalogItem, StudentAssignment


def _event(key, **overrides):
    data = dict(
        student_email="a@x.com",
        event_type="quiz_attempted",
        content_title="Quiz 1",
        course_name="K",
        occurred_at="2026-03-01T10:00:00.000Z",
        source="webhook",
        raw_payload="{}",
        dedupe_key=key,
        metadata={"lesson_id": "77"},
    )
    data.update(overrides)
    return ActivityEvent(**data)


def test_init_creates_tables(temp_db):
    with sqlite3.connect(temp_db) as con:
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {
        "activity_events",
        "assignment_catalog",
        "student_assignments",
        "raw_captures",
        "lesson_course_map",
    } <= tables


def test_insert_event_if_absent_enforces_unique_key(temp_db):
    created = db.insert_event_if_absent(_event("k1", score_percent=70.0))
    assert created.id is not None
    assert created.metadata == {"lesson_id": "77"}
    assert created.score_percent == 70.0
    assert created.created_at

    assert db.insert_event_if_absent(_event("k1", student_email="b@x.com")) is None
    assert db.count_events() == 1
    assert db.find_event_by_dedupe_key("k1").student_email == "a@x.com"


def test_find_events_filters_and_orders(temp_db):
    db.insert_event_if_absent(_event("k1", occurred_at="2026-03-02T00:00:00.000Z"))
    db.insert_event_if_absent(_event("k2", occurred_at="2026-03-01T00:00:00.000Z", event_type="quiz.attempted"))
    db.insert_event_if_absent(_event("k3", student_email="b@x.com"))

    both_types = db.find_events(student_email="a@x.com", event_type=("quiz_attempted", "quiz.attempted"))
    assert [event.dedupe_key for event in both_types] == ["k1", "k2"]
    by_time = db.find_events(student_email="a@x.com", order_by="occurred_at")
    assert [event.dedupe_key for event in by_time] == ["k2", "k1"]
    assert [event.dedupe_key for event in db.find_events(order_by="-id", limit=1)] == ["k3"]
    assert db.find_events(event_type=[]) == []

    with pytest.raises(ValueError):
        db.find_events(nickname="x")
    with pytest.raises(ValueError):
        db.find_events(order_by="random()")


def test_iter_events_pages_through_everything(temp_db):
    for idx in range(7):
        db.insert_event_if_absent(_event(f"k{idx}"))
    keys = [event.dedupe_key for event in db.iter_events(page_size=3, source="webhook")]
    assert keys == [f"k{idx}" for idx in range(7)]


def test_update_and_delete_event(temp_db):
    created = db.insert_event_if_absent(_event("k1"))
    updated = db.update_event(created.id, {"course_name": "Grade 1", "metadata": {"archived": True}})
    assert updated.course_name == "Grade 1"
    assert updated.is_archived

    with pytest.raises(ValueError):
        db.update_event(created.id, {"id": 99})

    db.delete_event(created.id)
    assert db.get_event(created.id) is None


def test_catalog_and_assignment_records(temp_db):
    item = db.insert_catalog_item(CatalogItem(title="Fractions", content_type="quiz", quiz_id="900", is_active=False))
    assert item.id is not None
    assert item.is_active is False
    assert db.list_catalog(is_active=False)[0].title == "Fractions"

    assignment = StudentAssignment(
        teacher_email="t@x.com",
        student_email="a@x.com",
        catalog_id=item.id,
        assigned_at="2026-03-01T00:00:00.000Z",
        dedupe_key="assign:1",
    )
    stored = db.insert_assignment(assignment)
    assert stored.status == "assigned"
    assert db.insert_assignment(assignment) is None
    done = db.update_assignment(stored.id, {"status": "completed", "completed_by_event_id": 5})
    assert done.status == "completed"
    assert db.get_assignment_by_dedupe_key("assign:1").completed_by_event_id == 5


def test_lesson_course_map_upsert(temp_db):
    assert db.get_lesson_course("77") is None
    db.upsert_lesson_course("77", "5", "K", "2026-03-01T00:00:00.000Z")
    db.upsert_lesson_course("77", "6", "Grade 1", "2026-03-02T00:00:00.000Z")
    assert db.get_lesson_course("77") == {
        "lesson_id": "77",
        "course_id": "6",
        "course_name": "Grade 1",
        "last_seen_at": "2026-03-02T00:00:00.000Z",
    }


def test_undecodable_metadata_reads_as_empty(temp_db):
    created = db.insert_event_if_absent(_event("k1"))
    with sqlite3.connect(temp_db) as con:
        con.execute("UPDATE activity_events SET metadata = 'not json' WHERE id = ?", (created.id,))
    assert db.get_event(created.id).metadata == {}


def test_broken_store_raises_store_unavailable(temp_db, monkeypatch, tmp_path):
    broken = tmp_path / "broken.db"
    broken.write_text("this is not a database")
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(broken), max_connections=1))
    with pytest.raises(StoreUnavailableError):
        db.count_events()
    with pytest.raises(StoreUnavailableError):
        db.delete_event(1)
