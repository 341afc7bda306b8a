import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.delenv("INTERNAL_EMAIL_DOMAIN", raising=False)
    monkeypatch.delenv("ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("LMS_API_URL", raising=False)

    # Fresh pool bound to the per-test database file
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def webhook_body():
    def _make(result_id="r-1", *, grade=0.85, completed_at="2026-03-01T10:00:00Z", email="Kid@ModalMath.com"):
        return {
            "id": f"wh-{result_id}",
            "resource": "quiz",
            "action": "attempted",
            "created_at": "2026-03-01T10:00:05Z",
            "payload": {
                "user": {"id": 42, "email": email, "first_name": "Ada", "last_name": "Lovelace"},
                "quiz": {"id": 900, "name": "Fractions Quiz"},
                "lesson": {"id": 77, "name": "Fractions Lesson"},
                "course": {"id": 5, "name": "Grade 3 Math"},
                "grade": grade,
                "correct_count": 7,
                "incorrect_count": 3,
                "attempts": 1,
                "result_id": result_id,
                "completed_at": completed_at,
            },
        }

    return _make
