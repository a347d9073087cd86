import os
import tempfile
from datetime import date
from types import SimpleNamespace

# Point the app at a throwaway sqlite file before any app module creates its engine.
_DB_DIR = tempfile.mkdtemp(prefix="timetable-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.pop("ADMIN_INIT_TOKEN", None)

import pytest  # noqa: E402

from database import SessionLocal, drop_db, init_db  # noqa: E402
from models import Classroom, Course, Period, Teacher  # noqa: E402

ADMIN = {"X-User-Role": "Admin"}


@pytest.fixture(autouse=True)
def fresh_schema():
    SessionLocal.remove()
    drop_db()
    init_db()
    yield
    SessionLocal.remove()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def school(db):
    """Classroom 5A over a two-week period (Mon 2024-09-02 .. Fri 2024-09-13)."""
    period = Period(
        name="2024-2025",
        term="First",
        start_date=date(2024, 9, 2),
        end_date=date(2024, 9, 13),
        is_current=True,
    )
    mat = Course(code="MAT", name="Mathematics")
    lang = Course(code="LEN", name="Language Arts")
    d1 = Teacher(code="D1", first_name="Ana", last_name="Garcia")
    d2 = Teacher(code="D2", first_name="Luis", last_name="Perez")
    db.add_all([period, mat, lang, d1, d2])
    db.flush()
    classroom = Classroom(
        code="5A-2024",
        grade=5,
        section="A",
        year=2024,
        period_id=period.id,
        room="Room 201",
        capacity=30,
        start_date=date(2024, 9, 2),
        end_date=date(2024, 9, 13),
    )
    db.add(classroom)
    db.commit()
    return SimpleNamespace(
        period_id=period.id,
        classroom_id=classroom.id,
        mat_id=mat.id,
        lang_id=lang.id,
        d1_id=d1.id,
        d2_id=d2.id,
    )


@pytest.fixture
def client():
    import app as app_module

    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c


def block(course_id, teacher_id, day, start, end, **extra):
    payload = {
        "course_id": course_id,
        "teacher_id": teacher_id,
        "day_of_week": day,
        "start_time": start,
        "end_time": end,
    }
    payload.update(extra)
    return payload
