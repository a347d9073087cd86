from datetime import date

from database import SessionLocal, drop_db, init_db
from models import Classroom, Course, Period, Teacher
from scheduling import replace_schedule

DEMO_COURSES = [
    ("MAT", "Mathematics", "Exact sciences"),
    ("LEN", "Language Arts", "Humanities"),
    ("CIE", "Natural Sciences", "Natural sciences"),
    ("HIS", "Social Studies", "Humanities"),
]

DEMO_TEACHERS = [
    ("D1", "Ana", "Garcia"),
    ("D2", "Luis", "Perez"),
    ("D3", "Marta", "Santos"),
    ("D4", "Jose", "Reyes"),
]

# (course code, teacher code, weekday, start, end)
DEMO_TIMETABLE = [
    ("MAT", "D1", 0, "08:00", "09:00"),
    ("LEN", "D2", 0, "09:00", "10:00"),
    ("CIE", "D3", 1, "08:00", "09:30"),
    ("HIS", "D4", 2, "08:00", "09:00"),
    ("MAT", "D1", 2, "09:00", "10:00"),
    ("LEN", "D2", 3, "08:00", "09:00"),
    ("CIE", "D3", 4, "10:00", "11:00"),
]


def seed_demo_data(session, generate=True):
    """Create a demo period, classroom 5A and its weekly timetable. Returns the classroom id."""
    period = session.query(Period).filter_by(name="2024-2025", term="First").first()
    if not period:
        period = Period(
            name="2024-2025",
            term="First",
            start_date=date(2024, 9, 2),
            end_date=date(2024, 12, 13),
            is_current=True,
        )
        session.add(period)

    courses = {}
    for code, name, area in DEMO_COURSES:
        course = session.query(Course).filter_by(code=code).first()
        if not course:
            course = Course(code=code, name=name, area=area)
            session.add(course)
        courses[code] = course

    teachers = {}
    for code, first_name, last_name in DEMO_TEACHERS:
        teacher = session.query(Teacher).filter_by(code=code).first()
        if not teacher:
            teacher = Teacher(code=code, first_name=first_name, last_name=last_name)
            session.add(teacher)
        teachers[code] = teacher
    session.flush()

    classroom = (
        session.query(Classroom)
        .filter_by(grade=5, section="A", period_id=period.id, active=True)
        .first()
    )
    if not classroom:
        classroom = Classroom(
            code="5A-2024",
            grade=5,
            section="A",
            year=2024,
            period_id=period.id,
            room="Room 201",
            capacity=35,
            start_date=period.start_date,
            end_date=period.end_date,
        )
        session.add(classroom)
    session.commit()

    blocks = [
        {
            "course_id": courses[course_code].id,
            "teacher_id": teachers[teacher_code].id,
            "day_of_week": day,
            "start_time": start,
            "end_time": end,
        }
        for course_code, teacher_code, day, start, end in DEMO_TIMETABLE
    ]
    replace_schedule(session, classroom.id, blocks, generate_groups=generate, generate_sessions=generate)
    return classroom.id


if __name__ == "__main__":
    drop_db()
    init_db()
    session = SessionLocal()
    try:
        classroom_id = seed_demo_data(session)
        print(f"Database refreshed and seeded! Demo classroom id: {classroom_id}")
    except Exception as exc:
        session.rollback()
        print(f"Seeding failed: {exc}")
    finally:
        session.close()
