import os
import logging
from datetime import date

from flask import Flask, jsonify, request
from flask_cors import CORS
from sqlalchemy.exc import IntegrityError

from database import get_session, init_db
from models import ClassSession, Classroom, Course, CourseGroup, Period, Teacher
import scheduling
from scheduling import SchedulingError, ScheduleConflict

# Flask setup with CORS for the local frontend
app = Flask(__name__)
cors_origins = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
CORS(app, resources={r"/api/*": {"origins": cors_origins}})
logging.basicConfig(level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO))

# Ensure tables exist (idempotent; safe for first run on sqlite)
init_db()


# Utility helpers
def error_response(status: int, message: str, detail: str = None, **extra):
    payload = {"error": message if not detail else f"{message}: {detail}"}
    if detail:
        payload["detail"] = detail
    payload.update(extra)
    return jsonify(payload), status


def scheduling_error_response(exc: SchedulingError):
    if isinstance(exc, ScheduleConflict):
        return error_response(exc.status, exc.message, exc.detail, conflict=exc.conflicting)
    return error_response(exc.status, exc.message, exc.detail)


# Simple role check using header from frontend
def require_admin():
    role = request.headers.get("X-User-Role")
    if role != "Admin":
        return error_response(403, "Admin only")
    return None


def check_init_token():
    token = os.environ.get("ADMIN_INIT_TOKEN")
    if token:
        provided = request.headers.get("X-Admin-Init-Token") or request.args.get("token")
        if provided != token:
            return error_response(403, "Forbidden")
    return None


def parse_date_field(data, field, required=False):
    raw = data.get(field)
    if not raw:
        if required:
            raise ValueError(f"{field} is required")
        return None
    try:
        return date.fromisoformat(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be YYYY-MM-DD")


def period_to_dict(p):
    return {
        "id": p.id,
        "name": p.name,
        "term": p.term,
        "start_date": p.start_date.isoformat() if p.start_date else None,
        "end_date": p.end_date.isoformat() if p.end_date else None,
        "is_current": p.is_current,
        "active": p.active,
        "notes": p.notes,
    }


def classroom_to_dict(c):
    return {
        "id": c.id,
        "code": c.code,
        "grade": c.grade,
        "section": c.section,
        "year": c.year,
        "period_id": c.period_id,
        "period_name": c.period.name if c.period else None,
        "room": c.room,
        "capacity": c.capacity,
        "student_count": c.student_count,
        "seats_available": max(c.capacity - c.student_count, 0),
        "start_date": c.start_date.isoformat(),
        "end_date": c.end_date.isoformat(),
        "active": c.active,
    }


def block_to_dict(b):
    return {
        "id": b.id,
        "classroom_id": b.classroom_id,
        "course_id": b.course_id,
        "course_code": b.course.code if b.course else None,
        "course_name": b.course.name if b.course else None,
        "teacher_id": b.teacher_id,
        "teacher_code": b.teacher.code if b.teacher else None,
        "teacher_name": b.teacher.full_name if b.teacher else None,
        "day_of_week": b.day_of_week,
        "day_name": scheduling.day_name_short(b.day_of_week),
        "start_time": b.start_time,
        "end_time": b.end_time,
        "sort_order": b.sort_order,
        "active": b.active,
    }


def group_to_dict(g):
    return {
        "id": g.id,
        "code": g.code,
        "course_id": g.course_id,
        "course_name": g.course.name if g.course else None,
        "teacher_id": g.teacher_id,
        "teacher_name": g.teacher.full_name if g.teacher else None,
        "classroom_id": g.classroom_id,
        "period_id": g.period_id,
        "grade": g.grade,
        "section": g.section,
        "year": g.year,
        "schedule": g.schedule,
        "capacity": g.capacity,
        "enrolled_count": g.enrolled_count,
        "active": g.active,
    }


def session_to_dict(s):
    return {
        "id": s.id,
        "group_id": s.group_id,
        "date": s.session_date.isoformat(),
        "day_name": scheduling.day_name_short(s.session_date.weekday()),
        "start_time": s.start_time,
        "end_time": s.end_time,
        "topic": s.topic,
        "notes": s.notes,
        "realized": s.realized,
    }


@app.route("/api/admin/init", methods=["POST", "GET"])
def admin_init():
    token_err = check_init_token()
    if token_err:
        return token_err
    ok, msg = init_db()
    if ok:
        return jsonify({"message": msg})
    return error_response(500, "Init failed", msg)


@app.route("/api/admin/seed-demo", methods=["POST"])
def admin_seed_demo():
    token_err = check_init_token()
    if token_err:
        return token_err
    from seed_demo import seed_demo_data

    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        classroom_id = seed_demo_data(session)
        return jsonify({"message": "Demo data seeded", "classroom_id": classroom_id})
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Periods
@app.route("/api/periods", methods=["GET"])
def list_periods():
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        periods = session.query(Period).order_by(Period.start_date.asc(), Period.id.asc()).all()
        return jsonify([period_to_dict(p) for p in periods])
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/periods", methods=["POST"])
def create_period():
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return error_response(400, "name is required")
    try:
        start = parse_date_field(data, "start_date")
        end = parse_date_field(data, "end_date")
    except ValueError as exc:
        return error_response(400, str(exc))
    if start and end and end <= start:
        return error_response(400, "end_date must be after start_date")

    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        period = Period(
            name=name,
            term=data.get("term"),
            start_date=start,
            end_date=end,
            is_current=False,
            notes=data.get("notes"),
        )
        session.add(period)
        session.commit()
        return jsonify({"message": "Period created", "id": period.id}), 201
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/periods/<int:period_id>", methods=["PUT"])
def update_period(period_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    if "name" in data and not (isinstance(data["name"], str) and data["name"].strip()):
        return error_response(400, "name cannot be empty")
    if "active" in data and not isinstance(data["active"], bool):
        return error_response(400, "active must be true or false")
    try:
        start = parse_date_field(data, "start_date")
        end = parse_date_field(data, "end_date")
    except ValueError as exc:
        return error_response(400, str(exc))

    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        period = scheduling.get_period(session, period_id)
        start = start or period.start_date
        end = end or period.end_date
        if start and end and end <= start:
            return error_response(400, "end_date must be after start_date")
        if "name" in data:
            period.name = data["name"].strip()
        for fld in ("term", "notes", "active"):
            if fld in data:
                setattr(period, fld, data[fld])
        period.start_date = start
        period.end_date = end
        session.commit()
        logging.info("period updated: %s", period.id)
        return jsonify(period_to_dict(period))
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/periods/current", methods=["GET"])
def current_period():
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        period = session.query(Period).filter(Period.is_current.is_(True)).first()
        if not period:
            return error_response(404, "No current period")
        return jsonify(period_to_dict(period))
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/periods/<int:period_id>/set-current", methods=["POST"])
def set_current_period(period_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        period = session.query(Period).filter_by(id=period_id).first()
        if not period:
            return error_response(404, "Period not found")
        session.query(Period).filter(Period.id != period_id).update(
            {Period.is_current: False}, synchronize_session=False
        )
        period.is_current = True
        session.commit()
        return jsonify({"message": "Current period set", "id": period.id})
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Courses and teachers
@app.route("/api/courses", methods=["GET", "POST"])
def courses():
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        if request.method == "GET":
            rows = session.query(Course).order_by(Course.code.asc()).all()
            return jsonify(
                [{"id": c.id, "code": c.code, "name": c.name, "area": c.area, "active": c.active} for c in rows]
            )
        admin_err = require_admin()
        if admin_err:
            return admin_err
        data = request.get_json(silent=True) or {}
        code = (data.get("code") or "").strip().upper()
        name = (data.get("name") or "").strip()
        if not code or not name:
            return error_response(400, "code and name are required")
        course = Course(code=code, name=name, area=data.get("area"))
        session.add(course)
        session.commit()
        return jsonify({"message": "Course created", "id": course.id}), 201
    except IntegrityError as exc:
        session.rollback()
        return error_response(409, "course code must be unique", str(exc.orig))
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/teachers", methods=["GET", "POST"])
def teachers():
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        if request.method == "GET":
            rows = session.query(Teacher).order_by(Teacher.last_name.asc(), Teacher.first_name.asc()).all()
            return jsonify(
                [
                    {"id": t.id, "code": t.code, "full_name": t.full_name, "active": t.active}
                    for t in rows
                ]
            )
        admin_err = require_admin()
        if admin_err:
            return admin_err
        data = request.get_json(silent=True) or {}
        code = (data.get("code") or "").strip().upper()
        first_name = (data.get("first_name") or "").strip()
        last_name = (data.get("last_name") or "").strip()
        if not code or not first_name or not last_name:
            return error_response(400, "code, first_name and last_name are required")
        teacher = Teacher(code=code, first_name=first_name, last_name=last_name)
        session.add(teacher)
        session.commit()
        return jsonify({"message": "Teacher created", "id": teacher.id}), 201
    except IntegrityError as exc:
        session.rollback()
        return error_response(409, "teacher code must be unique", str(exc.orig))
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Classrooms
@app.route("/api/classrooms", methods=["GET"])
def list_classrooms():
    period_id = request.args.get("period_id", type=int)
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        q = session.query(Classroom).filter(Classroom.active.is_(True))
        if period_id:
            q = q.filter(Classroom.period_id == period_id)
        rows = q.order_by(Classroom.grade.asc(), Classroom.section.asc()).all()
        return jsonify([classroom_to_dict(c) for c in rows])
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>", methods=["GET"])
def classroom_detail(classroom_id: int):
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        classroom = scheduling.get_classroom(session, classroom_id)
        return jsonify(classroom_to_dict(classroom))
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms", methods=["POST"])
def create_classroom():
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    section = (data.get("section") or "").strip().upper()
    grade = data.get("grade")
    year = data.get("year")
    period_id = data.get("period_id")
    capacity = data.get("capacity", 35)
    if not section or not period_id:
        return error_response(400, "section and period_id are required")
    if not isinstance(grade, int) or not 1 <= grade <= 12:
        return error_response(400, "grade must be between 1 and 12")
    if not isinstance(year, int):
        return error_response(400, "year is required")
    if not isinstance(capacity, int) or not 1 <= capacity <= 50:
        return error_response(400, "capacity must be between 1 and 50")
    try:
        start = parse_date_field(data, "start_date", required=True)
        end = parse_date_field(data, "end_date", required=True)
    except ValueError as exc:
        return error_response(400, str(exc))
    if end <= start:
        return error_response(400, "end_date must be after start_date")

    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        scheduling.get_period(session, period_id)
        exists = (
            session.query(Classroom.id)
            .filter(
                Classroom.grade == grade,
                Classroom.section == section,
                Classroom.period_id == period_id,
                Classroom.active.is_(True),
            )
            .first()
        )
        if exists:
            return error_response(409, f"Classroom {grade}{section} already exists for this period")
        classroom = Classroom(
            code=f"{grade}{section}-{year}",
            grade=grade,
            section=section,
            year=year,
            period_id=period_id,
            room=data.get("room"),
            capacity=capacity,
            student_count=0,
            start_date=start,
            end_date=end,
        )
        session.add(classroom)
        session.commit()
        logging.info("classroom created: %s", classroom.code)
        return jsonify({"message": "Classroom created", "id": classroom.id, "code": classroom.code}), 201
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>", methods=["PUT"])
def update_classroom(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        classroom = scheduling.get_classroom(session, classroom_id)
        if "capacity" in data:
            capacity = data["capacity"]
            if not isinstance(capacity, int) or not 1 <= capacity <= 50:
                return error_response(400, "capacity must be between 1 and 50")
            if capacity < classroom.student_count:
                return error_response(
                    400, f"capacity cannot be below current student count ({classroom.student_count})"
                )
            classroom.capacity = capacity
        try:
            start = parse_date_field(data, "start_date") or classroom.start_date
            end = parse_date_field(data, "end_date") or classroom.end_date
        except ValueError as exc:
            session.rollback()
            return error_response(400, str(exc))
        if end <= start:
            session.rollback()
            return error_response(400, "end_date must be after start_date")
        classroom.start_date = start
        classroom.end_date = end
        if "room" in data:
            classroom.room = data["room"]
        session.commit()
        return jsonify({"message": "Classroom updated"})
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>", methods=["DELETE"])
def delete_classroom(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        scheduling.deactivate_classroom(session, classroom_id)
        return jsonify({"message": "Classroom deleted"})
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Timetable
@app.route("/api/classrooms/<int:classroom_id>/time-blocks", methods=["GET"])
def list_time_blocks(classroom_id: int):
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        blocks = scheduling.list_time_blocks(session, classroom_id)
        return jsonify([block_to_dict(b) for b in blocks])
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>/time-blocks", methods=["POST"])
def upsert_time_block(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        created = not data.get("id")
        block = scheduling.upsert_time_block(session, classroom_id, data)
        return jsonify(block_to_dict(block)), 201 if created else 200
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/time-blocks/<int:block_id>", methods=["PUT"])
def update_time_block(block_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        block = scheduling.update_time_block(session, block_id, data)
        return jsonify(block_to_dict(block))
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/time-blocks/<int:block_id>", methods=["DELETE"])
def delete_time_block(block_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        scheduling.delete_time_block(session, block_id)
        return jsonify({"message": "Time block deleted"})
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>/schedule", methods=["PUT"])
def replace_schedule(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    if "blocks" not in data:
        return error_response(400, "blocks list is required")
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        result = scheduling.replace_schedule(
            session,
            classroom_id,
            data.get("blocks"),
            generate_groups=bool(data.get("generate_groups", False)),
            generate_sessions=bool(data.get("generate_sessions", False)),
        )
        return jsonify(result.to_dict())
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>/generate-groups", methods=["POST"])
def generate_groups(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        result = scheduling.generate_groups_from_schedule(session, classroom_id)
        return jsonify(result.to_dict())
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/classrooms/<int:classroom_id>/generate-sessions", methods=["POST"])
def generate_sessions(classroom_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        result = scheduling.generate_sessions_for_classroom(session, classroom_id)
        return jsonify(result.to_dict())
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Course groups
@app.route("/api/classrooms/<int:classroom_id>/groups", methods=["GET"])
def list_classroom_groups(classroom_id: int):
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        scheduling.get_classroom(session, classroom_id)
        rows = (
            session.query(CourseGroup)
            .filter(CourseGroup.classroom_id == classroom_id)
            .order_by(CourseGroup.code.asc())
            .all()
        )
        return jsonify([group_to_dict(g) for g in rows])
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/groups", methods=["POST"])
def create_group():
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    for fld in ("course_id", "teacher_id", "period_id"):
        if not data.get(fld):
            return error_response(400, f"{fld} is required")
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        course = session.query(Course).filter_by(id=data["course_id"]).first()
        if not course:
            return error_response(404, "Course not found")
        if not session.query(Teacher.id).filter_by(id=data["teacher_id"]).first():
            return error_response(404, "Teacher not found")
        scheduling.get_period(session, data["period_id"])
        classroom = None
        if data.get("classroom_id"):
            classroom = scheduling.get_classroom(session, data["classroom_id"], require_active=True)
        grade = classroom.grade if classroom else data.get("grade")
        section = classroom.section if classroom else (data.get("section") or "").strip().upper()
        year = classroom.year if classroom else data.get("year")
        if not isinstance(grade, int) or not section or not isinstance(year, int):
            return error_response(400, "grade, section and year are required without classroom_id")
        group = CourseGroup(
            code=data.get("code") or f"{grade}{section}-{course.code}",
            course_id=course.id,
            teacher_id=data["teacher_id"],
            classroom_id=classroom.id if classroom else None,
            period_id=data["period_id"],
            grade=grade,
            section=section,
            year=year,
            schedule=data.get("schedule"),
            capacity=data.get("capacity") or (classroom.capacity if classroom else 35),
            enrolled_count=0,
        )
        session.add(group)
        session.commit()
        return jsonify({"message": "Group created", "id": group.id, "code": group.code}), 201
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except IntegrityError as exc:
        session.rollback()
        return error_response(409, "group already exists for this classroom, course and period", str(exc.orig))
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/groups/<int:group_id>", methods=["DELETE"])
def deactivate_group(group_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        group = session.query(CourseGroup).filter_by(id=group_id).first()
        if not group:
            return error_response(404, "Group not found")
        group.active = False
        session.commit()
        return jsonify({"message": "Group deactivated"})
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


# Sessions
@app.route("/api/groups/<int:group_id>/sessions", methods=["GET"])
def list_group_sessions(group_id: int):
    try:
        date_from = parse_date_field(request.args, "from")
        date_to = parse_date_field(request.args, "to")
    except ValueError as exc:
        return error_response(400, str(exc))
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        if not session.query(CourseGroup.id).filter_by(id=group_id).first():
            return error_response(404, "Group not found")
        q = session.query(ClassSession).filter(ClassSession.group_id == group_id)
        if date_from:
            q = q.filter(ClassSession.session_date >= date_from)
        if date_to:
            q = q.filter(ClassSession.session_date <= date_to)
        rows = q.order_by(ClassSession.session_date.asc(), ClassSession.start_time.asc()).all()
        return jsonify([session_to_dict(s) for s in rows])
    except Exception as exc:
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/groups/<int:group_id>/sessions", methods=["POST"])
def create_group_session(group_id: int):
    admin_err = require_admin()
    if admin_err:
        return admin_err
    data = request.get_json(silent=True) or {}
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        row = scheduling.create_session(session, group_id, data)
        return jsonify(session_to_dict(row)), 201
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.route("/api/sessions/<int:session_id>/realize", methods=["PATCH"])
def realize_session(session_id: int):
    data = request.get_json(silent=True) or {}
    session_or_none = get_session()
    if isinstance(session_or_none, tuple):
        session, exc = session_or_none
        return error_response(500, "Database connection failed", str(exc))
    session = session_or_none
    try:
        row = scheduling.mark_session_realized(
            session, session_id, topic=data.get("topic"), notes=data.get("notes")
        )
        return jsonify(session_to_dict(row))
    except SchedulingError as exc:
        return scheduling_error_response(exc)
    except Exception as exc:
        session.rollback()
        return error_response(500, "Unexpected error", str(exc))
    finally:
        session.close()


@app.errorhandler(404)
def not_found(_):
    return error_response(404, "Not found")


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=True)
