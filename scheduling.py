"""
Classroom timetable maintenance and the structures derived from it.

A classroom's weekly timetable is a set of time blocks (weekday + HH:MM range +
course + teacher). From the installed timetable the generators derive one course
group per course and one session per block per matching date of the period.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import ClassSession, Classroom, Course, CourseGroup, Period, Teacher, TimeBlock

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri"]
_DAY_MAP = {
    "mon": 0, "monday": 0,
    "tue": 1, "tuesday": 1,
    "wed": 2, "wednesday": 2,
    "thu": 3, "thursday": 3,
    "fri": 4, "friday": 4,
}
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


class SchedulingError(Exception):
    status = 400

    def __init__(self, message: str, detail: str = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(SchedulingError):
    status = 400


class NotFound(SchedulingError):
    status = 404


class AlreadyExists(SchedulingError):
    status = 409


class ScheduleConflict(SchedulingError):
    """Candidate block overlaps an active block; `conflicting` describes the other block."""

    status = 409

    def __init__(self, message: str, conflicting: dict):
        super().__init__(message, f"{conflicting['day_name']} {conflicting['start_time']}-{conflicting['end_time']}")
        self.conflicting = conflicting


@dataclass
class BlockInput:
    course_id: int
    teacher_id: int
    day_of_week: int
    start_time: str
    end_time: str
    sort_order: int = 0
    classroom_id: Optional[int] = None
    id: Optional[int] = None
    active: bool = True


@dataclass
class Result:
    blocks_installed: int = 0
    groups_created: int = 0
    groups_existing: int = 0
    sessions_created: int = 0
    sessions_existing: int = 0
    errors: List[dict] = field(default_factory=list)

    def add_error(self, scope: str, detail: str):
        self.errors.append({"scope": scope, "detail": detail})

    def merge(self, other: "Result"):
        self.blocks_installed += other.blocks_installed
        self.groups_created += other.groups_created
        self.groups_existing += other.groups_existing
        self.sessions_created += other.sessions_created
        self.sessions_existing += other.sessions_existing
        self.errors.extend(other.errors)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        summary = (
            f"{self.blocks_installed} blocks, {self.groups_created} groups, "
            f"{self.sessions_created} sessions"
        )
        if self.errors:
            return f"Completed with {len(self.errors)} errors: {summary}"
        return f"Completed: {summary}"

    def to_dict(self) -> dict:
        return {
            "blocks_installed": self.blocks_installed,
            "groups_created": self.groups_created,
            "groups_existing": self.groups_existing,
            "sessions_created": self.sessions_created,
            "sessions_existing": self.sessions_existing,
            "errors": list(self.errors),
            "ok": self.ok,
            "message": self.message,
        }


# Time helpers
def time_to_minutes(tstr: str) -> int:
    h, m = tstr.split(":")[:2]
    return int(h) * 60 + int(m)


def minutes_to_str(mins: int) -> str:
    h = mins // 60
    m = mins % 60
    return f"{h:02d}:{m:02d}"


def normalize_time(value, field_name: str) -> str:
    """Accept 'H:MM', 'HH:MM' or 'HH:MM:SS' and return 'HH:MM'."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be HH:MM")
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValidationError(f"{field_name} must be HH:MM")
    h, m = int(match.group(1)), int(match.group(2))
    if h > 23 or m > 59:
        raise ValidationError(f"{field_name} must be HH:MM")
    return minutes_to_str(h * 60 + m)


def parse_day(value) -> int:
    if isinstance(value, bool):
        raise ValidationError("day_of_week must be 0 (Mon) to 4 (Fri)")
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _DAY_MAP:
            return _DAY_MAP[key]
        if key.isdigit():
            value = int(key)
    if isinstance(value, int) and 0 <= value < len(DAY_NAMES):
        return value
    raise ValidationError("day_of_week must be 0 (Mon) to 4 (Fri)")


def day_name_short(idx: int) -> str:
    if idx is None:
        return "-"
    if 0 <= idx < len(DAY_NAMES):
        return DAY_NAMES[idx]
    return str(idx)


def _parse_id(value, field_name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if parsed <= 0:
        raise ValidationError(f"{field_name} must be positive")
    return parsed


def parse_block(payload, index: int = None) -> BlockInput:
    """Build a BlockInput from a request payload, raising ValidationError on bad input."""
    prefix = f"blocks[{index}]: " if index is not None else ""
    if not isinstance(payload, dict):
        raise ValidationError(f"{prefix}block must be an object")
    try:
        start = normalize_time(payload.get("start_time"), "start_time")
        end = normalize_time(payload.get("end_time"), "end_time")
        if time_to_minutes(start) >= time_to_minutes(end):
            raise ValidationError("end_time must be after start_time")
        sort_order = payload.get("sort_order", payload.get("order", 0)) or 0
        if isinstance(sort_order, bool) or not isinstance(sort_order, int):
            raise ValidationError("sort_order must be an integer")
        active = payload.get("active", True)
        if not isinstance(active, bool):
            raise ValidationError("active must be true or false")
        return BlockInput(
            course_id=_parse_id(payload.get("course_id"), "course_id"),
            teacher_id=_parse_id(payload.get("teacher_id"), "teacher_id"),
            day_of_week=parse_day(payload.get("day_of_week")),
            start_time=start,
            end_time=end,
            sort_order=sort_order,
            active=active,
        )
    except ValidationError as exc:
        if prefix:
            raise ValidationError(f"{prefix}{exc.message}", exc.detail)
        raise


def describe_block(block) -> dict:
    return {
        "id": block.id,
        "course_id": block.course_id,
        "teacher_id": block.teacher_id,
        "day_of_week": block.day_of_week,
        "day_name": day_name_short(block.day_of_week),
        "start_time": block.start_time,
        "end_time": block.end_time,
    }


# Interval conflict checker
def find_conflict(existing_blocks, candidate, exclude_id=None):
    """Return the first active block overlapping `candidate` on the same classroom/weekday, or None.

    Intervals are half-open, so a block ending at 09:00 and one starting at 09:00 do not collide.
    """
    start_m = time_to_minutes(candidate.start_time)
    end_m = time_to_minutes(candidate.end_time)
    for other in existing_blocks:
        if other is candidate or not other.active:
            continue
        if other.classroom_id != candidate.classroom_id or other.day_of_week != candidate.day_of_week:
            continue
        if exclude_id is not None and other.id == exclude_id:
            continue
        if start_m < time_to_minutes(other.end_time) and end_m > time_to_minutes(other.start_time):
            return other
    return None


def has_conflict(existing_blocks, candidate, exclude_id=None) -> bool:
    return find_conflict(existing_blocks, candidate, exclude_id) is not None


def matching_dates(start, end, weekday: int):
    """Yield every date in [start, end] falling on `weekday` (0=Mon)."""
    current = start + timedelta(days=(weekday - start.weekday()) % 7)
    while current <= end:
        yield current
        current += timedelta(days=7)


def group_code(classroom, course) -> str:
    return f"{classroom.grade}{classroom.section}-{course.code}"


# Lookups
def get_classroom(session, classroom_id, require_active=False):
    classroom = session.query(Classroom).filter_by(id=classroom_id).first()
    if not classroom:
        raise NotFound("Classroom not found", f"classroom {classroom_id}")
    if require_active and not classroom.active:
        raise ValidationError("Classroom is inactive", f"classroom {classroom_id}")
    return classroom


def get_period(session, period_id):
    period = session.query(Period).filter_by(id=period_id).first()
    if not period:
        raise NotFound("Period not found", f"period {period_id}")
    return period


def _require_references(session, blocks):
    course_ids = {b.course_id for b in blocks}
    teacher_ids = {b.teacher_id for b in blocks}
    if course_ids:
        found = {cid for (cid,) in session.query(Course.id).filter(Course.id.in_(course_ids)).all()}
        missing = sorted(course_ids - found)
        if missing:
            raise NotFound("Course not found", ", ".join(str(c) for c in missing))
    if teacher_ids:
        found = {tid for (tid,) in session.query(Teacher.id).filter(Teacher.id.in_(teacher_ids)).all()}
        missing = sorted(teacher_ids - found)
        if missing:
            raise NotFound("Teacher not found", ", ".join(str(t) for t in missing))


def _active_blocks(session, classroom_id, day_of_week=None):
    q = session.query(TimeBlock).filter(TimeBlock.classroom_id == classroom_id, TimeBlock.active.is_(True))
    if day_of_week is not None:
        q = q.filter(TimeBlock.day_of_week == day_of_week)
    return q.order_by(TimeBlock.day_of_week, TimeBlock.start_time, TimeBlock.sort_order).all()


def _group_exists(session, classroom_id, course_id, period_id):
    # inactive groups count too
    return (
        session.query(CourseGroup.id)
        .filter(
            CourseGroup.classroom_id == classroom_id,
            CourseGroup.course_id == course_id,
            CourseGroup.period_id == period_id,
        )
        .first()
        is not None
    )


def _session_exists(session, group_id, session_date, start_time):
    return (
        session.query(ClassSession.id)
        .filter_by(group_id=group_id, session_date=session_date, start_time=start_time)
        .first()
        is not None
    )


def _raise_conflict(clash):
    info = describe_block(clash)
    raise ScheduleConflict(
        f"Time block overlaps block {info['id']} ({info['day_name']} {info['start_time']}-{info['end_time']})",
        info,
    )


# Timetable store operations
def list_time_blocks(session, classroom_id):
    get_classroom(session, classroom_id)
    return _active_blocks(session, classroom_id)


def create_time_block(session, classroom_id, payload):
    block = parse_block(payload)
    classroom = get_classroom(session, classroom_id, require_active=True)
    _require_references(session, [block])
    block.classroom_id = classroom.id
    if block.active:
        clash = find_conflict(_active_blocks(session, classroom.id, block.day_of_week), block)
        if clash:
            _raise_conflict(clash)
    row = TimeBlock(
        classroom_id=classroom.id,
        course_id=block.course_id,
        teacher_id=block.teacher_id,
        day_of_week=block.day_of_week,
        start_time=block.start_time,
        end_time=block.end_time,
        sort_order=block.sort_order,
        active=block.active,
    )
    try:
        session.add(row)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info(
        "time block created: classroom %s %s %s-%s",
        row.classroom_id, day_name_short(row.day_of_week), row.start_time, row.end_time,
    )
    return row


def update_time_block(session, block_id, payload, classroom_id=None):
    row = session.query(TimeBlock).filter_by(id=block_id).first()
    if not row or (classroom_id is not None and row.classroom_id != classroom_id):
        raise NotFound("Time block not found", f"time block {block_id}")
    if not isinstance(payload, dict):
        raise ValidationError("block must be an object")
    merged = {
        "course_id": row.course_id,
        "teacher_id": row.teacher_id,
        "day_of_week": row.day_of_week,
        "start_time": row.start_time,
        "end_time": row.end_time,
        "sort_order": row.sort_order,
        "active": row.active,
    }
    merged.update({k: v for k, v in payload.items() if k in merged or k == "order"})
    if "order" in payload and "sort_order" not in payload:
        merged["sort_order"] = payload["order"]
    merged.pop("order", None)
    block = parse_block(merged)
    block.classroom_id = row.classroom_id
    block.id = row.id
    get_classroom(session, row.classroom_id, require_active=True)
    _require_references(session, [block])
    if block.active:
        others = _active_blocks(session, row.classroom_id, block.day_of_week)
        clash = find_conflict(others, block, exclude_id=row.id)
        if clash:
            _raise_conflict(clash)
    try:
        row.course_id = block.course_id
        row.teacher_id = block.teacher_id
        row.day_of_week = block.day_of_week
        row.start_time = block.start_time
        row.end_time = block.end_time
        row.sort_order = block.sort_order
        row.active = block.active
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info("time block updated: %s", row.id)
    return row


def upsert_time_block(session, classroom_id, payload):
    block_id = payload.get("id") if isinstance(payload, dict) else None
    if block_id:
        return update_time_block(session, _parse_id(block_id, "id"), payload, classroom_id=classroom_id)
    return create_time_block(session, classroom_id, payload)


def delete_time_block(session, block_id):
    row = session.query(TimeBlock).filter_by(id=block_id).first()
    if not row:
        raise NotFound("Time block not found", f"time block {block_id}")
    if row.active:
        try:
            row.active = False
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        logging.info("time block deactivated: %s", row.id)
    return row


def deactivate_classroom(session, classroom_id):
    """Soft-delete a classroom and its time blocks; groups and sessions are left alone."""
    classroom = get_classroom(session, classroom_id)
    active_groups = (
        session.query(CourseGroup.id)
        .filter(CourseGroup.classroom_id == classroom_id, CourseGroup.active.is_(True))
        .count()
    )
    if active_groups:
        raise ValidationError("Classroom has active course groups", f"{active_groups} active groups")
    try:
        session.query(TimeBlock).filter(TimeBlock.classroom_id == classroom_id).update(
            {TimeBlock.active: False}, synchronize_session=False
        )
        classroom.active = False
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info("classroom deactivated: %s", classroom.code)
    return classroom


# Schedule replacement
def replace_schedule(session, classroom_id, blocks, generate_groups=False, generate_sessions=False, period_id=None):
    """Swap a classroom's whole weekly timetable for `blocks`, then optionally run the generators.

    The incoming set is validated in memory (shape, then pairwise overlap) before storage is
    touched. Installation is all-or-nothing; the generators that follow are best effort and
    report their failures in the returned Result instead of undoing the installation.
    """
    if not isinstance(blocks, list):
        raise ValidationError("blocks must be a list")
    parsed = [parse_block(payload, index=idx) for idx, payload in enumerate(blocks)]
    for idx, blk in enumerate(parsed):
        clash = find_conflict(parsed[:idx], blk)
        if clash:
            other_idx = next(i for i, b in enumerate(parsed) if b is clash)
            raise ScheduleConflict(
                f"blocks[{other_idx}] and blocks[{idx}] overlap "
                f"({day_name_short(blk.day_of_week)} {blk.start_time}-{blk.end_time})",
                describe_block(clash),
            )

    classroom = get_classroom(session, classroom_id, require_active=True)
    _require_references(session, parsed)

    result = Result()
    try:
        session.query(TimeBlock).filter(
            TimeBlock.classroom_id == classroom.id, TimeBlock.active.is_(True)
        ).update({TimeBlock.active: False}, synchronize_session=False)
        for blk in parsed:
            session.add(
                TimeBlock(
                    classroom_id=classroom.id,
                    course_id=blk.course_id,
                    teacher_id=blk.teacher_id,
                    day_of_week=blk.day_of_week,
                    start_time=blk.start_time,
                    end_time=blk.end_time,
                    sort_order=blk.sort_order,
                    active=blk.active,
                )
            )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    result.blocks_installed = len(parsed)

    if generate_groups:
        _run_best_effort(session, result, "groups", generate_groups_from_schedule, classroom.id, period_id)
    if generate_sessions:
        _run_best_effort(session, result, "sessions", generate_sessions_for_classroom, classroom.id, period_id)

    logging.info(
        "schedule replaced for classroom %s: %s blocks, %s groups, %s sessions, %s errors",
        classroom.code, result.blocks_installed, result.groups_created,
        result.sessions_created, len(result.errors),
    )
    return result


def _run_best_effort(session, result, scope, step, classroom_id, period_id):
    try:
        result.merge(step(session, classroom_id, period_id=period_id))
    except SchedulingError as exc:
        detail = exc.message if not exc.detail else f"{exc.message}: {exc.detail}"
        result.add_error(scope, detail)
    except SQLAlchemyError as exc:
        session.rollback()
        result.add_error(scope, str(exc))


# Course group generation
def generate_groups_from_schedule(session, classroom_id, period_id=None):
    classroom = get_classroom(session, classroom_id)
    period = get_period(session, period_id or classroom.period_id)
    result = Result()

    by_course = {}
    for block in _active_blocks(session, classroom.id):
        by_course.setdefault(block.course_id, []).append(block)

    for course_id, course_blocks in by_course.items():
        course = course_blocks[0].course
        teacher_ids = sorted({b.teacher_id for b in course_blocks})
        if len(teacher_ids) > 1:
            codes = [
                code for (code,) in session.query(Teacher.code).filter(Teacher.id.in_(teacher_ids)).order_by(Teacher.code)
            ]
            result.add_error(
                f"course {course.code}",
                f"taught by more than one teacher ({', '.join(codes)}); assign a single teacher to generate its group",
            )
            continue
        if _group_exists(session, classroom.id, course_id, period.id):
            result.groups_existing += 1
            continue
        group = CourseGroup(
            code=group_code(classroom, course),
            course_id=course_id,
            teacher_id=teacher_ids[0],
            classroom_id=classroom.id,
            period_id=period.id,
            grade=classroom.grade,
            section=classroom.section,
            year=classroom.year,
            schedule=", ".join(
                f"{day_name_short(b.day_of_week)} {b.start_time}-{b.end_time}" for b in course_blocks
            ),
            capacity=classroom.capacity,
            enrolled_count=0,
            active=True,
        )
        try:
            with session.begin_nested():
                session.add(group)
        except IntegrityError as exc:
            # created concurrently by another request
            if _group_exists(session, classroom.id, course_id, period.id):
                result.groups_existing += 1
            else:
                result.add_error(f"course {course.code}", str(exc.orig))
            continue
        except SQLAlchemyError as exc:
            result.add_error(f"course {course.code}", str(exc))
            continue
        result.groups_created += 1

    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info(
        "groups generated for classroom %s: %s created, %s existing",
        classroom.code, result.groups_created, result.groups_existing,
    )
    return result


# Session generation
def generate_sessions_for_classroom(session, classroom_id, period_id=None):
    classroom = get_classroom(session, classroom_id)
    period = get_period(session, period_id or classroom.period_id)
    if not period.start_date or not period.end_date:
        raise ValidationError("Period has no date range", f"period {period.name} needs start_date and end_date")
    if period.end_date < period.start_date:
        raise ValidationError("Period end_date is before start_date", f"period {period.name}")

    result = Result()
    blocks = _active_blocks(session, classroom.id)
    groups = {
        g.course_id: g
        for g in session.query(CourseGroup).filter(
            CourseGroup.classroom_id == classroom.id, CourseGroup.period_id == period.id
        )
    }
    group_ids = [g.id for g in groups.values()]
    existing = set()
    if group_ids:
        rows = (
            session.query(ClassSession.group_id, ClassSession.session_date, ClassSession.start_time)
            .filter(
                ClassSession.group_id.in_(group_ids),
                ClassSession.session_date >= period.start_date,
                ClassSession.session_date <= period.end_date,
            )
            .all()
        )
        existing = {(gid, d, st) for (gid, d, st) in rows}

    for block in blocks:
        scope = f"block {block.id} ({day_name_short(block.day_of_week)} {block.start_time}-{block.end_time})"
        group = groups.get(block.course_id)
        if group is None:
            result.add_error(scope, f"no group for course {block.course.code}; run group generation first")
            continue
        if not group.active:
            result.add_error(scope, f"group {group.code} is inactive")
            continue
        for day in matching_dates(period.start_date, period.end_date, block.day_of_week):
            key = (group.id, day, block.start_time)
            if key in existing:
                result.sessions_existing += 1
                continue
            try:
                with session.begin_nested():
                    session.add(
                        ClassSession(
                            group_id=group.id,
                            session_date=day,
                            start_time=block.start_time,
                            end_time=block.end_time,
                            realized=False,
                        )
                    )
            except IntegrityError as exc:
                if _session_exists(session, group.id, day, block.start_time):
                    result.sessions_existing += 1
                else:
                    result.add_error(scope, f"{day.isoformat()}: {exc.orig}")
                continue
            except SQLAlchemyError as exc:
                result.add_error(scope, f"{day.isoformat()}: {exc}")
                continue
            existing.add(key)
            result.sessions_created += 1

    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info(
        "sessions generated for classroom %s: %s created, %s existing, %s errors",
        classroom.code, result.sessions_created, result.sessions_existing, len(result.errors),
    )
    return result


def create_session(session, group_id, payload):
    """Add a one-off session to a group, outside the weekly timetable."""
    if not isinstance(payload, dict):
        raise ValidationError("session must be an object")
    raw_date = payload.get("date", payload.get("session_date"))
    if isinstance(raw_date, date):
        session_date = raw_date
    else:
        try:
            session_date = date.fromisoformat(raw_date)
        except (TypeError, ValueError):
            raise ValidationError("date must be YYYY-MM-DD")
    start = normalize_time(payload.get("start_time"), "start_time")
    end = normalize_time(payload.get("end_time"), "end_time")
    if time_to_minutes(start) >= time_to_minutes(end):
        raise ValidationError("end_time must be after start_time")

    group = session.query(CourseGroup).filter_by(id=group_id).first()
    if not group:
        raise NotFound("Group not found", f"group {group_id}")
    if not group.active:
        raise ValidationError("Group is inactive", f"group {group.code}")

    row = ClassSession(
        group_id=group.id,
        session_date=session_date,
        start_time=start,
        end_time=end,
        topic=payload.get("topic"),
        notes=payload.get("notes"),
        realized=False,
    )
    try:
        session.add(row)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise AlreadyExists(
            "Session already exists", f"group {group_id} on {session_date.isoformat()} at {start}"
        )
    except SQLAlchemyError:
        session.rollback()
        raise
    logging.info("session created: group %s %s %s", group_id, session_date, start)
    return row


def mark_session_realized(session, session_id, topic=None, notes=None):
    """Scheduled -> Realized. Realizing twice is a no-op; there is no way back."""
    row = session.query(ClassSession).filter_by(id=session_id).first()
    if not row:
        raise NotFound("Session not found", f"session {session_id}")
    try:
        if topic is not None:
            row.topic = topic
        if notes is not None:
            row.notes = notes
        row.realized = True
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise
    return row
