from datetime import date

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

import scheduling
from conftest import block
from models import ClassSession, CourseGroup, Period, TimeBlock
from scheduling import (AlreadyExists, NotFound, ScheduleConflict, ValidationError, create_session,
                        create_time_block, generate_groups_from_schedule,
                        generate_sessions_for_classroom, list_time_blocks, mark_session_realized,
                        replace_schedule)


def install_basic_schedule(db, school):
    """MAT Mon 08-09 and Wed 08-09 with D1, LEN Tue 10-11 with D2."""
    return replace_schedule(
        db,
        school.classroom_id,
        [
            block(school.mat_id, school.d1_id, 0, "08:00", "09:00"),
            block(school.mat_id, school.d1_id, 2, "08:00", "09:00"),
            block(school.lang_id, school.d2_id, 1, "10:00", "11:00"),
        ],
    )


def test_groups_one_per_distinct_course(db, school):
    install_basic_schedule(db, school)
    result = generate_groups_from_schedule(db, school.classroom_id)
    assert result.groups_created == 2
    assert result.errors == []
    groups = {g.code: g for g in db.query(CourseGroup).all()}
    assert set(groups) == {"5A-MAT", "5A-LEN"}
    mat = groups["5A-MAT"]
    assert mat.teacher_id == school.d1_id
    assert mat.capacity == 30
    assert mat.period_id == school.period_id
    assert mat.classroom_id == school.classroom_id
    assert mat.enrolled_count == 0
    assert mat.schedule == "Mon 08:00-09:00, Wed 08:00-09:00"

    again = generate_groups_from_schedule(db, school.classroom_id)
    assert again.groups_created == 0
    assert again.groups_existing == 2
    assert again.ok
    assert db.query(CourseGroup).count() == 2


def test_course_under_two_teachers_is_per_item_error(db, school):
    replace_schedule(
        db,
        school.classroom_id,
        [
            block(school.mat_id, school.d1_id, 0, "08:00", "09:00"),
            block(school.mat_id, school.d2_id, 1, "08:00", "09:00"),
            block(school.lang_id, school.d2_id, 2, "08:00", "09:00"),
        ],
    )
    result = generate_groups_from_schedule(db, school.classroom_id)
    assert result.groups_created == 1
    assert len(result.errors) == 1
    assert result.errors[0]["scope"] == "course MAT"
    assert "D1, D2" in result.errors[0]["detail"]
    assert [g.code for g in db.query(CourseGroup).all()] == ["5A-LEN"]


def test_existing_groups_are_never_modified(db, school):
    install_basic_schedule(db, school)
    generate_groups_from_schedule(db, school.classroom_id)
    group = db.query(CourseGroup).filter_by(code="5A-MAT").one()
    group.capacity = 12
    group.active = False
    db.commit()
    generate_groups_from_schedule(db, school.classroom_id)
    group = db.query(CourseGroup).filter_by(code="5A-MAT").one()
    assert group.capacity == 12
    assert group.active is False


def test_sessions_scenario_two_mondays(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")], generate_groups=True
    )
    result = generate_sessions_for_classroom(db, school.classroom_id)
    assert result.sessions_created == 2
    assert result.errors == []
    sessions = db.query(ClassSession).order_by(ClassSession.session_date).all()
    assert [s.session_date for s in sessions] == [date(2024, 9, 2), date(2024, 9, 9)]
    assert all(s.realized is False for s in sessions)
    assert all((s.start_time, s.end_time) == ("08:00", "09:00") for s in sessions)


def test_sessions_idempotent(db, school):
    install_basic_schedule(db, school)
    generate_groups_from_schedule(db, school.classroom_id)
    first = generate_sessions_for_classroom(db, school.classroom_id)
    count_after_first = db.query(ClassSession).count()
    second = generate_sessions_for_classroom(db, school.classroom_id)
    assert first.sessions_created == 6
    assert second.sessions_created == 0
    assert second.sessions_existing == 6
    assert db.query(ClassSession).count() == count_after_first


def test_sessions_weekday_fidelity_and_bounds(db, school):
    install_basic_schedule(db, school)
    generate_groups_from_schedule(db, school.classroom_id)
    generate_sessions_for_classroom(db, school.classroom_id)
    groups = {g.id: g for g in db.query(CourseGroup).all()}
    blocks = list_time_blocks(db, school.classroom_id)
    for s in db.query(ClassSession).all():
        assert date(2024, 9, 2) <= s.session_date <= date(2024, 9, 13)
        origin = [
            b for b in blocks
            if b.course_id == groups[s.group_id].course_id and b.start_time == s.start_time
            and b.day_of_week == s.session_date.weekday()
        ]
        assert len(origin) == 1


def test_missing_group_is_reported_per_block(db, school):
    install_basic_schedule(db, school)
    db.add(
        CourseGroup(
            code="5A-LEN", course_id=school.lang_id, teacher_id=school.d2_id,
            classroom_id=school.classroom_id, period_id=school.period_id,
            grade=5, section="A", year=2024, capacity=30,
        )
    )
    db.commit()
    result = generate_sessions_for_classroom(db, school.classroom_id)
    # LEN Tue: 09-03, 09-10; both MAT blocks lack a group
    assert result.sessions_created == 2
    assert len(result.errors) == 2
    assert all("run group generation first" in e["detail"] for e in result.errors)


def test_period_without_dates_fails_fast(db, school):
    install_basic_schedule(db, school)
    generate_groups_from_schedule(db, school.classroom_id)
    period = db.query(Period).filter_by(id=school.period_id).one()
    period.end_date = None
    db.commit()
    with pytest.raises(ValidationError):
        generate_sessions_for_classroom(db, school.classroom_id)
    assert db.query(ClassSession).count() == 0


def test_explicit_period_argument(db, school):
    other = Period(name="2024-2025", term="Second", start_date=date(2024, 9, 16), end_date=date(2024, 9, 20))
    db.add(other)
    db.commit()
    other_id = other.id
    replace_schedule(db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")])
    groups = generate_groups_from_schedule(db, school.classroom_id, period_id=other_id)
    assert groups.groups_created == 1
    sessions = generate_sessions_for_classroom(db, school.classroom_id, period_id=other_id)
    assert sessions.sessions_created == 1
    assert db.query(ClassSession).one().session_date == date(2024, 9, 16)
    with pytest.raises(NotFound):
        generate_groups_from_schedule(db, school.classroom_id, period_id=999)


def test_existing_manual_session_left_untouched(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")], generate_groups=True
    )
    group = db.query(CourseGroup).one()
    db.add(
        ClassSession(
            group_id=group.id, session_date=date(2024, 9, 2), start_time="08:00",
            end_time="09:00", topic="Fractions", realized=True,
        )
    )
    db.commit()
    result = generate_sessions_for_classroom(db, school.classroom_id)
    assert result.sessions_created == 1
    assert result.sessions_existing == 1
    kept = db.query(ClassSession).filter_by(session_date=date(2024, 9, 2)).one()
    assert kept.topic == "Fractions"
    assert kept.realized is True


def test_session_uniqueness_enforced_by_storage(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")],
        generate_groups=True, generate_sessions=True,
    )
    group = db.query(CourseGroup).one()
    db.add(ClassSession(group_id=group.id, session_date=date(2024, 9, 2), start_time="08:00", end_time="09:00"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_replace_rejects_internally_overlapping_input(db, school):
    create_time_block(db, school.classroom_id, block(school.lang_id, school.d2_id, 3, "08:00", "09:00"))
    with pytest.raises(ScheduleConflict):
        replace_schedule(
            db,
            school.classroom_id,
            [
                block(school.mat_id, school.d1_id, 0, "08:00", "09:00"),
                block(school.lang_id, school.d2_id, 0, "08:30", "09:30"),
            ],
            generate_groups=True,
            generate_sessions=True,
        )
    rows = list_time_blocks(db, school.classroom_id)
    assert [(r.course_id, r.day_of_week, r.start_time) for r in rows] == [(school.lang_id, 3, "08:00")]
    assert db.query(CourseGroup).count() == 0


def test_replace_rejects_bad_block_before_any_write(db, school):
    create_time_block(db, school.classroom_id, block(school.lang_id, school.d2_id, 3, "08:00", "09:00"))
    with pytest.raises(ValidationError) as excinfo:
        replace_schedule(
            db,
            school.classroom_id,
            [block(school.mat_id, school.d1_id, 0, "08:00", "09:00"), block(school.mat_id, school.d1_id, 6, "08:00", "09:00")],
        )
    assert "blocks[1]" in excinfo.value.message
    with pytest.raises(NotFound):
        replace_schedule(db, school.classroom_id, [block(999, school.d1_id, 0, "08:00", "09:00")])
    assert len(list_time_blocks(db, school.classroom_id)) == 1


def test_replace_swaps_snapshot_and_keeps_history(db, school):
    install_basic_schedule(db, school)
    result = replace_schedule(db, school.classroom_id, [block(school.lang_id, school.d2_id, 4, "12:00", "13:00")])
    assert result.blocks_installed == 1
    rows = list_time_blocks(db, school.classroom_id)
    assert [(r.day_of_week, r.start_time) for r in rows] == [(4, "12:00")]
    assert db.query(TimeBlock).filter(TimeBlock.active.is_(False)).count() == 3


def test_replace_with_generation_aggregates_counts(db, school):
    result = replace_schedule(
        db,
        school.classroom_id,
        [
            block(school.mat_id, school.d1_id, 0, "08:00", "09:00"),
            block(school.mat_id, school.d1_id, 2, "08:00", "09:00"),
            block(school.lang_id, school.d2_id, 1, "10:00", "11:00"),
        ],
        generate_groups=True,
        generate_sessions=True,
    )
    payload = result.to_dict()
    assert payload["blocks_installed"] == 3
    assert payload["groups_created"] == 2
    assert payload["sessions_created"] == 6
    assert payload["errors"] == []
    assert payload["ok"] is True


def test_replace_generation_failure_does_not_undo_install(db, school):
    period = db.query(Period).filter_by(id=school.period_id).one()
    period.start_date = None
    db.commit()
    result = replace_schedule(
        db,
        school.classroom_id,
        [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")],
        generate_groups=True,
        generate_sessions=True,
    )
    assert result.blocks_installed == 1
    assert result.groups_created == 1
    assert [e["scope"] for e in result.errors] == ["sessions"]
    assert not result.ok
    assert len(list_time_blocks(db, school.classroom_id)) == 1


def test_mark_session_realized_is_one_way(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")],
        generate_groups=True, generate_sessions=True,
    )
    first = db.query(ClassSession).order_by(ClassSession.session_date).first()
    row = mark_session_realized(db, first.id, topic="Fractions")
    assert row.realized is True
    assert row.topic == "Fractions"
    row = mark_session_realized(db, first.id)
    assert row.realized is True
    assert row.topic == "Fractions"
    with pytest.raises(NotFound):
        mark_session_realized(db, 999)


def test_empty_timetable_generates_nothing(db, school):
    groups = generate_groups_from_schedule(db, school.classroom_id)
    sessions = generate_sessions_for_classroom(db, school.classroom_id)
    assert (groups.groups_created, groups.errors) == (0, [])
    assert (sessions.sessions_created, sessions.errors) == (0, [])


def test_seed_demo_builds_full_term(db):
    from seed_demo import seed_demo_data

    classroom_id = seed_demo_data(db)
    assert len(list_time_blocks(db, classroom_id)) == 7
    assert db.query(CourseGroup).count() == 4
    # 7 weekly blocks over 15 school weeks
    assert db.query(ClassSession).count() == 105
    seed_demo_data(db)
    assert db.query(CourseGroup).count() == 4
    assert db.query(ClassSession).count() == 105


def test_group_insert_failure_keeps_the_rest_of_the_batch(db, school, monkeypatch):
    real_code = scheduling.group_code

    def code_for(classroom, course):
        if course.code == "LEN":
            return object()  # not bindable as a column value
        return real_code(classroom, course)

    monkeypatch.setattr(scheduling, "group_code", code_for)
    result = replace_schedule(
        db,
        school.classroom_id,
        [
            block(school.mat_id, school.d1_id, 0, "08:00", "09:00"),
            block(school.lang_id, school.d2_id, 1, "08:00", "09:00"),
        ],
        generate_groups=True,
    )
    assert result.groups_created == 1
    assert [e["scope"] for e in result.errors] == ["course LEN"]
    assert [g.code for g in db.query(CourseGroup).all()] == ["5A-MAT"]


def test_session_insert_failure_keeps_the_rest_of_the_batch(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")], generate_groups=True
    )
    db.execute(
        text(
            "CREATE TRIGGER reject_sept_9 BEFORE INSERT ON sessions "
            "WHEN NEW.session_date = '2024-09-09' "
            "BEGIN SELECT RAISE(ABORT, 'room closed'); END"
        )
    )
    db.commit()
    result = generate_sessions_for_classroom(db, school.classroom_id)
    assert result.sessions_created == 1
    assert result.sessions_existing == 0
    assert len(result.errors) == 1
    assert result.errors[0]["detail"].startswith("2024-09-09")
    assert [s.session_date for s in db.query(ClassSession).all()] == [date(2024, 9, 2)]


def test_group_inserted_concurrently_counts_as_existing(db, school, monkeypatch):
    replace_schedule(db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")])
    real_code = scheduling.group_code

    def racing_code(classroom, course):
        # another request wins the insert after the existence check
        db.execute(
            CourseGroup.__table__.insert().values(
                code="5A-MAT", course_id=course.id, teacher_id=school.d1_id,
                classroom_id=classroom.id, period_id=school.period_id,
                grade=5, section="A", year=2024,
            )
        )
        return real_code(classroom, course)

    monkeypatch.setattr(scheduling, "group_code", racing_code)
    result = generate_groups_from_schedule(db, school.classroom_id)
    assert (result.groups_created, result.groups_existing) == (0, 1)
    assert result.errors == []
    assert db.query(CourseGroup).count() == 1


def test_session_inserted_concurrently_counts_as_existing(db, school, monkeypatch):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")], generate_groups=True
    )
    group_id = db.query(CourseGroup.id).scalar()
    real_dates = scheduling.matching_dates

    def racing_dates(start, end, weekday):
        db.execute(
            ClassSession.__table__.insert().values(
                group_id=group_id, session_date=date(2024, 9, 2), start_time="08:00", end_time="09:00",
            )
        )
        return real_dates(start, end, weekday)

    monkeypatch.setattr(scheduling, "matching_dates", racing_dates)
    result = generate_sessions_for_classroom(db, school.classroom_id)
    assert (result.sessions_created, result.sessions_existing) == (1, 1)
    assert result.errors == []
    assert db.query(ClassSession).count() == 2


def test_manual_session_creation(db, school):
    replace_schedule(
        db, school.classroom_id, [block(school.mat_id, school.d1_id, 0, "08:00", "09:00")], generate_groups=True
    )
    group_id = db.query(CourseGroup.id).scalar()
    payload = {"date": "2024-09-07", "start_time": "10:00", "end_time": "11:00", "topic": "Review"}

    row = create_session(db, group_id, payload)
    assert row.session_date == date(2024, 9, 7)
    assert row.realized is False
    with pytest.raises(AlreadyExists):
        create_session(db, group_id, payload)
    with pytest.raises(ValidationError):
        create_session(db, group_id, {**payload, "end_time": "09:30"})
    with pytest.raises(ValidationError):
        create_session(db, group_id, {**payload, "date": "07/09/2024"})
    with pytest.raises(NotFound):
        create_session(db, 999, payload)

    result = generate_sessions_for_classroom(db, school.classroom_id)
    assert result.sessions_created == 2
    assert db.query(ClassSession).count() == 3
