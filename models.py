from datetime import datetime

from sqlalchemy import (Boolean, Column, Date, DateTime, ForeignKey, Integer,
                        String, UniqueConstraint)
from sqlalchemy.orm import relationship

from database import Base


# ORM models
class Period(Base):
    __tablename__ = "periods"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False)  # e.g. 2024-2025
    term = Column(String(20))  # First, Second, Third
    start_date = Column(Date)
    end_date = Column(Date)
    is_current = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    notes = Column(String(500))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Course(Base):
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), nullable=False, unique=True)  # MAT, HIST
    name = Column(String(150), nullable=False)
    area = Column(String(100))
    active = Column(Boolean, nullable=False, default=True)


class Teacher(Base):
    __tablename__ = "teachers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), nullable=False, unique=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class Classroom(Base):
    """A cohort for one period.

    start_date/end_date describe the cohort's enrolment window only; session
    generation walks the period's dates, not these.
    """

    __tablename__ = "classrooms"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False)  # 5A-2024
    grade = Column(Integer, nullable=False)  # 1-12
    section = Column(String(10), nullable=False)  # A, B, C
    year = Column(Integer, nullable=False)
    period_id = Column(Integer, ForeignKey("periods.id"), nullable=False)
    room = Column(String(50))  # physical room label, "Room 201"
    capacity = Column(Integer, nullable=False, default=35)
    student_count = Column(Integer, nullable=False, default=0)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    period = relationship("Period")
    time_blocks = relationship("TimeBlock", back_populates="classroom")


class TimeBlock(Base):
    __tablename__ = "time_blocks"
    id = Column(Integer, primary_key=True, autoincrement=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Mon ... 4=Fri
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)    # HH:MM
    sort_order = Column(Integer, nullable=False, default=0)  # ordering hint within the day
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    classroom = relationship("Classroom", back_populates="time_blocks")
    course = relationship("Course")
    teacher = relationship("Teacher")


class CourseGroup(Base):
    __tablename__ = "course_groups"
    __table_args__ = (
        UniqueConstraint("classroom_id", "course_id", "period_id", name="uq_group_classroom_course_period"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(40), nullable=False)  # 8A-MAT, 9B-HIST
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"))  # null for manual groups
    period_id = Column(Integer, ForeignKey("periods.id"), nullable=False)
    grade = Column(Integer, nullable=False)
    section = Column(String(10), nullable=False)
    year = Column(Integer, nullable=False)
    schedule = Column(String(200))  # "Mon 08:00-09:00, Wed 08:00-09:00"
    capacity = Column(Integer, nullable=False, default=35)
    enrolled_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    course = relationship("Course")
    teacher = relationship("Teacher")
    classroom = relationship("Classroom")
    period = relationship("Period")


class ClassSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("group_id", "session_date", "start_time", name="uq_session_group_date_start"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("course_groups.id"), nullable=False)
    session_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    topic = Column(String(100))
    notes = Column(String(500))
    realized = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    group = relationship("CourseGroup")
