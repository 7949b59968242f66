from __future__ import annotations

import csv
import io
import json
import logging
import uuid
from collections import Counter
from datetime import date, datetime, time
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Time, UniqueConstraint, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from werkzeug.security import check_password_hash, generate_password_hash

from .config import configure_logging, get_settings
from .permissions import (
    ROLE_LABELS,
    assignable_roles,
    can_assign_role,
    can_modify_user,
    has_min_role,
    is_valid_role,
    redact_student,
    redact_students,
)
from .rules import (
    CHECKLIST_SECTIONS,
    CRITICAL_FIELDS,
    PASSING_TOTAL,
    RUBRIC_FIELDS,
    RUBRIC_LABELS,
    RUBRIC_MAX_TOTAL,
    checklist_detail,
    checklist_progress,
    cleared_for_nremt,
    missing_required_items,
    round_percent,
    summative_passed,
    summative_result_label,
    summative_total,
    validate_rubric_score,
)

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

serializer = URLSafeTimedSerializer(settings.session_secret, salt="clinical-tracker")
MAX_STUDENTS_PER_EVALUATION = 6
STUDENT_STATUSES = {"active", "graduated", "withdrawn", "on_hold"}
AGENCY_TYPES = {"ems", "hospital"}
SHIFT_TYPES = {"12_hour", "24_hour", "48_hour"}
INTERNSHIP_PHASES = {"pre_internship", "phase_1_mentorship", "phase_2_evaluation", "completed", "extended"}
INTERNSHIP_STATUSES = {"not_started", "in_progress", "on_track", "at_risk", "extended", "completed", "withdrawn"}
MEETING_TYPES = {"pre_internship", "weekly_checkin", "phase_1_eval", "phase_2_eval", "closeout", "counseling", "pip", "other"}
MEETING_STATUSES = {"scheduled", "completed", "cancelled", "rescheduled"}
PRECEPTOR_ROLES = {"primary", "secondary", "tertiary"}
STATION_TYPES = {"scenario", "skill", "documentation", "lecture", "testing"}
LAB_DAY_ROLES = {"lab_lead", "roamer", "observer"}
ATTENDANCE_STATUSES = {"present", "absent", "excused", "late"}
EVALUATION_STATUSES = {"in_progress", "completed", "cancelled"}


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="instructor")
    password_hash: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    actor_user_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Program(Base):
    __tablename__ = "programs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    display_name: Mapped[str] = mapped_column(String)
    abbreviation: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Cohort(Base):
    __tablename__ = "cohorts"
    __table_args__ = (UniqueConstraint("program_id", "cohort_number"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    program_id: Mapped[str] = mapped_column(String, ForeignKey("programs.id"), index=True)
    cohort_number: Mapped[int] = mapped_column(Integer)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expected_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Student(Base):
    __tablename__ = "students"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    cohort_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("cohorts.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default="active")
    agency: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StudentNote(Base):
    __tablename__ = "student_notes"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    author_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    category: Mapped[str] = mapped_column(String, default="general")
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Agency(Base):
    __tablename__ = "agencies"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    abbreviation: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    agency_type: Mapped[str] = mapped_column(String, default="ems")
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class FieldPreceptor(Base):
    __tablename__ = "field_preceptors"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    agency_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agencies.id"), nullable=True, index=True)
    agency_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    station: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    normal_schedule: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    snhd_trained_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    snhd_cert_expires: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    max_students: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StudentInternship(Base):
    __tablename__ = "student_internships"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), unique=True, index=True)
    cohort_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("cohorts.id"), nullable=True, index=True)
    preceptor_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("field_preceptors.id"), nullable=True)
    agency_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agencies.id"), nullable=True)
    agency_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    shift_type: Mapped[str] = mapped_column(String, default="12_hour")
    placement_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    orientation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    orientation_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    internship_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expected_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    actual_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    current_phase: Mapped[str] = mapped_column(String, default="pre_internship")
    phase_1_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_1_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_1_eval_scheduled: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_1_eval_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    phase_1_eval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phase_2_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_2_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_2_eval_scheduled: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phase_2_eval_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    phase_2_eval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    closeout_meeting_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    closeout_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    liability_form_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    background_check_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    drug_screen_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    immunizations_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    cpr_card_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    uniform_issued: Mapped[bool] = mapped_column(Boolean, default=False)
    badge_issued: Mapped[bool] = mapped_column(Boolean, default=False)
    cleared_for_nremt: Mapped[bool] = mapped_column(Boolean, default=False)
    nremt_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    nremt_notified_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    written_exam_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    written_exam_passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    psychomotor_exam_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    psychomotor_exam_passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    course_completion_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String, default="not_started", index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InternshipMeeting(Base):
    __tablename__ = "internship_meetings"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    internship_id: Mapped[str] = mapped_column(String, ForeignKey("student_internships.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    meeting_type: Mapped[str] = mapped_column(String)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    scheduled_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="scheduled")
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    follow_up_needed: Mapped[bool] = mapped_column(Boolean, default=False)
    follow_up_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_by: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PreceptorAssignment(Base):
    __tablename__ = "student_preceptor_assignments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    internship_id: Mapped[str] = mapped_column(String, ForeignKey("student_internships.id"), index=True)
    preceptor_id: Mapped[str] = mapped_column(String, ForeignKey("field_preceptors.id"), index=True)
    role: Mapped[str] = mapped_column(String, default="primary")
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LabDay(Base):
    __tablename__ = "lab_days"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    lab_date: Mapped[date] = mapped_column(Date, index=True)
    cohort_id: Mapped[str] = mapped_column(String, ForeignKey("cohorts.id"), index=True)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    semester: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    week_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    num_rotations: Mapped[int] = mapped_column(Integer, default=4)
    rotation_duration: Mapped[int] = mapped_column(Integer, default=30)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LabStation(Base):
    __tablename__ = "lab_stations"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    lab_day_id: Mapped[str] = mapped_column(String, ForeignKey("lab_days.id"), index=True)
    station_number: Mapped[int] = mapped_column(Integer)
    station_type: Mapped[str] = mapped_column(String, default="scenario")
    custom_title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    skill_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    instructor_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    room: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    equipment_needed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class LabDayRole(Base):
    __tablename__ = "lab_day_roles"
    __table_args__ = (UniqueConstraint("lab_day_id", "instructor_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    lab_day_id: Mapped[str] = mapped_column(String, ForeignKey("lab_days.id"), index=True)
    instructor_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    role: Mapped[str] = mapped_column(String)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class LabAttendance(Base):
    __tablename__ = "lab_day_attendance"
    __table_args__ = (UniqueConstraint("lab_day_id", "student_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    lab_day_id: Mapped[str] = mapped_column(String, ForeignKey("lab_days.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    status: Mapped[str] = mapped_column(String)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    marked_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    marked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SummativeScenario(Base):
    __tablename__ = "summative_scenarios"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    scenario_number: Mapped[int] = mapped_column(Integer, unique=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    patient_presentation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class SummativeEvaluation(Base):
    __tablename__ = "summative_evaluations"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    scenario_id: Mapped[str] = mapped_column(String, ForeignKey("summative_scenarios.id"))
    cohort_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("cohorts.id"), nullable=True, index=True)
    internship_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("student_internships.id"), nullable=True, index=True)
    evaluation_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    examiner_name: Mapped[str] = mapped_column(String)
    examiner_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="in_progress")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SummativeEvaluationScore(Base):
    __tablename__ = "summative_evaluation_scores"
    __table_args__ = (UniqueConstraint("evaluation_id", "student_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    evaluation_id: Mapped[str] = mapped_column(String, ForeignKey("summative_evaluations.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    leadership_scene_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    patient_assessment_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    patient_management_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    interpersonal_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    integration_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    critical_criteria_failed: Mapped[bool] = mapped_column(Boolean, default=False)
    critical_fails_mandatory: Mapped[bool] = mapped_column(Boolean, default=False)
    critical_harmful_intervention: Mapped[bool] = mapped_column(Boolean, default=False)
    critical_unprofessional: Mapped[bool] = mapped_column(Boolean, default=False)
    critical_criteria_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    examiner_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    feedback_provided: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    grading_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    graded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    graded_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


connect_args = {"check_same_thread": False} if settings.is_sqlite else {}
engine = create_engine(settings.database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
app = FastAPI(title="Paramedic Clinical Tracker")
app.add_middleware(CORSMiddleware, allow_origins=list(settings.cors_origins), allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


class BlankAsNoneModel(BaseModel):
    """Form fields arrive as empty strings when cleared; store those as NULL."""

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class LoginIn(BaseModel):
    email: str
    password: str


class UserIn(BaseModel):
    email: str
    name: str
    role: str = "instructor"
    password: str = Field(min_length=8)


class UserUpdateIn(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=8)


class CohortIn(BaseModel):
    program_id: str
    cohort_number: int = Field(ge=1)
    start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    is_active: bool = True


class CohortUpdateIn(BlankAsNoneModel):
    cohort_number: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    is_active: Optional[bool] = None



class StudentIn(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    cohort_id: Optional[str] = None
    status: str = "active"
    agency: Optional[str] = None
    notes: Optional[str] = None


class StudentUpdateIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    cohort_id: Optional[str] = None
    status: Optional[str] = None
    agency: Optional[str] = None
    notes: Optional[str] = None


class StudentNoteIn(BaseModel):
    category: str = "general"
    content: str = Field(min_length=1)


class AgencyIn(BaseModel):
    name: str
    abbreviation: Optional[str] = None
    agency_type: str = "ems"
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True


class PreceptorIn(BlankAsNoneModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    agency_id: Optional[str] = None
    station: Optional[str] = None
    normal_schedule: Optional[str] = None
    snhd_trained_date: Optional[date] = None
    snhd_cert_expires: Optional[date] = None
    max_students: int = Field(default=1, ge=1, le=10)
    is_active: bool = True
    notes: Optional[str] = None



class PreceptorUpdateIn(BlankAsNoneModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    agency_id: Optional[str] = None
    station: Optional[str] = None
    normal_schedule: Optional[str] = None
    snhd_trained_date: Optional[date] = None
    snhd_cert_expires: Optional[date] = None
    max_students: Optional[int] = Field(default=None, ge=1, le=10)
    is_active: Optional[bool] = None
    notes: Optional[str] = None



class InternshipIn(BaseModel):
    student_id: str
    cohort_id: Optional[str] = None
    agency_id: Optional[str] = None
    preceptor_id: Optional[str] = None
    shift_type: str = "12_hour"
    placement_date: Optional[date] = None
    internship_start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    notes: Optional[str] = None


class InternshipUpdateIn(BlankAsNoneModel):
    preceptor_id: Optional[str] = None
    agency_id: Optional[str] = None
    shift_type: Optional[str] = None
    current_phase: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    placement_date: Optional[date] = None
    orientation_date: Optional[date] = None
    orientation_completed: Optional[bool] = None
    internship_start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    actual_end_date: Optional[date] = None
    phase_1_start_date: Optional[date] = None
    phase_1_end_date: Optional[date] = None
    phase_1_eval_scheduled: Optional[date] = None
    phase_1_eval_completed: Optional[bool] = None
    phase_1_eval_notes: Optional[str] = None
    phase_2_start_date: Optional[date] = None
    phase_2_end_date: Optional[date] = None
    phase_2_eval_scheduled: Optional[date] = None
    phase_2_eval_completed: Optional[bool] = None
    phase_2_eval_notes: Optional[str] = None
    closeout_meeting_date: Optional[date] = None
    closeout_completed: Optional[bool] = None
    liability_form_completed: Optional[bool] = None
    background_check_completed: Optional[bool] = None
    drug_screen_completed: Optional[bool] = None
    immunizations_verified: Optional[bool] = None
    cpr_card_verified: Optional[bool] = None
    uniform_issued: Optional[bool] = None
    badge_issued: Optional[bool] = None
    written_exam_date: Optional[date] = None
    written_exam_passed: Optional[bool] = None
    psychomotor_exam_date: Optional[date] = None
    psychomotor_exam_passed: Optional[bool] = None
    course_completion_date: Optional[date] = None



class MeetingIn(BaseModel):
    meeting_type: str
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    location: Optional[str] = None
    status: str = "scheduled"
    notes: Optional[str] = None
    follow_up_needed: bool = False
    follow_up_date: Optional[date] = None


class MeetingUpdateIn(BlankAsNoneModel):
    meeting_type: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    location: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    follow_up_needed: Optional[bool] = None
    follow_up_date: Optional[date] = None



class PreceptorAssignmentIn(BaseModel):
    preceptor_id: str
    role: str = "primary"
    start_date: Optional[date] = None
    notes: Optional[str] = None


class PreceptorAssignmentUpdateIn(BaseModel):
    role: Optional[str] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class LabDayIn(BaseModel):
    lab_date: date
    cohort_id: str
    title: Optional[str] = None
    semester: Optional[int] = Field(default=None, ge=1, le=4)
    week_number: Optional[int] = Field(default=None, ge=1)
    day_number: Optional[int] = Field(default=None, ge=1)
    num_rotations: int = Field(default=4, ge=1, le=12)
    rotation_duration: int = Field(default=30, ge=5, le=240)
    notes: Optional[str] = None


class LabDayUpdateIn(BaseModel):
    lab_date: Optional[date] = None
    title: Optional[str] = None
    semester: Optional[int] = Field(default=None, ge=1, le=4)
    week_number: Optional[int] = Field(default=None, ge=1)
    day_number: Optional[int] = Field(default=None, ge=1)
    num_rotations: Optional[int] = Field(default=None, ge=1, le=12)
    rotation_duration: Optional[int] = Field(default=None, ge=5, le=240)
    notes: Optional[str] = None


class LabStationIn(BaseModel):
    station_number: int = Field(ge=1)
    station_type: str = "scenario"
    custom_title: Optional[str] = None
    skill_name: Optional[str] = None
    instructor_id: Optional[str] = None
    room: Optional[str] = None
    equipment_needed: Optional[str] = None


class LabStationUpdateIn(BaseModel):
    station_number: Optional[int] = Field(default=None, ge=1)
    station_type: Optional[str] = None
    custom_title: Optional[str] = None
    skill_name: Optional[str] = None
    instructor_id: Optional[str] = None
    room: Optional[str] = None
    equipment_needed: Optional[str] = None


class LabDayRoleIn(BaseModel):
    instructor_id: str
    role: str
    notes: Optional[str] = None


class AttendanceMarkIn(BaseModel):
    student_id: str
    status: str
    notes: Optional[str] = None


class AttendanceIn(BaseModel):
    marks: list[AttendanceMarkIn] = Field(default_factory=list)


class ConflictCheckIn(BaseModel):
    lab_date: date
    cohort_id: Optional[str] = None
    location: Optional[str] = None
    instructor_ids: list[str] = Field(default_factory=list)
    exclude_lab_day_id: Optional[str] = None


class EvaluationIn(BaseModel):
    scenario_id: Optional[str] = None
    cohort_id: Optional[str] = None
    internship_id: Optional[str] = None
    evaluation_date: Optional[date] = None
    start_time: Optional[time] = None
    examiner_name: Optional[str] = None
    examiner_email: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    student_ids: list[str] = Field(default_factory=list)


class EvaluationStudentIn(BaseModel):
    student_id: str


class ScoreUpdateIn(BaseModel):
    score_id: Optional[str] = None
    student_id: Optional[str] = None
    leadership_scene_score: Optional[int] = None
    patient_assessment_score: Optional[int] = None
    patient_management_score: Optional[int] = None
    interpersonal_score: Optional[int] = None
    integration_score: Optional[int] = None
    critical_criteria_failed: Optional[bool] = None
    critical_fails_mandatory: Optional[bool] = None
    critical_harmful_intervention: Optional[bool] = None
    critical_unprofessional: Optional[bool] = None
    critical_criteria_notes: Optional[str] = None
    passed: Optional[bool] = None
    examiner_notes: Optional[str] = None
    feedback_provided: Optional[str] = None
    grading_complete: Optional[bool] = None

    @field_validator(*RUBRIC_FIELDS, mode="before")
    @classmethod
    def _rubric_range(cls, value):
        return validate_rubric_score(value)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(session_token: str = Query(...), db: Session = Depends(get_db)) -> User:
    try:
        payload = serializer.loads(session_token, max_age=settings.session_max_age_seconds)
    except SignatureExpired as exc:
        raise HTTPException(status_code=401, detail="Session expired") from exc
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload["user_id"])
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_role(minimum: str):
    def dependency(user: User = Depends(current_user)) -> User:
        if not has_min_role(user.role, minimum):
            raise HTTPException(status_code=403, detail=f"{ROLE_LABELS[minimum]} role required")
        return user

    return dependency


require_instructor = require_role("instructor")
require_lead = require_role("lead_instructor")
require_admin = require_role("admin")
require_superadmin = require_role("superadmin")


def write_audit(db: Session, user: User, action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(actor_user_id=user.id, action=action, entity_type=entity, entity_id=entity_id, payload=payload))
    db.commit()


def commit_or_conflict(db: Session, detail: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=detail) from exc


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def audit_payload(data: dict) -> str:
    return json.dumps(data, default=str, sort_keys=True)


def require_choice(value: Optional[str], allowed: set[str], field: str) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(status_code=400, detail=f"{field} must be one of {', '.join(sorted(allowed))}")


def get_or_404(db: Session, model, obj_id: str, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def reject_nulls(changes: dict, model) -> None:
    columns = inspect(model).columns
    for key, value in changes.items():
        if value is None and key in columns and not columns[key].nullable:
            raise HTTPException(status_code=400, detail=f"{key} cannot be blank")


def revoke_clearance_if_ineligible(internship: StudentInternship) -> None:
    if internship.cleared_for_nremt and not cleared_for_nremt(internship):
        internship.cleared_for_nremt = False
        internship.nremt_notified = False
        internship.nremt_notified_date = None
        logger.info("Internship %s no longer meets NREMT clearance requirements; clearance revoked", internship.id)


def user_out(user: User) -> dict:
    row = serialize(user)
    row.pop("password_hash", None)
    row["role_label"] = ROLE_LABELS.get(user.role, user.role)
    return row


def full_name(person) -> str:
    if person is None:
        return ""
    return f"{person.first_name} {person.last_name}".strip()


def cohort_label(db: Session, cohort: Optional[Cohort]) -> Optional[str]:
    if cohort is None:
        return None
    program = db.get(Program, cohort.program_id)
    prefix = program.abbreviation if program else "Cohort"
    return f"{prefix} Group {cohort.cohort_number}"


def join_names(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


DEFAULT_PROGRAMS = (
    ("EMT", "Emergency Medical Technician", "EMT"),
    ("AEMT", "Advanced EMT", "AEMT"),
    ("Paramedic", "Paramedic", "PM"),
)

DEFAULT_AGENCIES = (
    ("AMR Las Vegas", "AMR", "ems"),
    ("Community Ambulance", "CA", "ems"),
    ("MedicWest Ambulance", "MedicWest", "ems"),
    ("Las Vegas Fire & Rescue", "LVFR", "ems"),
    ("Henderson Fire Department", "HFD", "ems"),
    ("North Las Vegas Fire", "NLVF", "ems"),
    ("Spring Valley Hospital", "SVH", "hospital"),
    ("Sunrise Hospital", "Sunrise", "hospital"),
    ("UMC", "UMC", "hospital"),
)

DEFAULT_SCENARIOS = (
    (1, "Medical Emergency - Cardiac", "Cardiac emergency scenario", "Patient presenting with chest pain and cardiac symptoms"),
    (2, "Trauma - Multi-System", "Multi-system trauma scenario", "Trauma patient with multiple injuries requiring rapid assessment"),
    (3, "Medical Emergency - Respiratory", "Respiratory emergency scenario", "Patient with acute respiratory distress"),
    (4, "Trauma - Isolated", "Isolated trauma scenario", "Single-system trauma requiring focused assessment"),
    (5, "Medical Emergency - Neurological", "Neurological emergency scenario", "Patient presenting with altered mental status or stroke symptoms"),
    (6, "Pediatric Emergency", "Pediatric patient scenario", "Pediatric patient requiring age-appropriate assessment and treatment"),
)


def seed_reference_data(db: Session) -> dict:
    added = Counter()
    for name, display_name, abbreviation in DEFAULT_PROGRAMS:
        if not db.scalar(select(Program).where(Program.name == name)):
            db.add(Program(name=name, display_name=display_name, abbreviation=abbreviation))
            added["programs"] += 1
    for name, abbreviation, agency_type in DEFAULT_AGENCIES:
        if not db.scalar(select(Agency).where(Agency.name == name)):
            db.add(Agency(name=name, abbreviation=abbreviation, agency_type=agency_type))
            added["agencies"] += 1
    for number, title, description, presentation in DEFAULT_SCENARIOS:
        if not db.scalar(select(SummativeScenario).where(SummativeScenario.scenario_number == number)):
            db.add(SummativeScenario(scenario_number=number, title=title, description=description, patient_presentation=presentation))
            added["scenarios"] += 1
    return dict(added)


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    if settings.session_secret_is_placeholder:
        logger.warning("SESSION_SECRET is unset or a placeholder; session tokens are not secure")
    with SessionLocal() as db:
        if settings.seed_reference_data:
            summary = seed_reference_data(db)
            if summary:
                logger.info("Seeded reference data: %s", summary)
        if not db.scalar(select(func.count()).select_from(User)):
            db.add(
                User(
                    email=settings.bootstrap_admin_email,
                    name="Administrator",
                    role="superadmin",
                    password_hash=generate_password_hash(settings.bootstrap_admin_password),
                )
            )
            logger.info("Created bootstrap superadmin %s", settings.bootstrap_admin_email)
        db.commit()


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/meta/checklist")
def checklist_metadata(_: User = Depends(current_user)):
    return {
        "sections": {
            name: [{"key": i.key, "label": i.label, "required": i.required, "date_key": i.date_key} for i in items]
            for name, items in CHECKLIST_SECTIONS.items()
        },
        "rubric": [{"key": f, "label": RUBRIC_LABELS[f]} for f in RUBRIC_FIELDS],
        "critical_criteria": list(CRITICAL_FIELDS),
        "rubric_max_total": RUBRIC_MAX_TOTAL,
        "passing_total": PASSING_TOTAL,
    }


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    user = db.scalar(select(User).where(User.email == email))
    if not user or not user.is_active or not check_password_hash(user.password_hash, payload.password):
        logger.warning("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user.last_login = datetime.utcnow()
    db.commit()
    return {"session_token": serializer.dumps({"user_id": user.id}), "role": user.role, "name": user.name}


@app.get("/auth/me")
def me(user: User = Depends(current_user)):
    out = user_out(user)
    out["assignable_roles"] = assignable_roles(user.role)
    return out


@app.get("/users")
def list_users(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return [user_out(u) for u in db.scalars(select(User).order_by(User.name.asc())).all()]


@app.post("/users")
def create_user(payload: UserIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    if not is_valid_role(payload.role):
        raise HTTPException(status_code=400, detail="Unknown role")
    if payload.role not in assignable_roles(user.role):
        raise HTTPException(status_code=403, detail=f"Cannot assign role {payload.role}")
    obj = User(email=payload.email.strip().lower(), name=payload.name.strip(), role=payload.role, password_hash=generate_password_hash(payload.password))
    db.add(obj)
    commit_or_conflict(db, "A user with that email already exists")
    db.refresh(obj)
    write_audit(db, user, "CREATE", "User", obj.id, audit_payload({"email": obj.email, "role": obj.role}))
    return user_out(obj)


@app.put("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    target = get_or_404(db, User, user_id, "User")
    if target.id != user.id and not can_modify_user(user.role, target.role):
        raise HTTPException(status_code=403, detail="Cannot modify a user at or above your role")
    protected = target.email in settings.protected_superadmins
    changes = payload.model_dump(exclude_unset=True)
    if "role" in changes and changes["role"] != target.role:
        if not is_valid_role(changes["role"]):
            raise HTTPException(status_code=400, detail="Unknown role")
        if not can_assign_role(user.role, changes["role"]):
            raise HTTPException(status_code=403, detail=f"Cannot assign role {changes['role']}")
        if protected:
            raise HTTPException(status_code=403, detail="Protected superadmin cannot be demoted")
        target.role = changes["role"]
    if changes.get("is_active") is False and protected:
        raise HTTPException(status_code=403, detail="Protected superadmin cannot be deactivated")
    if changes.get("is_active") is not None:
        target.is_active = changes["is_active"]
    if changes.get("name"):
        target.name = changes["name"].strip()
    if changes.get("password"):
        target.password_hash = generate_password_hash(changes["password"])
    db.commit()
    db.refresh(target)
    changes.pop("password", None)
    write_audit(db, user, "UPDATE", "User", target.id, audit_payload(changes))
    return user_out(target)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), user: User = Depends(require_superadmin)):
    target = get_or_404(db, User, user_id, "User")
    if target.id == user.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    if target.email in settings.protected_superadmins:
        raise HTTPException(status_code=403, detail="Protected superadmin cannot be deleted")
    email = target.email
    db.delete(target)
    commit_or_conflict(db, "User is referenced by existing records; deactivate instead")
    write_audit(db, user, "DELETE", "User", user_id, email)
    return {"status": "deleted"}


def cohort_out(db: Session, cohort: Cohort) -> dict:
    row = serialize(cohort)
    row["label"] = cohort_label(db, cohort)
    row["student_count"] = db.scalar(select(func.count()).select_from(Student).where(Student.cohort_id == cohort.id)) or 0
    return row


@app.get("/programs")
def list_programs(db: Session = Depends(get_db), _: User = Depends(current_user)):
    return [serialize(p) for p in db.scalars(select(Program).order_by(Program.name.asc())).all()]


@app.post("/cohorts")
def create_cohort(payload: CohortIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    get_or_404(db, Program, payload.program_id, "Program")
    obj = Cohort(**payload.model_dump())
    db.add(obj)
    commit_or_conflict(db, "Cohort number already exists for this program")
    db.refresh(obj)
    write_audit(db, user, "CREATE", "Cohort", obj.id, audit_payload(payload.model_dump()))
    return cohort_out(db, obj)


@app.get("/cohorts")
def list_cohorts(
    program_id: Optional[str] = None,
    include_archived: bool = False,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(Cohort)
    if program_id:
        stmt = stmt.where(Cohort.program_id == program_id)
    if not include_archived:
        stmt = stmt.where(Cohort.is_archived == False)  # noqa: E712
    return [cohort_out(db, c) for c in db.scalars(stmt.order_by(Cohort.cohort_number.desc())).all()]


@app.get("/cohorts/{cohort_id}")
def get_cohort(cohort_id: str, db: Session = Depends(get_db), _: User = Depends(current_user)):
    return cohort_out(db, get_or_404(db, Cohort, cohort_id, "Cohort"))


@app.put("/cohorts/{cohort_id}")
def update_cohort(cohort_id: str, payload: CohortUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, Cohort, cohort_id, "Cohort")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, Cohort)
    for k, v in changes.items():
        setattr(obj, k, v)
    commit_or_conflict(db, "Cohort number already exists for this program")
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "Cohort", obj.id, audit_payload(changes))
    return cohort_out(db, obj)


@app.post("/cohorts/{cohort_id}/archive")
def archive_cohort(cohort_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, Cohort, cohort_id, "Cohort")
    obj.is_archived = True
    obj.is_active = False
    db.commit()
    write_audit(db, user, "ARCHIVE", "Cohort", obj.id)
    return {"status": "archived"}


@app.get("/cohorts/{cohort_id}/completion")
def cohort_completion(cohort_id: str, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    cohort = get_or_404(db, Cohort, cohort_id, "Cohort")
    students = db.scalars(select(Student).where(Student.cohort_id == cohort_id)).all()
    internships = db.scalars(select(StudentInternship).where(StudentInternship.cohort_id == cohort_id)).all()
    progress_values = [checklist_progress(i)["overall"] for i in internships]
    student_ids = [s.id for s in students]
    graded = []
    if student_ids:
        graded = db.scalars(
            select(SummativeEvaluationScore).where(
                SummativeEvaluationScore.student_id.in_(student_ids),
                SummativeEvaluationScore.grading_complete == True,  # noqa: E712
            )
        ).all()
    return {
        "cohort_id": cohort_id,
        "label": cohort_label(db, cohort),
        "student_count": len(students),
        "students_by_status": dict(Counter(s.status for s in students)),
        "internship_count": len(internships),
        "internships_by_status": dict(Counter(i.status for i in internships)),
        "average_progress": round_percent(sum(progress_values) / len(progress_values)) if progress_values else 0,
        "cleared_for_nremt": sum(1 for i in internships if cleared_for_nremt(i)),
        "summative_passed": sum(1 for s in graded if s.passed),
        "summative_failed": sum(1 for s in graded if s.passed is False),
    }


ROSTER_COLUMNS = ("first_name", "last_name", "email", "agency")


def parse_roster_csv(text: str) -> tuple[list[dict], list[dict]]:
    """Split a roster CSV into importable rows and skipped rows.

    Headers are case-insensitive and may use spaces instead of underscores.
    A row needs both a first and a last name to be importable.
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    if reader.fieldnames:
        reader.fieldnames = [(h or "").strip().lower().replace(" ", "_") for h in reader.fieldnames]
    rows: list[dict] = []
    skipped: list[dict] = []
    for line_no, raw in enumerate(reader, start=2):
        row = {k: (raw.get(k) or "").strip() for k in ROSTER_COLUMNS}
        if not row["first_name"] or not row["last_name"]:
            skipped.append({"line": line_no, "reason": "first_name and last_name are required"})
            continue
        row["email"] = row["email"].lower() or None
        row["agency"] = row["agency"] or None
        row["line"] = line_no
        rows.append(row)
    return rows, skipped


def import_roster(db: Session, cohort_id: str, text: str) -> dict:
    rows, skipped = parse_roster_csv(text)
    existing = {e for e in db.scalars(select(Student.email).where(Student.email.is_not(None))).all()}
    created: list[str] = []
    duplicates: list[dict] = []
    for row in rows:
        if row["email"] and row["email"] in existing:
            duplicates.append({"line": row["line"], "email": row["email"]})
            continue
        student = Student(
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            agency=row["agency"],
            cohort_id=cohort_id,
        )
        db.add(student)
        db.flush()
        created.append(student.id)
        if row["email"]:
            existing.add(row["email"])
    db.commit()
    logger.info("Roster import into cohort %s: %d created, %d duplicates, %d skipped", cohort_id, len(created), len(duplicates), len(skipped))
    return {"created": len(created), "student_ids": created, "duplicates": duplicates, "skipped": skipped}


@app.post("/students")
def create_student(payload: StudentIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    require_choice(payload.status, STUDENT_STATUSES, "status")
    if payload.cohort_id:
        get_or_404(db, Cohort, payload.cohort_id, "Cohort")
    data = payload.model_dump()
    if data["email"]:
        data["email"] = data["email"].strip().lower()
    obj = Student(**data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "CREATE", "Student", obj.id, full_name(obj))
    return serialize(obj)


@app.get("/students")
def list_students(
    cohort_id: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(Student)
    if cohort_id:
        stmt = stmt.where(Student.cohort_id == cohort_id)
    if status:
        stmt = stmt.where(Student.status == status)
    if q:
        stmt = stmt.where((Student.first_name.icontains(q)) | (Student.last_name.icontains(q)))
    stmt = stmt.order_by(Student.last_name.asc(), Student.first_name.asc()).limit(limit).offset(offset)
    return redact_students((serialize(s) for s in db.scalars(stmt).all()), user.role)


@app.post("/students/import")
def import_students(
    cohort_id: str = Query(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_lead),
):
    get_or_404(db, Cohort, cohort_id, "Cohort")
    try:
        text = file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Roster must be UTF-8 CSV") from exc
    summary = import_roster(db, cohort_id, text)
    write_audit(db, user, "IMPORT", "Student", cohort_id, audit_payload({"created": summary["created"], "filename": file.filename}))
    return summary


@app.get("/students/{student_id}")
def get_student(student_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    student = get_or_404(db, Student, student_id, "Student")
    return redact_student(serialize(student), user.role)


@app.put("/students/{student_id}")
def update_student(student_id: str, payload: StudentUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, Student, student_id, "Student")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, Student)
    require_choice(changes.get("status"), STUDENT_STATUSES, "status")
    if changes.get("cohort_id"):
        get_or_404(db, Cohort, changes["cohort_id"], "Cohort")
    if changes.get("email"):
        changes["email"] = changes["email"].strip().lower()
    for k, v in changes.items():
        setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "Student", obj.id, audit_payload(changes))
    return serialize(obj)


@app.delete("/students/{student_id}")
def delete_student(student_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, Student, student_id, "Student")
    if db.scalar(select(StudentInternship).where(StudentInternship.student_id == student_id)):
        raise HTTPException(status_code=409, detail="Student has an internship record; withdraw instead")
    for model in (StudentNote, LabAttendance, SummativeEvaluationScore):
        for row in db.scalars(select(model).where(model.student_id == student_id)).all():
            db.delete(row)
    db.delete(obj)
    db.commit()
    write_audit(db, user, "DELETE", "Student", student_id)
    return {"status": "deleted"}


@app.post("/students/{student_id}/notes")
def create_student_note(student_id: str, payload: StudentNoteIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    get_or_404(db, Student, student_id, "Student")
    obj = StudentNote(student_id=student_id, author_id=user.id, category=payload.category, content=payload.content)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "NOTE", "Student", student_id, payload.category)
    return serialize(obj)


@app.get("/students/{student_id}/notes")
def list_student_notes(student_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    get_or_404(db, Student, student_id, "Student")
    stmt = select(StudentNote).where(StudentNote.student_id == student_id).order_by(StudentNote.created_at.desc())
    return [serialize(n) for n in db.scalars(stmt).all()]


@app.get("/students/{student_id}/progress")
def student_progress(student_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    student = get_or_404(db, Student, student_id, "Student")
    internship = db.scalar(select(StudentInternship).where(StudentInternship.student_id == student_id))
    internship_summary = None
    if internship:
        internship_summary = {
            "internship_id": internship.id,
            "status": internship.status,
            "current_phase": internship.current_phase,
            "progress": checklist_progress(internship),
            "cleared_for_nremt": cleared_for_nremt(internship),
            "missing_required_items": missing_required_items(internship),
        }

    summatives = []
    stmt = (
        select(SummativeEvaluationScore, SummativeEvaluation, SummativeScenario)
        .join(SummativeEvaluation, SummativeEvaluation.id == SummativeEvaluationScore.evaluation_id)
        .join(SummativeScenario, SummativeScenario.id == SummativeEvaluation.scenario_id)
        .where(SummativeEvaluationScore.student_id == student_id)
        .order_by(SummativeEvaluation.evaluation_date.desc())
    )
    for score, evaluation, scenario in db.execute(stmt).all():
        summatives.append(
            {
                "evaluation_id": evaluation.id,
                "evaluation_date": evaluation.evaluation_date,
                "scenario": scenario.title,
                "total_score": summative_total(score),
                "passed": score.passed,
                "result": summative_result_label(score),
                "grading_complete": score.grading_complete,
            }
        )

    marks = db.scalars(select(LabAttendance).where(LabAttendance.student_id == student_id)).all()
    counts = Counter(m.status for m in marks)
    attended = counts["present"] + counts["late"]
    return {
        "student_id": student.id,
        "name": full_name(student),
        "cohort": cohort_label(db, db.get(Cohort, student.cohort_id)) if student.cohort_id else None,
        "internship": internship_summary,
        "summative_evaluations": summatives,
        "attendance": {
            "marked": len(marks),
            **{s: counts[s] for s in sorted(ATTENDANCE_STATUSES)},
            "attendance_rate": round_percent(attended / len(marks) * 100) if marks else None,
        },
    }


@app.get("/agencies")
def list_agencies(agency_type: Optional[str] = None, active_only: bool = True, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    stmt = select(Agency)
    if agency_type:
        stmt = stmt.where(Agency.agency_type == agency_type)
    if active_only:
        stmt = stmt.where(Agency.is_active == True)  # noqa: E712
    return [serialize(a) for a in db.scalars(stmt.order_by(Agency.name.asc())).all()]


@app.post("/agencies")
def create_agency(payload: AgencyIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    require_choice(payload.agency_type, AGENCY_TYPES, "agency_type")
    obj = Agency(**payload.model_dump())
    db.add(obj)
    commit_or_conflict(db, "An agency with that name already exists")
    db.refresh(obj)
    write_audit(db, user, "CREATE", "Agency", obj.id, obj.name)
    return serialize(obj)


@app.put("/agencies/{agency_id}")
def update_agency(agency_id: str, payload: AgencyIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, Agency, agency_id, "Agency")
    require_choice(payload.agency_type, AGENCY_TYPES, "agency_type")
    for k, v in payload.model_dump().items():
        setattr(obj, k, v)
    commit_or_conflict(db, "An agency with that name already exists")
    db.refresh(obj)
    # Keep denormalized names in step with the agency record.
    for p in db.scalars(select(FieldPreceptor).where(FieldPreceptor.agency_id == agency_id)).all():
        p.agency_name = obj.name
    for i in db.scalars(select(StudentInternship).where(StudentInternship.agency_id == agency_id)).all():
        i.agency_name = obj.name
    db.commit()
    write_audit(db, user, "UPDATE", "Agency", obj.id, audit_payload(payload.model_dump()))
    return serialize(obj)


def agency_name_for(db: Session, agency_id: Optional[str]) -> Optional[str]:
    if not agency_id:
        return None
    return get_or_404(db, Agency, agency_id, "Agency").name


def active_assignment_counts(db: Session) -> Counter:
    stmt = select(PreceptorAssignment.preceptor_id).where(PreceptorAssignment.is_active == True)  # noqa: E712
    return Counter(db.scalars(stmt).all())


@app.get("/preceptors")
def list_preceptors(
    agency_id: Optional[str] = None,
    active_only: bool = True,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_instructor),
):
    stmt = select(FieldPreceptor)
    if agency_id:
        stmt = stmt.where(FieldPreceptor.agency_id == agency_id)
    if active_only:
        stmt = stmt.where(FieldPreceptor.is_active == True)  # noqa: E712
    if q:
        stmt = stmt.where((FieldPreceptor.first_name.icontains(q)) | (FieldPreceptor.last_name.icontains(q)) | (FieldPreceptor.station.icontains(q)))
    return [serialize(p) for p in db.scalars(stmt.order_by(FieldPreceptor.last_name.asc(), FieldPreceptor.first_name.asc())).all()]


@app.get("/preceptors/capacity")
def preceptor_capacity(db: Session = Depends(get_db), _: User = Depends(require_lead)):
    counts = active_assignment_counts(db)
    rows = []
    for p in db.scalars(select(FieldPreceptor).where(FieldPreceptor.is_active == True).order_by(FieldPreceptor.last_name.asc())).all():  # noqa: E712
        current = counts.get(p.id, 0)
        rows.append(
            {
                "preceptor_id": p.id,
                "name": full_name(p),
                "agency_name": p.agency_name,
                "max_students": p.max_students,
                "active_students": current,
                "available_slots": max(p.max_students - current, 0),
                "over_capacity": current > p.max_students,
            }
        )
    return rows


@app.post("/preceptors")
def create_preceptor(payload: PreceptorIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = FieldPreceptor(**payload.model_dump(), agency_name=agency_name_for(db, payload.agency_id))
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "CREATE", "FieldPreceptor", obj.id, full_name(obj))
    return serialize(obj)


@app.get("/preceptors/{preceptor_id}")
def get_preceptor(preceptor_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    preceptor = get_or_404(db, FieldPreceptor, preceptor_id, "Preceptor")
    assignments = db.scalars(
        select(PreceptorAssignment).where(PreceptorAssignment.preceptor_id == preceptor_id, PreceptorAssignment.is_active == True)  # noqa: E712
    ).all()
    return {"preceptor": serialize(preceptor), "active_assignments": [serialize(a) for a in assignments]}


@app.put("/preceptors/{preceptor_id}")
def update_preceptor(preceptor_id: str, payload: PreceptorUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, FieldPreceptor, preceptor_id, "Preceptor")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, FieldPreceptor)
    if "agency_id" in changes:
        obj.agency_name = agency_name_for(db, changes["agency_id"])
    for k, v in changes.items():
        setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "FieldPreceptor", obj.id, audit_payload(changes))
    return serialize(obj)


@app.delete("/preceptors/{preceptor_id}")
def delete_preceptor(preceptor_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, FieldPreceptor, preceptor_id, "Preceptor")
    if active_assignment_counts(db).get(preceptor_id):
        raise HTTPException(status_code=409, detail="Preceptor has active student assignments")
    for a in db.scalars(select(PreceptorAssignment).where(PreceptorAssignment.preceptor_id == preceptor_id)).all():
        db.delete(a)
    for i in db.scalars(select(StudentInternship).where(StudentInternship.preceptor_id == preceptor_id)).all():
        i.preceptor_id = None
        revoke_clearance_if_ineligible(i)
    db.delete(obj)
    db.commit()
    write_audit(db, user, "DELETE", "FieldPreceptor", preceptor_id)
    return {"status": "deleted"}


def assign_preceptor(db: Session, internship: StudentInternship, preceptor_id: str, role: str, start_date: Optional[date] = None, notes: Optional[str] = None) -> PreceptorAssignment:
    get_or_404(db, FieldPreceptor, preceptor_id, "Preceptor")
    if role == "primary":
        current = db.scalars(
            select(PreceptorAssignment).where(
                PreceptorAssignment.internship_id == internship.id,
                PreceptorAssignment.role == "primary",
                PreceptorAssignment.is_active == True,  # noqa: E712
            )
        ).all()
        for a in current:
            a.is_active = False
            a.end_date = date.today()
        internship.preceptor_id = preceptor_id
    obj = PreceptorAssignment(internship_id=internship.id, preceptor_id=preceptor_id, role=role, start_date=start_date or date.today(), notes=notes)
    db.add(obj)
    return obj


def internship_row(db: Session, internship: StudentInternship) -> dict:
    row = serialize(internship)
    student = db.get(Student, internship.student_id)
    preceptor = db.get(FieldPreceptor, internship.preceptor_id) if internship.preceptor_id else None
    cohort = db.get(Cohort, internship.cohort_id) if internship.cohort_id else None
    row["student_name"] = full_name(student)
    row["preceptor_name"] = full_name(preceptor) or None
    row["cohort_label"] = cohort_label(db, cohort)
    row["progress"] = checklist_progress(internship)
    row["nremt_eligible"] = cleared_for_nremt(internship)
    return row


@app.post("/internships")
def create_internship(payload: InternshipIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    student = get_or_404(db, Student, payload.student_id, "Student")
    require_choice(payload.shift_type, SHIFT_TYPES, "shift_type")
    if db.scalar(select(StudentInternship).where(StudentInternship.student_id == student.id)):
        raise HTTPException(status_code=409, detail="Student already has an internship record")
    data = payload.model_dump(exclude={"preceptor_id"})
    data["cohort_id"] = payload.cohort_id or student.cohort_id
    obj = StudentInternship(**data, agency_name=agency_name_for(db, payload.agency_id))
    db.add(obj)
    db.flush()
    if payload.preceptor_id:
        assign_preceptor(db, obj, payload.preceptor_id, "primary", payload.placement_date)
    commit_or_conflict(db, "Student already has an internship record")
    db.refresh(obj)
    write_audit(db, user, "CREATE", "StudentInternship", obj.id, full_name(student))
    return internship_row(db, obj)


@app.get("/internships")
def list_internships(
    cohort_id: Optional[str] = None,
    status: Optional[str] = None,
    current_phase: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_lead),
):
    stmt = select(StudentInternship)
    if cohort_id:
        stmt = stmt.where(StudentInternship.cohort_id == cohort_id)
    if status:
        stmt = stmt.where(StudentInternship.status == status)
    if current_phase:
        stmt = stmt.where(StudentInternship.current_phase == current_phase)
    rows = [internship_row(db, i) for i in db.scalars(stmt).all()]
    return sorted(rows, key=lambda r: r["student_name"].split(" ")[-1].lower())


@app.get("/internships/{internship_id}")
def get_internship(internship_id: str, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    internship = get_or_404(db, StudentInternship, internship_id, "Internship")
    meetings = db.scalars(
        select(InternshipMeeting).where(InternshipMeeting.internship_id == internship_id).order_by(InternshipMeeting.scheduled_date.desc())
    ).all()
    assignments = db.scalars(
        select(PreceptorAssignment).where(PreceptorAssignment.internship_id == internship_id).order_by(PreceptorAssignment.created_at.asc())
    ).all()
    return {
        "internship": internship_row(db, internship),
        "checklist": checklist_detail(internship),
        "clearance": {"eligible": cleared_for_nremt(internship), "missing": missing_required_items(internship)},
        "meetings": [serialize(m) for m in meetings],
        "preceptor_assignments": [serialize(a) for a in assignments],
    }


@app.put("/internships/{internship_id}")
def update_internship(internship_id: str, payload: InternshipUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, StudentInternship, internship_id, "Internship")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, StudentInternship)
    require_choice(changes.get("shift_type"), SHIFT_TYPES, "shift_type")
    require_choice(changes.get("current_phase"), INTERNSHIP_PHASES, "current_phase")
    require_choice(changes.get("status"), INTERNSHIP_STATUSES, "status")
    for k in ("notes", "phase_1_eval_notes", "phase_2_eval_notes"):
        if isinstance(changes.get(k), str):
            changes[k] = changes[k].strip()
    if "agency_id" in changes:
        obj.agency_name = agency_name_for(db, changes["agency_id"])
    new_preceptor = changes.pop("preceptor_id", obj.preceptor_id)
    if new_preceptor != obj.preceptor_id:
        if new_preceptor:
            assign_preceptor(db, obj, new_preceptor, "primary")
        else:
            obj.preceptor_id = None
    for k, v in changes.items():
        setattr(obj, k, v)
    revoke_clearance_if_ineligible(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "StudentInternship", obj.id, audit_payload(payload.model_dump(exclude_unset=True)))
    return internship_row(db, obj)


@app.delete("/internships/{internship_id}")
def delete_internship(internship_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, StudentInternship, internship_id, "Internship")
    for model in (InternshipMeeting, PreceptorAssignment):
        for row in db.scalars(select(model).where(model.internship_id == internship_id)).all():
            db.delete(row)
    for evaluation in db.scalars(select(SummativeEvaluation).where(SummativeEvaluation.internship_id == internship_id)).all():
        evaluation.internship_id = None
    db.delete(obj)
    db.commit()
    write_audit(db, user, "DELETE", "StudentInternship", internship_id)
    return {"status": "deleted"}


@app.post("/internships/{internship_id}/nremt-clearance")
def clear_for_nremt(internship_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, StudentInternship, internship_id, "Internship")
    missing = missing_required_items(obj)
    if missing:
        raise HTTPException(status_code=400, detail={"message": "Required checklist items are incomplete", "missing": missing})
    obj.cleared_for_nremt = True
    obj.nremt_notified = True
    obj.nremt_notified_date = date.today()
    db.commit()
    db.refresh(obj)
    logger.info("Internship %s cleared for NREMT by %s", obj.id, user.email)
    write_audit(db, user, "NREMT_CLEARANCE", "StudentInternship", obj.id)
    return internship_row(db, obj)


@app.post("/internships/{internship_id}/meetings")
def create_meeting(internship_id: str, payload: MeetingIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    internship = get_or_404(db, StudentInternship, internship_id, "Internship")
    require_choice(payload.meeting_type, MEETING_TYPES, "meeting_type")
    require_choice(payload.status, MEETING_STATUSES, "status")
    obj = InternshipMeeting(**payload.model_dump(), internship_id=internship.id, student_id=internship.student_id, created_by=user.id)
    if obj.status == "completed":
        obj.completed_at = datetime.utcnow()
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "CREATE", "InternshipMeeting", obj.id, payload.meeting_type)
    return serialize(obj)


@app.get("/internships/{internship_id}/meetings")
def list_meetings(internship_id: str, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    get_or_404(db, StudentInternship, internship_id, "Internship")
    stmt = select(InternshipMeeting).where(InternshipMeeting.internship_id == internship_id).order_by(InternshipMeeting.scheduled_date.desc())
    return [serialize(m) for m in db.scalars(stmt).all()]


@app.put("/meetings/{meeting_id}")
def update_meeting(meeting_id: str, payload: MeetingUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, InternshipMeeting, meeting_id, "Meeting")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, InternshipMeeting)
    require_choice(changes.get("meeting_type"), MEETING_TYPES, "meeting_type")
    require_choice(changes.get("status"), MEETING_STATUSES, "status")
    for k, v in changes.items():
        setattr(obj, k, v)
    if changes.get("status") == "completed" and not obj.completed_at:
        obj.completed_at = datetime.utcnow()
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "InternshipMeeting", obj.id, audit_payload(changes))
    return serialize(obj)


@app.get("/internships/{internship_id}/preceptors")
def list_preceptor_assignments(internship_id: str, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    get_or_404(db, StudentInternship, internship_id, "Internship")
    rows = []
    stmt = select(PreceptorAssignment).where(PreceptorAssignment.internship_id == internship_id).order_by(PreceptorAssignment.created_at.asc())
    for a in db.scalars(stmt).all():
        row = serialize(a)
        row["preceptor_name"] = full_name(db.get(FieldPreceptor, a.preceptor_id))
        rows.append(row)
    return rows


@app.post("/internships/{internship_id}/preceptors")
def create_preceptor_assignment(internship_id: str, payload: PreceptorAssignmentIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    internship = get_or_404(db, StudentInternship, internship_id, "Internship")
    require_choice(payload.role, PRECEPTOR_ROLES, "role")
    obj = assign_preceptor(db, internship, payload.preceptor_id, payload.role, payload.start_date, payload.notes)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "ASSIGN", "PreceptorAssignment", obj.id, audit_payload(payload.model_dump()))
    return serialize(obj)


@app.put("/preceptor-assignments/{assignment_id}")
def update_preceptor_assignment(assignment_id: str, payload: PreceptorAssignmentUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, PreceptorAssignment, assignment_id, "Preceptor assignment")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, PreceptorAssignment)
    require_choice(changes.get("role"), PRECEPTOR_ROLES, "role")
    for k, v in changes.items():
        setattr(obj, k, v)
    if changes.get("is_active") is False and not obj.end_date:
        obj.end_date = date.today()
    internship = db.get(StudentInternship, obj.internship_id)
    if internship and obj.role == "primary" and obj.preceptor_id == internship.preceptor_id and not obj.is_active:
        internship.preceptor_id = None
        revoke_clearance_if_ineligible(internship)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "PreceptorAssignment", obj.id, audit_payload(changes))
    return serialize(obj)


def lab_day_detail(db: Session, lab_day: LabDay) -> dict:
    row = serialize(lab_day)
    row["cohort_label"] = cohort_label(db, db.get(Cohort, lab_day.cohort_id))
    row["stations"] = [
        serialize(s) for s in db.scalars(select(LabStation).where(LabStation.lab_day_id == lab_day.id).order_by(LabStation.station_number.asc())).all()
    ]
    row["roles"] = [serialize(r) for r in db.scalars(select(LabDayRole).where(LabDayRole.lab_day_id == lab_day.id)).all()]
    return row


@app.post("/lab-days")
def create_lab_day(payload: LabDayIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    get_or_404(db, Cohort, payload.cohort_id, "Cohort")
    obj = LabDay(**payload.model_dump(), created_by=user.id)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "CREATE", "LabDay", obj.id, audit_payload(payload.model_dump()))
    return lab_day_detail(db, obj)


@app.get("/lab-days")
def list_lab_days(
    cohort_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_instructor),
):
    stmt = select(LabDay)
    if cohort_id:
        stmt = stmt.where(LabDay.cohort_id == cohort_id)
    if start:
        stmt = stmt.where(LabDay.lab_date >= start)
    if end:
        stmt = stmt.where(LabDay.lab_date <= end)
    return [lab_day_detail(db, d) for d in db.scalars(stmt.order_by(LabDay.lab_date.asc())).all()]


@app.get("/lab-days/{lab_day_id}")
def get_lab_day(lab_day_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    return lab_day_detail(db, get_or_404(db, LabDay, lab_day_id, "Lab day"))


@app.put("/lab-days/{lab_day_id}")
def update_lab_day(lab_day_id: str, payload: LabDayUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    obj = get_or_404(db, LabDay, lab_day_id, "Lab day")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, LabDay)
    for k, v in changes.items():
        setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "LabDay", obj.id, audit_payload(changes))
    return lab_day_detail(db, obj)


@app.delete("/lab-days/{lab_day_id}")
def delete_lab_day(lab_day_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    obj = get_or_404(db, LabDay, lab_day_id, "Lab day")
    for model in (LabStation, LabDayRole, LabAttendance):
        for row in db.scalars(select(model).where(model.lab_day_id == lab_day_id)).all():
            db.delete(row)
    db.delete(obj)
    db.commit()
    write_audit(db, user, "DELETE", "LabDay", lab_day_id)
    return {"status": "deleted"}


@app.post("/lab-days/{lab_day_id}/stations")
def create_station(lab_day_id: str, payload: LabStationIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    get_or_404(db, LabDay, lab_day_id, "Lab day")
    require_choice(payload.station_type, STATION_TYPES, "station_type")
    if payload.instructor_id:
        get_or_404(db, User, payload.instructor_id, "Instructor")
    obj = LabStation(**payload.model_dump(), lab_day_id=lab_day_id)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "CREATE", "LabStation", obj.id, audit_payload(payload.model_dump()))
    return serialize(obj)


@app.put("/stations/{station_id}")
def update_station(station_id: str, payload: LabStationUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    obj = get_or_404(db, LabStation, station_id, "Station")
    changes = payload.model_dump(exclude_unset=True)
    reject_nulls(changes, LabStation)
    require_choice(changes.get("station_type"), STATION_TYPES, "station_type")
    if changes.get("instructor_id"):
        get_or_404(db, User, changes["instructor_id"], "Instructor")
    for k, v in changes.items():
        setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    write_audit(db, user, "UPDATE", "LabStation", obj.id, audit_payload(changes))
    return serialize(obj)


@app.delete("/stations/{station_id}")
def delete_station(station_id: str, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    obj = get_or_404(db, LabStation, station_id, "Station")
    db.delete(obj)
    db.commit()
    write_audit(db, user, "DELETE", "LabStation", station_id)
    return {"status": "deleted"}


@app.get("/lab-days/{lab_day_id}/roles")
def list_lab_day_roles(lab_day_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    get_or_404(db, LabDay, lab_day_id, "Lab day")
    rows = []
    for r in db.scalars(select(LabDayRole).where(LabDayRole.lab_day_id == lab_day_id).order_by(LabDayRole.role.asc())).all():
        row = serialize(r)
        instructor = db.get(User, r.instructor_id)
        row["instructor_name"] = instructor.name if instructor else None
        rows.append(row)
    return rows


@app.post("/lab-days/{lab_day_id}/roles")
def create_lab_day_role(lab_day_id: str, payload: LabDayRoleIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    get_or_404(db, LabDay, lab_day_id, "Lab day")
    require_choice(payload.role, LAB_DAY_ROLES, "role")
    get_or_404(db, User, payload.instructor_id, "Instructor")
    obj = LabDayRole(**payload.model_dump(), lab_day_id=lab_day_id)
    db.add(obj)
    commit_or_conflict(db, "Instructor already has a role on this lab day")
    db.refresh(obj)
    write_audit(db, user, "ASSIGN", "LabDayRole", obj.id, audit_payload(payload.model_dump()))
    return serialize(obj)


@app.get("/lab-days/{lab_day_id}/attendance")
def lab_day_attendance(lab_day_id: str, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    lab_day = get_or_404(db, LabDay, lab_day_id, "Lab day")
    students = db.scalars(select(Student).where(Student.cohort_id == lab_day.cohort_id, Student.status == "active")).all()
    marks = {m.student_id: m for m in db.scalars(select(LabAttendance).where(LabAttendance.lab_day_id == lab_day_id)).all()}
    merged = []
    for s in students:
        mark = marks.get(s.id)
        merged.append(
            {
                "student_id": s.id,
                "first_name": s.first_name,
                "last_name": s.last_name,
                "status": mark.status if mark else None,
                "notes": mark.notes if mark else None,
                "marked_by": mark.marked_by if mark else None,
                "marked_at": mark.marked_at if mark else None,
            }
        )
    merged.sort(key=lambda r: (r["status"] is not None, r["last_name"].lower(), r["first_name"].lower()))
    counts = Counter(r["status"] for r in merged)
    summary = {"total": len(merged), **{s: counts[s] for s in ("present", "absent", "excused", "late")}, "unmarked": counts[None]}
    return {"students": merged, "summary": summary}


@app.put("/lab-days/{lab_day_id}/attendance")
def mark_attendance(lab_day_id: str, payload: AttendanceIn, db: Session = Depends(get_db), user: User = Depends(require_instructor)):
    get_or_404(db, LabDay, lab_day_id, "Lab day")
    for mark in payload.marks:
        require_choice(mark.status, ATTENDANCE_STATUSES, "status")
        get_or_404(db, Student, mark.student_id, "Student")
    existing = {m.student_id: m for m in db.scalars(select(LabAttendance).where(LabAttendance.lab_day_id == lab_day_id)).all()}
    now = datetime.utcnow()
    for mark in payload.marks:
        row = existing.get(mark.student_id)
        if row is None:
            row = LabAttendance(lab_day_id=lab_day_id, student_id=mark.student_id, status=mark.status)
            db.add(row)
            existing[mark.student_id] = row
        row.status = mark.status
        row.notes = mark.notes
        row.marked_by = user.id
        row.marked_at = now
    db.commit()
    write_audit(db, user, "ATTENDANCE", "LabDay", lab_day_id, audit_payload({"marked": len(payload.marks)}))
    return lab_day_attendance(lab_day_id, db, user)


@app.post("/schedule/conflicts")
def schedule_conflicts(payload: ConflictCheckIn, db: Session = Depends(get_db), _: User = Depends(require_instructor)):
    stmt = select(LabDay).where(LabDay.lab_date == payload.lab_date)
    if payload.exclude_lab_day_id:
        stmt = stmt.where(LabDay.id != payload.exclude_lab_day_id)
    days = db.scalars(stmt).all()
    if not days:
        return {"conflicts": []}
    day_ids = [d.id for d in days]
    conflicts = []

    if payload.cohort_id:
        clash = next((d for d in days if d.cohort_id == payload.cohort_id), None)
        if clash:
            label = cohort_label(db, db.get(Cohort, clash.cohort_id)) or "this cohort"
            conflicts.append({"type": "cohort", "message": f"{label} already has a lab day scheduled on this date.", "severity": "warning"})

    location = (payload.location or "").strip()
    if location:
        rooms = db.scalars(select(LabStation.room).where(LabStation.lab_day_id.in_(day_ids), LabStation.room.is_not(None))).all()
        if any(r.strip().lower() == location.lower() for r in rooms):
            conflicts.append(
                {"type": "room", "message": f'Room "{location}" is already in use by another lab day on this date.', "severity": "warning"}
            )

    if payload.instructor_ids:
        roles = db.scalars(select(LabDayRole).where(LabDayRole.lab_day_id.in_(day_ids), LabDayRole.instructor_id.in_(payload.instructor_ids))).all()
        names: dict[str, str] = {}
        for r in roles:
            if r.instructor_id not in names:
                instructor = db.get(User, r.instructor_id)
                names[r.instructor_id] = (instructor.name or instructor.email) if instructor else "An instructor"
        if names:
            listed = list(names.values())
            verb = "is" if len(listed) == 1 else "are"
            conflicts.append(
                {"type": "instructor", "message": f"{join_names(listed)} {verb} already assigned to another lab day on this date.", "severity": "warning"}
            )

    return {"conflicts": conflicts}


def score_row(db: Session, score: SummativeEvaluationScore) -> dict:
    row = serialize(score)
    row["total_score"] = summative_total(score)
    row["result"] = summative_result_label(score)
    student = db.get(Student, score.student_id)
    row["student_name"] = full_name(student)
    return row


def evaluation_detail(db: Session, evaluation: SummativeEvaluation) -> dict:
    row = serialize(evaluation)
    scenario = db.get(SummativeScenario, evaluation.scenario_id)
    row["scenario"] = serialize(scenario) if scenario else None
    row["cohort_label"] = cohort_label(db, db.get(Cohort, evaluation.cohort_id)) if evaluation.cohort_id else None
    scores = db.scalars(select(SummativeEvaluationScore).where(SummativeEvaluationScore.evaluation_id == evaluation.id)).all()
    row["scores"] = sorted((score_row(db, s) for s in scores), key=lambda r: r["student_name"].lower())
    return row


@app.get("/summative/scenarios")
def list_summative_scenarios(include_inactive: bool = False, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    stmt = select(SummativeScenario)
    if not include_inactive:
        stmt = stmt.where(SummativeScenario.is_active == True)  # noqa: E712
    return [serialize(s) for s in db.scalars(stmt.order_by(SummativeScenario.scenario_number.asc())).all()]


@app.post("/summative/evaluations")
def create_evaluation(payload: EvaluationIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    if not payload.scenario_id:
        raise HTTPException(status_code=400, detail="Scenario is required")
    if not payload.evaluation_date:
        raise HTTPException(status_code=400, detail="Evaluation date is required")
    if not (payload.examiner_name or "").strip():
        raise HTTPException(status_code=400, detail="Examiner name is required")
    student_ids = list(dict.fromkeys(payload.student_ids))
    if not student_ids:
        raise HTTPException(status_code=400, detail="At least one student is required")
    if len(student_ids) > MAX_STUDENTS_PER_EVALUATION:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_STUDENTS_PER_EVALUATION} students per evaluation")
    get_or_404(db, SummativeScenario, payload.scenario_id, "Scenario")
    for sid in student_ids:
        get_or_404(db, Student, sid, "Student")
    data = payload.model_dump(exclude={"student_ids"})
    data["examiner_name"] = data["examiner_name"].strip()
    data["examiner_email"] = data["examiner_email"] or user.email
    evaluation = SummativeEvaluation(**data, status="in_progress", created_by=user.id)
    db.add(evaluation)
    db.flush()
    for sid in student_ids:
        db.add(SummativeEvaluationScore(evaluation_id=evaluation.id, student_id=sid))
    db.commit()
    db.refresh(evaluation)
    write_audit(db, user, "CREATE", "SummativeEvaluation", evaluation.id, audit_payload({"students": student_ids}))
    return evaluation_detail(db, evaluation)


@app.get("/summative/evaluations")
def list_evaluations(
    internship_id: Optional[str] = None,
    cohort_id: Optional[str] = None,
    student_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_lead),
):
    stmt = select(SummativeEvaluation)
    if internship_id:
        stmt = stmt.where(SummativeEvaluation.internship_id == internship_id)
    if cohort_id:
        stmt = stmt.where(SummativeEvaluation.cohort_id == cohort_id)
    if student_id:
        ids = db.scalars(select(SummativeEvaluationScore.evaluation_id).where(SummativeEvaluationScore.student_id == student_id)).all()
        if not ids:
            return []
        stmt = stmt.where(SummativeEvaluation.id.in_(ids))
    stmt = stmt.order_by(SummativeEvaluation.evaluation_date.desc(), SummativeEvaluation.created_at.desc())
    return [evaluation_detail(db, e) for e in db.scalars(stmt).all()]


@app.get("/summative/evaluations/{evaluation_id}")
def get_evaluation(evaluation_id: str, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    return evaluation_detail(db, get_or_404(db, SummativeEvaluation, evaluation_id, "Evaluation"))


@app.post("/summative/evaluations/{evaluation_id}/scores")
def add_evaluation_student(evaluation_id: str, payload: EvaluationStudentIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    get_or_404(db, SummativeEvaluation, evaluation_id, "Evaluation")
    get_or_404(db, Student, payload.student_id, "Student")
    scores = db.scalars(select(SummativeEvaluationScore).where(SummativeEvaluationScore.evaluation_id == evaluation_id)).all()
    if any(s.student_id == payload.student_id for s in scores):
        raise HTTPException(status_code=400, detail="Student already in this evaluation")
    if len(scores) >= MAX_STUDENTS_PER_EVALUATION:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_STUDENTS_PER_EVALUATION} students per evaluation")
    obj = SummativeEvaluationScore(evaluation_id=evaluation_id, student_id=payload.student_id)
    db.add(obj)
    commit_or_conflict(db, "Student already in this evaluation")
    db.refresh(obj)
    write_audit(db, user, "ADD_STUDENT", "SummativeEvaluation", evaluation_id, payload.student_id)
    return score_row(db, obj)


def find_score(db: Session, evaluation_id: str, score_id: Optional[str], student_id: Optional[str]) -> SummativeEvaluationScore:
    if not score_id and not student_id:
        raise HTTPException(status_code=400, detail="Score ID or Student ID is required")
    stmt = select(SummativeEvaluationScore).where(SummativeEvaluationScore.evaluation_id == evaluation_id)
    if score_id:
        stmt = stmt.where(SummativeEvaluationScore.id == score_id)
    else:
        stmt = stmt.where(SummativeEvaluationScore.student_id == student_id)
    score = db.scalar(stmt)
    if not score:
        raise HTTPException(status_code=404, detail="Score not found")
    return score


@app.patch("/summative/evaluations/{evaluation_id}/scores")
def update_evaluation_score(evaluation_id: str, payload: ScoreUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    evaluation = get_or_404(db, SummativeEvaluation, evaluation_id, "Evaluation")
    score = find_score(db, evaluation_id, payload.score_id, payload.student_id)
    updates = payload.model_dump(exclude_unset=True, exclude={"score_id", "student_id"})
    reject_nulls(updates, SummativeEvaluationScore)
    for k, v in updates.items():
        setattr(score, k, v)
    if updates.get("grading_complete") is True:
        score.graded_at = datetime.utcnow()
        score.graded_by = user.id
        if "passed" not in updates:
            score.passed = summative_passed(score)
    db.flush()
    remaining = db.scalar(
        select(func.count())
        .select_from(SummativeEvaluationScore)
        .where(SummativeEvaluationScore.evaluation_id == evaluation_id, SummativeEvaluationScore.grading_complete == False)  # noqa: E712
    )
    if not remaining and evaluation.status == "in_progress":
        evaluation.status = "completed"
        logger.info("Summative evaluation %s completed; all students graded", evaluation_id)
    db.commit()
    db.refresh(score)
    write_audit(db, user, "GRADE", "SummativeEvaluationScore", score.id, audit_payload(updates))
    return score_row(db, score)


@app.delete("/summative/evaluations/{evaluation_id}/scores")
def remove_evaluation_student(
    evaluation_id: str,
    score_id: Optional[str] = None,
    student_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_lead),
):
    get_or_404(db, SummativeEvaluation, evaluation_id, "Evaluation")
    score = find_score(db, evaluation_id, score_id, student_id)
    removed_student_id = score.student_id
    db.delete(score)
    db.commit()
    write_audit(db, user, "REMOVE_STUDENT", "SummativeEvaluation", evaluation_id, removed_student_id)
    return {"status": "deleted"}


@app.get("/summative/evaluations/{evaluation_id}/export")
def export_evaluation(evaluation_id: str, db: Session = Depends(get_db), user: User = Depends(require_lead)):
    evaluation = get_or_404(db, SummativeEvaluation, evaluation_id, "Evaluation")
    detail = evaluation_detail(db, evaluation)
    scenario_title = detail["scenario"]["title"] if detail["scenario"] else ""
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(
        ["student", "evaluation_date", "scenario", "examiner"]
        + [RUBRIC_LABELS[f] for f in RUBRIC_FIELDS]
        + ["total_score", "max_score"]
        + list(CRITICAL_FIELDS)
        + ["result"]
    )
    for row in detail["scores"]:
        writer.writerow(
            [row["student_name"], evaluation.evaluation_date.isoformat(), scenario_title, evaluation.examiner_name]
            + ["" if row[f] is None else row[f] for f in RUBRIC_FIELDS]
            + [row["total_score"], RUBRIC_MAX_TOTAL]
            + ["yes" if row[f] else "no" for f in CRITICAL_FIELDS]
            + [row["result"]]
        )
    write_audit(db, user, "EXPORT", "SummativeEvaluation", evaluation_id)
    filename = f"summative_{evaluation.evaluation_date.isoformat()}_{evaluation_id[:8]}.csv"
    return Response(content=out.getvalue(), media_type="text/csv", headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@app.get("/clinical/overview")
def clinical_overview(cohort_id: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(require_lead)):
    stmt = select(StudentInternship)
    if cohort_id:
        stmt = stmt.where(StudentInternship.cohort_id == cohort_id)
    rows = []
    for i in db.scalars(stmt).all():
        full = internship_row(db, i)
        rows.append(
            {
                "internship_id": i.id,
                "student_id": i.student_id,
                "student_name": full["student_name"],
                "cohort_label": full["cohort_label"],
                "agency_name": i.agency_name,
                "preceptor_name": full["preceptor_name"],
                "current_phase": i.current_phase,
                "status": i.status,
                "progress": full["progress"]["overall"],
                "nremt_eligible": full["nremt_eligible"],
                "cleared_for_nremt": i.cleared_for_nremt,
            }
        )
    rows.sort(key=lambda r: (r["cohort_label"] or "", r["student_name"].lower()))
    return {
        "internships": rows,
        "summary": {
            "total": len(rows),
            "by_status": dict(Counter(r["status"] for r in rows)),
            "by_phase": dict(Counter(r["current_phase"] for r in rows)),
            "nremt_eligible": sum(1 for r in rows if r["nremt_eligible"]),
            "cleared_for_nremt": sum(1 for r in rows if r["cleared_for_nremt"]),
        },
    }


@app.get("/audit")
def audit_feed(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db), _: User = Depends(require_superadmin)):
    return [serialize(a) for a in db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()]
