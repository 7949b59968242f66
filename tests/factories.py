"""
Factory helpers for building test records.
Imported by conftest.py fixtures AND directly by test modules.
"""
import os
import sys
import tempfile

_tests_dir = os.path.dirname(__file__)
_backend_dir = os.path.join(_tests_dir, "..", "backend")
for _p in (_tests_dir, _backend_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)

# Point the app at a throwaway sqlite file before app.main is imported.
if "CLINICAL_TEST_DB" not in os.environ:
    os.environ["CLINICAL_TEST_DB"] = os.path.join(tempfile.mkdtemp(prefix="clinical-tests-"), "test.db")
os.environ["DATABASE_URL"] = "sqlite:///" + os.environ["CLINICAL_TEST_DB"]
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["SEED_REFERENCE_DATA"] = "true"
os.environ["BOOTSTRAP_ADMIN_EMAIL"] = "root@example.edu"
os.environ["BOOTSTRAP_ADMIN_PASSWORD"] = "root-password"
os.environ["PROTECTED_SUPERADMINS"] = "root@example.edu"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import date

from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.main import (
    Agency,
    Cohort,
    FieldPreceptor,
    Program,
    Student,
    StudentInternship,
    SummativeScenario,
    User,
)

DEFAULT_PASSWORD = "password123"

# Every required checklist item satisfied; uniform and badge left unset.
COMPLETE_CHECKLIST = {
    "placement_date": date(2026, 1, 5),
    "orientation_date": date(2026, 1, 8),
    "orientation_completed": True,
    "liability_form_completed": True,
    "background_check_completed": True,
    "drug_screen_completed": True,
    "immunizations_verified": True,
    "cpr_card_verified": True,
    "internship_start_date": date(2026, 1, 12),
    "phase_1_start_date": date(2026, 1, 12),
    "phase_1_eval_scheduled": date(2026, 2, 20),
    "phase_1_eval_completed": True,
    "phase_2_start_date": date(2026, 2, 23),
    "phase_2_eval_scheduled": date(2026, 4, 10),
    "phase_2_eval_completed": True,
    "closeout_meeting_date": date(2026, 4, 17),
    "closeout_completed": True,
    "actual_end_date": date(2026, 4, 17),
}


def make_user(db, role: str = "instructor", email: str | None = None, password: str = DEFAULT_PASSWORD, name: str | None = None, is_active: bool = True) -> User:
    email = email or f"{role}@example.edu"
    user = User(
        email=email,
        name=name or role.replace("_", " ").title(),
        role=role,
        password_hash=generate_password_hash(password),
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def login(client, email: str, password: str = DEFAULT_PASSWORD) -> str:
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["session_token"]


def auth(token: str) -> dict:
    return {"session_token": token}


def paramedic_program(db) -> Program:
    return db.scalar(select(Program).where(Program.name == "Paramedic"))


def make_cohort(db, cohort_number: int = 12, program: Program | None = None) -> Cohort:
    program = program or paramedic_program(db)
    cohort = Cohort(program_id=program.id, cohort_number=cohort_number, start_date=date(2025, 8, 18))
    db.add(cohort)
    db.commit()
    db.refresh(cohort)
    return cohort


def make_student(db, cohort: Cohort | None = None, first_name: str = "Jamie", last_name: str = "Rivera", email: str | None = None, **fields) -> Student:
    student = Student(
        first_name=first_name,
        last_name=last_name,
        email=email if email is not None else f"{first_name}.{last_name}@students.example.edu".lower(),
        cohort_id=cohort.id if cohort else None,
        **fields,
    )
    db.add(student)
    db.commit()
    db.refresh(student)
    return student


def seeded_agency(db, name: str = "AMR Las Vegas") -> Agency:
    return db.scalar(select(Agency).where(Agency.name == name))


def make_preceptor(db, agency: Agency | None = None, first_name: str = "Dana", last_name: str = "Cole", max_students: int = 1) -> FieldPreceptor:
    preceptor = FieldPreceptor(
        first_name=first_name,
        last_name=last_name,
        agency_id=agency.id if agency else None,
        agency_name=agency.name if agency else None,
        max_students=max_students,
    )
    db.add(preceptor)
    db.commit()
    db.refresh(preceptor)
    return preceptor


def make_internship(db, student: Student, agency: Agency | None = None, preceptor: FieldPreceptor | None = None, **fields) -> StudentInternship:
    internship = StudentInternship(
        student_id=student.id,
        cohort_id=student.cohort_id,
        agency_id=agency.id if agency else None,
        agency_name=agency.name if agency else None,
        preceptor_id=preceptor.id if preceptor else None,
        **fields,
    )
    db.add(internship)
    db.commit()
    db.refresh(internship)
    return internship


def first_scenario(db) -> SummativeScenario:
    return db.scalar(select(SummativeScenario).order_by(SummativeScenario.scenario_number.asc()))
