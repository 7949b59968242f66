from __future__ import annotations

from typing import Any, Iterable

ROLE_LEVELS: dict[str, int] = {
    "superadmin": 5,
    "admin": 4,
    "lead_instructor": 3,
    "instructor": 2,
    "guest": 1,
}

ROLE_LABELS: dict[str, str] = {
    "superadmin": "Super Admin",
    "admin": "Admin",
    "lead_instructor": "Lead Instructor",
    "instructor": "Instructor",
    "guest": "Guest",
}

# FERPA: directory information vs protected educational records.
DATA_PERMISSIONS: dict[str, frozenset[str]] = {
    "student_email": frozenset({"superadmin", "admin", "lead_instructor"}),
    "student_agency": frozenset({"superadmin", "admin", "lead_instructor", "instructor"}),
    "performance_notes": frozenset({"superadmin", "admin", "lead_instructor", "instructor"}),
    "student_full_record": frozenset({"superadmin", "admin", "lead_instructor", "instructor"}),
    "directory_info": frozenset(ROLE_LEVELS),
    "audit_logs": frozenset({"superadmin"}),
    "export_student_data": frozenset({"superadmin", "admin", "lead_instructor"}),
}


def role_level(role: str) -> int:
    return ROLE_LEVELS.get(role, 0)


def is_valid_role(role: str) -> bool:
    return role in ROLE_LEVELS


def has_min_role(role: str, required: str) -> bool:
    return role_level(role) >= ROLE_LEVELS[required]


def can_assign_role(current: str, target: str) -> bool:
    if current == "superadmin":
        return True
    return role_level(current) > role_level(target)


def can_modify_user(current: str, target_role: str) -> bool:
    if current == "superadmin":
        return True
    return role_level(current) > role_level(target_role)


def can_delete_users(role: str) -> bool:
    return role == "superadmin"


def can_manage_users(role: str) -> bool:
    return has_min_role(role, "admin")


def can_access_clinical(role: str) -> bool:
    return has_min_role(role, "lead_instructor")


def can_manage_cohorts(role: str) -> bool:
    return has_min_role(role, "lead_instructor")


def can_create_lab_days(role: str) -> bool:
    return has_min_role(role, "instructor")


def can_view_preceptors(role: str) -> bool:
    return has_min_role(role, "instructor")


def assignable_roles(current: str) -> list[str]:
    if current == "superadmin":
        return ["superadmin", "admin", "lead_instructor", "instructor", "guest"]
    if current == "admin":
        return ["admin", "lead_instructor", "instructor", "guest"]
    return []


def can_access_data(role: str, data_type: str) -> bool:
    return role in DATA_PERMISSIONS.get(data_type, frozenset())


def redact_student(row: dict[str, Any], role: str) -> dict[str, Any]:
    out = dict(row)
    if not can_access_data(role, "student_email"):
        out.pop("email", None)
    if not can_access_data(role, "student_agency"):
        out.pop("agency", None)
    if not can_access_data(role, "student_full_record"):
        out.pop("notes", None)
    return out


def redact_students(rows: Iterable[dict[str, Any]], role: str) -> list[dict[str, Any]]:
    return [redact_student(r, role) for r in rows]
