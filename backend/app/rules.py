from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class ChecklistItem:
    key: str
    label: str
    required: bool = True
    date_key: Optional[str] = None


PLACEMENT_ITEMS: tuple[ChecklistItem, ...] = (
    ChecklistItem("agency_id", "Agency Assigned"),
    ChecklistItem("preceptor_id", "Preceptor Assigned"),
    ChecklistItem("placement_date", "Placement Date Set", date_key="placement_date"),
    ChecklistItem("orientation_completed", "Orientation Completed", date_key="orientation_date"),
    ChecklistItem("liability_form_completed", "Liability Form Signed"),
    ChecklistItem("background_check_completed", "Background Check"),
    ChecklistItem("drug_screen_completed", "Drug Screen"),
    ChecklistItem("immunizations_verified", "Immunizations Verified"),
    ChecklistItem("cpr_card_verified", "CPR Card Verified"),
    ChecklistItem("uniform_issued", "Uniform Issued", required=False),
    ChecklistItem("badge_issued", "Badge Issued", required=False),
)

PHASE_1_ITEMS: tuple[ChecklistItem, ...] = (
    ChecklistItem("internship_start_date", "Internship Started", date_key="internship_start_date"),
    ChecklistItem("phase_1_start_date", "Phase 1 Started", date_key="phase_1_start_date"),
    ChecklistItem("phase_1_eval_scheduled", "Evaluation Scheduled", date_key="phase_1_eval_scheduled"),
    ChecklistItem("phase_1_eval_completed", "Phase 1 Evaluation Completed"),
)

PHASE_2_ITEMS: tuple[ChecklistItem, ...] = (
    ChecklistItem("phase_2_start_date", "Phase 2 Started", date_key="phase_2_start_date"),
    ChecklistItem("phase_2_eval_scheduled", "Evaluation Scheduled", date_key="phase_2_eval_scheduled"),
    ChecklistItem("phase_2_eval_completed", "Phase 2 Evaluation Completed"),
)

CLEARANCE_ITEMS: tuple[ChecklistItem, ...] = (
    ChecklistItem("closeout_meeting_date", "Closeout Meeting Scheduled", date_key="closeout_meeting_date"),
    ChecklistItem("closeout_completed", "Closeout Meeting Completed"),
    ChecklistItem("actual_end_date", "Internship End Date Recorded", date_key="actual_end_date"),
)

CHECKLIST_SECTIONS: dict[str, tuple[ChecklistItem, ...]] = {
    "placement": PLACEMENT_ITEMS,
    "phase_1": PHASE_1_ITEMS,
    "phase_2": PHASE_2_ITEMS,
    "clearance": CLEARANCE_ITEMS,
}

ALL_CHECKLIST_ITEMS: tuple[ChecklistItem, ...] = tuple(item for items in CHECKLIST_SECTIONS.values() for item in items)

RUBRIC_FIELDS = (
    "leadership_scene_score",
    "patient_assessment_score",
    "patient_management_score",
    "interpersonal_score",
    "integration_score",
)
RUBRIC_LABELS = {
    "leadership_scene_score": "Leadership and Scene Management",
    "patient_assessment_score": "Patient Assessment",
    "patient_management_score": "Patient Management",
    "interpersonal_score": "Interpersonal Relations",
    "integration_score": "Integration (Field Impression and Transport Decision)",
}
CRITICAL_FIELDS = (
    "critical_criteria_failed",
    "critical_fails_mandatory",
    "critical_harmful_intervention",
    "critical_unprofessional",
)
RUBRIC_MIN_SCORE = 0
RUBRIC_MAX_SCORE = 3
RUBRIC_MAX_TOTAL = RUBRIC_MAX_SCORE * len(RUBRIC_FIELDS)
PASSING_TOTAL = 12  # 80% of 15


def _field(record: Any, key: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(key)
    return getattr(record, key, None)


def round_percent(value: float) -> int:
    # Half-up, so 12.5 -> 13 rather than Python's 12.
    return int(math.floor(value + 0.5))


def item_complete(record: Any, item: ChecklistItem) -> bool:
    if item.date_key:
        return bool(_field(record, item.date_key))
    return bool(_field(record, item.key))


def section_progress(record: Any, items: tuple[ChecklistItem, ...] | list[ChecklistItem]) -> int:
    if not items:
        return 0
    completed = sum(1 for item in items if item_complete(record, item))
    return round_percent(completed / len(items) * 100)


def checklist_progress(record: Any) -> dict:
    completed = sum(1 for item in ALL_CHECKLIST_ITEMS if item_complete(record, item))
    total = len(ALL_CHECKLIST_ITEMS)
    out = {name: section_progress(record, items) for name, items in CHECKLIST_SECTIONS.items()}
    out["overall"] = round_percent(completed / total * 100) if total else 0
    out["completed_items"] = completed
    out["total_items"] = total
    return out


def missing_required_items(record: Any) -> list[str]:
    return [item.label for item in ALL_CHECKLIST_ITEMS if item.required and not item_complete(record, item)]


def cleared_for_nremt(record: Any) -> bool:
    return all(item_complete(record, item) for item in ALL_CHECKLIST_ITEMS if item.required)


def checklist_detail(record: Any) -> dict[str, list[dict]]:
    return {
        name: [
            {"key": item.key, "label": item.label, "required": item.required, "complete": item_complete(record, item)}
            for item in items
        ]
        for name, items in CHECKLIST_SECTIONS.items()
    }


def validate_rubric_score(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("rubric scores must be whole numbers")
    if value < RUBRIC_MIN_SCORE or value > RUBRIC_MAX_SCORE:
        raise ValueError(f"rubric scores must be between {RUBRIC_MIN_SCORE} and {RUBRIC_MAX_SCORE}")
    return value


def summative_total(scores: Any) -> int:
    return sum(_field(scores, f) or 0 for f in RUBRIC_FIELDS)


def has_critical_failure(scores: Any) -> bool:
    return any(bool(_field(scores, f)) for f in CRITICAL_FIELDS)


def summative_passed(scores: Any) -> bool:
    if has_critical_failure(scores):
        return False
    return summative_total(scores) >= PASSING_TOTAL


def summative_result_label(scores: Any) -> str:
    passed = _field(scores, "passed")
    if passed is None:
        return "Pending"
    if passed:
        return "Pass"
    return "Critical Fail" if has_critical_failure(scores) else "Fail"
