from __future__ import annotations

import argparse
import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
DEFAULT_OUT = ROOT / "docs" / "cohort_progress_report.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import select

from app.main import Cohort, SessionLocal, Student, StudentInternship, cohort_label
from app.rules import checklist_progress, cleared_for_nremt, missing_required_items

FIELDS = [
    "cohort",
    "last_name",
    "first_name",
    "student_status",
    "agency_name",
    "current_phase",
    "internship_status",
    "placement",
    "phase_1",
    "phase_2",
    "clearance",
    "overall",
    "nremt_eligible",
    "cleared_for_nremt",
    "missing_required_items",
]


def build_rows(db, cohort_id: str | None) -> list[dict]:
    stmt = select(Student, StudentInternship).outerjoin(StudentInternship, StudentInternship.student_id == Student.id)
    if cohort_id:
        stmt = stmt.where(Student.cohort_id == cohort_id)
    else:
        active = select(Cohort.id).where(Cohort.is_active == True, Cohort.is_archived == False)  # noqa: E712
        stmt = stmt.where(Student.cohort_id.in_(active))
    labels: dict[str, str | None] = {}
    rows = []
    for student, internship in db.execute(stmt).all():
        if student.cohort_id and student.cohort_id not in labels:
            labels[student.cohort_id] = cohort_label(db, db.get(Cohort, student.cohort_id))
        row = {
            "cohort": labels.get(student.cohort_id) or "",
            "last_name": student.last_name,
            "first_name": student.first_name,
            "student_status": student.status,
        }
        if internship is None:
            row.update({k: "" for k in FIELDS if k not in row})
        else:
            progress = checklist_progress(internship)
            row.update(
                {
                    "agency_name": internship.agency_name or "",
                    "current_phase": internship.current_phase,
                    "internship_status": internship.status,
                    "placement": progress["placement"],
                    "phase_1": progress["phase_1"],
                    "phase_2": progress["phase_2"],
                    "clearance": progress["clearance"],
                    "overall": progress["overall"],
                    "nremt_eligible": cleared_for_nremt(internship),
                    "cleared_for_nremt": internship.cleared_for_nremt,
                    "missing_required_items": "; ".join(missing_required_items(internship)),
                }
            )
        rows.append(row)
    rows.sort(key=lambda r: (r["cohort"], r["last_name"].lower(), r["first_name"].lower()))
    return rows


def main() -> None:
    ap = argparse.ArgumentParser(description="Export internship checklist progress per student")
    ap.add_argument("cohort_id", nargs="?", default=None)
    ap.add_argument("--out", type=Path, default=DEFAULT_OUT)
    args = ap.parse_args()

    with SessionLocal() as db:
        if args.cohort_id and not db.get(Cohort, args.cohort_id):
            raise SystemExit(f"Cohort not found: {args.cohort_id}")
        rows = build_rows(db, args.cohort_id)

    args.out.parent.mkdir(parents=True, exist_ok=True)
    with args.out.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDS)
        writer.writeheader()
        writer.writerows(rows)
    print(
        {
            "rows": len(rows),
            "with_internship": sum(1 for r in rows if r["internship_status"]),
            "path": str(args.out),
        }
    )


if __name__ == "__main__":
    main()
