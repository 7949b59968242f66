from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from app.main import Base, Cohort, SessionLocal, engine, import_roster, parse_roster_csv


def main() -> None:
    ap = argparse.ArgumentParser(description="Import a student roster CSV into a cohort")
    ap.add_argument("cohort_id")
    ap.add_argument("csv_path", type=Path)
    ap.add_argument("--dry-run", action="store_true", help="Parse and report without writing to the DB")
    args = ap.parse_args()

    if not args.csv_path.exists():
        raise SystemExit(f"Missing roster file: {args.csv_path}")
    text = args.csv_path.read_text(encoding="utf-8-sig")

    if args.dry_run:
        rows, skipped = parse_roster_csv(text)
        print({"rows": len(rows), "skipped": skipped, "dry_run": True})
        return

    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        if not db.get(Cohort, args.cohort_id):
            raise SystemExit(f"Cohort not found: {args.cohort_id}")
        summary = import_roster(db, args.cohort_id, text)
    print(
        {
            "created": summary["created"],
            "duplicates": len(summary["duplicates"]),
            "skipped": len(summary["skipped"]),
            "path": str(args.csv_path),
        }
    )


if __name__ == "__main__":
    main()
