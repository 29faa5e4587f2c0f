#!/usr/bin/env python3
"""Recalculate stored project finances from leaf records."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from costcontrol.config import Base, SessionLocal, engine  # noqa: E402
from costcontrol.core.logging import configure_logging  # noqa: E402
from costcontrol.models.models import Project  # noqa: E402
from costcontrol.services.finance import recalculate_with_cascade  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recalculate project finances, phases and floors.")
    parser.add_argument("--project-id", type=int, help="Only recalculate this project.")
    parser.add_argument(
        "--cascade",
        action="store_true",
        help="Also recalculate every active phase and floor of each project.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging("INFO")
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        query = session.query(Project.id)
        if args.project_id is not None:
            query = query.filter(Project.id == args.project_id)
        else:
            query = query.filter(Project.deleted_at.is_(None))
        project_ids = [row[0] for row in query.order_by(Project.id)]
        if not project_ids:
            print("No projects to recalculate.")
            return
        for project_id in project_ids:
            result = recalculate_with_cascade(session, project_id, cascade=args.cascade)
            finances = result["finances"]
            print(
                f"Project {project_id}: capital {finances.capital_balance}, used {finances.total_used}, "
                f"committed {finances.committed_cost}, available {finances.available_capital} "
                f"({result['phases_recalculated']} phase(s), {result['floors_recalculated']} floor(s))"
            )


if __name__ == "__main__":
    main()
