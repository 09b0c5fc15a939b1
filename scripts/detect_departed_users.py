#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.config import PORTFOLIO_DB_PATH, configure_logging  # noqa: E402
from portfolio_health.data_access import load_directory, load_role_assignments  # noqa: E402
from portfolio_health.departed_users import detect_departed_users  # noqa: E402
from portfolio_health.models import utc_now  # noqa: E402
from portfolio_health.portfolio_store import list_alerts, save_alerts  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Raise alerts for role holders missing from the directory.")
    parser.add_argument("--assignments", required=True, help="Role assignments CSV.")
    parser.add_argument("--directory", required=True, help="Directory users JSON.")
    parser.add_argument("--data-source", default="", help="Default data source label for assignments.")
    parser.add_argument("--dry-run", action="store_true", help="Report alerts without saving them.")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    args = parser.parse_args()
    configure_logging()

    db_path = Path(args.db)
    assignments = load_role_assignments(Path(args.assignments), data_source=args.data_source)
    directory = load_directory(Path(args.directory))
    scan = detect_departed_users(
        assignments,
        directory,
        existing_alerts=list_alerts(path=db_path, unresolved_only=True),
        as_of=utc_now(),
    )
    saved = 0
    if not args.dry_run:
        saved = save_alerts(scan.new_alerts, actor="departed-user-scan", path=db_path)

    payload = scan.to_dict()
    payload["saved"] = saved
    payload["dry_run"] = bool(args.dry_run)
    print(json.dumps(payload, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
