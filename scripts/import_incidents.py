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
from portfolio_health.data_access import load_catalog, read_csv_rows  # noqa: E402
from portfolio_health.errors import ImportInProgressError  # noqa: E402
from portfolio_health.incident_import import import_incident_batch  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Import an incident export, link tickets to applications.")
    parser.add_argument("--csv", required=True, help="Incident export (CSV).")
    parser.add_argument("--catalog", required=True, help="Applications + aliases JSON.")
    parser.add_argument("--data-source", default="ServiceNow", help="Data source label for dedup and locking.")
    parser.add_argument("--actor", default="import-bot", help="Actor identity for audit.")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    args = parser.parse_args()
    configure_logging()

    csv_path = Path(args.csv)
    rows, content = read_csv_rows(csv_path)
    catalog = load_catalog(Path(args.catalog))
    try:
        result = import_incident_batch(
            rows,
            content,
            args.data_source,
            catalog,
            actor=args.actor,
            file_name=csv_path.name,
            path=Path(args.db),
        )
    except ImportInProgressError as exc:
        print(json.dumps({"status": "locked", "error": str(exc), "job_id": exc.running_job_id}, indent=2))
        return 3

    print(json.dumps(result, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
