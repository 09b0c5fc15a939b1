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

from portfolio_health.config import PORTFOLIO_DB_PATH, PORTFOLIO_REPORT_PATH, configure_logging  # noqa: E402
from portfolio_health.portfolio_report import build_portfolio_health_report, health_exit_code  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Audit portfolio health readiness and store integrity.")
    parser.add_argument("--expected-applications", type=int, default=None)
    parser.add_argument("--max-import-age-hours", type=float, default=2.0)
    parser.add_argument("--max-open-alerts", type=int, default=0)
    parser.add_argument("--warn-as-error", action="store_true")
    parser.add_argument("--json-out", default="", help=f"Optional path to write JSON report (e.g. {PORTFOLIO_REPORT_PATH}).")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    args = parser.parse_args()
    configure_logging()

    report = build_portfolio_health_report(
        db_path=Path(args.db),
        expected_applications=args.expected_applications,
        max_import_age_hours=float(args.max_import_age_hours),
        max_open_alerts=int(args.max_open_alerts),
    )

    output = json.dumps(report, ensure_ascii=True, indent=2)
    print(output)

    json_out = str(args.json_out or "").strip()
    if json_out:
        path = Path(json_out)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output + "\n", encoding="utf-8")

    return health_exit_code(report, warn_as_error=bool(args.warn_as_error))


if __name__ == "__main__":
    raise SystemExit(main())
