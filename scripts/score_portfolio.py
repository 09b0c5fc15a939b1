#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from functools import partial
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.config import PORTFOLIO_DB_PATH, configure_logging  # noqa: E402
from portfolio_health.data_access import load_application_signals  # noqa: E402
from portfolio_health.incident_analysis import incident_score_details  # noqa: E402
from portfolio_health.models import utc_now  # noqa: E402
from portfolio_health.portfolio_runner import score_portfolio  # noqa: E402
from portfolio_health.portfolio_store import list_incidents, save_health_snapshot  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Score every application and store health snapshots.")
    parser.add_argument("--signals", required=True, help="Per-application signals JSON.")
    parser.add_argument("--max-workers", type=int, default=None, help="Worker threads (default: PH_MAX_WORKERS).")
    parser.add_argument("--dry-run", action="store_true", help="Compute without storing snapshots.")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    args = parser.parse_args()
    configure_logging()

    db_path = Path(args.db)
    as_of = utc_now()
    incidents = list_incidents(path=db_path)
    linked_apps = sorted({item.application_id for item in incidents if item.is_linked})
    details = {app_id: incident_score_details(incidents, app_id, as_of=as_of) for app_id in linked_apps}
    signals = load_application_signals(Path(args.signals), incident_details=details)

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    commit = None if args.dry_run else partial(save_health_snapshot, path=db_path)
    result = score_portfolio(
        signals,
        as_of=as_of,
        commit=commit,
        cancel_event=cancel_event,
        max_workers=args.max_workers,
    )

    payload = {
        "as_of": as_of.isoformat(),
        "summary": result.summary(),
        "applications": [item.to_dict() for item in result.breakdowns],
    }
    print(json.dumps(payload, ensure_ascii=True, indent=2))
    return 130 if result.cancelled else 0


if __name__ == "__main__":
    raise SystemExit(main())
