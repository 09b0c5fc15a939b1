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
from portfolio_health.data_access import load_catalog  # noqa: E402
from portfolio_health.errors import PortfolioHealthError  # noqa: E402
from portfolio_health.incident_linker import link_summary, manual_link  # noqa: E402
from portfolio_health.models import RecommendationStatus, utc_now  # noqa: E402
from portfolio_health.portfolio_store import (  # noqa: E402
    ALERT_ACTIONS,
    apply_alert_action,
    get_incident,
    list_alerts,
    list_incidents,
    list_recommendations,
    save_manual_link,
    update_recommendation_status,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operator actions on recommendations, alerts and incident links.")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    parser.add_argument("--actor", required=True, help="Actor identity for audit.")
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("recommendation", help="Move a recommendation through its lifecycle.")
    rec.add_argument("--id", required=True)
    rec.add_argument("--status", required=True, choices=[s.value for s in RecommendationStatus if s.value != "Expired"])
    rec.add_argument("--notes", default="")

    alert = sub.add_parser("alert", help="Acknowledge, resolve or dismiss a departed-user alert.")
    alert.add_argument("--id", required=True)
    alert.add_argument("--action", required=True, choices=list(ALERT_ACTIONS))
    alert.add_argument("--replacement", default="", help="Replacement identity when resolving.")
    alert.add_argument("--notes", default="")

    link = sub.add_parser("link", help="Manually link an incident to an application.")
    link.add_argument("--incident", required=True)
    link.add_argument("--application-id", required=True)
    link.add_argument("--catalog", required=True, help="Applications + aliases JSON.")
    link.add_argument("--notes", default="")

    sub.add_parser("summary", help="Show open work.")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    db_path = Path(args.db)

    try:
        if args.command == "recommendation":
            updated = update_recommendation_status(args.id, args.status, actor=args.actor, notes=args.notes, path=db_path)
            payload = updated.to_dict()
        elif args.command == "alert":
            updated_alert = apply_alert_action(
                args.id,
                args.action,
                actor=args.actor,
                replacement_identity=args.replacement,
                notes=args.notes,
                path=db_path,
            )
            payload = updated_alert.to_dict()
        elif args.command == "link":
            current = get_incident(args.incident, path=db_path)
            if current is None:
                raise ValueError(f"incident_number not found: {args.incident}")
            catalog = load_catalog(Path(args.catalog))
            linked = manual_link(
                current, args.application_id, catalog, actor=args.actor, notes=args.notes, as_of=utc_now()
            )
            save_manual_link(linked, path=db_path)
            payload = {
                "incident_number": linked.incident_number,
                "link_status": linked.link_status.value,
                "application_id": linked.application_id,
            }
        else:
            payload = {
                "links": link_summary(list_incidents(path=db_path)),
                "active_recommendations": [
                    rec.to_dict() for rec in list_recommendations(status=RecommendationStatus.ACTIVE, path=db_path)
                ],
                "unresolved_alerts": [a.to_dict() for a in list_alerts(path=db_path, unresolved_only=True)],
            }
    except (PortfolioHealthError, ValueError) as exc:
        print(json.dumps({"ok": False, "error": str(exc)}, ensure_ascii=True, indent=2))
        return 2

    print(json.dumps(payload, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
