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

from portfolio_health.config import PORTFOLIO_DB_PATH, PORTFOLIO_SCOPE, configure_logging  # noqa: E402
from portfolio_health.data_access import load_catalog  # noqa: E402
from portfolio_health.incident_analysis import analyze_incidents  # noqa: E402
from portfolio_health.incident_llm import enrich_recommendations, resolve_llm_settings  # noqa: E402
from portfolio_health.models import utc_now  # noqa: E402
from portfolio_health.portfolio_store import list_incidents, list_recommendations, save_recommendations  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Analyze stored incidents and refresh recommendations.")
    parser.add_argument("--catalog", required=True, help="Applications + aliases JSON.")
    parser.add_argument("--application-id", default="", help="Analyze one application; default analyzes all.")
    parser.add_argument("--skip-portfolio", action="store_true", help="Skip the portfolio-wide pass.")
    parser.add_argument("--actor", default="analysis-bot")
    parser.add_argument(
        "--llm-provider",
        default=None,
        choices=["stub", "ollama"],
        help="Root cause narrative provider (default: PH_LLM_PROVIDER or stub).",
    )
    parser.add_argument("--ollama-base-url", default=None)
    parser.add_argument("--ollama-model", default=None)
    parser.add_argument("--ollama-timeout-sec", type=float, default=None)
    parser.add_argument("--fail-on-llm-error", action="store_true")
    parser.add_argument("--db", default=str(PORTFOLIO_DB_PATH))
    args = parser.parse_args()
    configure_logging()

    db_path = Path(args.db)
    catalog = load_catalog(Path(args.catalog))
    names = catalog.names()
    incidents = list_incidents(path=db_path)
    as_of = utc_now()
    runtime = resolve_llm_settings(
        llm_provider=args.llm_provider,
        ollama_base_url=args.ollama_base_url,
        ollama_model=args.ollama_model,
        ollama_timeout_sec=args.ollama_timeout_sec,
    )

    scopes = [args.application_id] if args.application_id else sorted(names)
    if not args.application_id and not args.skip_portfolio:
        scopes.append(None)

    results = []
    for application_id in scopes:
        scope = application_id if application_id is not None else PORTFOLIO_SCOPE
        result = analyze_incidents(
            incidents,
            application_id,
            as_of=as_of,
            existing_recommendations=list_recommendations(scope=scope, path=db_path),
            application_names=names,
        )
        created = set(result.created_ids)
        fresh = [rec for rec in result.recommendations if rec.recommendation_id in created]
        enriched, provenance = enrich_recommendations(
            fresh,
            llm_provider=runtime.provider,
            ollama_base_url=runtime.base_url,
            ollama_model=runtime.model,
            ollama_timeout_sec=runtime.timeout_sec,
            fail_on_llm_error=bool(args.fail_on_llm_error),
        )
        by_id = {rec.recommendation_id: rec for rec in enriched}
        to_save = [by_id.get(rec.recommendation_id, rec) for rec in result.recommendations]
        save_recommendations(to_save, actor=args.actor, path=db_path)
        payload = result.to_dict()
        payload["recommendations"] = [rec.to_dict() for rec in to_save]
        payload["llm"] = provenance
        results.append(payload)

    print(json.dumps({"as_of": as_of.isoformat(), "llm_runtime": runtime.to_dict(), "results": results}, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
