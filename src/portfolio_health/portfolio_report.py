from __future__ import annotations

from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from .config import PORTFOLIO_DB_PATH
from .models import HealthCategory, ImportJobStatus, RecommendationStatus, utc_now
from .portfolio_store import (
    latest_health_snapshots,
    list_alerts,
    list_import_jobs,
    list_recommendations,
    verify_audit_chain,
)

CHECK_STATUSES = ("pass", "warn", "fail")


def _overall(statuses: List[str]) -> str:
    rank = {status: i for i, status in enumerate(CHECK_STATUSES)}
    return max(statuses, key=lambda s: rank.get(s, 0), default="pass")


def _score_checks(snapshots: List[Dict[str, Any]], expected_applications: int | None) -> List[Dict[str, Any]]:
    checks: List[Dict[str, Any]] = []
    scored = len(snapshots)
    if scored == 0:
        checks.append({"id": "score_coverage", "status": "fail", "detail": "no health snapshots recorded"})
    elif expected_applications is not None and scored < int(expected_applications):
        checks.append(
            {
                "id": "score_coverage",
                "status": "warn",
                "detail": f"scored={scored} of expected={int(expected_applications)} applications",
            }
        )
    else:
        checks.append({"id": "score_coverage", "status": "pass", "detail": f"scored={scored} applications"})

    categories = Counter(str(item.get("category", "")) for item in snapshots)
    critical = categories.get(HealthCategory.CRITICAL.value, 0)
    at_risk = categories.get(HealthCategory.AT_RISK.value, 0)
    if critical:
        status = "fail"
    elif at_risk:
        status = "warn"
    else:
        status = "pass"
    checks.append(
        {
            "id": "critical_applications",
            "status": status,
            "detail": f"critical={critical}, at_risk={at_risk}",
        }
    )
    return checks


def _stuck_jobs(path: Path, now: datetime, max_import_age_hours: float) -> Dict[str, Any]:
    running = list_import_jobs(status=ImportJobStatus.RUNNING, path=path)
    stuck = []
    for job in running:
        if job.started_at is None:
            continue
        age_hours = max(0.0, (now - job.started_at).total_seconds() / 3600.0)
        if age_hours > float(max_import_age_hours):
            stuck.append(job.job_id)
    if stuck:
        return {
            "id": "stuck_import_jobs",
            "status": "fail",
            "detail": f"{len(stuck)} running import jobs older than {max_import_age_hours:.1f}h",
            "job_ids": stuck,
        }
    failed = list_import_jobs(status=ImportJobStatus.FAILED, path=path, limit=5)
    if failed:
        return {
            "id": "stuck_import_jobs",
            "status": "warn",
            "detail": f"no stuck jobs; recent failures={len(failed)}",
            "job_ids": [job.job_id for job in failed],
        }
    return {"id": "stuck_import_jobs", "status": "pass", "detail": f"running={len(running)}"}


def build_portfolio_health_report(
    *,
    db_path: Path = PORTFOLIO_DB_PATH,
    expected_applications: int | None = None,
    max_import_age_hours: float = 2.0,
    max_open_alerts: int = 0,
    now_utc: datetime | None = None,
) -> Dict[str, Any]:
    now = now_utc or utc_now()
    checks: List[Dict[str, Any]] = []

    if not db_path.exists():
        checks.append({"id": "portfolio_store", "status": "fail", "detail": "portfolio store missing"})
    else:
        snapshots = latest_health_snapshots(path=db_path)
        checks.extend(_score_checks(snapshots, expected_applications))

        open_alerts = list_alerts(path=db_path, unresolved_only=True)
        if len(open_alerts) > int(max_open_alerts):
            checks.append(
                {
                    "id": "departed_user_alerts",
                    "status": "warn",
                    "detail": f"unresolved alerts={len(open_alerts)} (max={int(max_open_alerts)})",
                }
            )
        else:
            checks.append(
                {"id": "departed_user_alerts", "status": "pass", "detail": f"unresolved alerts={len(open_alerts)}"}
            )

        checks.append(_stuck_jobs(db_path, now, max_import_age_hours))

        active = list_recommendations(status=RecommendationStatus.ACTIVE, path=db_path)
        urgent = [rec for rec in active if rec.priority == 1]
        checks.append(
            {
                "id": "active_recommendations",
                "status": "warn" if urgent else "pass",
                "detail": f"active={len(active)}, priority_1={len(urgent)}",
            }
        )

        audit = verify_audit_chain(path=db_path)
        if bool(audit.get("valid")):
            checks.append(
                {
                    "id": "audit_chain",
                    "status": "pass",
                    "detail": f"audit chain valid (checked={int(audit.get('checked', 0))})",
                }
            )
        else:
            checks.append(
                {
                    "id": "audit_chain",
                    "status": "fail",
                    "detail": f"audit chain broken at id={audit.get('failed_id')} ({audit.get('reason', 'unknown')})",
                }
            )

    statuses = [str(item.get("status", "pass")) for item in checks]
    tally = Counter(statuses)

    return {
        "generated_at_utc": now.isoformat(),
        "overall_status": _overall(statuses),
        "thresholds": {
            "expected_applications": expected_applications,
            "max_import_age_hours": float(max_import_age_hours),
            "max_open_alerts": int(max_open_alerts),
        },
        "summary": {"total_checks": len(checks), **{f"{s}_count": int(tally.get(s, 0)) for s in CHECK_STATUSES}},
        "checks": checks,
    }


def health_exit_code(report: Dict[str, Any], warn_as_error: bool = False) -> int:
    overall = str(report.get("overall_status", "pass")).strip().lower()
    if overall == "fail":
        return 1
    if overall == "warn" and warn_as_error:
        return 2
    return 0
