from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional, Sequence

import numpy as np

from .config import BASE_SCORE, SEVERELY_OVERDUE_DAYS
from .models import (
    ApplicationSignals,
    DocumentationStatus,
    HealthCategory,
    HealthScoreBreakdown,
    IncidentScoreDetails,
    LifecycleTask,
    SecurityScoreDetails,
    UsageLevel,
)

logger = logging.getLogger(__name__)

USAGE_ADJUSTMENTS: Dict[UsageLevel, int] = {
    UsageLevel.NONE: -20,
    UsageLevel.VERY_LOW: -10,
    UsageLevel.LOW: -5,
    UsageLevel.MODERATE: 0,
    UsageLevel.HIGH: 5,
}

# (max days since last activity, adjustment); anything older gets the fallback
MAINTENANCE_STEPS = ((30, 10), (90, 5), (180, 0), (365, -5))
MAINTENANCE_STALE_ADJUSTMENT = -10

OVERDUE_TASK_PENALTY = 3
SEVERELY_OVERDUE_TASK_PENALTY = 5
OVERDUE_TASK_CAP = 30

DATA_CONFLICT_PENALTY = 5
DATA_CONFLICT_CAP = 15

CATEGORY_THRESHOLDS = (
    (80, HealthCategory.HEALTHY),
    (60, HealthCategory.NEEDS_ATTENTION),
    (40, HealthCategory.AT_RISK),
)


def health_category(score: int) -> HealthCategory:
    for threshold, category in CATEGORY_THRESHOLDS:
        if score >= threshold:
            return category
    return HealthCategory.CRITICAL


def usage_adjustment(level: Optional[UsageLevel]) -> int:
    if level is None:
        return 0
    return USAGE_ADJUSTMENTS[UsageLevel.parse(level)]


def maintenance_adjustment(last_activity_at: Optional[datetime], as_of: datetime) -> int:
    if last_activity_at is None:
        return 0
    days = max(0, (as_of - last_activity_at).days)
    for max_days, adjustment in MAINTENANCE_STEPS:
        if days <= max_days:
            return adjustment
    return MAINTENANCE_STALE_ADJUSTMENT


def documentation_adjustment(documentation: Optional[DocumentationStatus]) -> int:
    if documentation is None:
        return 0
    pct = documentation.completeness_pct
    if pct >= 100:
        return 10
    if pct >= 50:
        return -10
    return -15


def overdue_task_penalty(tasks: Optional[Sequence[LifecycleTask]], as_of: datetime) -> int:
    if not tasks:
        return 0
    total = 0
    for task in tasks:
        if not task.is_overdue(as_of):
            continue
        if task.days_overdue(as_of) >= SEVERELY_OVERDUE_DAYS:
            total += SEVERELY_OVERDUE_TASK_PENALTY
        else:
            total += OVERDUE_TASK_PENALTY
    return min(OVERDUE_TASK_CAP, total)


def data_conflict_penalty(conflicts: Optional[int]) -> int:
    if conflicts is None:
        return 0
    return min(DATA_CONFLICT_CAP, max(0, int(conflicts)) * DATA_CONFLICT_PENALTY)


def compute_health_score(signals: ApplicationSignals, as_of: datetime) -> HealthScoreBreakdown:
    """Score one application from a signal snapshot.

    Every component is bounded and the final score is clamped to [0, 100];
    unknown signals contribute nothing.
    """
    security = SecurityScoreDetails.from_findings(signals.findings)
    incidents = signals.incident_details or IncidentScoreDetails()
    breakdown = HealthScoreBreakdown(
        application_id=signals.application_id,
        as_of=as_of,
        base_score=BASE_SCORE,
        security_penalty=security.penalty(),
        usage_adjustment=usage_adjustment(signals.usage_level),
        maintenance_adjustment=maintenance_adjustment(signals.last_activity_at, as_of),
        documentation_adjustment=documentation_adjustment(signals.documentation),
        overdue_task_penalty=overdue_task_penalty(signals.tasks, as_of),
        data_conflict_penalty=data_conflict_penalty(signals.data_conflicts),
        incident_penalty=incidents.penalty() if signals.incident_details is not None else 0,
        security_details=security,
        incident_details=incidents,
    )
    logger.debug(
        "scored %s: raw=%s final=%s category=%s",
        signals.application_id,
        breakdown.raw_score,
        breakdown.final_score,
        breakdown.category.value,
    )
    return breakdown


def summarize_portfolio(breakdowns: Iterable[HealthScoreBreakdown]) -> Dict[str, object]:
    items = list(breakdowns)
    counts = {category.value: 0 for category in HealthCategory}
    for item in items:
        counts[item.category.value] += 1
    scores = np.array([item.final_score for item in items], dtype=float)
    total = len(items)
    return {
        "applications": total,
        "category_counts": counts,
        "average_score": round(float(scores.mean()), 2) if total else 0.0,
        "min_score": int(scores.min()) if total else 0,
        "healthy_pct": round(100.0 * counts[HealthCategory.HEALTHY.value] / total, 2) if total else 0.0,
    }
