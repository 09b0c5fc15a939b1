from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .config import (
    ANALYSIS_WINDOW_DAYS,
    BANDAID_CLOSE_CODE_TERMS,
    CLOSURE_ANALYSIS_THRESHOLD,
    CROSS_APP_MIN_APPLICATIONS,
    CROSS_APP_MIN_INCIDENTS,
    HIGH_VOLUME_MIN_INCIDENTS,
    HIGH_VOLUME_URGENT_INCIDENTS,
    MAX_RELATED_INCIDENTS,
    PORTFOLIO_HOTSPOT_MIN_INCIDENTS,
    PORTFOLIO_SCOPE,
    RECENT_INCIDENT_DAYS,
    REPEAT_PATTERN_THRESHOLD,
    TECHNICAL_DEBT_MIN_INCIDENTS,
)
from .errors import InvalidTransitionError
from .models import (
    IncidentAnalysisResult,
    IncidentRecommendation,
    IncidentScoreDetails,
    LinkedIncident,
    QuickWin,
    RecommendationStatus,
    RecommendationType,
)

logger = logging.getLogger(__name__)

RECOMMENDATION_TRANSITIONS: Dict[RecommendationStatus, set[RecommendationStatus]] = {
    RecommendationStatus.ACTIVE: {
        RecommendationStatus.IN_PROGRESS,
        RecommendationStatus.RESOLVED,
        RecommendationStatus.DISMISSED,
        RecommendationStatus.EXPIRED,
    },
    RecommendationStatus.IN_PROGRESS: {RecommendationStatus.RESOLVED, RecommendationStatus.DISMISSED},
    RecommendationStatus.RESOLVED: set(),
    RecommendationStatus.DISMISSED: set(),
    RecommendationStatus.EXPIRED: set(),
}
SYSTEM_ONLY_STATUSES = {RecommendationStatus.EXPIRED}

_FRAME_COLUMNS = ["incident_number", "close_code", "application_id", "application_name", "is_recent"]


@dataclass(frozen=True)
class AnalysisSettings:
    window_days: int = ANALYSIS_WINDOW_DAYS
    recent_days: int = RECENT_INCIDENT_DAYS
    repeat_threshold: int = REPEAT_PATTERN_THRESHOLD
    closure_threshold: int = CLOSURE_ANALYSIS_THRESHOLD
    high_volume_min: int = HIGH_VOLUME_MIN_INCIDENTS
    high_volume_urgent: int = HIGH_VOLUME_URGENT_INCIDENTS
    hotspot_min: int = PORTFOLIO_HOTSPOT_MIN_INCIDENTS
    cross_app_min_incidents: int = CROSS_APP_MIN_INCIDENTS
    cross_app_min_applications: int = CROSS_APP_MIN_APPLICATIONS
    technical_debt_min: int = TECHNICAL_DEBT_MIN_INCIDENTS
    bandaid_terms: Tuple[str, ...] = BANDAID_CLOSE_CODE_TERMS
    max_related: int = MAX_RELATED_INCIDENTS


def confidence_for_sample(incident_count: int) -> int:
    if incident_count <= 0:
        return 0
    return min(100, 40 + 8 * int(incident_count))


def signal_key(scope: str, rec_type: RecommendationType, root: str) -> str:
    return f"{scope}|{rec_type.value}|{root}"


def allowed_next_recommendation_statuses(current: RecommendationStatus) -> List[RecommendationStatus]:
    allowed = RECOMMENDATION_TRANSITIONS.get(RecommendationStatus.parse(current), set())
    return [status for status in RecommendationStatus if status in allowed]


def transition_recommendation(
    recommendation: IncidentRecommendation,
    new_status: RecommendationStatus | str,
    *,
    as_of: datetime,
    notes: str = "",
    system: bool = False,
) -> IncidentRecommendation:
    current = recommendation.status
    nxt = RecommendationStatus.parse(new_status)
    if current == nxt:
        return recommendation
    allowed = RECOMMENDATION_TRANSITIONS.get(current, set())
    if nxt not in allowed or (nxt in SYSTEM_ONLY_STATUSES and not system):
        labels = [s.value for s in allowed_next_recommendation_statuses(current) if system or s not in SYSTEM_ONLY_STATUSES]
        raise InvalidTransitionError("recommendation", current.value, nxt.value, labels)

    resolved_at = recommendation.resolved_at
    if nxt in (RecommendationStatus.RESOLVED, RecommendationStatus.DISMISSED):
        resolved_at = as_of
    merged_notes = recommendation.notes
    if str(notes or "").strip():
        merged_notes = f"{merged_notes}\n{notes.strip()}".strip()
    return replace(recommendation, status=nxt, updated_at=as_of, resolved_at=resolved_at, notes=merged_notes)


def _in_scope(item: LinkedIncident, application_id: Optional[str]) -> bool:
    if application_id is None:
        return True
    return item.is_linked and item.application_id == application_id


def _incident_frame(
    incidents: Sequence[LinkedIncident], as_of: datetime, settings: AnalysisSettings
) -> pd.DataFrame:
    window_start = as_of - timedelta(days=settings.window_days)
    recent_start = as_of - timedelta(days=settings.recent_days)
    rows = []
    for item in incidents:
        effective = item.incident.effective_date()
        # undated tickets stay in the window but never count as recent
        if effective is not None and effective < window_start:
            continue
        rows.append(
            {
                "incident_number": item.incident_number,
                "close_code": str(item.incident.close_code or "").strip(),
                "application_id": item.application_id if item.is_linked else "",
                "application_name": (item.application_name or item.application_id or "") if item.is_linked else "",
                "is_recent": bool(effective is not None and effective >= recent_start),
            }
        )
    return pd.DataFrame(rows, columns=_FRAME_COLUMNS)


def _code_counts(frame: pd.DataFrame) -> pd.Series:
    coded = frame.loc[frame["close_code"] != ""]
    if coded.empty:
        return pd.Series(dtype="int64")
    counts = coded.groupby("close_code").size()
    return counts.sort_values(ascending=False, kind="mergesort")


def _related_numbers(frame: pd.DataFrame, mask: pd.Series, limit: int) -> Tuple[str, ...]:
    return tuple(str(v) for v in frame.loc[mask, "incident_number"].head(limit).tolist())


def _is_bandaid(code: str, terms: Iterable[str]) -> bool:
    lowered = code.casefold()
    return any(term in lowered for term in terms)


def _candidate(
    *,
    scope: str,
    rec_type: RecommendationType,
    root: str,
    priority: int,
    count: int,
    title: str,
    description: str,
    action: str,
    impact: str,
    effort: str,
    as_of: datetime,
    related_codes: Tuple[str, ...] = (),
    related_numbers: Tuple[str, ...] = (),
    application_id: Optional[str] = None,
    application_name: Optional[str] = None,
) -> IncidentRecommendation:
    return IncidentRecommendation(
        recommendation_id=f"rec-{uuid.uuid4().hex}",
        scope=scope,
        signal_key=signal_key(scope, rec_type, root),
        type=rec_type,
        title=title,
        description=description,
        recommended_action=action,
        application_id=application_id,
        application_name=application_name,
        priority=priority,
        confidence_score=confidence_for_sample(count),
        expected_impact=impact,
        estimated_effort=effort,
        related_close_codes=related_codes,
        related_incident_numbers=related_numbers,
        incident_count=int(count),
        status=RecommendationStatus.ACTIVE,
        generated_at=as_of,
        updated_at=as_of,
    )


def _code_signals(
    frame: pd.DataFrame, counts: pd.Series, scope: str, as_of: datetime, settings: AnalysisSettings, app: Tuple[Optional[str], Optional[str]]
) -> List[IncidentRecommendation]:
    out: List[IncidentRecommendation] = []
    for code, count in counts.items():
        count = int(count)
        if count < settings.closure_threshold:
            continue
        is_repeat = count >= settings.repeat_threshold
        out.append(
            _candidate(
                scope=scope,
                rec_type=RecommendationType.REPEAT_PATTERN if is_repeat else RecommendationType.CLOSURE_ANALYSIS,
                root=str(code),
                priority=1 if is_repeat else 2,
                count=count,
                title=f"Address recurring issue: {code}",
                description=f"This close code has appeared {count} times, indicating a recurring issue pattern.",
                action=f"Investigate the root cause of '{code}' issues and implement a permanent fix.",
                impact=f"Could prevent up to {count} similar incidents in the future.",
                effort="Medium" if count >= 5 else "Low",
                as_of=as_of,
                related_codes=(str(code),),
                related_numbers=_related_numbers(frame, frame["close_code"] == code, settings.max_related),
                application_id=app[0],
                application_name=app[1],
            )
        )

    bandaid_mask = frame["close_code"].map(lambda c: bool(c) and _is_bandaid(c, settings.bandaid_terms)).astype(bool)
    bandaid_count = int(bandaid_mask.sum())
    if bandaid_count >= settings.technical_debt_min:
        codes = tuple(sorted(set(frame.loc[bandaid_mask, "close_code"].tolist())))
        out.append(
            _candidate(
                scope=scope,
                rec_type=RecommendationType.TECHNICAL_DEBT,
                root="temporary-fixes",
                priority=2,
                count=bandaid_count,
                title=f"Technical debt: {bandaid_count} temporary fixes need permanent solutions",
                description="Multiple incidents have been closed with temporary fixes or workarounds, accumulating technical debt.",
                action="Schedule time to implement permanent solutions for these workarounds.",
                impact="Reduce recurring incidents and improve system stability.",
                effort="Medium",
                as_of=as_of,
                related_codes=codes,
                related_numbers=_related_numbers(frame, bandaid_mask, settings.max_related),
                application_id=app[0],
                application_name=app[1],
            )
        )
    return out


def _application_signals(
    frame: pd.DataFrame, application_id: str, application_name: Optional[str], as_of: datetime, settings: AnalysisSettings
) -> List[IncidentRecommendation]:
    total = len(frame)
    if total < settings.high_volume_min:
        return []
    recent = int(frame["is_recent"].sum())
    return [
        _candidate(
            scope=application_id,
            rec_type=RecommendationType.HIGH_VOLUME,
            root="volume",
            priority=1 if total >= settings.high_volume_urgent else 2,
            count=total,
            title="High incident volume requires attention",
            description=(
                f"{total} incidents in the last {settings.window_days} days ({recent} in the last "
                f"{settings.recent_days}) suggests systemic issues with this application."
            ),
            action="Conduct a root cause analysis workshop to identify and address systemic issues.",
            impact=f"Reducing incident rate by 50% would save approximately {total // 2} incidents per year.",
            effort="High",
            as_of=as_of,
            related_numbers=tuple(str(v) for v in frame["incident_number"].head(settings.max_related).tolist()),
            application_id=application_id,
            application_name=application_name,
        )
    ]


def _portfolio_signals(
    frame: pd.DataFrame, counts: pd.Series, names: Mapping[str, str], as_of: datetime, settings: AnalysisSettings
) -> List[IncidentRecommendation]:
    out: List[IncidentRecommendation] = []
    linked = frame.loc[frame["application_id"] != ""]

    for code, count in counts.items():
        count = int(count)
        if count < settings.cross_app_min_incidents:
            continue
        apps = linked.loc[linked["close_code"] == code, "application_id"].nunique()
        if apps < settings.cross_app_min_applications:
            continue
        out.append(
            _candidate(
                scope=PORTFOLIO_SCOPE,
                rec_type=RecommendationType.PROCESS_IMPROVEMENT,
                root=str(code),
                priority=1,
                count=count,
                title=f"Cross-application issue: {code}",
                description=f"'{code}' appears {count} times across {apps} applications, suggesting a systemic issue.",
                action="Investigate common infrastructure or configuration issues affecting multiple applications.",
                impact=f"Fixing root cause could prevent incidents across {apps} applications.",
                effort="Medium",
                as_of=as_of,
                related_codes=(str(code),),
                related_numbers=_related_numbers(frame, frame["close_code"] == code, settings.max_related),
            )
        )

    if not linked.empty:
        per_app = linked.groupby("application_id").size().sort_values(ascending=False, kind="mergesort")
        for app_id, count in per_app.items():
            count = int(count)
            if count < settings.hotspot_min:
                continue
            app_name = names.get(str(app_id)) or str(linked.loc[linked["application_id"] == app_id, "application_name"].iloc[0])
            out.append(
                _candidate(
                    scope=PORTFOLIO_SCOPE,
                    rec_type=RecommendationType.HIGH_VOLUME,
                    root=str(app_id),
                    priority=1,
                    count=count,
                    title=f"Incident hotspot: {app_name or app_id}",
                    description=f"This application has {count} incidents, making it a priority for improvement.",
                    action="Prioritize stability improvements for this high-volume incident source.",
                    impact="Significant reduction in overall portfolio incident volume.",
                    effort="High",
                    as_of=as_of,
                    related_numbers=_related_numbers(frame, frame["application_id"] == app_id, settings.max_related),
                    application_id=str(app_id),
                    application_name=app_name or None,
                )
            )
    return out


def _reconcile(
    candidates: List[IncidentRecommendation],
    existing: Sequence[IncidentRecommendation],
    scope: str,
    as_of: datetime,
) -> Tuple[List[IncidentRecommendation], List[str], List[str], List[str]]:
    by_key: Dict[str, List[IncidentRecommendation]] = {}
    for rec in existing:
        if rec.scope == scope:
            by_key.setdefault(rec.signal_key, []).append(rec)

    persisted: List[IncidentRecommendation] = []
    created: List[str] = []
    refreshed: List[str] = []
    expired: List[str] = []
    qualifying = set()

    for candidate in candidates:
        qualifying.add(candidate.signal_key)
        prior = by_key.get(candidate.signal_key, [])
        open_prior = [rec for rec in prior if rec.is_open]
        if open_prior:
            current = open_prior[0]
            updated = replace(
                candidate,
                recommendation_id=current.recommendation_id,
                status=current.status,
                generated_at=current.generated_at,
                notes=current.notes,
                root_cause_analysis=current.root_cause_analysis,
            )
            persisted.append(updated)
            refreshed.append(updated.recommendation_id)
            continue
        if any(rec.status == RecommendationStatus.DISMISSED for rec in prior):
            logger.debug("signal %s suppressed by a dismissed recommendation", candidate.signal_key)
            continue
        persisted.append(candidate)
        created.append(candidate.recommendation_id)

    for key, recs in by_key.items():
        if key in qualifying:
            continue
        for rec in recs:
            if rec.status != RecommendationStatus.ACTIVE:
                continue
            aged = transition_recommendation(
                rec,
                RecommendationStatus.EXPIRED,
                as_of=as_of,
                notes="supporting incidents no longer qualify",
                system=True,
            )
            persisted.append(aged)
            expired.append(aged.recommendation_id)
    return persisted, created, refreshed, expired


def _common_themes(counts: pd.Series, portfolio: bool) -> Tuple[str, ...]:
    if portfolio:
        return tuple(f"{code} ({int(count)})" for code, count in counts.head(5).items())
    return tuple(str(code) for code in counts.head(3).index)


def _quick_wins(frame: pd.DataFrame, counts: pd.Series, portfolio: bool, settings: AnalysisSettings) -> Tuple[QuickWin, ...]:
    wins: List[QuickWin] = []
    if not portfolio:
        for code, count in counts.items():
            count = int(count)
            if count < settings.repeat_threshold:
                continue
            wins.append(
                QuickWin(
                    title=f"Fix recurring '{code}' issues",
                    description=f"Addressing root cause could prevent {count} similar incidents.",
                    estimated_impact=f"{count} incidents prevented",
                    effort="Medium" if count >= 5 else "Low",
                )
            )
            if len(wins) >= 2:
                break
        return tuple(wins)

    linked = frame.loc[(frame["application_id"] != "") & (frame["close_code"] != "")]
    if linked.empty:
        return ()
    grouped = linked.groupby("close_code").agg(incidents=("incident_number", "size"), apps=("application_id", "nunique"))
    grouped = grouped.sort_values("incidents", ascending=False, kind="mergesort")
    for code, row in grouped.iterrows():
        if int(row["apps"]) < settings.cross_app_min_applications or int(row["incidents"]) < settings.cross_app_min_incidents:
            continue
        wins.append(
            QuickWin(
                title=f"Address '{code}' across {int(row['apps'])} apps",
                description=f"Common fix could resolve {int(row['incidents'])} incidents across multiple applications.",
                estimated_impact=f"{int(row['incidents'])} incidents across {int(row['apps'])} apps",
                effort="Medium",
            )
        )
        if len(wins) >= 2:
            break
    return tuple(wins)


def _score_details(frame: pd.DataFrame, counts: pd.Series, settings: AnalysisSettings) -> IncidentScoreDetails:
    return IncidentScoreDetails(
        total_incidents=len(frame),
        recent_incidents=int(frame["is_recent"].sum()) if not frame.empty else 0,
        repeat_patterns=int((counts >= settings.repeat_threshold).sum()) if not counts.empty else 0,
        close_code_counts={str(code): int(count) for code, count in counts.items()},
        recent_window_days=settings.recent_days,
        repeat_threshold=settings.repeat_threshold,
    )


def incident_score_details(
    linked_incidents: Iterable[LinkedIncident],
    application_id: Optional[str] = None,
    *,
    as_of: datetime,
    settings: AnalysisSettings = AnalysisSettings(),
) -> IncidentScoreDetails:
    """Window statistics only, for feeding the health scorer."""
    scoped = [item for item in linked_incidents if _in_scope(item, application_id)]
    frame = _incident_frame(scoped, as_of, settings)
    return _score_details(frame, _code_counts(frame), settings)


def analyze_incidents(
    linked_incidents: Iterable[LinkedIncident],
    application_id: Optional[str] = None,
    *,
    as_of: datetime,
    existing_recommendations: Sequence[IncidentRecommendation] = (),
    application_names: Optional[Mapping[str, str]] = None,
    settings: AnalysisSettings = AnalysisSettings(),
) -> IncidentAnalysisResult:
    """Derive pattern statistics and reconcile recommendations for one scope.

    ``application_id=None`` analyses the whole portfolio. Returned
    recommendations are the ones the caller should persist: new, refreshed
    and expired.
    """
    names = dict(application_names or {})
    scope = application_id if application_id is not None else PORTFOLIO_SCOPE
    portfolio = application_id is None

    scoped = [item for item in linked_incidents if _in_scope(item, application_id)]
    frame = _incident_frame(scoped, as_of, settings)
    counts = _code_counts(frame)
    details = _score_details(frame, counts, settings)

    if portfolio:
        app_context: Tuple[Optional[str], Optional[str]] = (None, None)
    else:
        app_context = (application_id, names.get(application_id) or _first_name(frame))

    candidates = _code_signals(frame, counts, scope, as_of, settings, app_context)
    if portfolio:
        candidates += _portfolio_signals(frame, counts, names, as_of, settings)
    else:
        candidates += _application_signals(frame, application_id, app_context[1], as_of, settings)

    persisted, created, refreshed, expired = _reconcile(candidates, existing_recommendations, scope, as_of)

    label = "the portfolio" if portfolio else (app_context[1] or application_id)
    if frame.empty:
        summary = f"No incidents to analyze for {label}."
    else:
        summary = (
            f"Analysis of {len(frame)} incidents for {label} found {details.repeat_patterns} repeat patterns "
            f"and {len(candidates)} qualifying signals."
        )

    logger.info(
        "analysis scope=%s incidents=%s created=%s refreshed=%s expired=%s",
        scope,
        len(frame),
        len(created),
        len(refreshed),
        len(expired),
    )
    return IncidentAnalysisResult(
        scope=scope,
        application_id=application_id,
        summary=summary,
        score_details=details,
        recommendations=tuple(persisted),
        created_ids=tuple(created),
        refreshed_ids=tuple(refreshed),
        expired_ids=tuple(expired),
        common_themes=_common_themes(counts, portfolio),
        quick_wins=_quick_wins(frame, counts, portfolio, settings),
        incidents_analyzed=len(frame),
        confidence_score=confidence_for_sample(len(frame)),
        generated_at=as_of,
    )


def _first_name(frame: pd.DataFrame) -> Optional[str]:
    named = frame.loc[frame["application_name"] != "", "application_name"]
    if named.empty:
        return None
    return str(named.iloc[0])
