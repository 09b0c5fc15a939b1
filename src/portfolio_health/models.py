from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from .config import BASE_SCORE, RECENT_INCIDENT_DAYS, REPEAT_PATTERN_THRESHOLD
from .errors import UnknownValueError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.isoformat()


class Variant(str, Enum):
    """Closed enumeration persisted by name; unknown values fail loudly."""

    @classmethod
    def parse(cls, value: object):
        if isinstance(value, cls):
            return value
        raw = str(value if value is not None else "").strip()
        for member in cls:
            if member.value == raw:
                return member
        lowered = raw.casefold()
        for member in cls:
            if member.value.casefold() == lowered:
                return member
        raise UnknownValueError(cls.__name__, value, [m.value for m in cls])

    def __str__(self) -> str:
        return self.value


class LinkStatus(Variant):
    UNKNOWN = "Unknown"
    MISSING_REFERENCE = "MissingReference"
    NO_MATCH = "NoMatch"
    LINKED = "Linked"
    MANUALLY_LINKED = "ManuallyLinked"


class RecommendationType(Variant):
    REPEAT_PATTERN = "RepeatPattern"
    HIGH_VOLUME = "HighVolume"
    CLOSURE_ANALYSIS = "ClosureAnalysis"
    WORK_NOTE_PATTERN = "WorkNotePattern"
    GENERAL_IMPROVEMENT = "GeneralImprovement"
    PROCESS_IMPROVEMENT = "ProcessImprovement"
    TRAINING_NEED = "TrainingNeed"
    TECHNICAL_DEBT = "TechnicalDebt"


class RecommendationStatus(Variant):
    ACTIVE = "Active"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    DISMISSED = "Dismissed"
    EXPIRED = "Expired"


class AlertStatus(Variant):
    OPEN = "Open"
    ACKNOWLEDGED = "Acknowledged"
    RESOLVED = "Resolved"
    FALSE_POSITIVE = "FalsePositive"


class UsageLevel(Variant):
    NONE = "None"
    VERY_LOW = "VeryLow"
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class Severity(Variant):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class HealthCategory(Variant):
    HEALTHY = "Healthy"
    NEEDS_ATTENTION = "NeedsAttention"
    AT_RISK = "AtRisk"
    CRITICAL = "Critical"


class CandidateType(Variant):
    NAME = "Name"
    EMAIL = "Email"


class MatchConfidence(Variant):
    NO_MATCH = "NoMatch"
    HIGH = "High"
    EXACT = "Exact"


class MatchMethod(Variant):
    NONE = "None"
    EXACT_UPN = "ExactUpn"
    EXACT_EMAIL = "ExactEmail"
    DISPLAY_NAME_EXACT = "DisplayNameExact"
    EXACT_ALIAS = "ExactAlias"


class ImportJobStatus(Variant):
    RUNNING = "Running"
    COMPLETED = "Completed"
    COMPLETED_WITH_ERRORS = "CompletedWithErrors"
    FAILED = "Failed"
    ABANDONED = "Abandoned"


UNRESOLVED_ALERT_STATUSES = {AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED}
OPEN_RECOMMENDATION_STATUSES = {RecommendationStatus.ACTIVE, RecommendationStatus.IN_PROGRESS}
LINKED_STATUSES = {LinkStatus.LINKED, LinkStatus.MANUALLY_LINKED}

# (points per finding, cap) per severity tier
SECURITY_PENALTY_RULES: Dict[Severity, Tuple[float, int]] = {
    Severity.CRITICAL: (15, 60),
    Severity.HIGH: (8, 40),
    Severity.MEDIUM: (2, 20),
    Severity.LOW: (0.5, 10),
}
RECENT_INCIDENT_PENALTY = (2, 20)
REPEAT_PATTERN_PENALTY = (3, 15)


@dataclass(frozen=True)
class SecurityFinding:
    severity: Severity
    is_resolved: bool = False
    finding_id: str = ""
    title: str = ""


@dataclass(frozen=True)
class SecurityScoreDetails:
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0

    @classmethod
    def from_findings(cls, findings: List[SecurityFinding] | Tuple[SecurityFinding, ...]) -> "SecurityScoreDetails":
        counts = {severity: 0 for severity in Severity}
        for finding in findings:
            if finding.is_resolved:
                continue
            counts[Severity.parse(finding.severity)] += 1
        return cls(
            critical_count=counts[Severity.CRITICAL],
            high_count=counts[Severity.HIGH],
            medium_count=counts[Severity.MEDIUM],
            low_count=counts[Severity.LOW],
        )

    def count_for(self, severity: Severity) -> int:
        return {
            Severity.CRITICAL: self.critical_count,
            Severity.HIGH: self.high_count,
            Severity.MEDIUM: self.medium_count,
            Severity.LOW: self.low_count,
        }[severity]

    def tier_penalty(self, severity: Severity) -> int:
        per_finding, cap = SECURITY_PENALTY_RULES[severity]
        count = max(0, int(self.count_for(severity)))
        # low findings accrue half points; partial points are dropped
        return min(cap, int(count * per_finding))

    def penalty(self) -> int:
        return sum(self.tier_penalty(severity) for severity in Severity)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = asdict(self)
        payload["penalty"] = self.penalty()
        return payload


@dataclass(frozen=True)
class IncidentScoreDetails:
    total_incidents: int = 0
    recent_incidents: int = 0
    repeat_patterns: int = 0
    close_code_counts: Mapping[str, int] = field(default_factory=dict)
    recent_window_days: int = RECENT_INCIDENT_DAYS
    repeat_threshold: int = REPEAT_PATTERN_THRESHOLD

    def recent_penalty(self) -> int:
        per_incident, cap = RECENT_INCIDENT_PENALTY
        return min(cap, max(0, int(self.recent_incidents)) * per_incident)

    def repeat_penalty(self) -> int:
        per_pattern, cap = REPEAT_PATTERN_PENALTY
        return min(cap, max(0, int(self.repeat_patterns)) * per_pattern)

    def penalty(self) -> int:
        return self.recent_penalty() + self.repeat_penalty()

    def repeat_codes(self) -> List[str]:
        return sorted(code for code, count in self.close_code_counts.items() if count >= self.repeat_threshold)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_incidents": self.total_incidents,
            "recent_incidents": self.recent_incidents,
            "repeat_patterns": self.repeat_patterns,
            "close_code_counts": dict(self.close_code_counts),
            "recent_window_days": self.recent_window_days,
            "penalty": self.penalty(),
        }


@dataclass(frozen=True)
class HealthScoreBreakdown:
    application_id: str
    as_of: datetime
    base_score: int = BASE_SCORE
    security_penalty: int = 0
    usage_adjustment: int = 0
    maintenance_adjustment: int = 0
    documentation_adjustment: int = 0
    overdue_task_penalty: int = 0
    data_conflict_penalty: int = 0
    incident_penalty: int = 0
    security_details: SecurityScoreDetails = field(default_factory=SecurityScoreDetails)
    incident_details: IncidentScoreDetails = field(default_factory=IncidentScoreDetails)

    @property
    def raw_score(self) -> int:
        return (
            self.base_score
            - self.security_penalty
            + self.usage_adjustment
            + self.maintenance_adjustment
            + self.documentation_adjustment
            - self.overdue_task_penalty
            - self.data_conflict_penalty
            - self.incident_penalty
        )

    @property
    def final_score(self) -> int:
        return max(0, min(100, self.raw_score))

    @property
    def category(self) -> HealthCategory:
        # local import keeps the category thresholds in one place
        from .health_scoring import health_category

        return health_category(self.final_score)

    def to_dict(self) -> Dict[str, object]:
        return {
            "application_id": self.application_id,
            "as_of": to_iso(self.as_of),
            "base_score": self.base_score,
            "components": {
                "security_penalty": self.security_penalty,
                "usage_adjustment": self.usage_adjustment,
                "maintenance_adjustment": self.maintenance_adjustment,
                "documentation_adjustment": self.documentation_adjustment,
                "overdue_task_penalty": self.overdue_task_penalty,
                "data_conflict_penalty": self.data_conflict_penalty,
                "incident_penalty": self.incident_penalty,
            },
            "raw_score": self.raw_score,
            "final_score": self.final_score,
            "category": self.category.value,
            "security_details": self.security_details.to_dict(),
            "incident_details": self.incident_details.to_dict(),
        }


@dataclass(frozen=True)
class DocumentationStatus:
    has_architecture_diagram: bool = False
    has_system_documentation: bool = False
    has_user_documentation: bool = False
    has_support_documentation: bool = False

    @property
    def completeness_pct(self) -> float:
        # only architecture + system docs are required
        required = [self.has_architecture_diagram, self.has_system_documentation]
        return 100.0 * sum(1 for flag in required if flag) / len(required)


@dataclass(frozen=True)
class LifecycleTask:
    task_id: str
    due_date: datetime
    title: str = ""
    completed_at: Optional[datetime] = None

    def is_overdue(self, as_of: datetime) -> bool:
        return self.completed_at is None and self.due_date < as_of

    def days_overdue(self, as_of: datetime) -> int:
        if not self.is_overdue(as_of):
            return 0
        return int((as_of - self.due_date).total_seconds() // 86400)


@dataclass(frozen=True)
class Application:
    application_id: str
    name: str


@dataclass(frozen=True)
class IncidentRecord:
    incident_number: str
    configuration_item: str = ""
    close_code: str = ""
    state: str = ""
    short_description: str = ""
    description: str = ""
    close_notes: str = ""
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    imported_at: Optional[datetime] = None

    def effective_date(self) -> datetime | None:
        return self.closed_at or self.opened_at or self.imported_at


@dataclass(frozen=True)
class LinkedIncident:
    incident: IncidentRecord
    link_status: LinkStatus = LinkStatus.UNKNOWN
    application_id: Optional[str] = None
    application_name: Optional[str] = None
    link_notes: str = ""
    linked_by: str = ""
    linked_at: Optional[datetime] = None

    @property
    def incident_number(self) -> str:
        return self.incident.incident_number

    @property
    def is_linked(self) -> bool:
        return self.link_status in LINKED_STATUSES and bool(self.application_id)


@dataclass(frozen=True)
class IncidentRecommendation:
    recommendation_id: str
    scope: str
    signal_key: str
    type: RecommendationType
    title: str
    description: str
    recommended_action: str
    application_id: Optional[str] = None
    application_name: Optional[str] = None
    priority: int = 3
    confidence_score: int = 0
    expected_impact: str = ""
    estimated_effort: str = ""
    related_close_codes: Tuple[str, ...] = ()
    related_incident_numbers: Tuple[str, ...] = ()
    incident_count: int = 0
    status: RecommendationStatus = RecommendationStatus.ACTIVE
    generated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    notes: str = ""
    root_cause_analysis: str = ""

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RECOMMENDATION_STATUSES

    def to_dict(self) -> Dict[str, object]:
        return {
            "recommendation_id": self.recommendation_id,
            "scope": self.scope,
            "signal_key": self.signal_key,
            "type": self.type.value,
            "application_id": self.application_id,
            "application_name": self.application_name,
            "priority": self.priority,
            "confidence_score": self.confidence_score,
            "title": self.title,
            "description": self.description,
            "recommended_action": self.recommended_action,
            "expected_impact": self.expected_impact,
            "estimated_effort": self.estimated_effort,
            "related_close_codes": list(self.related_close_codes),
            "related_incident_numbers": list(self.related_incident_numbers),
            "incident_count": self.incident_count,
            "status": self.status.value,
            "generated_at": to_iso(self.generated_at),
            "updated_at": to_iso(self.updated_at),
            "resolved_at": to_iso(self.resolved_at),
            "notes": self.notes,
            "root_cause_analysis": self.root_cause_analysis,
        }


@dataclass(frozen=True)
class QuickWin:
    title: str
    description: str
    estimated_impact: str = ""
    effort: str = "Low"


@dataclass(frozen=True)
class IncidentAnalysisResult:
    scope: str
    application_id: Optional[str]
    summary: str
    score_details: IncidentScoreDetails
    recommendations: Tuple[IncidentRecommendation, ...] = ()
    created_ids: Tuple[str, ...] = ()
    refreshed_ids: Tuple[str, ...] = ()
    expired_ids: Tuple[str, ...] = ()
    common_themes: Tuple[str, ...] = ()
    quick_wins: Tuple[QuickWin, ...] = ()
    incidents_analyzed: int = 0
    confidence_score: int = 0
    generated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "scope": self.scope,
            "application_id": self.application_id,
            "summary": self.summary,
            "score_details": self.score_details.to_dict(),
            "recommendations": [item.to_dict() for item in self.recommendations],
            "created_ids": list(self.created_ids),
            "refreshed_ids": list(self.refreshed_ids),
            "expired_ids": list(self.expired_ids),
            "common_themes": list(self.common_themes),
            "quick_wins": [asdict(item) for item in self.quick_wins],
            "incidents_analyzed": self.incidents_analyzed,
            "confidence_score": self.confidence_score,
            "generated_at": to_iso(self.generated_at),
        }


@dataclass(frozen=True)
class DirectoryUser:
    directory_id: str
    user_principal_name: str
    display_name: str = ""
    mail: str = ""
    given_name: str = ""
    surname: str = ""
    employee_id: str = ""
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoleAssignment:
    application_id: str
    role_type: str
    identity: str
    application_name: str = ""
    data_source: str = ""


@dataclass(frozen=True)
class DepartedUserAlert:
    alert_id: str
    unmatched_value: str
    value_type: CandidateType
    application_id: str
    application_name: str
    role_type: str
    data_source: str
    status: AlertStatus = AlertStatus.OPEN
    detected_at: Optional[datetime] = None
    resolved_by: str = ""
    replacement_identity: str = ""
    resolution_notes: str = ""
    resolved_at: Optional[datetime] = None

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED_ALERT_STATUSES

    def to_dict(self) -> Dict[str, object]:
        return {
            "alert_id": self.alert_id,
            "unmatched_value": self.unmatched_value,
            "value_type": self.value_type.value,
            "application_id": self.application_id,
            "application_name": self.application_name,
            "role_type": self.role_type,
            "data_source": self.data_source,
            "status": self.status.value,
            "detected_at": to_iso(self.detected_at),
            "resolved_by": self.resolved_by,
            "replacement_identity": self.replacement_identity,
            "resolution_notes": self.resolution_notes,
            "resolved_at": to_iso(self.resolved_at),
        }


@dataclass(frozen=True)
class ImportRecord:
    record_id: str
    data_source: str
    fingerprint: str
    file_name: str = ""
    file_size_bytes: int = 0
    record_count: int = 0
    new_records: int = 0
    updated_records: int = 0
    skipped_records: int = 0
    error_records: int = 0
    imported_at: Optional[datetime] = None
    imported_by: str = ""
    notes: str = ""

    def counters(self) -> Dict[str, int]:
        return {
            "new": self.new_records,
            "updated": self.updated_records,
            "skipped": self.skipped_records,
            "errors": self.error_records,
        }


@dataclass(frozen=True)
class ImportJob:
    job_id: str
    data_source: str
    status: ImportJobStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    actor: str = ""
    new_records: int = 0
    updated_records: int = 0
    skipped_records: int = 0
    error_records: int = 0
    error_text: str = ""


@dataclass(frozen=True)
class ApplicationSignals:
    """Per-application snapshot consumed by the health scorer.

    ``None`` means the signal is unknown and contributes nothing to the score.
    """

    application_id: str
    name: str = ""
    findings: Tuple[SecurityFinding, ...] = ()
    usage_level: Optional[UsageLevel] = None
    last_activity_at: Optional[datetime] = None
    documentation: Optional[DocumentationStatus] = None
    tasks: Optional[Tuple[LifecycleTask, ...]] = None
    data_conflicts: Optional[int] = None
    incident_details: Optional[IncidentScoreDetails] = None
