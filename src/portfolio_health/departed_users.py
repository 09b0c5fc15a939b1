from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Sequence, Tuple

from .directory import DirectoryIndex, infer_candidate_type, normalize_key
from .errors import InvalidTransitionError
from .models import AlertStatus, DepartedUserAlert, RoleAssignment

logger = logging.getLogger(__name__)

ALERT_TRANSITIONS: Dict[AlertStatus, set[AlertStatus]] = {
    AlertStatus.OPEN: {AlertStatus.ACKNOWLEDGED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE},
    AlertStatus.RESOLVED: set(),
    AlertStatus.FALSE_POSITIVE: set(),
}

AlertKey = Tuple[str, str, str]


def alert_key(unmatched_value: str, application_id: str, role_type: str) -> AlertKey:
    return (normalize_key(unmatched_value), str(application_id), normalize_key(role_type))


@dataclass(frozen=True)
class DepartedUserScan:
    new_alerts: Tuple[DepartedUserAlert, ...]
    assignments_checked: int
    matched: int
    unmatched: int
    blank_identities: int
    already_alerted: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "new_alerts": [alert.to_dict() for alert in self.new_alerts],
            "assignments_checked": self.assignments_checked,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "blank_identities": self.blank_identities,
            "already_alerted": self.already_alerted,
        }


def detect_departed_users(
    assignments: Iterable[RoleAssignment],
    directory: DirectoryIndex,
    existing_alerts: Sequence[DepartedUserAlert] = (),
    *,
    as_of: datetime,
) -> DepartedUserScan:
    """Raise one alert per role holder that no longer resolves in the directory.

    Alerts still Open or Acknowledged for the same key are left alone; this
    pass never resolves anything.
    """
    active_keys = {
        alert_key(alert.unmatched_value, alert.application_id, alert.role_type)
        for alert in existing_alerts
        if alert.is_unresolved
    }

    new_alerts: List[DepartedUserAlert] = []
    checked = matched = unmatched = blank = already = 0
    for assignment in assignments:
        checked += 1
        identity = str(assignment.identity or "").strip()
        if not normalize_key(identity):
            blank += 1
            continue

        result = directory.resolve(identity)
        if result.matched:
            matched += 1
            continue

        unmatched += 1
        key = alert_key(identity, assignment.application_id, assignment.role_type)
        if key in active_keys:
            already += 1
            continue
        active_keys.add(key)
        alert = DepartedUserAlert(
            alert_id=f"alert-{uuid.uuid4().hex}",
            unmatched_value=identity,
            value_type=infer_candidate_type(identity),
            application_id=assignment.application_id,
            application_name=assignment.application_name or assignment.application_id,
            role_type=assignment.role_type,
            data_source=assignment.data_source,
            status=AlertStatus.OPEN,
            detected_at=as_of,
        )
        new_alerts.append(alert)
        logger.warning(
            "departed user: %r holds %s on %s (%s)",
            identity,
            assignment.role_type,
            assignment.application_id,
            result.explanation,
        )

    return DepartedUserScan(
        new_alerts=tuple(new_alerts),
        assignments_checked=checked,
        matched=matched,
        unmatched=unmatched,
        blank_identities=blank,
        already_alerted=already,
    )


def allowed_next_alert_statuses(current: AlertStatus) -> List[AlertStatus]:
    allowed = ALERT_TRANSITIONS.get(AlertStatus.parse(current), set())
    return [status for status in AlertStatus if status in allowed]


def _transition(alert: DepartedUserAlert, nxt: AlertStatus) -> None:
    if nxt not in ALERT_TRANSITIONS.get(alert.status, set()):
        raise InvalidTransitionError(
            "alert",
            alert.status.value,
            nxt.value,
            [s.value for s in allowed_next_alert_statuses(alert.status)],
        )


def acknowledge_alert(alert: DepartedUserAlert, actor: str, *, as_of: datetime) -> DepartedUserAlert:
    _transition(alert, AlertStatus.ACKNOWLEDGED)
    note = f"acknowledged by {actor} at {as_of.isoformat()}" if str(actor or "").strip() else ""
    notes = f"{alert.resolution_notes}\n{note}".strip() if note else alert.resolution_notes
    return replace(alert, status=AlertStatus.ACKNOWLEDGED, resolution_notes=notes)


def _close(
    alert: DepartedUserAlert,
    nxt: AlertStatus,
    resolved_by: str,
    as_of: datetime,
    replacement_identity: str,
    notes: str,
) -> DepartedUserAlert:
    _transition(alert, nxt)
    resolver = str(resolved_by or "").strip()
    if not resolver:
        raise ValueError("resolved_by is required to close an alert")
    merged = alert.resolution_notes
    if str(notes or "").strip():
        merged = f"{merged}\n{notes.strip()}".strip()
    return replace(
        alert,
        status=nxt,
        resolved_by=resolver,
        replacement_identity=str(replacement_identity or "").strip(),
        resolution_notes=merged,
        resolved_at=as_of,
    )


def resolve_alert(
    alert: DepartedUserAlert,
    resolved_by: str,
    *,
    as_of: datetime,
    replacement_identity: str = "",
    notes: str = "",
) -> DepartedUserAlert:
    return _close(alert, AlertStatus.RESOLVED, resolved_by, as_of, replacement_identity, notes)


def mark_false_positive(
    alert: DepartedUserAlert, resolved_by: str, *, as_of: datetime, notes: str = ""
) -> DepartedUserAlert:
    return _close(alert, AlertStatus.FALSE_POSITIVE, resolved_by, as_of, "", notes)
