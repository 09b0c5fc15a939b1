from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from .directory import AliasResolver, normalize_key
from .models import Application, IncidentRecord, LinkStatus, LinkedIncident

logger = logging.getLogger(__name__)


class ApplicationCatalog:
    """Applications addressable by id, name, or configured alias."""

    def __init__(self, applications: Iterable[Application] = (), aliases: Optional[Dict[str, str]] = None):
        self._applications: Dict[str, Application] = {}
        self._names = AliasResolver()
        self._aliases = AliasResolver()
        for application in applications:
            self.add_application(application)
        for alias, application_id in (aliases or {}).items():
            self.add_alias(alias, application_id)

    def add_application(self, application: Application) -> None:
        self._applications[application.application_id] = application
        self._names.add(application.application_id, application.application_id)
        self._names.add(application.name, application.application_id)

    def add_alias(self, alias: str, application_id: str) -> None:
        if application_id not in self._applications:
            raise ValueError(f"unknown application id for alias {alias!r}: {application_id}")
        self._aliases.add(alias, application_id)

    def get(self, application_id: str) -> Optional[Application]:
        return self._applications.get(application_id)

    def names(self) -> Dict[str, str]:
        return {app_id: app.name for app_id, app in self._applications.items()}

    def __len__(self) -> int:
        return len(self._applications)

    def match(self, reference: str) -> Tuple[Optional[Application], str]:
        for resolver, how in ((self._names, "name"), (self._aliases, "alias")):
            application_id = resolver.lookup(reference)
            if application_id is not None:
                return self._applications[application_id], how
            if resolver.is_ambiguous(reference):
                return None, "ambiguous"
        return None, ""


def link_incident(
    incident: IncidentRecord,
    catalog: ApplicationCatalog,
    existing: LinkedIncident | None = None,
    actor: str = "system",
    *,
    as_of: datetime,
) -> LinkedIncident:
    if existing is not None and existing.link_status == LinkStatus.MANUALLY_LINKED:
        # operator decisions survive re-imports; only ticket fields move
        return replace(existing, incident=incident)

    reference = str(incident.configuration_item or "").strip()
    if not normalize_key(reference):
        return LinkedIncident(
            incident=incident,
            link_status=LinkStatus.MISSING_REFERENCE,
            link_notes="configuration item is empty",
            linked_by=actor,
            linked_at=as_of,
        )

    application, how = catalog.match(reference)
    if application is None:
        note = f"no application matches configuration item {reference!r}"
        if how == "ambiguous":
            note = f"configuration item {reference!r} matches more than one application"
        logger.debug("incident %s not linked: %s", incident.incident_number, note)
        return LinkedIncident(
            incident=incident,
            link_status=LinkStatus.NO_MATCH,
            link_notes=note,
            linked_by=actor,
            linked_at=as_of,
        )

    return LinkedIncident(
        incident=incident,
        link_status=LinkStatus.LINKED,
        application_id=application.application_id,
        application_name=application.name,
        link_notes=f"matched configuration item {reference!r} by {how}",
        linked_by=actor,
        linked_at=as_of,
    )


def manual_link(
    linked: LinkedIncident,
    application_id: str,
    catalog: ApplicationCatalog,
    actor: str,
    notes: str = "",
    *,
    as_of: datetime,
) -> LinkedIncident:
    application = catalog.get(application_id)
    if application is None:
        raise ValueError(f"application_id not found: {application_id}")
    if not str(actor or "").strip():
        raise ValueError("actor is required for manual links")
    return replace(
        linked,
        link_status=LinkStatus.MANUALLY_LINKED,
        application_id=application.application_id,
        application_name=application.name,
        link_notes=str(notes or "").strip() or f"manually linked by {actor}",
        linked_by=actor,
        linked_at=as_of,
    )


def link_summary(linked_incidents: Iterable[LinkedIncident]) -> Dict[str, int]:
    counts = Counter(item.link_status for item in linked_incidents)
    summary = {status.value: int(counts.get(status, 0)) for status in LinkStatus}
    summary["total"] = sum(summary.values())
    return summary
