from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Dict, Iterable, List, Mapping

import pandas as pd

from .config import PORTFOLIO_DB_PATH
from .errors import RecordValidationError
from .import_dedup import ImportOutcome, register_import
from .incident_linker import ApplicationCatalog, link_incident
from .models import (
    ImportJobStatus,
    ImportRecord,
    IncidentRecord,
    LinkedIncident,
    parse_iso_datetime,
    to_iso,
    utc_now,
)
from .portfolio_store import (
    begin_import_job,
    find_import_record,
    finish_import_job,
    get_incidents,
    save_import_record,
    upsert_incidents,
)

logger = logging.getLogger(__name__)

# accepted column names per field, first hit wins
FIELD_ALIASES: Dict[str, tuple] = {
    "incident_number": ("incident_number", "number", "Number"),
    "configuration_item": ("configuration_item", "cmdb_ci", "Configuration item", "ci"),
    "close_code": ("close_code", "Close code", "resolution_code"),
    "state": ("state", "State"),
    "short_description": ("short_description", "Short description"),
    "description": ("description", "Description"),
    "close_notes": ("close_notes", "Close notes"),
    "opened_at": ("opened_at", "Opened"),
    "closed_at": ("closed_at", "Closed", "resolved_at"),
}


def _cell(row: Mapping[str, object], field_name: str) -> str:
    for key in FIELD_ALIASES[field_name]:
        if key not in row:
            continue
        value = row[key]
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return ""
        return str(value).strip()
    return ""


def _date_cell(row: Mapping[str, object], field_name: str, row_index: int) -> datetime | None:
    raw = _cell(row, field_name)
    if not raw:
        return None
    parsed = parse_iso_datetime(raw)
    if parsed is None:
        raise RecordValidationError(f"{field_name} is not an ISO-8601 timestamp: {raw!r}", row_index=row_index)
    return parsed


def incident_from_row(row: Mapping[str, object], row_index: int, imported_at: datetime) -> IncidentRecord:
    number = _cell(row, "incident_number")
    if not number:
        raise RecordValidationError("incident number is required", row_index=row_index)
    return IncidentRecord(
        incident_number=number,
        configuration_item=_cell(row, "configuration_item"),
        close_code=_cell(row, "close_code"),
        state=_cell(row, "state"),
        short_description=_cell(row, "short_description"),
        description=_cell(row, "description"),
        close_notes=_cell(row, "close_notes"),
        opened_at=_date_cell(row, "opened_at", row_index),
        closed_at=_date_cell(row, "closed_at", row_index),
        imported_at=imported_at,
    )


def _unchanged(existing: LinkedIncident, linked: LinkedIncident) -> bool:
    # imported_at moves on every batch and is not a ticket change
    candidate = replace(
        linked,
        incident=replace(linked.incident, imported_at=existing.incident.imported_at),
        linked_at=existing.linked_at,
        linked_by=existing.linked_by,
    )
    return candidate == existing


def _duplicate_payload(
    data_source: str, fingerprint: str, prior: ImportRecord | None, job_id: str = ""
) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "status": "duplicate",
        "data_source": data_source,
        "fingerprint": fingerprint,
        "prior_record_id": prior.record_id if prior else "",
        "prior_imported_at": to_iso(prior.imported_at) if prior else "",
        "counters": prior.counters() if prior else {},
    }
    if job_id:
        payload["job_id"] = job_id
    return payload


def import_incident_batch(
    rows: Iterable[Mapping[str, object]],
    content: bytes,
    data_source: str,
    catalog: ApplicationCatalog,
    *,
    actor: str = "system",
    file_name: str = "",
    path: Path = PORTFOLIO_DB_PATH,
    as_of: datetime | None = None,
) -> Dict[str, object]:
    """Dedup-gate, link and persist one incident export.

    Malformed rows are counted and skipped. Storage failures mark the import
    job Failed and propagate.
    """
    now = as_of or utc_now()
    registration = register_import(data_source, content, partial(find_import_record, path=path))
    if registration.is_duplicate:
        return _duplicate_payload(registration.data_source, registration.fingerprint, registration.prior_record)

    job = begin_import_job(registration.data_source, actor=actor, path=path)
    # another submission of the same content may have finished before the slot was ours
    landed = find_import_record(registration.data_source, registration.fingerprint, path=path)
    if landed is not None:
        logger.info("content for %s was imported while waiting; job %s is a no-op", registration.data_source, job.job_id)
        finish_import_job(
            job.job_id, ImportJobStatus.COMPLETED, path=path, error_text=f"duplicate of {landed.record_id}"
        )
        return _duplicate_payload(registration.data_source, registration.fingerprint, landed, job_id=job.job_id)

    outcome = ImportOutcome(registration=registration, file_name=file_name, file_size_bytes=len(content))
    try:
        parsed: List[IncidentRecord] = []
        seen = set()
        for index, row in enumerate(rows):
            try:
                incident = incident_from_row(row, index, imported_at=now)
            except RecordValidationError as exc:
                outcome.add_error(str(exc))
                continue
            if incident.incident_number in seen:
                outcome.add_skipped()
                continue
            seen.add(incident.incident_number)
            parsed.append(incident)

        existing = get_incidents([item.incident_number for item in parsed], path=path)
        to_write: List[LinkedIncident] = []
        for incident in parsed:
            prior_link = existing.get(incident.incident_number)
            linked = link_incident(incident, catalog, existing=prior_link, actor=actor, as_of=now)
            if prior_link is not None and _unchanged(prior_link, linked):
                outcome.add_skipped()
                continue
            to_write.append(linked)

        written = upsert_incidents(to_write, path=path)
        outcome.add_new(written["new"])
        outcome.add_updated(written["updated"])

        record = outcome.to_record(imported_by=actor, imported_at=now)
        if not save_import_record(record, path=path):
            logger.warning("import record for %s already present; concurrent duplicate", registration.data_source)
        final_status = ImportJobStatus.COMPLETED_WITH_ERRORS if outcome.error_records else ImportJobStatus.COMPLETED
        finish_import_job(
            job.job_id,
            final_status,
            path=path,
            counters=record.counters(),
            error_text="; ".join(outcome.errors[:5]),
        )
    except Exception as exc:
        logger.error("import job %s failed: %s", job.job_id, exc)
        finish_import_job(job.job_id, ImportJobStatus.FAILED, path=path, error_text=str(exc))
        raise

    return {
        "status": final_status.value,
        "job_id": job.job_id,
        "record_id": record.record_id,
        "data_source": registration.data_source,
        "fingerprint": registration.fingerprint,
        "counters": record.counters(),
        "errors": list(outcome.errors),
    }
