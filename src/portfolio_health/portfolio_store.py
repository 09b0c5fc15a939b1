from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import PORTFOLIO_DB_PATH, import_stale_seconds
from .departed_users import acknowledge_alert, alert_key, mark_false_positive, resolve_alert
from .errors import ImportInProgressError
from .incident_analysis import transition_recommendation
from .models import (
    AlertStatus,
    CandidateType,
    DepartedUserAlert,
    HealthCategory,
    HealthScoreBreakdown,
    ImportJob,
    ImportJobStatus,
    ImportRecord,
    IncidentRecommendation,
    IncidentRecord,
    LinkStatus,
    LinkedIncident,
    RecommendationStatus,
    RecommendationType,
    parse_iso_datetime,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"
FINISHED_JOB_STATUSES = {
    ImportJobStatus.COMPLETED,
    ImportJobStatus.COMPLETED_WITH_ERRORS,
    ImportJobStatus.FAILED,
}


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def _begin_write(conn: sqlite3.Connection) -> None:
    # hold the write lock from the first read so read-then-write stays atomic
    conn.execute("BEGIN IMMEDIATE")


def init_portfolio_store(path: Path = PORTFOLIO_DB_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS import_records (
                record_id TEXT PRIMARY KEY,
                data_source TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                file_name TEXT DEFAULT '',
                file_size_bytes INTEGER DEFAULT 0,
                record_count INTEGER DEFAULT 0,
                new_records INTEGER DEFAULT 0,
                updated_records INTEGER DEFAULT 0,
                skipped_records INTEGER DEFAULT 0,
                error_records INTEGER DEFAULT 0,
                imported_at TEXT,
                imported_by TEXT DEFAULT '',
                notes TEXT DEFAULT '',
                UNIQUE (data_source, fingerprint)
            );

            CREATE TABLE IF NOT EXISTS import_jobs (
                job_id TEXT PRIMARY KEY,
                data_source TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT DEFAULT '',
                actor TEXT DEFAULT '',
                new_records INTEGER DEFAULT 0,
                updated_records INTEGER DEFAULT 0,
                skipped_records INTEGER DEFAULT 0,
                error_records INTEGER DEFAULT 0,
                error_text TEXT DEFAULT ''
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_import_jobs_running
                ON import_jobs(data_source) WHERE status = 'Running';

            CREATE TABLE IF NOT EXISTS incidents (
                incident_number TEXT PRIMARY KEY,
                configuration_item TEXT DEFAULT '',
                close_code TEXT DEFAULT '',
                state TEXT DEFAULT '',
                short_description TEXT DEFAULT '',
                description TEXT DEFAULT '',
                close_notes TEXT DEFAULT '',
                opened_at TEXT DEFAULT '',
                closed_at TEXT DEFAULT '',
                imported_at TEXT DEFAULT '',
                link_status TEXT DEFAULT 'Unknown',
                application_id TEXT,
                application_name TEXT,
                link_notes TEXT DEFAULT '',
                linked_by TEXT DEFAULT '',
                linked_at TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_incidents_application ON incidents(application_id);
            CREATE INDEX IF NOT EXISTS idx_incidents_link_status ON incidents(link_status);

            CREATE TABLE IF NOT EXISTS incident_recommendations (
                recommendation_id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                signal_key TEXT NOT NULL,
                type TEXT NOT NULL,
                application_id TEXT,
                application_name TEXT,
                priority INTEGER,
                confidence_score INTEGER,
                title TEXT,
                description TEXT,
                recommended_action TEXT,
                expected_impact TEXT DEFAULT '',
                estimated_effort TEXT DEFAULT '',
                related_close_codes_json TEXT DEFAULT '[]',
                related_incident_numbers_json TEXT DEFAULT '[]',
                incident_count INTEGER DEFAULT 0,
                status TEXT NOT NULL,
                generated_at TEXT DEFAULT '',
                updated_at TEXT DEFAULT '',
                resolved_at TEXT DEFAULT '',
                notes TEXT DEFAULT '',
                root_cause_analysis TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_recommendations_scope ON incident_recommendations(scope, status);
            CREATE INDEX IF NOT EXISTS idx_recommendations_signal ON incident_recommendations(signal_key);

            CREATE TABLE IF NOT EXISTS departed_user_alerts (
                alert_id TEXT PRIMARY KEY,
                normalized_key TEXT NOT NULL,
                unmatched_value TEXT NOT NULL,
                value_type TEXT NOT NULL,
                application_id TEXT NOT NULL,
                application_name TEXT DEFAULT '',
                role_type TEXT DEFAULT '',
                data_source TEXT DEFAULT '',
                status TEXT NOT NULL,
                detected_at TEXT DEFAULT '',
                resolved_by TEXT DEFAULT '',
                replacement_identity TEXT DEFAULT '',
                resolution_notes TEXT DEFAULT '',
                resolved_at TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_alerts_status ON departed_user_alerts(status);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_unresolved_key
                ON departed_user_alerts(normalized_key) WHERE status IN ('Open', 'Acknowledged');

            CREATE TABLE IF NOT EXISTS health_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                application_id TEXT NOT NULL,
                as_of TEXT NOT NULL,
                final_score INTEGER NOT NULL,
                category TEXT NOT NULL,
                breakdown_json TEXT DEFAULT '{}',
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_health_snapshots_app ON health_snapshots(application_id, id);

            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor TEXT,
                action TEXT,
                entity_type TEXT,
                entity_id TEXT,
                payload_json TEXT,
                previous_state_json TEXT,
                new_state_json TEXT,
                reason TEXT,
                request_id TEXT,
                prev_hash TEXT,
                event_hash TEXT,
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_activity_entity ON activity_log(entity_type, entity_id);
            """
        )
        conn.commit()
    finally:
        conn.close()


# --- audit chain -----------------------------------------------------------


def _hash_payload(payload: Dict[str, object], prev_hash: str) -> str:
    msg = json.dumps(payload, sort_keys=True, ensure_ascii=True).encode("utf-8")
    return hashlib.sha256(prev_hash.encode("utf-8") + b"|" + msg).hexdigest()


def _append_activity(
    conn: sqlite3.Connection,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Dict[str, object],
    previous_state: Dict[str, object],
    new_state: Dict[str, object],
    reason: str,
    request_id: str | None = None,
) -> None:
    created_at = to_iso(utc_now())
    if request_id is None:
        request_id = str(uuid.uuid4())

    prev_hash_row = conn.execute("SELECT event_hash FROM activity_log ORDER BY id DESC LIMIT 1").fetchone()
    prev_hash_candidate = str(prev_hash_row[0]) if prev_hash_row and prev_hash_row[0] else ""
    prev_hash = prev_hash_candidate if len(prev_hash_candidate) == 64 else GENESIS_HASH

    canonical_payload = {
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
        "previous_state": previous_state,
        "new_state": new_state,
        "reason": reason,
        "request_id": request_id,
        "created_at": created_at,
    }
    event_hash = _hash_payload(canonical_payload, prev_hash)

    conn.execute(
        """
        INSERT INTO activity_log (
            actor, action, entity_type, entity_id,
            payload_json, previous_state_json, new_state_json,
            reason, request_id, prev_hash, event_hash, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            actor,
            action,
            entity_type,
            entity_id,
            json.dumps(payload, ensure_ascii=True, sort_keys=True),
            json.dumps(previous_state, ensure_ascii=True, sort_keys=True),
            json.dumps(new_state, ensure_ascii=True, sort_keys=True),
            reason,
            request_id,
            prev_hash,
            event_hash,
            created_at,
        ),
    )


def verify_audit_chain(path: Path = PORTFOLIO_DB_PATH, limit: int = 5000) -> Dict[str, object]:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        rows = conn.execute(
            """
            SELECT id, actor, action, entity_type, entity_id,
                   payload_json, previous_state_json, new_state_json, reason,
                   request_id, prev_hash, event_hash, created_at
            FROM activity_log
            ORDER BY id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()

    prev_hash = GENESIS_HASH
    checked = 0
    for row in rows:
        payload = {
            "actor": row["actor"],
            "action": row["action"],
            "entity_type": row["entity_type"],
            "entity_id": row["entity_id"],
            "payload": json.loads(row["payload_json"] or "{}"),
            "previous_state": json.loads(row["previous_state_json"] or "{}"),
            "new_state": json.loads(row["new_state_json"] or "{}"),
            "reason": row["reason"],
            "request_id": row["request_id"],
            "created_at": row["created_at"],
        }
        row_prev_hash = str(row["prev_hash"] or "")
        if row_prev_hash != prev_hash:
            return {
                "valid": False,
                "checked": checked,
                "failed_id": int(row["id"]),
                "reason": "prev_hash_mismatch",
                "latest_hash": prev_hash,
            }
        expected_hash = _hash_payload(payload, prev_hash)
        if str(row["event_hash"] or "") != expected_hash:
            return {
                "valid": False,
                "checked": checked,
                "failed_id": int(row["id"]),
                "reason": "event_hash_mismatch",
                "latest_hash": prev_hash,
            }
        prev_hash = expected_hash
        checked += 1

    return {"valid": True, "checked": checked, "latest_hash": prev_hash}


def list_recent_activity(path: Path = PORTFOLIO_DB_PATH, limit: int = 100) -> List[Dict[str, object]]:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        rows = conn.execute(
            """
            SELECT id, actor, action, entity_type, entity_id, payload_json, reason, created_at
            FROM activity_log
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    finally:
        conn.close()
    out: List[Dict[str, object]] = []
    for row in rows:
        item = dict(row)
        item["payload"] = json.loads(item.pop("payload_json") or "{}")
        out.append(item)
    return out


# --- import records --------------------------------------------------------


def _row_to_import_record(row: sqlite3.Row) -> ImportRecord:
    return ImportRecord(
        record_id=str(row["record_id"]),
        data_source=str(row["data_source"]),
        fingerprint=str(row["fingerprint"]),
        file_name=str(row["file_name"] or ""),
        file_size_bytes=int(row["file_size_bytes"] or 0),
        record_count=int(row["record_count"] or 0),
        new_records=int(row["new_records"] or 0),
        updated_records=int(row["updated_records"] or 0),
        skipped_records=int(row["skipped_records"] or 0),
        error_records=int(row["error_records"] or 0),
        imported_at=parse_iso_datetime(row["imported_at"]),
        imported_by=str(row["imported_by"] or ""),
        notes=str(row["notes"] or ""),
    )


def find_import_record(data_source: str, fingerprint: str, path: Path = PORTFOLIO_DB_PATH) -> ImportRecord | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute(
            "SELECT * FROM import_records WHERE data_source = ? AND fingerprint = ?",
            (data_source, fingerprint),
        ).fetchone()
    finally:
        conn.close()
    return _row_to_import_record(row) if row else None


def get_import_record(record_id: str, path: Path = PORTFOLIO_DB_PATH) -> ImportRecord | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute("SELECT * FROM import_records WHERE record_id = ?", (record_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_import_record(row) if row else None


def list_import_records(
    data_source: str | None = None, path: Path = PORTFOLIO_DB_PATH, limit: int = 100
) -> List[ImportRecord]:
    init_portfolio_store(path)
    query = "SELECT * FROM import_records"
    params: List[object] = []
    if data_source:
        query += " WHERE data_source = ?"
        params.append(data_source)
    query += " ORDER BY imported_at DESC LIMIT ?"
    params.append(limit)
    conn = _connect(path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_import_record(row) for row in rows]


def save_import_record(record: ImportRecord, path: Path = PORTFOLIO_DB_PATH) -> bool:
    """Insert ``record``; returns False when the fingerprint is already recorded."""
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        cur = conn.execute(
            """
            INSERT INTO import_records (
                record_id, data_source, fingerprint, file_name, file_size_bytes, record_count,
                new_records, updated_records, skipped_records, error_records,
                imported_at, imported_by, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(data_source, fingerprint) DO NOTHING
            """,
            (
                record.record_id,
                record.data_source,
                record.fingerprint,
                record.file_name,
                record.file_size_bytes,
                record.record_count,
                record.new_records,
                record.updated_records,
                record.skipped_records,
                record.error_records,
                to_iso(record.imported_at),
                record.imported_by,
                record.notes,
            ),
        )
        inserted = cur.rowcount == 1
        if inserted:
            _append_activity(
                conn=conn,
                actor=record.imported_by or "system",
                action="import_recorded",
                entity_type="import_record",
                entity_id=record.record_id,
                payload={"data_source": record.data_source, "fingerprint": record.fingerprint},
                previous_state={},
                new_state=record.counters(),
                reason="batch import",
            )
        conn.commit()
    finally:
        conn.close()
    return inserted


# --- import jobs -----------------------------------------------------------


def _row_to_import_job(row: sqlite3.Row) -> ImportJob:
    return ImportJob(
        job_id=str(row["job_id"]),
        data_source=str(row["data_source"]),
        status=ImportJobStatus.parse(row["status"]),
        started_at=parse_iso_datetime(row["started_at"]),
        finished_at=parse_iso_datetime(row["finished_at"]),
        actor=str(row["actor"] or ""),
        new_records=int(row["new_records"] or 0),
        updated_records=int(row["updated_records"] or 0),
        skipped_records=int(row["skipped_records"] or 0),
        error_records=int(row["error_records"] or 0),
        error_text=str(row["error_text"] or ""),
    )


def begin_import_job(
    data_source: str,
    actor: str = "system",
    path: Path = PORTFOLIO_DB_PATH,
    stale_after_sec: float | None = None,
    now: datetime | None = None,
) -> ImportJob:
    """Claim the per-source import slot or raise ``ImportInProgressError``."""
    source = str(data_source or "").strip()
    if not source:
        raise ValueError("data_source is required")
    init_portfolio_store(path)
    started = now or utc_now()
    stale_after = float(stale_after_sec) if stale_after_sec is not None else import_stale_seconds()
    stale_cutoff = to_iso(started - timedelta(seconds=stale_after))
    job_id = f"job-{uuid.uuid4().hex}"

    conn = _connect(path)
    try:
        reclaimed = conn.execute(
            """
            UPDATE import_jobs
            SET status = ?, finished_at = ?, error_text = 'abandoned: exceeded stale window'
            WHERE data_source = ? AND status = ? AND started_at < ?
            """,
            (ImportJobStatus.ABANDONED.value, to_iso(started), source, ImportJobStatus.RUNNING.value, stale_cutoff),
        ).rowcount
        if reclaimed:
            logger.warning("reclaimed %s stale import job(s) for %s", reclaimed, source)
        try:
            conn.execute(
                "INSERT INTO import_jobs (job_id, data_source, status, started_at, actor) VALUES (?, ?, ?, ?, ?)",
                (job_id, source, ImportJobStatus.RUNNING.value, to_iso(started), actor),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            running = conn.execute(
                "SELECT job_id FROM import_jobs WHERE data_source = ? AND status = ?",
                (source, ImportJobStatus.RUNNING.value),
            ).fetchone()
            logger.warning("import for %s rejected: another job is running", source)
            raise ImportInProgressError(source, str(running["job_id"]) if running else "") from None
        _append_activity(
            conn=conn,
            actor=actor,
            action="import_job_started",
            entity_type="import_job",
            entity_id=job_id,
            payload={"data_source": source, "reclaimed": int(reclaimed)},
            previous_state={},
            new_state={"status": ImportJobStatus.RUNNING.value},
            reason="batch import",
        )
        conn.commit()
    finally:
        conn.close()
    return ImportJob(job_id=job_id, data_source=source, status=ImportJobStatus.RUNNING, started_at=started, actor=actor)


def finish_import_job(
    job_id: str,
    status: ImportJobStatus | str,
    path: Path = PORTFOLIO_DB_PATH,
    counters: Optional[Dict[str, int]] = None,
    error_text: str = "",
) -> ImportJob:
    final_status = ImportJobStatus.parse(status)
    if final_status not in FINISHED_JOB_STATUSES:
        raise ValueError(f"import job cannot finish as {final_status.value}")
    counts = counters or {}
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        prev = conn.execute("SELECT * FROM import_jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not prev:
            raise ValueError(f"job_id not found: {job_id}")
        if ImportJobStatus.parse(prev["status"]) != ImportJobStatus.RUNNING:
            raise ValueError(f"import job {job_id} is not running: {prev['status']}")
        conn.execute(
            """
            UPDATE import_jobs
            SET status = ?, finished_at = ?, new_records = ?, updated_records = ?,
                skipped_records = ?, error_records = ?, error_text = ?
            WHERE job_id = ?
            """,
            (
                final_status.value,
                to_iso(utc_now()),
                int(counts.get("new", 0)),
                int(counts.get("updated", 0)),
                int(counts.get("skipped", 0)),
                int(counts.get("errors", 0)),
                str(error_text or "")[:2000],
                job_id,
            ),
        )
        curr = conn.execute("SELECT * FROM import_jobs WHERE job_id = ?", (job_id,)).fetchone()
        _append_activity(
            conn=conn,
            actor=str(prev["actor"] or "system"),
            action="import_job_finished",
            entity_type="import_job",
            entity_id=job_id,
            payload={"counters": {k: int(v) for k, v in counts.items()}},
            previous_state={"status": str(prev["status"])},
            new_state={"status": final_status.value},
            reason=str(error_text or "")[:200],
        )
        conn.commit()
    finally:
        conn.close()
    return _row_to_import_job(curr)


def get_import_job(job_id: str, path: Path = PORTFOLIO_DB_PATH) -> ImportJob | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute("SELECT * FROM import_jobs WHERE job_id = ?", (job_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_import_job(row) if row else None


def list_import_jobs(
    data_source: str | None = None,
    status: ImportJobStatus | str | None = None,
    path: Path = PORTFOLIO_DB_PATH,
    limit: int = 100,
) -> List[ImportJob]:
    init_portfolio_store(path)
    clauses: List[str] = []
    params: List[object] = []
    if data_source:
        clauses.append("data_source = ?")
        params.append(data_source)
    if status is not None:
        clauses.append("status = ?")
        params.append(ImportJobStatus.parse(status).value)
    query = "SELECT * FROM import_jobs"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY started_at DESC LIMIT ?"
    params.append(limit)
    conn = _connect(path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_import_job(row) for row in rows]


# --- incidents -------------------------------------------------------------


def _row_to_linked_incident(row: sqlite3.Row) -> LinkedIncident:
    incident = IncidentRecord(
        incident_number=str(row["incident_number"]),
        configuration_item=str(row["configuration_item"] or ""),
        close_code=str(row["close_code"] or ""),
        state=str(row["state"] or ""),
        short_description=str(row["short_description"] or ""),
        description=str(row["description"] or ""),
        close_notes=str(row["close_notes"] or ""),
        opened_at=parse_iso_datetime(row["opened_at"]),
        closed_at=parse_iso_datetime(row["closed_at"]),
        imported_at=parse_iso_datetime(row["imported_at"]),
    )
    return LinkedIncident(
        incident=incident,
        link_status=LinkStatus.parse(row["link_status"]),
        application_id=row["application_id"],
        application_name=row["application_name"],
        link_notes=str(row["link_notes"] or ""),
        linked_by=str(row["linked_by"] or ""),
        linked_at=parse_iso_datetime(row["linked_at"]),
    )


def get_incident(incident_number: str, path: Path = PORTFOLIO_DB_PATH) -> LinkedIncident | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute("SELECT * FROM incidents WHERE incident_number = ?", (incident_number,)).fetchone()
    finally:
        conn.close()
    return _row_to_linked_incident(row) if row else None


def get_incidents(incident_numbers: Iterable[str], path: Path = PORTFOLIO_DB_PATH) -> Dict[str, LinkedIncident]:
    numbers = sorted({str(n) for n in incident_numbers if str(n or "").strip()})
    if not numbers:
        return {}
    init_portfolio_store(path)
    conn = _connect(path)
    out: Dict[str, LinkedIncident] = {}
    try:
        for start in range(0, len(numbers), 500):
            chunk = numbers[start : start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(f"SELECT * FROM incidents WHERE incident_number IN ({placeholders})", chunk).fetchall()
            for row in rows:
                item = _row_to_linked_incident(row)
                out[item.incident_number] = item
    finally:
        conn.close()
    return out


def list_incidents(
    application_id: str | None = None,
    link_status: LinkStatus | str | None = None,
    path: Path = PORTFOLIO_DB_PATH,
    limit: int | None = None,
) -> List[LinkedIncident]:
    init_portfolio_store(path)
    clauses: List[str] = []
    params: List[object] = []
    if application_id:
        clauses.append("application_id = ?")
        params.append(application_id)
    if link_status is not None:
        clauses.append("link_status = ?")
        params.append(LinkStatus.parse(link_status).value)
    query = "SELECT * FROM incidents"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY incident_number ASC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(int(limit))
    conn = _connect(path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_linked_incident(row) for row in rows]


INCIDENT_TICKET_COLUMNS = (
    "configuration_item",
    "close_code",
    "state",
    "short_description",
    "description",
    "close_notes",
    "opened_at",
    "closed_at",
    "imported_at",
)
INCIDENT_LINK_COLUMNS = ("link_status", "application_id", "application_name", "link_notes", "linked_by", "linked_at")


def _incident_upsert_sql() -> str:
    # ticket fields always refresh; a stored manual link is owned by the operator
    ticket = [f"{col} = excluded.{col}" for col in INCIDENT_TICKET_COLUMNS]
    link = [
        f"{col} = CASE WHEN incidents.link_status = '{LinkStatus.MANUALLY_LINKED.value}' "
        f"THEN incidents.{col} ELSE excluded.{col} END"
        for col in INCIDENT_LINK_COLUMNS
    ]
    columns = ("incident_number",) + INCIDENT_TICKET_COLUMNS + INCIDENT_LINK_COLUMNS
    return (
        f"INSERT INTO incidents ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT(incident_number) DO UPDATE SET {', '.join(ticket + link)}"
    )


def upsert_incidents(linked_incidents: Iterable[LinkedIncident], path: Path = PORTFOLIO_DB_PATH) -> Dict[str, int]:
    """Insert or refresh incidents; returns ``{"new": n, "updated": n}``.

    Rows already ManuallyLinked keep their link even when the incoming row
    carries an automatic one.
    """
    init_portfolio_store(path)
    counts = {"new": 0, "updated": 0}
    sql = _incident_upsert_sql()
    conn = _connect(path)
    try:
        _begin_write(conn)
        for item in linked_incidents:
            inc = item.incident
            exists = conn.execute(
                "SELECT 1 FROM incidents WHERE incident_number = ?", (inc.incident_number,)
            ).fetchone()
            conn.execute(
                sql,
                (
                    inc.incident_number,
                    inc.configuration_item,
                    inc.close_code,
                    inc.state,
                    inc.short_description,
                    inc.description,
                    inc.close_notes,
                    to_iso(inc.opened_at),
                    to_iso(inc.closed_at),
                    to_iso(inc.imported_at),
                    item.link_status.value,
                    item.application_id,
                    item.application_name,
                    item.link_notes,
                    item.linked_by,
                    to_iso(item.linked_at),
                ),
            )
            counts["updated" if exists else "new"] += 1
        conn.commit()
    finally:
        conn.close()
    return counts


def save_manual_link(linked: LinkedIncident, path: Path = PORTFOLIO_DB_PATH) -> None:
    if linked.link_status != LinkStatus.MANUALLY_LINKED:
        raise ValueError("save_manual_link expects a ManuallyLinked incident")
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        _begin_write(conn)
        row = conn.execute("SELECT * FROM incidents WHERE incident_number = ?", (linked.incident_number,)).fetchone()
        if not row:
            raise ValueError(f"incident_number not found: {linked.incident_number}")
        prev = _row_to_linked_incident(row)
        conn.execute(
            """
            UPDATE incidents
            SET link_status = ?, application_id = ?, application_name = ?, link_notes = ?, linked_by = ?, linked_at = ?
            WHERE incident_number = ?
            """,
            (
                linked.link_status.value,
                linked.application_id,
                linked.application_name,
                linked.link_notes,
                linked.linked_by,
                to_iso(linked.linked_at),
                linked.incident_number,
            ),
        )
        _append_activity(
            conn=conn,
            actor=linked.linked_by,
            action="incident_manual_link",
            entity_type="incident",
            entity_id=linked.incident_number,
            payload={"application_id": linked.application_id},
            previous_state={"link_status": prev.link_status.value, "application_id": prev.application_id},
            new_state={"link_status": linked.link_status.value, "application_id": linked.application_id},
            reason=linked.link_notes,
        )
        conn.commit()
    finally:
        conn.close()


# --- recommendations -------------------------------------------------------


def _row_to_recommendation(row: sqlite3.Row) -> IncidentRecommendation:
    return IncidentRecommendation(
        recommendation_id=str(row["recommendation_id"]),
        scope=str(row["scope"]),
        signal_key=str(row["signal_key"]),
        type=RecommendationType.parse(row["type"]),
        title=str(row["title"] or ""),
        description=str(row["description"] or ""),
        recommended_action=str(row["recommended_action"] or ""),
        application_id=row["application_id"],
        application_name=row["application_name"],
        priority=int(row["priority"] or 3),
        confidence_score=int(row["confidence_score"] or 0),
        expected_impact=str(row["expected_impact"] or ""),
        estimated_effort=str(row["estimated_effort"] or ""),
        related_close_codes=tuple(json.loads(row["related_close_codes_json"] or "[]")),
        related_incident_numbers=tuple(json.loads(row["related_incident_numbers_json"] or "[]")),
        incident_count=int(row["incident_count"] or 0),
        status=RecommendationStatus.parse(row["status"]),
        generated_at=parse_iso_datetime(row["generated_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
        resolved_at=parse_iso_datetime(row["resolved_at"]),
        notes=str(row["notes"] or ""),
        root_cause_analysis=str(row["root_cause_analysis"] or ""),
    )


RECOMMENDATION_COLUMNS = (
    "recommendation_id",
    "scope",
    "signal_key",
    "type",
    "application_id",
    "application_name",
    "priority",
    "confidence_score",
    "title",
    "description",
    "recommended_action",
    "expected_impact",
    "estimated_effort",
    "related_close_codes_json",
    "related_incident_numbers_json",
    "incident_count",
    "status",
    "generated_at",
    "updated_at",
    "resolved_at",
    "notes",
    "root_cause_analysis",
)
# refreshed by analysis; status, notes and resolution belong to operators
RECOMMENDATION_DERIVED_COLUMNS = (
    "priority",
    "confidence_score",
    "title",
    "description",
    "recommended_action",
    "expected_impact",
    "estimated_effort",
    "related_close_codes_json",
    "related_incident_numbers_json",
    "incident_count",
    "updated_at",
    "root_cause_analysis",
)
OPEN_RECOMMENDATION_STATUSES = (RecommendationStatus.ACTIVE, RecommendationStatus.IN_PROGRESS)


def _recommendation_params(rec: IncidentRecommendation) -> tuple:
    return (
        rec.recommendation_id,
        rec.scope,
        rec.signal_key,
        rec.type.value,
        rec.application_id,
        rec.application_name,
        int(rec.priority),
        int(rec.confidence_score),
        rec.title,
        rec.description,
        rec.recommended_action,
        rec.expected_impact,
        rec.estimated_effort,
        json.dumps(list(rec.related_close_codes), ensure_ascii=True),
        json.dumps(list(rec.related_incident_numbers), ensure_ascii=True),
        int(rec.incident_count),
        rec.status.value,
        to_iso(rec.generated_at),
        to_iso(rec.updated_at),
        to_iso(rec.resolved_at),
        rec.notes,
        rec.root_cause_analysis,
    )


def _recommendation_upsert_sql() -> str:
    active = RecommendationStatus.ACTIVE.value
    expired = RecommendationStatus.EXPIRED.value
    # expiry only lands on a row that is still Active in storage
    expiring = f"excluded.status = '{expired}' AND incident_recommendations.status = '{active}'"
    assignments = [f"{col} = excluded.{col}" for col in RECOMMENDATION_DERIVED_COLUMNS]
    assignments.append(f"status = CASE WHEN {expiring} THEN excluded.status ELSE incident_recommendations.status END")
    assignments.append(f"notes = CASE WHEN {expiring} THEN excluded.notes ELSE incident_recommendations.notes END")
    open_statuses = ", ".join(f"'{status.value}'" for status in OPEN_RECOMMENDATION_STATUSES)
    return (
        f"INSERT INTO incident_recommendations ({', '.join(RECOMMENDATION_COLUMNS)}) "
        f"VALUES ({', '.join('?' for _ in RECOMMENDATION_COLUMNS)}) "
        f"ON CONFLICT(recommendation_id) DO UPDATE SET {', '.join(assignments)} "
        f"WHERE incident_recommendations.status IN ({open_statuses})"
    )


def save_recommendations(
    recommendations: Iterable[IncidentRecommendation], actor: str = "system", path: Path = PORTFOLIO_DB_PATH
) -> int:
    """Persist an analysis pass; returns the number of rows written.

    Rows an operator has already closed are left untouched, and an analysis
    snapshot never moves a stored status except Active to Expired.
    """
    init_portfolio_store(path)
    saved = 0
    sql = _recommendation_upsert_sql()
    conn = _connect(path)
    try:
        _begin_write(conn)
        for rec in recommendations:
            prev = conn.execute(
                "SELECT status FROM incident_recommendations WHERE recommendation_id = ?", (rec.recommendation_id,)
            ).fetchone()
            written = conn.execute(sql, _recommendation_params(rec)).rowcount
            if written != 1:
                logger.info("recommendation %s left as stored by its operator", rec.recommendation_id)
                continue
            prev_status = str(prev["status"]) if prev else ""
            curr_status = str(
                conn.execute(
                    "SELECT status FROM incident_recommendations WHERE recommendation_id = ?", (rec.recommendation_id,)
                ).fetchone()["status"]
            )
            if prev_status != curr_status:
                _append_activity(
                    conn=conn,
                    actor=actor,
                    action="recommendation_saved",
                    entity_type="recommendation",
                    entity_id=rec.recommendation_id,
                    payload={"signal_key": rec.signal_key, "incident_count": rec.incident_count},
                    previous_state={"status": prev_status} if prev else {},
                    new_state={"status": curr_status},
                    reason="incident analysis",
                )
            saved += 1
        conn.commit()
    finally:
        conn.close()
    return saved


def get_recommendation(recommendation_id: str, path: Path = PORTFOLIO_DB_PATH) -> IncidentRecommendation | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute(
            "SELECT * FROM incident_recommendations WHERE recommendation_id = ?", (recommendation_id,)
        ).fetchone()
    finally:
        conn.close()
    return _row_to_recommendation(row) if row else None


def list_recommendations(
    scope: str | None = None,
    status: RecommendationStatus | str | None = None,
    application_id: str | None = None,
    path: Path = PORTFOLIO_DB_PATH,
    limit: int | None = None,
) -> List[IncidentRecommendation]:
    init_portfolio_store(path)
    clauses: List[str] = []
    params: List[object] = []
    if scope:
        clauses.append("scope = ?")
        params.append(scope)
    if status is not None:
        clauses.append("status = ?")
        params.append(RecommendationStatus.parse(status).value)
    if application_id:
        clauses.append("application_id = ?")
        params.append(application_id)
    query = "SELECT * FROM incident_recommendations"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY priority ASC, confidence_score DESC, recommendation_id ASC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(int(limit))
    conn = _connect(path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_recommendation(row) for row in rows]


def update_recommendation_status(
    recommendation_id: str,
    status: RecommendationStatus | str,
    actor: str,
    notes: str = "",
    path: Path = PORTFOLIO_DB_PATH,
) -> IncidentRecommendation:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        _begin_write(conn)
        row = conn.execute(
            "SELECT * FROM incident_recommendations WHERE recommendation_id = ?", (recommendation_id,)
        ).fetchone()
        if not row:
            raise ValueError(f"recommendation_id not found: {recommendation_id}")
        prev = _row_to_recommendation(row)
        curr = transition_recommendation(prev, status, as_of=utc_now(), notes=notes)
        changed = conn.execute(
            """
            UPDATE incident_recommendations
            SET status = ?, updated_at = ?, resolved_at = ?, notes = ?
            WHERE recommendation_id = ? AND status = ?
            """,
            (
                curr.status.value,
                to_iso(curr.updated_at),
                to_iso(curr.resolved_at),
                curr.notes,
                recommendation_id,
                prev.status.value,
            ),
        ).rowcount
        if changed != 1:
            raise ValueError(f"recommendation {recommendation_id} changed while updating; reload and retry")
        _append_activity(
            conn=conn,
            actor=actor,
            action="recommendation_status",
            entity_type="recommendation",
            entity_id=recommendation_id,
            payload={"status": curr.status.value, "notes": notes},
            previous_state={"status": prev.status.value},
            new_state={"status": curr.status.value},
            reason="operator action",
        )
        conn.commit()
    finally:
        conn.close()
    return curr


# --- departed user alerts --------------------------------------------------


def _row_to_alert(row: sqlite3.Row) -> DepartedUserAlert:
    return DepartedUserAlert(
        alert_id=str(row["alert_id"]),
        unmatched_value=str(row["unmatched_value"]),
        value_type=CandidateType.parse(row["value_type"]),
        application_id=str(row["application_id"]),
        application_name=str(row["application_name"] or ""),
        role_type=str(row["role_type"] or ""),
        data_source=str(row["data_source"] or ""),
        status=AlertStatus.parse(row["status"]),
        detected_at=parse_iso_datetime(row["detected_at"]),
        resolved_by=str(row["resolved_by"] or ""),
        replacement_identity=str(row["replacement_identity"] or ""),
        resolution_notes=str(row["resolution_notes"] or ""),
        resolved_at=parse_iso_datetime(row["resolved_at"]),
    )


def alert_storage_key(alert: DepartedUserAlert) -> str:
    return "|".join(alert_key(alert.unmatched_value, alert.application_id, alert.role_type))


def _insert_alert(conn: sqlite3.Connection, alert: DepartedUserAlert) -> bool:
    # the partial unique index keeps one Open/Acknowledged alert per key
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO departed_user_alerts (
            alert_id, normalized_key, unmatched_value, value_type, application_id, application_name, role_type,
            data_source, status, detected_at, resolved_by, replacement_identity, resolution_notes, resolved_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            alert.alert_id,
            alert_storage_key(alert),
            alert.unmatched_value,
            alert.value_type.value,
            alert.application_id,
            alert.application_name,
            alert.role_type,
            alert.data_source,
            alert.status.value,
            to_iso(alert.detected_at),
            alert.resolved_by,
            alert.replacement_identity,
            alert.resolution_notes,
            to_iso(alert.resolved_at),
        ),
    )
    return cur.rowcount == 1


def save_alerts(alerts: Iterable[DepartedUserAlert], actor: str = "system", path: Path = PORTFOLIO_DB_PATH) -> int:
    """Insert new alerts; returns how many were stored.

    An alert whose key already has an unresolved row is dropped, so scans
    started from the same snapshot cannot double up.
    """
    init_portfolio_store(path)
    saved = 0
    conn = _connect(path)
    try:
        _begin_write(conn)
        for alert in alerts:
            if not _insert_alert(conn, alert):
                logger.info(
                    "alert for %s on %s already open; not raised again", alert.unmatched_value, alert.application_id
                )
                continue
            _append_activity(
                conn=conn,
                actor=actor,
                action="alert_raised",
                entity_type="departed_user_alert",
                entity_id=alert.alert_id,
                payload={"application_id": alert.application_id, "role_type": alert.role_type},
                previous_state={},
                new_state={"status": alert.status.value},
                reason="departed user scan",
            )
            saved += 1
        conn.commit()
    finally:
        conn.close()
    return saved


def get_alert(alert_id: str, path: Path = PORTFOLIO_DB_PATH) -> DepartedUserAlert | None:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        row = conn.execute("SELECT * FROM departed_user_alerts WHERE alert_id = ?", (alert_id,)).fetchone()
    finally:
        conn.close()
    return _row_to_alert(row) if row else None


def list_alerts(
    status: AlertStatus | str | None = None,
    application_id: str | None = None,
    path: Path = PORTFOLIO_DB_PATH,
    unresolved_only: bool = False,
) -> List[DepartedUserAlert]:
    init_portfolio_store(path)
    clauses: List[str] = []
    params: List[object] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(AlertStatus.parse(status).value)
    if unresolved_only:
        clauses.append("status IN (?, ?)")
        params.extend([AlertStatus.OPEN.value, AlertStatus.ACKNOWLEDGED.value])
    if application_id:
        clauses.append("application_id = ?")
        params.append(application_id)
    query = "SELECT * FROM departed_user_alerts"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY detected_at ASC, alert_id ASC"
    conn = _connect(path)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_alert(row) for row in rows]


ALERT_ACTIONS = ("acknowledge", "resolve", "false_positive")


def apply_alert_action(
    alert_id: str,
    action: str,
    actor: str,
    replacement_identity: str = "",
    notes: str = "",
    path: Path = PORTFOLIO_DB_PATH,
) -> DepartedUserAlert:
    normalized = str(action or "").strip().lower().replace("-", "_")
    if normalized not in ALERT_ACTIONS:
        raise ValueError(f"invalid alert action: {action}. supported values: {', '.join(ALERT_ACTIONS)}")
    init_portfolio_store(path)
    now = utc_now()
    conn = _connect(path)
    try:
        _begin_write(conn)
        row = conn.execute("SELECT * FROM departed_user_alerts WHERE alert_id = ?", (alert_id,)).fetchone()
        if not row:
            raise ValueError(f"alert_id not found: {alert_id}")
        prev = _row_to_alert(row)
        if normalized == "acknowledge":
            curr = acknowledge_alert(prev, actor, as_of=now)
        elif normalized == "resolve":
            curr = resolve_alert(prev, actor, as_of=now, replacement_identity=replacement_identity, notes=notes)
        else:
            curr = mark_false_positive(prev, actor, as_of=now, notes=notes)
        changed = conn.execute(
            """
            UPDATE departed_user_alerts
            SET status = ?, resolved_by = ?, replacement_identity = ?, resolution_notes = ?, resolved_at = ?
            WHERE alert_id = ? AND status = ?
            """,
            (
                curr.status.value,
                curr.resolved_by,
                curr.replacement_identity,
                curr.resolution_notes,
                to_iso(curr.resolved_at),
                alert_id,
                prev.status.value,
            ),
        ).rowcount
        if changed != 1:
            raise ValueError(f"alert {alert_id} changed while updating; reload and retry")
        _append_activity(
            conn=conn,
            actor=actor,
            action=f"alert_{normalized}",
            entity_type="departed_user_alert",
            entity_id=alert_id,
            payload={"replacement_identity": curr.replacement_identity, "notes": notes},
            previous_state={"status": prev.status.value},
            new_state={"status": curr.status.value},
            reason="operator action",
        )
        conn.commit()
    finally:
        conn.close()
    return curr


# --- health snapshots ------------------------------------------------------


def save_health_snapshot(breakdown: HealthScoreBreakdown, path: Path = PORTFOLIO_DB_PATH) -> int:
    init_portfolio_store(path)
    payload = breakdown.to_dict()
    conn = _connect(path)
    try:
        cur = conn.execute(
            """
            INSERT INTO health_snapshots (application_id, as_of, final_score, category, breakdown_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                breakdown.application_id,
                to_iso(breakdown.as_of),
                breakdown.final_score,
                breakdown.category.value,
                json.dumps(payload, ensure_ascii=True, sort_keys=True),
                to_iso(utc_now()),
            ),
        )
        snapshot_id = int(cur.lastrowid)
        conn.commit()
    finally:
        conn.close()
    return snapshot_id


def latest_health_snapshots(path: Path = PORTFOLIO_DB_PATH) -> List[Dict[str, object]]:
    init_portfolio_store(path)
    conn = _connect(path)
    try:
        rows = conn.execute(
            """
            SELECT s.id, s.application_id, s.as_of, s.final_score, s.category, s.breakdown_json
            FROM health_snapshots s
            JOIN (
                SELECT application_id, MAX(id) AS max_id FROM health_snapshots GROUP BY application_id
            ) latest ON latest.max_id = s.id
            ORDER BY s.application_id ASC
            """
        ).fetchall()
    finally:
        conn.close()
    out: List[Dict[str, object]] = []
    for row in rows:
        out.append(
            {
                "snapshot_id": int(row["id"]),
                "application_id": str(row["application_id"]),
                "as_of": str(row["as_of"]),
                "final_score": int(row["final_score"]),
                "category": HealthCategory.parse(row["category"]).value,
                "breakdown": json.loads(row["breakdown_json"] or "{}"),
            }
        )
    return out
