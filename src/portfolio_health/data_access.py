from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from .directory import DirectoryIndex
from .incident_linker import ApplicationCatalog
from .models import (
    Application,
    ApplicationSignals,
    DirectoryUser,
    DocumentationStatus,
    IncidentScoreDetails,
    LifecycleTask,
    RoleAssignment,
    SecurityFinding,
    Severity,
    UsageLevel,
    parse_iso_datetime,
)

ROLE_ASSIGNMENT_COLUMNS = ["application_id", "application_name", "role_type", "identity", "data_source"]


def _read_json(path: Path) -> Dict[str, object]:
    with path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object in {path}")
    return payload


def read_csv_rows(path: Path) -> Tuple[List[Dict[str, object]], bytes]:
    """Return the rows of a CSV export plus its raw bytes for fingerprinting."""
    content = path.read_bytes()
    if not content.strip():
        return [], content
    frame = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
    return frame.to_dict(orient="records"), content


def load_catalog(path: Path) -> ApplicationCatalog:
    payload = _read_json(path)
    applications = [
        Application(application_id=str(item["application_id"]), name=str(item.get("name", item["application_id"])))
        for item in payload.get("applications", [])
    ]
    return ApplicationCatalog(applications, aliases=dict(payload.get("aliases", {})))


def load_directory(path: Path) -> DirectoryIndex:
    payload = _read_json(path)
    users = []
    for item in payload.get("users", []):
        users.append(
            DirectoryUser(
                directory_id=str(item["directory_id"]),
                user_principal_name=str(item.get("user_principal_name", "")),
                display_name=str(item.get("display_name", "")),
                mail=str(item.get("mail", "")),
                given_name=str(item.get("given_name", "")),
                surname=str(item.get("surname", "")),
                employee_id=str(item.get("employee_id", "")),
                aliases=tuple(str(a) for a in item.get("aliases", [])),
            )
        )
    return DirectoryIndex(users, aliases=dict(payload.get("aliases", {})))


def load_role_assignments(path: Path, data_source: str = "") -> List[RoleAssignment]:
    frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = [col for col in ("application_id", "role_type", "identity") if col not in frame.columns]
    if missing:
        raise ValueError(f"role assignment file is missing columns: {', '.join(missing)}")
    for col in ROLE_ASSIGNMENT_COLUMNS:
        if col not in frame.columns:
            frame[col] = ""
    out: List[RoleAssignment] = []
    for row in frame[ROLE_ASSIGNMENT_COLUMNS].to_dict(orient="records"):
        out.append(
            RoleAssignment(
                application_id=str(row["application_id"]).strip(),
                application_name=str(row["application_name"]).strip(),
                role_type=str(row["role_type"]).strip(),
                identity=str(row["identity"]),
                data_source=str(row["data_source"]).strip() or data_source,
            )
        )
    return out


def _optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def load_application_signals(
    path: Path, incident_details: Optional[Mapping[str, IncidentScoreDetails]] = None
) -> List[ApplicationSignals]:
    payload = _read_json(path)
    details = dict(incident_details or {})
    out: List[ApplicationSignals] = []
    for item in payload.get("applications", []):
        app_id = str(item["application_id"])
        documentation = None
        if isinstance(item.get("documentation"), dict):
            docs = item["documentation"]
            documentation = DocumentationStatus(
                has_architecture_diagram=bool(docs.get("has_architecture_diagram", False)),
                has_system_documentation=bool(docs.get("has_system_documentation", False)),
                has_user_documentation=bool(docs.get("has_user_documentation", False)),
                has_support_documentation=bool(docs.get("has_support_documentation", False)),
            )
        tasks = None
        if isinstance(item.get("tasks"), list):
            parsed_tasks = []
            for task in item["tasks"]:
                due = parse_iso_datetime(task.get("due_date"))
                if due is None:
                    raise ValueError(f"task {task.get('task_id')} on {app_id} has no valid due_date")
                parsed_tasks.append(
                    LifecycleTask(
                        task_id=str(task.get("task_id", "")),
                        title=str(task.get("title", "")),
                        due_date=due,
                        completed_at=parse_iso_datetime(task.get("completed_at")),
                    )
                )
            tasks = tuple(parsed_tasks)
        findings = tuple(
            SecurityFinding(
                severity=Severity.parse(f.get("severity")),
                is_resolved=bool(f.get("is_resolved", False)),
                finding_id=str(f.get("finding_id", "")),
                title=str(f.get("title", "")),
            )
            for f in item.get("findings", [])
        )
        usage = item.get("usage_level")
        out.append(
            ApplicationSignals(
                application_id=app_id,
                name=str(item.get("name", app_id)),
                findings=findings,
                usage_level=UsageLevel.parse(usage) if usage not in (None, "") else None,
                last_activity_at=parse_iso_datetime(item.get("last_activity_at")),
                documentation=documentation,
                tasks=tasks,
                data_conflicts=_optional_int(item.get("data_conflicts")),
                incident_details=details.get(app_id),
            )
        )
    return out
