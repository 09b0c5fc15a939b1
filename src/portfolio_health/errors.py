from __future__ import annotations

from typing import Dict, Optional


class PortfolioHealthError(Exception):
    """Base exception for portfolio health engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class UnknownValueError(PortfolioHealthError, ValueError):
    """A persisted enumeration value is not one of the known variants."""

    def __init__(self, enum_name: str, value: object, supported: list[str]):
        super().__init__(
            f"invalid {enum_name}: {value!r}",
            details={"supported": ", ".join(supported)},
        )
        self.enum_name = enum_name
        self.value = value


class InvalidTransitionError(PortfolioHealthError, ValueError):
    def __init__(self, entity: str, current: str, requested: str, allowed: list[str]):
        allowed_labels = ", ".join(allowed) if allowed else "(none)"
        super().__init__(f"invalid {entity} transition {current} -> {requested}; allowed: {allowed_labels}")
        self.current = current
        self.requested = requested


class RecordValidationError(PortfolioHealthError, ValueError):
    """A single ingested row is malformed; the batch counts it and moves on."""

    def __init__(self, message: str, row_index: int | None = None):
        details: Dict[str, object] = {}
        if row_index is not None:
            details["row"] = row_index
        super().__init__(message, details=details)
        self.row_index = row_index


class ImportInProgressError(PortfolioHealthError):
    """Another import for the same data source is still running."""

    def __init__(self, data_source: str, running_job_id: str = ""):
        super().__init__(
            f"import already running for data source: {data_source}",
            details={"job_id": running_job_id} if running_job_id else None,
        )
        self.data_source = data_source
        self.running_job_id = running_job_id
