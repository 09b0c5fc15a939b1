from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .models import ImportRecord, utc_now

logger = logging.getLogger(__name__)

MAX_RETAINED_ERRORS = 50

ImportLookup = Callable[[str, str], Optional[ImportRecord]]


def fingerprint_content(content: bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(bytes(content)).hexdigest()


@dataclass(frozen=True)
class ImportRegistration:
    data_source: str
    fingerprint: str
    is_duplicate: bool
    prior_record: Optional[ImportRecord] = None

    def to_dict(self) -> dict:
        payload = {
            "data_source": self.data_source,
            "fingerprint": self.fingerprint,
            "is_duplicate": self.is_duplicate,
        }
        if self.prior_record is not None:
            payload["prior_record_id"] = self.prior_record.record_id
            payload["prior_counters"] = self.prior_record.counters()
        return payload


def register_import(data_source: str, content: bytes, lookup: ImportLookup) -> ImportRegistration:
    """Check whether ``content`` was already imported for ``data_source``.

    Nothing is written here, so the call is safe to make speculatively. The
    caller persists the final ``ImportRecord`` after processing a new batch.
    """
    source = str(data_source or "").strip()
    if not source:
        raise ValueError("data_source is required")

    fingerprint = fingerprint_content(content)
    prior = lookup(source, fingerprint)
    if prior is not None:
        logger.info("duplicate import for %s (fingerprint=%s, prior=%s)", source, fingerprint[:12], prior.record_id)
        return ImportRegistration(data_source=source, fingerprint=fingerprint, is_duplicate=True, prior_record=prior)

    logger.debug("new import for %s (fingerprint=%s)", source, fingerprint[:12])
    return ImportRegistration(data_source=source, fingerprint=fingerprint, is_duplicate=False)


@dataclass
class ImportOutcome:
    """Mutable counters for one batch; ``to_record`` freezes them."""

    registration: ImportRegistration
    file_name: str = ""
    file_size_bytes: int = 0
    new_records: int = 0
    updated_records: int = 0
    skipped_records: int = 0
    error_records: int = 0
    errors: List[str] = field(default_factory=list)

    def add_new(self, count: int = 1) -> None:
        self.new_records += count

    def add_updated(self, count: int = 1) -> None:
        self.updated_records += count

    def add_skipped(self, count: int = 1) -> None:
        self.skipped_records += count

    def add_error(self, message: str) -> None:
        self.error_records += 1
        if len(self.errors) < MAX_RETAINED_ERRORS:
            self.errors.append(str(message))

    @property
    def record_count(self) -> int:
        return self.new_records + self.updated_records + self.skipped_records + self.error_records

    def to_record(self, imported_by: str = "system", imported_at: datetime | None = None) -> ImportRecord:
        if self.registration.is_duplicate:
            raise ValueError("duplicate imports are not recorded")
        notes = ""
        if self.errors:
            notes = "; ".join(self.errors[:5])
            if self.error_records > 5:
                notes += f" (+{self.error_records - 5} more)"
        return ImportRecord(
            record_id=str(uuid.uuid4()),
            data_source=self.registration.data_source,
            fingerprint=self.registration.fingerprint,
            file_name=self.file_name,
            file_size_bytes=int(self.file_size_bytes),
            record_count=self.record_count,
            new_records=self.new_records,
            updated_records=self.updated_records,
            skipped_records=self.skipped_records,
            error_records=self.error_records,
            imported_at=imported_at or utc_now(),
            imported_by=imported_by,
            notes=notes,
        )
