# store.py
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

FieldValue = Union[str, list[str]]


class StoreError(Exception):
    """Backing file could not be read or written."""


# ============================================================
# Records
# ============================================================

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SubmissionFlags(_Frozen):
    is_suspicious: bool = Field(False, alias="isSuspicious")
    autofill_used: bool = Field(False, alias="autofillUsed")


class SubmissionRecord(_Frozen):
    id: str
    timestamp: datetime
    client_address: str = Field(alias="clientAddress")
    user_agent: Optional[str] = Field(None, alias="userAgent")
    research_metadata: dict[str, Any] = Field(default_factory=dict, alias="researchMetadata")
    form_fields: dict[str, FieldValue] = Field(default_factory=dict, alias="formFields")
    flags: SubmissionFlags = Field(default_factory=SubmissionFlags)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def generate_submission_id() -> str:
    """16 hex chars (8 random bytes)."""
    return secrets.token_hex(8)


# ============================================================
# Record store (single JSON array file)
# ============================================================

class RecordStore:
    """
    Append-only list of SubmissionRecord serialized as one JSON array.

    Every mutation is read-all / modify / rewrite-all, so the whole cycle runs
    under one lock. Writes go through a temp file + os.replace: a concurrent
    reader sees the old array or the new one, never half of it.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def initialize(self) -> None:
        with self._lock:
            if self.path.exists():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write([])
        logger.info(f"Record store initialized: {self.path}")

    # ---- raw I/O (callers hold the lock for read-modify-write) ----

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return "[]"
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Record store read failed ({self.path}): {e}")
            raise StoreError(f"cannot read {self.path}") from e

    def _read(self) -> list[SubmissionRecord]:
        text = self._read_text()
        try:
            raw = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as e:
            logger.warning(f"Record store is corrupt ({self.path}): {e}. Treating as empty")
            return []
        if not isinstance(raw, list):
            logger.warning(f"Record store is not a JSON array ({self.path}). Treating as empty")
            return []

        records: list[SubmissionRecord] = []
        for i, item in enumerate(raw):
            try:
                records.append(SubmissionRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid record #{i} in {self.path}: {e.error_count()} error(s)")
        return records

    def _write(self, records: list[SubmissionRecord]) -> None:
        payload = json.dumps([r.to_json() for r in records], indent=2, ensure_ascii=False)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error(f"Record store write failed ({self.path}): {e}")
            raise StoreError(f"cannot write {self.path}") from e

    # ---- public API ----

    def append(self, record: SubmissionRecord) -> SubmissionRecord:
        """Persist one record and return it as stored (id may be re-rolled on collision)."""
        with self._lock:
            records = self._read()
            taken = {r.id for r in records}
            while record.id in taken:
                logger.warning(f"Submission id collision on {record.id}, regenerating")
                record = record.model_copy(update={"id": generate_submission_id()})
            records.append(record)
            self._write(records)
        return record

    def load_all(self) -> list[SubmissionRecord]:
        return self._read()

    def read_raw(self) -> str:
        """Serialized store content, verbatim."""
        return self._read_text()

    def prune_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Drop records older than now - days. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)

        with self._lock:
            records = self._read()
            kept = [r for r in records if _as_aware(r.timestamp) >= cutoff]
            removed = len(records) - len(kept)
            if removed:
                self._write(kept)
        return removed


def _as_aware(ts: datetime) -> datetime:
    # Legacy entries may carry naive timestamps; read them as server-local time.
    return ts if ts.tzinfo is not None else ts.astimezone()
