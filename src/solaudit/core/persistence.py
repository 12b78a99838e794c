"""Audit record persistence.

Records are append-only: one file per audit id, created exclusively and
never rewritten.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

from ..models.review import AuditRecord, FailureRecord
from .errors import PersistenceFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class ReportStore(Protocol):
    async def save_record(self, record: AuditRecord) -> None: ...

    async def save_failure(self, record: FailureRecord) -> None: ...


class JsonArchiveStore:
    """Writes each record to <archive_dir>/<audit_id>.json."""

    def __init__(self, archive_dir: Union[str, Path]):
        self.archive_dir = Path(archive_dir)

    def path_for(self, audit_id: str) -> Path:
        return self.archive_dir / f"{audit_id}.json"

    def _write(self, audit_id: str, payload: dict) -> Path:
        path = self.path_for(audit_id)
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, ensure_ascii=False)
        except FileExistsError as e:
            raise PersistenceFailure(f"Record already exists for {audit_id}") from e
        except OSError as e:
            raise PersistenceFailure(f"Could not write {path}: {e}") from e
        logger.info("Stored audit record %s", path)
        return path

    async def save_record(self, record: AuditRecord) -> None:
        self._write(record.audit_id, record.model_dump(mode="json", by_alias=True))

    async def save_failure(self, record: FailureRecord) -> None:
        self._write(record.audit_id, record.model_dump(mode="json", by_alias=True))

    def load(self, audit_id: str) -> dict:
        return json.loads(self.path_for(audit_id).read_text(encoding="utf-8"))
