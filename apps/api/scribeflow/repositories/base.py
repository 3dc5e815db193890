"""Content record store interface with per-hash write serialisation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
import threading


@dataclass(slots=True, frozen=True)
class ContentRecord:
    content_hash: str
    file_name: str
    file_path: str
    remote_job_id: str
    output_path: str
    status: str
    verified: bool
    attempt_count: int
    last_attempt: datetime


class ContentRecordStore(ABC):
    """Keyed upsert store (content hash -> record).

    Writes for one hash are serialised; writes for different hashes proceed independently.
    """

    def __init__(self) -> None:
        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self.write_count = 0

    @abstractmethod
    def _load(self, content_hash: str) -> ContentRecord | None:
        """Return the stored record for ``content_hash`` or ``None``."""

    @abstractmethod
    def _save(self, record: ContentRecord) -> None:
        """Persist ``record`` replacing any previous value for its hash."""

    @contextmanager
    def _key_lock(self, content_hash: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(content_hash, threading.Lock())
        with lock:
            yield

    def get(self, content_hash: str) -> ContentRecord | None:
        with self._key_lock(content_hash):
            return self._load(content_hash)

    def upsert(
        self,
        content_hash: str,
        *,
        file_path: str,
        remote_job_id: str,
        output_path: str,
        status: str,
    ) -> ContentRecord:
        """Create or refresh the record; each registration counts as one more attempt."""
        now = datetime.now(UTC)
        with self._key_lock(content_hash):
            existing = self._load(content_hash)
            if existing is None:
                record = ContentRecord(
                    content_hash=content_hash,
                    file_name=Path(file_path).name,
                    file_path=file_path,
                    remote_job_id=remote_job_id,
                    output_path=output_path,
                    status=status,
                    verified=False,
                    attempt_count=1,
                    last_attempt=now,
                )
            else:
                record = replace(
                    existing,
                    file_name=Path(file_path).name,
                    file_path=file_path,
                    remote_job_id=remote_job_id or existing.remote_job_id,
                    output_path=output_path or existing.output_path,
                    status=status,
                    verified=False,
                    attempt_count=existing.attempt_count + 1,
                    last_attempt=now,
                )
            self._save(record)
            self.write_count += 1
            return record

    def update_status(
        self,
        content_hash: str,
        *,
        remote_job_id: str,
        status: str,
        verified: bool,
        output_path: str | None = None,
    ) -> ContentRecord | None:
        with self._key_lock(content_hash):
            existing = self._load(content_hash)
            if existing is None:
                return None
            record = replace(
                existing,
                remote_job_id=remote_job_id or existing.remote_job_id,
                output_path=output_path or existing.output_path,
                status=status,
                verified=verified,
                last_attempt=datetime.now(UTC),
            )
            self._save(record)
            self.write_count += 1
            return record


__all__ = ["ContentRecord", "ContentRecordStore"]
