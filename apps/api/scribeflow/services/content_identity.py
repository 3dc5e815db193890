"""Content identity: hashing, dedup lookups and transcript verification."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.errors import InputError
from scribeflow.repositories.base import ContentRecord, ContentRecordStore
from scribeflow.schemas.job import JobPhase

logger = logging.getLogger(__name__)

_HASH_CHUNK_BYTES = 1024 * 1024
_MIN_TRANSCRIPT_BYTES = 100


class ContentIdentityService:
    """Identifies media by content so renamed or moved duplicates are not re-transcribed.

    Every method is synchronous and thread-safe; executors call them from worker threads.
    """

    def __init__(self, store: ContentRecordStore, transcripts_dir: Path) -> None:
        self._store = store
        self._transcripts_dir = Path(transcripts_dir)

    @property
    def store(self) -> ContentRecordStore:
        return self._store

    def hash(self, file_path: str) -> str:
        digest = hashlib.sha256()
        try:
            with open(file_path, "rb") as handle:
                for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
                    digest.update(chunk)
        except OSError as exc:
            raise InputError(f"Cannot read {Path(file_path).name}: {exc.strerror or exc}") from exc
        return digest.hexdigest()

    def is_already_processed(self, file_path: str, content_hash: str) -> bool:
        record = self._store.get(content_hash)
        if record is None:
            return False
        processed = record.verified and record.status == JobPhase.COMPLETED.value
        if not processed:
            logger.info(
                "identity.record_not_reusable hash=%s status=%s verified=%s",
                safe_log_identifier(content_hash, prefix="hash"),
                record.status,
                record.verified,
            )
        return processed

    def expected_output_path(self, file_path: str) -> str:
        source = Path(file_path).expanduser().resolve()
        path_digest = hashlib.sha256(str(source).encode("utf-8")).hexdigest()[:8]
        return str(self._transcripts_dir / f"{source.stem}_{path_digest}.json")

    def register(
        self,
        file_path: str,
        content_hash: str,
        remote_job_id: str,
        output_path: str,
        status: str,
    ) -> ContentRecord:
        record = self._store.upsert(
            content_hash,
            file_path=file_path,
            remote_job_id=remote_job_id,
            output_path=output_path,
            status=status,
        )
        logger.info(
            "identity.registered hash=%s file=%s status=%s",
            safe_log_identifier(content_hash, prefix="hash"),
            record.file_name,
            status,
        )
        return record

    def update_status(
        self,
        content_hash: str,
        remote_job_id: str,
        status: str,
        verified: bool,
        *,
        output_path: str | None = None,
    ) -> ContentRecord | None:
        record = self._store.update_status(
            content_hash,
            remote_job_id=remote_job_id,
            status=status,
            verified=verified,
            output_path=output_path,
        )
        if record is None:
            logger.warning(
                "identity.update_unknown hash=%s status=%s",
                safe_log_identifier(content_hash, prefix="hash"),
                status,
            )
        return record

    def verify_output(self, output_path: str) -> bool:
        """Return True when the transcript file is complete, not merely present."""
        path = Path(output_path)
        try:
            if not path.is_file():
                logger.warning("identity.verify_failed file=%s reason=missing", path.name)
                return False
            if path.stat().st_size < _MIN_TRANSCRIPT_BYTES:
                logger.warning("identity.verify_failed file=%s reason=too_small", path.name)
                return False
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("identity.verify_failed file=%s reason=%s", path.name, type(exc).__name__)
            return False

        if not isinstance(document, dict):
            logger.warning("identity.verify_failed file=%s reason=not_an_object", path.name)
            return False
        if document.get("status") != "completed":
            logger.warning("identity.verify_failed file=%s reason=status_%s", path.name, document.get("status"))
            return False
        text = document.get("text")
        if not isinstance(text, str) or not text.strip():
            logger.warning("identity.verify_failed file=%s reason=empty_text", path.name)
            return False
        words = document.get("words")
        if "utterances" not in document or not isinstance(words, list) or not words:
            logger.warning("identity.verify_failed file=%s reason=missing_segments", path.name)
            return False
        return True
