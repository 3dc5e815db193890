"""Durable content record store: one JSON document per content hash."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import re
import tempfile

from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.repositories.base import ContentRecord, ContentRecordStore

logger = logging.getLogger(__name__)

_HASH_PATTERN = re.compile(r"^[0-9a-f]{16,128}$")


class JsonFileContentStore(ContentRecordStore):
    def __init__(self, root: Path) -> None:
        super().__init__()
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, content_hash: str) -> Path:
        if not _HASH_PATTERN.match(content_hash):
            raise ValueError("content hash must be lowercase hex")
        return self._root / f"{content_hash}.json"

    def _load(self, content_hash: str) -> ContentRecord | None:
        path = self._path_for(content_hash)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return ContentRecord(
                content_hash=payload["content_hash"],
                file_name=payload.get("file_name", ""),
                file_path=payload.get("file_path", ""),
                remote_job_id=payload.get("remote_job_id", ""),
                output_path=payload.get("output_path", ""),
                status=payload.get("status", ""),
                verified=bool(payload.get("verified", False)),
                attempt_count=int(payload.get("attempt_count", 1)),
                last_attempt=datetime.fromisoformat(payload["last_attempt"]),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            # A corrupt record is treated as absent so the content is processed again.
            logger.warning(
                "content_store.unreadable hash=%s reason=%s",
                safe_log_identifier(content_hash, prefix="hash"),
                type(exc).__name__,
            )
            return None

    def _save(self, record: ContentRecord) -> None:
        path = self._path_for(record.content_hash)
        payload = asdict(record)
        payload["last_attempt"] = record.last_attempt.isoformat()
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
