"""In-memory content record store used for local runs and tests."""

from __future__ import annotations

from scribeflow.repositories.base import ContentRecord, ContentRecordStore


class InMemoryContentStore(ContentRecordStore):
    """Simple, deterministic persistence layer for scaffolding and tests."""

    def __init__(self) -> None:
        super().__init__()
        self.records: dict[str, ContentRecord] = {}

    def _load(self, content_hash: str) -> ContentRecord | None:
        return self.records.get(content_hash)

    def _save(self, record: ContentRecord) -> None:
        self.records[record.content_hash] = record
