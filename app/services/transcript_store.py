from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class TranscriptStore(ABC):
    @abstractmethod
    def save(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        """Persist a transcript once per meeting.

        Returns the stored record and whether this call created it; a second
        save for the same meeting hands back the first record untouched.
        """
        raise NotImplementedError

    @abstractmethod
    def get_by_meeting_id(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryTranscriptStore(TranscriptStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records_by_meeting_id: dict[str, dict[str, Any]] = {}

    def save(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        meeting_id = str(record["meeting_id"])
        with self._lock:
            existing = self._records_by_meeting_id.get(meeting_id)
            if existing is not None:
                return dict(existing), False
            stored_record = _prepare_new_record(record)
            self._records_by_meeting_id[meeting_id] = stored_record
            return dict(stored_record), True

    def get_by_meeting_id(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records_by_meeting_id.get(meeting_id)
            return dict(record) if record else None


class MongoTranscriptStore(TranscriptStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("meeting_id", 1)], unique=True)
        self._collection.create_index([("user_id", 1), ("created_at", -1)])

    def save(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        from pymongo.errors import DuplicateKeyError

        stored_record = _prepare_new_record(record)
        try:
            self._collection.insert_one(stored_record)
        except DuplicateKeyError:
            existing = self.get_by_meeting_id(str(stored_record["meeting_id"]))
            if not existing:
                raise
            return existing, False
        return dict(stored_record), True

    def get_by_meeting_id(self, meeting_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"meeting_id": meeting_id})


def build_transcript_document(
    *,
    meeting_id: str,
    user_id: str,
    content: str,
    word_count: int,
    source: str,
    speaker_segments: list[Mapping[str, Any]] | None = None,
    duration_seconds: int | None = None,
) -> dict[str, Any]:
    return {
        "meeting_id": meeting_id,
        "user_id": user_id,
        "content": content,
        "speaker_segments": [dict(segment) for segment in speaker_segments] if speaker_segments else None,
        "word_count": word_count,
        "duration_seconds": duration_seconds,
        "source": source,
    }


def _prepare_new_record(record: Mapping[str, Any]) -> dict[str, Any]:
    stored_record = dict(record)
    stored_record["_id"] = str(stored_record.get("_id") or uuid4())
    stored_record.setdefault("created_at", datetime.now(UTC))
    return stored_record


def create_transcript_store(settings: Settings) -> TranscriptStore:
    return _create_transcript_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_transcripts_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_transcript_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> TranscriptStore:
    if store_name == "memory":
        return InMemoryTranscriptStore()

    if store_name == "mongodb":
        return MongoTranscriptStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryTranscriptStore()


def clear_transcript_store_cache() -> None:
    _create_transcript_store_cached.cache_clear()
