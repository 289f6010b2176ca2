from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class DuplicateMeetingError(Exception):
    """A meeting with the same (user, platform, external id) already exists."""


class MeetingStore(ABC):
    @abstractmethod
    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_external_id(
        self,
        platform: str,
        external_id: str,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_by_user(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def compare_and_set_status(
        self,
        meeting_id: str,
        expected_statuses: Collection[str],
        new_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        """Set ``new_status`` only if the stored status is one of ``expected_statuses``."""
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._external_index: dict[tuple[str, str, str], str] = {}

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        stored_record = _prepare_new_record(record)
        index_key = _external_index_key(stored_record)
        with self._lock:
            if index_key and index_key in self._external_index:
                raise DuplicateMeetingError(str(index_key))
            self._records[stored_record["_id"]] = stored_record
            if index_key:
                self._external_index[index_key] = stored_record["_id"]
            return dict(stored_record)

    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(meeting_id)
            return dict(record) if record else None

    def find_by_external_id(
        self,
        platform: str,
        external_id: str,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(record)
                for record in self._records.values()
                if record.get("platform") == platform
                and record.get("external_id") == external_id
                and (user_id is None or record.get("user_id") == user_id)
            ]

    def list_by_user(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            records = [
                dict(record) for record in self._records.values() if record.get("user_id") == user_id
            ]
        records.sort(key=lambda record: record["created_at"], reverse=True)
        return records[:limit]

    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            record = self._records.get(meeting_id)
            if record is None:
                return False
            record.update(dict(updates))
            record["updated_at"] = datetime.now(UTC)
            return True

    def compare_and_set_status(
        self,
        meeting_id: str,
        expected_statuses: Collection[str],
        new_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            record = self._records.get(meeting_id)
            if record is None or record.get("status") not in expected_statuses:
                return False
            record.update(dict(updates or {}))
            record["status"] = new_status
            record["updated_at"] = datetime.now(UTC)
            return True


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("user_id", 1), ("created_at", self._desc)])
        self._collection.create_index([("platform", 1), ("external_id", 1)])
        self._collection.create_index(
            [("user_id", 1), ("platform", 1), ("external_id", 1)],
            unique=True,
            partialFilterExpression={"external_id": {"$type": "string"}},
        )

    def create(self, record: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        stored_record = _prepare_new_record(record)
        try:
            self._collection.insert_one(stored_record)
        except DuplicateKeyError as exc:
            raise DuplicateMeetingError(str(_external_index_key(stored_record))) from exc
        return dict(stored_record)

    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": meeting_id})

    def find_by_external_id(
        self,
        platform: str,
        external_id: str,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"platform": platform, "external_id": external_id}
        if user_id is not None:
            query["user_id"] = user_id
        return list(self._collection.find(query))

    def list_by_user(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find({"user_id": user_id}).sort("created_at", self._desc).limit(limit)
        return list(cursor)

    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        result = self._collection.update_one(
            {"_id": meeting_id},
            {"$set": {**dict(updates), "updated_at": datetime.now(UTC)}},
        )
        return result.matched_count > 0

    def compare_and_set_status(
        self,
        meeting_id: str,
        expected_statuses: Collection[str],
        new_status: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        result = self._collection.update_one(
            {"_id": meeting_id, "status": {"$in": list(expected_statuses)}},
            {
                "$set": {
                    **dict(updates or {}),
                    "status": new_status,
                    "updated_at": datetime.now(UTC),
                },
            },
        )
        return result.modified_count == 1


def build_meeting_document(
    *,
    user_id: str,
    platform: str,
    status: str,
    external_id: str | None = None,
    meeting_url: str | None = None,
    topic: str | None = None,
    language: str | None = None,
    bot_provider: str = "none",
    scheduled_for: datetime | None = None,
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "platform": platform,
        "external_id": external_id,
        "meeting_url": meeting_url,
        "status": status,
        "topic": topic,
        "language": language,
        "bot_provider": bot_provider,
        "bot_task_arn": None,
        "bot_session_id": None,
        "bot_rtmp_url": None,
        "bot_stream_key": None,
        "scheduled_for": scheduled_for,
        "started_at": started_at,
        "ended_at": ended_at,
        "error_detail": None,
    }


def _prepare_new_record(record: Mapping[str, Any]) -> dict[str, Any]:
    now = datetime.now(UTC)
    stored_record = dict(record)
    stored_record["_id"] = str(stored_record.get("_id") or uuid4())
    stored_record.setdefault("created_at", now)
    stored_record["updated_at"] = now
    return stored_record


def _external_index_key(record: Mapping[str, Any]) -> tuple[str, str, str] | None:
    external_id = record.get("external_id")
    if not isinstance(external_id, str) or not external_id:
        return None
    return (str(record.get("user_id", "")), str(record.get("platform", "")), external_id)


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_meetings_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "memory":
        return InMemoryMeetingStore()

    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()
