from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class OutboxStatus(StrEnum):
    pending = "pending"
    sent = "sent"
    skipped = "skipped"
    dead = "dead"


class NotificationOutboxStore(ABC):
    @abstractmethod
    def enqueue(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        """Insert a pending notification unless its ``dedupe_key`` was already queued."""
        raise NotImplementedError

    @abstractmethod
    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def claim(self, record_id: str, now: datetime, lease_until: datetime) -> bool:
        """Push ``next_attempt_at`` forward if the record is still pending and due."""
        raise NotImplementedError

    @abstractmethod
    def update(self, record_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_by_dedupe_key(self, dedupe_key: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryNotificationOutboxStore(NotificationOutboxStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._record_id_by_dedupe_key: dict[str, str] = {}

    def enqueue(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        dedupe_key = str(record["dedupe_key"])
        with self._lock:
            existing_id = self._record_id_by_dedupe_key.get(dedupe_key)
            if existing_id:
                return dict(self._records[existing_id]), False
            stored_record = _prepare_new_record(record)
            self._records[stored_record["_id"]] = stored_record
            self._record_id_by_dedupe_key[dedupe_key] = stored_record["_id"]
            return dict(stored_record), True

    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            due = [
                dict(record)
                for record in self._records.values()
                if record.get("status") == OutboxStatus.pending and record["next_attempt_at"] <= now
            ]
        due.sort(key=lambda record: record["next_attempt_at"])
        return due[:limit]

    def claim(self, record_id: str, now: datetime, lease_until: datetime) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            if record.get("status") != OutboxStatus.pending or record["next_attempt_at"] > now:
                return False
            record["next_attempt_at"] = lease_until
            return True

    def update(self, record_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            record.update(dict(updates))
            record["updated_at"] = datetime.now(UTC)
            return True

    def get_by_dedupe_key(self, dedupe_key: str) -> dict[str, Any] | None:
        with self._lock:
            record_id = self._record_id_by_dedupe_key.get(dedupe_key)
            return dict(self._records[record_id]) if record_id else None


class MongoNotificationOutboxStore(NotificationOutboxStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._asc = ASCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("dedupe_key", 1)], unique=True)
        self._collection.create_index([("status", 1), ("next_attempt_at", self._asc)])

    def enqueue(self, record: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        from pymongo.errors import DuplicateKeyError

        stored_record = _prepare_new_record(record)
        try:
            self._collection.insert_one(stored_record)
        except DuplicateKeyError:
            existing = self.get_by_dedupe_key(str(stored_record["dedupe_key"]))
            if not existing:
                raise
            return existing, False
        return dict(stored_record), True

    def list_due(self, now: datetime, limit: int) -> list[dict[str, Any]]:
        cursor = (
            self._collection.find(
                {"status": OutboxStatus.pending.value, "next_attempt_at": {"$lte": now}},
            )
            .sort("next_attempt_at", self._asc)
            .limit(limit)
        )
        return list(cursor)

    def claim(self, record_id: str, now: datetime, lease_until: datetime) -> bool:
        result = self._collection.update_one(
            {
                "_id": record_id,
                "status": OutboxStatus.pending.value,
                "next_attempt_at": {"$lte": now},
            },
            {"$set": {"next_attempt_at": lease_until}},
        )
        return result.modified_count == 1

    def update(self, record_id: str, updates: Mapping[str, Any]) -> bool:
        result = self._collection.update_one(
            {"_id": record_id},
            {"$set": {**dict(updates), "updated_at": datetime.now(UTC)}},
        )
        return result.matched_count > 0

    def get_by_dedupe_key(self, dedupe_key: str) -> dict[str, Any] | None:
        return self._collection.find_one({"dedupe_key": dedupe_key})


def build_outbox_document(
    *,
    user_id: str,
    notification_type: str,
    meeting_id: str | None,
    dedupe_key: str,
) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "notification_type": notification_type,
        "meeting_id": meeting_id,
        "dedupe_key": dedupe_key,
        "status": OutboxStatus.pending.value,
        "attempts": 0,
        "last_error": None,
    }


def _prepare_new_record(record: Mapping[str, Any]) -> dict[str, Any]:
    now = datetime.now(UTC)
    stored_record = dict(record)
    stored_record["_id"] = str(stored_record.get("_id") or uuid4())
    stored_record.setdefault("next_attempt_at", now)
    stored_record.setdefault("created_at", now)
    stored_record["updated_at"] = now
    return stored_record


def create_notification_outbox_store(settings: Settings) -> NotificationOutboxStore:
    return _create_notification_outbox_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_notification_outbox_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_notification_outbox_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> NotificationOutboxStore:
    if store_name == "memory":
        return InMemoryNotificationOutboxStore()

    if store_name == "mongodb":
        return MongoNotificationOutboxStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryNotificationOutboxStore()


def clear_notification_outbox_store_cache() -> None:
    _create_notification_outbox_store_cached.cache_clear()
