from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings

GOOGLE_CALENDAR_PROVIDER = "google_calendar"


class CalendarConnectionStore(ABC):
    @abstractmethod
    def upsert(
        self,
        *,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get(self, user_id: str, provider: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_sync_enabled(self, provider: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def update(self, connection_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError


class InMemoryCalendarConnectionStore(CalendarConnectionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}

    def upsert(
        self,
        *,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        with self._lock:
            record = self._find(user_id, provider)
            if record is None:
                record = {
                    "_id": str(uuid4()),
                    "user_id": user_id,
                    "provider": provider,
                    "calendar_sync_enabled": True,
                    "last_synced_at": None,
                    "refresh_token": None,
                    "created_at": now,
                }
                self._records[record["_id"]] = record
            record["access_token"] = access_token
            if refresh_token:
                record["refresh_token"] = refresh_token
            record["token_expires_at"] = token_expires_at
            record["updated_at"] = now
            return dict(record)

    def get(self, user_id: str, provider: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._find(user_id, provider)
            return dict(record) if record else None

    def list_sync_enabled(self, provider: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(record)
                for record in self._records.values()
                if record.get("provider") == provider and record.get("calendar_sync_enabled")
            ]

    def update(self, connection_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            record = self._records.get(connection_id)
            if record is None:
                return False
            record.update(dict(updates))
            record["updated_at"] = datetime.now(UTC)
            return True

    def _find(self, user_id: str, provider: str) -> dict[str, Any] | None:
        for record in self._records.values():
            if record.get("user_id") == user_id and record.get("provider") == provider:
                return record
        return None


class MongoCalendarConnectionStore(CalendarConnectionStore):
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
        self._collection.create_index([("user_id", 1), ("provider", 1)], unique=True)
        self._collection.create_index([("provider", 1), ("calendar_sync_enabled", 1)])

    def upsert(
        self,
        *,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        updates: dict[str, Any] = {
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "updated_at": now,
        }
        if refresh_token:
            updates["refresh_token"] = refresh_token
        record = self._collection.find_one_and_update(
            {"user_id": user_id, "provider": provider},
            {
                "$set": updates,
                "$setOnInsert": {
                    "_id": str(uuid4()),
                    "calendar_sync_enabled": True,
                    "last_synced_at": None,
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return dict(record)

    def get(self, user_id: str, provider: str) -> dict[str, Any] | None:
        return self._collection.find_one({"user_id": user_id, "provider": provider})

    def list_sync_enabled(self, provider: str) -> list[dict[str, Any]]:
        return list(self._collection.find({"provider": provider, "calendar_sync_enabled": True}))

    def update(self, connection_id: str, updates: Mapping[str, Any]) -> bool:
        result = self._collection.update_one(
            {"_id": connection_id},
            {"$set": {**dict(updates), "updated_at": datetime.now(UTC)}},
        )
        return result.matched_count > 0


def create_calendar_connection_store(settings: Settings) -> CalendarConnectionStore:
    return _create_calendar_connection_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_calendar_connections_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_calendar_connection_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> CalendarConnectionStore:
    if store_name == "memory":
        return InMemoryCalendarConnectionStore()

    if store_name == "mongodb":
        return MongoCalendarConnectionStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryCalendarConnectionStore()


def clear_calendar_connection_store_cache() -> None:
    _create_calendar_connection_store_cached.cache_clear()
