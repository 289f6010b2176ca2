from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class PlatformConnectionStore(ABC):
    @abstractmethod
    def upsert(
        self,
        *,
        user_id: str,
        platform: str,
        account_id: str,
        external_user_id: str | None,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def find_by_external_user_id(self, platform: str, external_user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_account_id(self, platform: str, account_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryPlatformConnectionStore(PlatformConnectionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str, str], dict[str, Any]] = {}

    def upsert(
        self,
        *,
        user_id: str,
        platform: str,
        account_id: str,
        external_user_id: str | None,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        key = (user_id, platform, account_id)
        now = datetime.now(UTC)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = {
                    "_id": str(uuid4()),
                    "user_id": user_id,
                    "platform": platform,
                    "account_id": account_id,
                    "refresh_token": None,
                    "created_at": now,
                }
                self._records[key] = record
            record["external_user_id"] = external_user_id
            record["access_token"] = access_token
            if refresh_token:
                record["refresh_token"] = refresh_token
            record["token_expires_at"] = token_expires_at
            record["updated_at"] = now
            return dict(record)

    def find_by_external_user_id(self, platform: str, external_user_id: str) -> dict[str, Any] | None:
        return self._find_first(platform, "external_user_id", external_user_id)

    def find_by_account_id(self, platform: str, account_id: str) -> dict[str, Any] | None:
        return self._find_first(platform, "account_id", account_id)

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self._records.values() if record.get("user_id") == user_id]

    def _find_first(self, platform: str, field_name: str, value: str) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records.values():
                if record.get("platform") == platform and record.get(field_name) == value:
                    return dict(record)
        return None


class MongoPlatformConnectionStore(PlatformConnectionStore):
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
        self._collection.create_index(
            [("user_id", 1), ("platform", 1), ("account_id", 1)],
            unique=True,
        )
        self._collection.create_index([("platform", 1), ("external_user_id", 1)])
        self._collection.create_index([("platform", 1), ("account_id", 1)])

    def upsert(
        self,
        *,
        user_id: str,
        platform: str,
        account_id: str,
        external_user_id: str | None,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> dict[str, Any]:
        from pymongo import ReturnDocument

        now = datetime.now(UTC)
        updates: dict[str, Any] = {
            "external_user_id": external_user_id,
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "updated_at": now,
        }
        if refresh_token:
            updates["refresh_token"] = refresh_token
        record = self._collection.find_one_and_update(
            {"user_id": user_id, "platform": platform, "account_id": account_id},
            {"$set": updates, "$setOnInsert": {"_id": str(uuid4()), "created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return dict(record)

    def find_by_external_user_id(self, platform: str, external_user_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"platform": platform, "external_user_id": external_user_id})

    def find_by_account_id(self, platform: str, account_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"platform": platform, "account_id": account_id})

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._collection.find({"user_id": user_id}))


def create_platform_connection_store(settings: Settings) -> PlatformConnectionStore:
    return _create_platform_connection_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_platform_connections_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_platform_connection_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> PlatformConnectionStore:
    if store_name == "memory":
        return InMemoryPlatformConnectionStore()

    if store_name == "mongodb":
        return MongoPlatformConnectionStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryPlatformConnectionStore()


def clear_platform_connection_store_cache() -> None:
    _create_platform_connection_store_cached.cache_clear()
