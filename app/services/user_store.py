from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings

NOTIFICATION_PREFERENCE_FIELDS = (
    "email_on_transcript_ready",
    "email_on_phase1_complete",
    "email_on_bot_failed",
)


class UserStore(ABC):
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_notification_preferences(self, user_id: str) -> dict[str, bool] | None:
        """Stored preference flags, or None when the user never saved any."""
        raise NotImplementedError

    @abstractmethod
    def upsert_notification_preferences(
        self,
        user_id: str,
        updates: Mapping[str, bool],
    ) -> dict[str, bool]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}
        self._preferences_by_user_id: dict[str, dict[str, bool]] = {}

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        return dict(user)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        user_id = self._user_id_by_email.get(_normalize_email(email))
        if not user_id:
            return None
        return self.get_user_by_id(user_id)

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        normalized_email = _normalize_email(email)
        with self._lock:
            if normalized_email in self._user_id_by_email:
                raise ValueError("email_already_exists")

            user_id = str(self._next_id)
            self._next_id += 1
            now = datetime.now(UTC)
            user = {
                "_id": user_id,
                "email": normalized_email,
                "full_name": full_name.strip(),
                "password_hash": password_hash,
                "role": role.strip().lower(),
                "created_at": now,
                "updated_at": now,
            }
            self._users_by_id[user_id] = user
            self._user_id_by_email[normalized_email] = user_id
        return dict(user)

    def get_notification_preferences(self, user_id: str) -> dict[str, bool] | None:
        preferences = self._preferences_by_user_id.get(user_id)
        return dict(preferences) if preferences is not None else None

    def upsert_notification_preferences(
        self,
        user_id: str,
        updates: Mapping[str, bool],
    ) -> dict[str, bool]:
        with self._lock:
            current = _merge_preferences(self._preferences_by_user_id.get(user_id), updates)
            self._preferences_by_user_id[user_id] = current
        return dict(current)


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        preferences_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._users = database[users_collection_name]
        self._preferences = database[preferences_collection_name]

        self._users.create_index("email", unique=True)
        self._preferences.create_index("user_id", unique=True)

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            object_id = ObjectId(user_id)
        except InvalidId:
            return None
        return _serialize_user_record(self._users.find_one({"_id": object_id}))

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return _serialize_user_record(self._users.find_one({"email": _normalize_email(email)}))

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        payload = {
            "email": _normalize_email(email),
            "full_name": full_name.strip(),
            "password_hash": password_hash,
            "role": role.strip().lower(),
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("email_already_exists") from exc
        serialized = _serialize_user_record(self._users.find_one({"_id": insert_result.inserted_id}))
        if not serialized:
            raise RuntimeError("Unable to read created user.")
        return serialized

    def get_notification_preferences(self, user_id: str) -> dict[str, bool] | None:
        record = self._preferences.find_one({"user_id": user_id})
        if not record:
            return None
        return _merge_preferences(None, record)

    def upsert_notification_preferences(
        self,
        user_id: str,
        updates: Mapping[str, bool],
    ) -> dict[str, bool]:
        current = _merge_preferences(self.get_notification_preferences(user_id), updates)
        now = datetime.now(UTC)
        self._preferences.update_one(
            {"user_id": user_id},
            {
                "$set": {**current, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        return current


def _merge_preferences(
    current: Mapping[str, Any] | None,
    updates: Mapping[str, Any],
) -> dict[str, bool]:
    merged = {field_name: True for field_name in NOTIFICATION_PREFERENCE_FIELDS}
    for source in (current or {}, updates):
        for field_name in NOTIFICATION_PREFERENCE_FIELDS:
            value = source.get(field_name)
            if isinstance(value, bool):
                merged[field_name] = value
    return merged


def _serialize_user_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        user_data_store=settings.user_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_preferences_collection=settings.mongodb_notification_preferences_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    user_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_preferences_collection: str,
    mongodb_connect_timeout_ms: int,
) -> UserStore:
    if user_data_store == "memory":
        return InMemoryUserStore()

    if user_data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            preferences_collection_name=mongodb_preferences_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
