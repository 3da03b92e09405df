"""
Database Helpers

The entity store and the portal resolver persist everything through a single
string-keyed, string-valued map. Three backends implement it:

- MemoryMedium: process memory, optional byte quota (tests, demos)
- JsonFileMedium: one JSON object on disk (local development)
- MongoMedium: one document per key in a MongoDB collection

open_medium() picks the backend from Settings. Every backend failure is
raised as MediumError so callers only have one exception to handle.
"""
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


class MediumError(Exception):
    """Raised when the underlying medium cannot be read or written"""


class KeyValueMedium(ABC):
    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.flush()


class MemoryMedium(KeyValueMedium):
    name = "memory"

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def _size_with(self, key: str, value: str) -> int:
        size = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
        return size + len(key) + len(value)

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        if not isinstance(value, str):
            raise MediumError(f"Value for {key} must be a string")
        if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
            raise MediumError(f"Quota exceeded writing {key}")
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class JsonFileMedium(MemoryMedium):
    name = "file"

    def __init__(self, path: str, autoflush: bool = True):
        super().__init__()
        self.path = path
        self.autoflush = autoflush
        self._dirty = False
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring storage file %s: expected a JSON object", self.path)
            return
        self._data = {str(k): v for k, v in data.items() if isinstance(v, str)}

    def set(self, key, value):
        super().set(key, value)
        self._dirty = True
        if self.autoflush:
            self.flush()

    def delete(self, key):
        super().delete(key)
        self._dirty = True
        if self.autoflush:
            self.flush()

    def flush(self):
        if not self._dirty:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise MediumError(f"Could not write {self.path}: {e}") from e
        self._dirty = False


class MongoMedium(KeyValueMedium):
    name = "mongodb"

    def __init__(self, db, collection_name: str = "kv_store"):
        self.db = db
        self.collection = db[collection_name]

    def get(self, key):
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise MediumError(f"Could not read {key}: {str(e)[:120]}") from e
        return doc.get("value") if doc else None

    def set(self, key, value):
        try:
            self.collection.update_one(
                {"_id": key},
                {"$set": {"value": value, "updated_at": datetime.now(timezone.utc)}},
                upsert=True,
            )
        except PyMongoError as e:
            raise MediumError(f"Could not write {key}: {str(e)[:120]}") from e

    def delete(self, key):
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise MediumError(f"Could not delete {key}: {str(e)[:120]}") from e

    def keys(self):
        try:
            return [doc["_id"] for doc in self.collection.find({}, {"_id": 1})]
        except PyMongoError as e:
            raise MediumError(f"Could not list keys: {str(e)[:120]}") from e

    def close(self):
        self.db.client.close()


def open_medium(settings: Settings) -> KeyValueMedium:
    if settings.database_url and settings.database_name:
        client = MongoClient(settings.database_url)
        logger.info("Using MongoDB medium (database %s)", settings.database_name)
        return MongoMedium(client[settings.database_name])
    if settings.storage_path:
        logger.info("Using JSON file medium at %s", settings.storage_path)
        return JsonFileMedium(settings.storage_path)
    logger.warning("No DATABASE_URL or SCHUB_STORAGE_PATH set, data will not survive a restart")
    return MemoryMedium()
