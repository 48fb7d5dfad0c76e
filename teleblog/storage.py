"""Persistence backends shared by the repository.

Two interchangeable implementations of one contract: a MongoDB backend and a
flat-file backend that keeps each collection in memory and rewrites a JSON file
per collection after every mutation. ``open_backend`` picks one at startup.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import aiofiles
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError, ServerSelectionTimeoutError

from .config import Settings

logger = logging.getLogger(__name__)

BLOGS = "blogs"
POSTS = "posts"
COLLECTIONS = (BLOGS, POSTS)

Record = Dict[str, Any]
Criteria = Mapping[str, Any]


class StorageError(Exception):
    """A backend rejected or failed an operation."""


class DuplicateRecordError(StorageError):
    """A unique constraint was violated."""


def _matches(record: Record, criteria: Optional[Criteria]) -> bool:
    if not criteria:
        return True
    return all(record.get(k) == v for k, v in criteria.items())


class StorageBackend(ABC):
    @abstractmethod
    async def create(self, collection: str, record: Record) -> Record: ...

    @abstractmethod
    async def read(self, collection: str, record_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def update(self, collection: str, record_id: str, patch: Record) -> Optional[Record]: ...

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> bool: ...

    @abstractmethod
    async def find(self, collection: str, criteria: Optional[Criteria] = None) -> List[Record]: ...

    @abstractmethod
    async def delete_where(self, collection: str, criteria: Criteria) -> int: ...

    @abstractmethod
    async def increment(self, collection: str, record_id: str, field: str, amount: int = 1) -> Optional[int]: ...

    @abstractmethod
    async def increment_where(self, collection: str, criteria: Criteria, field: str, amount: int = 1) -> int: ...

    async def list(self, collection: str) -> List[Record]:
        return await self.find(collection)

    async def close(self) -> None:
        return None


# ---------- Flat-file backend ----------


class FileBackend(StorageBackend):
    """In-memory collections mirrored to ``<data_dir>/<collection>.json``.

    Reads never touch the disk. Every mutation rewrites the whole collection file
    through a temp file and an atomic replace. A failed write is logged and
    swallowed: memory keeps the change, the file does not.
    """

    def __init__(self, data_dir: str) -> None:
        self.data_dir = Path(data_dir)
        self._data: Dict[str, Dict[str, Record]] = {name: {} for name in COLLECTIONS}
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in COLLECTIONS}

    def path_for(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _collection(self, collection: str) -> Dict[str, Record]:
        if collection not in self._data:
            raise StorageError(f"Unknown collection: {collection}")
        return self._data[collection]

    async def load(self) -> None:
        """Load every collection file; tolerate missing, empty and malformed files."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create data dir %s: %s", self.data_dir, e)
        for name in COLLECTIONS:
            self._data[name] = await self._read_file(self.path_for(name))
            logger.info("Loaded %d %s from %s", len(self._data[name]), name, self.path_for(name))

    async def _read_file(self, path: Path) -> Dict[str, Record]:
        if not path.exists():
            return {}
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            return {}
        if not raw.strip():
            return {}
        try:
            items = json.loads(raw)
        except JSONDecodeError as e:
            logger.warning("Failed to parse %s: %s", path, e)
            return {}
        if not isinstance(items, list):
            logger.warning("Ignoring %s: expected a JSON array", path)
            return {}
        records: Dict[str, Record] = {}
        for item in items:
            if isinstance(item, dict) and item.get("id"):
                records[str(item["id"])] = item
        return records

    async def _flush(self, collection: str) -> None:
        path = self.path_for(collection)
        tmp_path = path.with_name(path.name + ".tmp")
        async with self._locks[collection]:
            # Serialized under the lock so the last writer always carries the latest state
            payload = json.dumps(list(self._data[collection].values()), indent=2, ensure_ascii=False)
            try:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(payload)
                os.replace(tmp_path, path)
            except OSError as e:
                logger.error("Failed to write %s, memory and disk now differ: %s", path, e)

    async def create(self, collection: str, record: Record) -> Record:
        records = self._collection(collection)
        record_id = str(record["id"])
        if record_id in records:
            raise DuplicateRecordError(f"{collection}/{record_id} already exists")
        records[record_id] = dict(record)
        await self._flush(collection)
        return dict(record)

    async def read(self, collection: str, record_id: str) -> Optional[Record]:
        record = self._collection(collection).get(record_id)
        return dict(record) if record is not None else None

    async def update(self, collection: str, record_id: str, patch: Record) -> Optional[Record]:
        record = self._collection(collection).get(record_id)
        if record is None:
            return None
        record.update({k: v for k, v in patch.items() if k != "id"})
        await self._flush(collection)
        return dict(record)

    async def delete(self, collection: str, record_id: str) -> bool:
        if self._collection(collection).pop(record_id, None) is None:
            return False
        await self._flush(collection)
        return True

    async def find(self, collection: str, criteria: Optional[Criteria] = None) -> List[Record]:
        return [dict(r) for r in self._collection(collection).values() if _matches(r, criteria)]

    async def delete_where(self, collection: str, criteria: Criteria) -> int:
        records = self._collection(collection)
        doomed = [rid for rid, r in records.items() if _matches(r, criteria)]
        for rid in doomed:
            del records[rid]
        if doomed:
            await self._flush(collection)
        return len(doomed)

    async def increment(self, collection: str, record_id: str, field: str, amount: int = 1) -> Optional[int]:
        record = self._collection(collection).get(record_id)
        if record is None:
            return None
        record[field] = int(record.get(field) or 0) + amount
        await self._flush(collection)
        return record[field]

    async def increment_where(self, collection: str, criteria: Criteria, field: str, amount: int = 1) -> int:
        touched = 0
        for record in self._collection(collection).values():
            if _matches(record, criteria):
                record[field] = int(record.get(field) or 0) + amount
                touched += 1
        if touched:
            await self._flush(collection)
        return touched


# ---------- MongoDB backend ----------


def _from_document(doc: Optional[Record]) -> Optional[Record]:
    if doc is None:
        return None
    record = dict(doc)
    record.setdefault("id", str(record.get("_id")))
    record.pop("_id", None)
    return record


class MongoBackend(StorageBackend):
    """Documents keyed by ``_id == id``; driver failures surface as StorageError."""

    def __init__(self, database: AsyncIOMotorDatabase, client: Optional[AsyncIOMotorClient] = None) -> None:
        self.database = database
        self.client = client

    async def ensure_indexes(self) -> None:
        try:
            await self.database[BLOGS].create_index("userId", unique=True)
            await self.database[BLOGS].create_index("subdomain", unique=True)
            await self.database[POSTS].create_index([("blogId", ASCENDING), ("createdAt", DESCENDING)])
        except PyMongoError as e:
            raise StorageError(f"Failed to create indexes: {e}") from e

    async def create(self, collection: str, record: Record) -> Record:
        doc = dict(record)
        doc["_id"] = str(record["id"])
        try:
            await self.database[collection].insert_one(doc)
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e)) from e
        except PyMongoError as e:
            raise StorageError(f"Insert into {collection} failed: {e}") from e
        return dict(record)

    async def read(self, collection: str, record_id: str) -> Optional[Record]:
        try:
            doc = await self.database[collection].find_one({"_id": record_id})
        except PyMongoError as e:
            raise StorageError(f"Read from {collection} failed: {e}") from e
        return _from_document(doc)

    async def update(self, collection: str, record_id: str, patch: Record) -> Optional[Record]:
        changes = {k: v for k, v in patch.items() if k not in ("id", "_id")}
        try:
            doc = await self.database[collection].find_one_and_update(
                {"_id": record_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e)) from e
        except PyMongoError as e:
            raise StorageError(f"Update in {collection} failed: {e}") from e
        return _from_document(doc)

    async def delete(self, collection: str, record_id: str) -> bool:
        try:
            result = await self.database[collection].delete_one({"_id": record_id})
        except PyMongoError as e:
            raise StorageError(f"Delete from {collection} failed: {e}") from e
        return result.deleted_count > 0

    async def find(self, collection: str, criteria: Optional[Criteria] = None) -> List[Record]:
        try:
            docs = await self.database[collection].find(dict(criteria or {})).to_list(length=None)
        except PyMongoError as e:
            raise StorageError(f"Query on {collection} failed: {e}") from e
        return [_from_document(d) for d in docs]

    async def delete_where(self, collection: str, criteria: Criteria) -> int:
        try:
            result = await self.database[collection].delete_many(dict(criteria))
        except PyMongoError as e:
            raise StorageError(f"Bulk delete from {collection} failed: {e}") from e
        return result.deleted_count

    async def increment(self, collection: str, record_id: str, field: str, amount: int = 1) -> Optional[int]:
        try:
            doc = await self.database[collection].find_one_and_update(
                {"_id": record_id}, {"$inc": {field: amount}}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise StorageError(f"Increment in {collection} failed: {e}") from e
        if doc is None:
            return None
        return int(doc.get(field, 0))

    async def increment_where(self, collection: str, criteria: Criteria, field: str, amount: int = 1) -> int:
        try:
            result = await self.database[collection].update_many(dict(criteria), {"$inc": {field: amount}})
        except PyMongoError as e:
            raise StorageError(f"Bulk increment in {collection} failed: {e}") from e
        return result.modified_count

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()


# ---------- Selection ----------


async def connect_mongo(uri: str, timeout_ms: int) -> Optional[MongoBackend]:
    """Ping MongoDB once; return a ready backend or None if it cannot be used."""
    client = None
    try:
        client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=timeout_ms)
        await client.admin.command("ping")
        backend = MongoBackend(client.get_default_database("teleblog"), client=client)
        await backend.ensure_indexes()
    except (ServerSelectionTimeoutError, ConnectionFailure) as e:
        logger.warning("MongoDB unavailable at startup: %s", e)
    except (PyMongoError, StorageError) as e:
        # Bad URI, unresolvable SRV record, failed auth or index creation
        logger.warning("MongoDB unusable at startup: %s", e)
    else:
        return backend
    if client is not None:
        client.close()
    return None


async def open_backend(settings: Settings) -> StorageBackend:
    """Choose the storage backend for the whole process lifetime."""
    if settings.mongodb_uri:
        backend = await connect_mongo(settings.mongodb_uri, settings.mongodb_timeout_ms)
        if backend is not None:
            logger.info("Using MongoDB storage")
            return backend
    logger.warning("Using flat-file storage in %s", settings.data_dir)
    file_backend = FileBackend(settings.data_dir)
    await file_backend.load()
    return file_backend
