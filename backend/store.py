# store.py - Document store collaborator
# Documents are JSON objects addressed by "collection/id" paths.
# Every operation runs in its own session: there is no multi-path atomicity.

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, delete as sa_delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from errors import BadRequest, StoreError
from models import DocumentRecord, new_uuid

logger = logging.getLogger("taskboard.store")


def split_path(path: str) -> Tuple[str, str]:
    collection, sep, doc_id = path.strip("/").partition("/")
    if not sep or not collection or not doc_id or "/" in doc_id:
        raise ValueError(f"Invalid document path: {path!r}")
    return collection, doc_id


def _address(path: str) -> Optional[Tuple[str, str]]:
    """Like split_path, but None for paths no document can live at."""
    try:
        return split_path(path)
    except ValueError:
        return None


def _with_id(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(data)
    doc["id"] = doc_id
    return doc


class DocumentStore(ABC):
    """Abstract document store used by every service."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, path: str, value: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, path: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Shallow-merge ``fields``. Returns the merged document, or None if absent."""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        ...

    @abstractmethod
    async def query_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def scan(self, collection: str) -> List[Dict[str, Any]]:
        ...

    def push_id(self, collection: str) -> str:
        return new_uuid()


class SqlDocumentStore(DocumentStore):
    """DocumentStore backed by the ``documents`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        address = _address(path)
        if address is None:
            return None
        collection, doc_id = address
        try:
            async with self._session_factory() as session:
                record = await session.get(DocumentRecord, (collection, doc_id))
                if record is None:
                    return None
                return _with_id(doc_id, record.data or {})
        except SQLAlchemyError as e:
            logger.error(f"Store get failed for {path}: {e}")
            raise StoreError(f"Could not read {collection}") from e

    async def set(self, path: str, value: Dict[str, Any]) -> Dict[str, Any]:
        address = _address(path)
        if address is None:
            raise BadRequest("Invalid document id", {"path": path})
        collection, doc_id = address
        data = {k: v for k, v in value.items() if k != "id"}
        try:
            async with self._session_factory() as session:
                record = await session.get(DocumentRecord, (collection, doc_id))
                if record is None:
                    session.add(DocumentRecord(collection=collection, id=doc_id, data=data))
                else:
                    record.data = data
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Store set failed for {path}: {e}")
            raise StoreError(f"Could not write {collection}") from e
        return _with_id(doc_id, data)

    async def update(self, path: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        address = _address(path)
        if address is None:
            return None
        collection, doc_id = address
        try:
            async with self._session_factory() as session:
                record = await session.get(DocumentRecord, (collection, doc_id))
                if record is None:
                    return None
                merged = dict(record.data or {})
                merged.update({k: v for k, v in fields.items() if k != "id"})
                # Reassign so the JSON column is flagged dirty
                record.data = merged
                await session.commit()
                return _with_id(doc_id, merged)
        except SQLAlchemyError as e:
            logger.error(f"Store update failed for {path}: {e}")
            raise StoreError(f"Could not update {collection}") from e

    async def delete(self, path: str) -> bool:
        address = _address(path)
        if address is None:
            return False
        collection, doc_id = address
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sa_delete(DocumentRecord).where(
                        DocumentRecord.collection == collection,
                        DocumentRecord.id == doc_id,
                    )
                )
                await session.commit()
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Store delete failed for {path}: {e}")
            raise StoreError(f"Could not delete from {collection}") from e

    async def scan(self, collection: str) -> List[Dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DocumentRecord)
                    .where(DocumentRecord.collection == collection)
                    .order_by(DocumentRecord.created_at)
                )
                return [_with_id(r.id, r.data or {}) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Store scan failed for {collection}: {e}")
            raise StoreError(f"Could not read {collection}") from e

    async def query_by_field(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        # JSON path filtering differs per dialect; filter in Python
        docs = await self.scan(collection)
        return [doc for doc in docs if doc.get(field) == value]
