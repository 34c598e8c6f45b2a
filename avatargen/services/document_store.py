"""
Document Store
Mutable-record store with create, field-level update, delete and live queries.

Two implementations:
- InMemoryDocumentStore: dict-backed, for local development and tests
- SqlDocumentStore: SQLAlchemy table per collection

Both stamp ``createdAt`` once on create and ``updatedAt`` on every write, and
publish a notification on the change bus after each committed write.
"""

import copy
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from avatargen.core.exceptions import ChangeFeedError
from avatargen.services.change_bus import ChangeBus, LocalChangeBus

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore(ABC):
    """Abstract document store."""

    def __init__(self, bus: Optional[ChangeBus] = None):
        self.bus = bus or LocalChangeBus()

    @abstractmethod
    async def create(self, collection: str, data: Document) -> str:
        """Insert a document and return its generated id."""
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        """Merge ``fields`` into an existing document. Raises KeyError if missing."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_all(self, collection: str) -> int:
        """Remove every document in one visible step. Returns the count removed."""
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Optional[Document] = None,
        order_by: str = "createdAt",
        descending: bool = True,
    ) -> List[Document]:
        ...

    async def watch(
        self,
        collection: str,
        where: Optional[Document] = None,
        order_by: str = "createdAt",
        descending: bool = True,
    ) -> AsyncIterator[List[Document]]:
        """
        Yield the current result set, then a fresh full snapshot after every change.

        Raises:
            ChangeFeedError: If the change subscription is lost
        """
        async with self.bus.listen(collection) as changes:
            yield await self.query(collection, where, order_by, descending)
            while True:
                change = await changes.get()
                if isinstance(change, ChangeFeedError):
                    raise change
                yield await self.query(collection, where, order_by, descending)

    async def _notify(self, collection: str) -> None:
        try:
            await self.bus.publish(collection)
        except Exception as e:
            # The write is committed; watchers catch up on the next change
            logger.warning(f"[DocumentStore] Change notification failed for {collection}: {e}")

    async def close(self) -> None:
        await self.bus.close()


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store. Documents are copied on the way in and out."""

    def __init__(self, bus: Optional[ChangeBus] = None):
        super().__init__(bus)
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._sequence = itertools.count()

    def _docs(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    async def create(self, collection: str, data: Document) -> str:
        doc_id = uuid.uuid4().hex
        now = _utcnow()
        doc = copy.deepcopy(data)
        doc.pop("id", None)
        doc.setdefault("createdAt", now)
        doc["updatedAt"] = now
        doc["_seq"] = next(self._sequence)
        self._docs(collection)[doc_id] = doc
        await self._notify(collection)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._docs(collection).get(doc_id)
        return self._export(doc_id, doc) if doc is not None else None

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        docs = self._docs(collection)
        if doc_id not in docs:
            raise KeyError(doc_id)
        changes = copy.deepcopy(fields)
        changes.pop("id", None)
        changes.pop("createdAt", None)
        merged = {**docs[doc_id], **changes, "updatedAt": _utcnow()}
        docs[doc_id] = merged
        await self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> bool:
        removed = self._docs(collection).pop(doc_id, None) is not None
        if removed:
            await self._notify(collection)
        return removed

    async def delete_all(self, collection: str) -> int:
        removed = len(self._docs(collection))
        self._collections[collection] = {}
        await self._notify(collection)
        return removed

    async def query(
        self,
        collection: str,
        where: Optional[Document] = None,
        order_by: str = "createdAt",
        descending: bool = True,
    ) -> List[Document]:
        items = [
            (doc_id, doc) for doc_id, doc in self._docs(collection).items()
            if all(doc.get(key) == value for key, value in (where or {}).items())
        ]
        # Missing sort values sort last; insertion order breaks ties
        present = [item for item in items if item[1].get(order_by) is not None]
        missing = [item for item in items if item[1].get(order_by) is None]
        present.sort(key=lambda item: (item[1][order_by], item[1]["_seq"]), reverse=descending)
        return [self._export(doc_id, doc) for doc_id, doc in present + missing]

    @staticmethod
    def _export(doc_id: str, doc: Document) -> Document:
        out = copy.deepcopy({k: v for k, v in doc.items() if k != "_seq"})
        out["id"] = doc_id
        return out


class SqlDocumentStore(DocumentStore):
    """
    SQLAlchemy-backed store.

    Each collection maps to a model exposing ``DOCUMENT_FIELDS`` (document key
    -> column name) and ``to_document()``, plus an integer ``seq``
    column that records insertion order.
    """

    def __init__(self, session_factory: sessionmaker, models: Dict[str, Type], bus: Optional[ChangeBus] = None):
        super().__init__(bus)
        self.session_factory = session_factory
        self.models = models

    def _model(self, collection: str) -> Type:
        try:
            return self.models[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    @staticmethod
    def _columns(model: Type, fields: Document) -> Dict[str, Any]:
        columns = {}
        for key, value in fields.items():
            if key == "id":
                continue
            column = model.DOCUMENT_FIELDS.get(key)
            if column is None:
                raise ValueError(f"Unknown field for {model.__tablename__}: {key}")
            columns[column] = value
        return columns

    async def create(self, collection: str, data: Document) -> str:
        model = self._model(collection)
        doc_id = uuid.uuid4().hex
        now = _utcnow()
        columns = {"created_at": now, **self._columns(model, data), "updated_at": now}

        db = self.session_factory()
        try:
            columns["seq"] = (db.query(func.max(model.seq)).scalar() or 0) + 1
            db.add(model(id=doc_id, **columns))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        await self._notify(collection)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        model = self._model(collection)
        db = self.session_factory()
        try:
            row = db.get(model, doc_id)
            return row.to_document() if row is not None else None
        finally:
            db.close()

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        model = self._model(collection)
        changes = {k: v for k, v in fields.items() if k != "createdAt"}
        columns = self._columns(model, changes)

        db = self.session_factory()
        try:
            row = db.get(model, doc_id)
            if row is None:
                raise KeyError(doc_id)
            for column, value in columns.items():
                setattr(row, column, value)
            row.updated_at = _utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        await self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> bool:
        model = self._model(collection)
        db = self.session_factory()
        try:
            removed = db.query(model).filter(model.id == doc_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if removed:
            await self._notify(collection)
        return bool(removed)

    async def delete_all(self, collection: str) -> int:
        model = self._model(collection)
        db = self.session_factory()
        try:
            # One transaction: readers see either every row or none
            removed = db.query(model).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        await self._notify(collection)
        return removed

    async def query(
        self,
        collection: str,
        where: Optional[Document] = None,
        order_by: str = "createdAt",
        descending: bool = True,
    ) -> List[Document]:
        model = self._model(collection)
        db = self.session_factory()
        try:
            query = db.query(model)
            for column, value in self._columns(model, where or {}).items():
                query = query.filter(getattr(model, column) == value)
            sort_column = getattr(model, model.DOCUMENT_FIELDS[order_by])
            if descending:
                query = query.order_by(sort_column.desc(), model.seq.desc())
            else:
                query = query.order_by(sort_column.asc(), model.seq.asc())
            return [row.to_document() for row in query.all()]
        finally:
            db.close()


__all__ = ["Document", "DocumentStore", "InMemoryDocumentStore", "SqlDocumentStore"]
