"""
Document store used for receipts, item embeddings and ended chats.

`DocumentStore` is the contract the pipeline relies on: owner-scoped filtered
queries, collection-group queries over sub-collections and atomic batch
writes. `InMemoryDocumentStore` implements it in-process and can mirror its
contents to a JSON file so data survives restarts.

Collection paths are slash-separated, e.g. `receipts/<id>/embeddings`.
"""

import asyncio
import copy
import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)

RANGE_OPS = {"<", "<=", ">", ">="}
SUPPORTED_OPS = RANGE_OPS | {"==", "!=", "in", "array-contains"}


class FilterCombinationError(Exception):
    """The store cannot serve this predicate combination (missing composite index)."""


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        actual = data.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "array-contains":
            return isinstance(actual, list) and self.value in actual
        if actual is None:
            return False
        try:
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            if self.op == ">=":
                return actual >= self.value
        except TypeError:
            return False
        raise ValueError(f"Unsupported operator {self.op!r}")


@dataclass
class Document:
    id: str
    collection: str
    data: Dict[str, Any]

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"


class WriteBatch(Protocol):
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None: ...

    async def commit(self) -> None: ...


class DocumentStore(Protocol):
    """What the pipeline needs from a document database."""

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[Tuple[str, str]] = None,
        limit: Optional[int] = None,
    ) -> List[Document]: ...

    async def collection_group(
        self, name: str, filters: Sequence[FieldFilter] = ()
    ) -> List[Document]: ...

    def batch(self) -> WriteBatch: ...


def new_id() -> str:
    return str(uuid.uuid4())


class InMemoryWriteBatch:
    """Collects writes and applies them all-or-nothing on commit."""

    def __init__(self, store: "InMemoryDocumentStore") -> None:
        self._store = store
        self._writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self._committed = False

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        if self._committed:
            raise RuntimeError("Batch already committed")
        self._writes.append((collection, doc_id, copy.deepcopy(data)))

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Batch already committed")
        await self._store._apply(self._writes)
        self._committed = True


class InMemoryDocumentStore:
    """
    In-process document store.

    Args:
        storage_path: Optional JSON file mirroring the store contents. Loaded on
                      construction, rewritten after every successful write.
        composite_indexes: Field tuples that may be combined in one query with a
                           range predicate, e.g. ("userId", "date"). Equality on
                           one field plus a range on another without a declared
                           index raises FilterCombinationError.
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        composite_indexes: Iterable[Sequence[str]] = (),
    ) -> None:
        self.storage_path = storage_path
        self.composite_indexes = [frozenset(idx) for idx in composite_indexes]
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

        if self.storage_path and os.path.exists(self.storage_path):
            with open(self.storage_path, "r", encoding="utf-8") as f:
                self._collections = json.load(f)
            logger.info("Loaded document store from %s", self.storage_path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[Tuple[str, str]] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        self._check_filters(filters)
        docs = [
            Document(id=doc_id, collection=collection, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
            if all(f.matches(data) for f in filters)
        ]
        return self._order_and_limit(docs, order_by, limit)

    async def collection_group(
        self, name: str, filters: Sequence[FieldFilter] = ()
    ) -> List[Document]:
        self._check_filters(filters)
        docs: List[Document] = []
        for path, collection in self._collections.items():
            if path.rsplit("/", 1)[-1] != name:
                continue
            for doc_id, data in collection.items():
                if all(f.matches(data) for f in filters):
                    docs.append(Document(id=doc_id, collection=path, data=copy.deepcopy(data)))
        return docs

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._apply([(collection, doc_id, copy.deepcopy(data))])

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)
            self._flush()

    def batch(self) -> InMemoryWriteBatch:
        return InMemoryWriteBatch(self)

    async def _apply(self, writes: List[Tuple[str, str, Dict[str, Any]]]) -> None:
        async with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                for collection, doc_id, data in writes:
                    self._collections.setdefault(collection, {})[doc_id] = data
                self._flush()
            except Exception:
                self._collections = snapshot
                raise

    def _flush(self) -> None:
        if not self.storage_path:
            return
        directory = os.path.dirname(self.storage_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.storage_path, "w", encoding="utf-8") as f:
            json.dump(self._collections, f, ensure_ascii=False, default=str)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _check_filters(self, filters: Sequence[FieldFilter]) -> None:
        for f in filters:
            if f.op not in SUPPORTED_OPS:
                raise ValueError(f"Unsupported operator {f.op!r}")

        range_fields = {f.field for f in filters if f.op in RANGE_OPS}
        if len(range_fields) > 1:
            raise FilterCombinationError(
                f"Range predicates on multiple fields: {sorted(range_fields)}"
            )
        if not range_fields:
            return

        fields = {f.field for f in filters}
        if len(fields) > 1 and not any(fields <= idx for idx in self.composite_indexes):
            raise FilterCombinationError(
                f"Query on {sorted(fields)} requires a composite index"
            )

    @staticmethod
    def _order_and_limit(
        docs: List[Document],
        order_by: Optional[Tuple[str, str]],
        limit: Optional[int],
    ) -> List[Document]:
        if order_by:
            field, direction = order_by
            present = [d for d in docs if d.data.get(field) is not None]
            missing = [d for d in docs if d.data.get(field) is None]
            present.sort(key=lambda d: d.data[field], reverse=direction == "desc")
            docs = present + missing
        if limit is not None:
            docs = docs[:limit]
        return docs
