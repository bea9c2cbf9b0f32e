"""staffing_etl.store

Document-store client handles consumed by the ingestion pipeline.

The pipeline's entire contract with the system of record is:

    create_batch() / batch_set(ref, data, merge) / batch_delete(ref)
    batch_commit(batch)
    query_equals(collection, field, value)
    query_in(collection, field, values)      # at most QUERY_IN_LIMIT values
    get_all(collection)

Two implementations:
  MemoryStore            in-process; dry runs and unit tests
  PostgresDocumentStore  JSONB rows in the `document` table
                           (migrations/0001_document_store.sql); one
                           WriteBatch commits in one transaction.

A batch is atomic; separate batches are not.  There is no locking from
this side: readers see a point-in-time view.
"""

from __future__ import annotations

import copy
import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

import psycopg
from psycopg.types.json import Jsonb

from staffing_etl.errors import StoreError

MAX_BATCH_OPS = 500
QUERY_IN_LIMIT = 30


class _ServerTimestamp:
    """Sentinel replaced by the store's clock when a batch commits."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


# ---------------------------------------------------------------------------
# Refs, documents, batches
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentRef:
    collection: str
    doc_id: str


@dataclass
class Document:
    collection: str
    doc_id: str
    data: dict[str, Any]


@dataclass
class WriteOp:
    kind: str  # 'set' | 'delete'
    ref: DocumentRef
    data: dict[str, Any] | None = None
    merge: bool = False


@dataclass
class WriteBatch:
    ops: list[WriteOp] = field(default_factory=list)
    committed: bool = False

    def __len__(self) -> int:
        return len(self.ops)


def _resolve_timestamps(data: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class DocumentStore(ABC):
    """Batched-write / equality-query document store."""

    def doc_ref(self, collection: str, doc_id: str | None = None) -> DocumentRef:
        """Ref for doc_id, or a new store-generated id when doc_id is None."""
        return DocumentRef(collection, doc_id or uuid.uuid4().hex)

    def create_batch(self) -> WriteBatch:
        return WriteBatch()

    def batch_set(
        self,
        batch: WriteBatch,
        ref: DocumentRef,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        if batch.committed:
            raise StoreError("batch already committed")
        if len(batch) >= MAX_BATCH_OPS:
            raise StoreError(f"batch exceeds {MAX_BATCH_OPS} operations")
        batch.ops.append(WriteOp("set", ref, copy.deepcopy(data), merge))

    def batch_delete(self, batch: WriteBatch, ref: DocumentRef) -> None:
        if batch.committed:
            raise StoreError("batch already committed")
        if len(batch) >= MAX_BATCH_OPS:
            raise StoreError(f"batch exceeds {MAX_BATCH_OPS} operations")
        batch.ops.append(WriteOp("delete", ref))

    def batch_commit(self, batch: WriteBatch) -> None:
        """Apply every op in batch, or none of them."""
        if batch.committed:
            raise StoreError("batch already committed")
        self._apply(batch.ops)
        batch.committed = True

    def query_in(
        self,
        collection: str,
        field_name: str,
        values: Iterable[Any],
    ) -> list[Document]:
        values = list(values)
        if len(values) > QUERY_IN_LIMIT:
            raise StoreError(f"'in' query accepts at most {QUERY_IN_LIMIT} values")
        out: list[Document] = []
        for v in values:
            out.extend(self.query_equals(collection, field_name, v))
        return out

    @abstractmethod
    def _apply(self, ops: list[WriteOp]) -> None: ...

    @abstractmethod
    def query_equals(self, collection: str, field_name: str, value: Any) -> list[Document]: ...

    @abstractmethod
    def get_all(self, collection: str) -> list[Document]: ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Document | None: ...


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore(DocumentStore):
    def __init__(self, initial: dict[str, dict[str, dict[str, Any]]] | None = None) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = copy.deepcopy(initial or {})
        self.commits = 0
        self._lock = threading.Lock()

    def _apply(self, ops: list[WriteOp]) -> None:
        with self._lock:
            staged = copy.deepcopy(self._data)
            now = datetime.utcnow()
            for op in ops:
                coll = staged.setdefault(op.ref.collection, {})
                if op.kind == "delete":
                    coll.pop(op.ref.doc_id, None)
                    continue
                data = _resolve_timestamps(op.data or {}, now)
                if op.merge and op.ref.doc_id in coll:
                    coll[op.ref.doc_id].update(data)
                else:
                    coll[op.ref.doc_id] = data
            self._data = staged
            self.commits += 1

    def query_equals(self, collection: str, field_name: str, value: Any) -> list[Document]:
        return [
            Document(collection, doc_id, copy.deepcopy(data))
            for doc_id, data in self._data.get(collection, {}).items()
            if data.get(field_name) == value
        ]

    def get_all(self, collection: str) -> list[Document]:
        return [
            Document(collection, doc_id, copy.deepcopy(data))
            for doc_id, data in self._data.get(collection, {}).items()
        ]

    def get(self, collection: str, doc_id: str) -> Document | None:
        data = self._data.get(collection, {}).get(doc_id)
        return Document(collection, doc_id, copy.deepcopy(data)) if data is not None else None

    def count(self, collection: str) -> int:
        return len(self._data.get(collection, {}))


# ---------------------------------------------------------------------------
# PostgresDocumentStore
# ---------------------------------------------------------------------------

class PostgresDocumentStore(DocumentStore):
    """Documents as JSONB rows; caller owns the connection lifecycle.

    One connection carries one transaction at a time, so batch commits and
    reads from concurrent runs are serialized on a per-store lock.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def connect(cls, db_dsn: str) -> "PostgresDocumentStore":
        try:
            conn = psycopg.connect(db_dsn, autocommit=False)
        except psycopg.Error as exc:
            raise StoreError(f"cannot connect to document store: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def _jsonb(self, data: dict[str, Any]) -> Jsonb:
        return Jsonb(data, dumps=lambda obj: json.dumps(obj, default=_json_default))

    def _apply(self, ops: list[WriteOp]) -> None:
        with self._lock:
            self._apply_locked(ops)

    def _apply_locked(self, ops: list[WriteOp]) -> None:
        now = datetime.utcnow()
        try:
            for op in ops:
                if op.kind == "delete":
                    self._conn.execute(
                        "DELETE FROM document WHERE collection = %s AND doc_id = %s",
                        (op.ref.collection, op.ref.doc_id),
                    )
                    continue
                data = self._jsonb(_resolve_timestamps(op.data or {}, now))
                if op.merge:
                    self._conn.execute(
                        """
                        INSERT INTO document (collection, doc_id, data)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (collection, doc_id) DO UPDATE SET
                          data = document.data || EXCLUDED.data,
                          updated_at = now()
                        """,
                        (op.ref.collection, op.ref.doc_id, data),
                    )
                else:
                    self._conn.execute(
                        """
                        INSERT INTO document (collection, doc_id, data)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (collection, doc_id) DO UPDATE SET
                          data = EXCLUDED.data,
                          updated_at = now()
                        """,
                        (op.ref.collection, op.ref.doc_id, data),
                    )
            self._conn.commit()
        except psycopg.Error as exc:
            self._conn.rollback()
            raise StoreError(str(exc)) from exc

    def _select(self, sql: str, params: tuple[Any, ...], collection: str) -> list[Document]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
                self._conn.commit()
            except psycopg.Error as exc:
                self._conn.rollback()
                raise StoreError(str(exc)) from exc
        return [Document(collection, str(r[0]), dict(r[1])) for r in rows]

    def query_equals(self, collection: str, field_name: str, value: Any) -> list[Document]:
        return self._select(
            """
            SELECT doc_id, data FROM document
            WHERE collection = %s AND data ->> %s = %s
            ORDER BY created_at, doc_id
            """,
            (collection, field_name, str(value)),
            collection,
        )

    def query_in(self, collection: str, field_name: str, values: Iterable[Any]) -> list[Document]:
        values = [str(v) for v in values]
        if len(values) > QUERY_IN_LIMIT:
            raise StoreError(f"'in' query accepts at most {QUERY_IN_LIMIT} values")
        return self._select(
            """
            SELECT doc_id, data FROM document
            WHERE collection = %s AND data ->> %s = ANY(%s)
            ORDER BY created_at, doc_id
            """,
            (collection, field_name, values),
            collection,
        )

    def get_all(self, collection: str) -> list[Document]:
        return self._select(
            "SELECT doc_id, data FROM document WHERE collection = %s ORDER BY created_at, doc_id",
            (collection,),
            collection,
        )

    def get(self, collection: str, doc_id: str) -> Document | None:
        docs = self._select(
            "SELECT doc_id, data FROM document WHERE collection = %s AND doc_id = %s",
            (collection, doc_id),
            collection,
        )
        return docs[0] if docs else None
