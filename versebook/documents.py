"""Document backends.

Entries, links and users are stored as schemaless documents grouped in named
collections. Every document carries server-assigned ``id``, ``created_at``,
``updated_at`` and a ``version`` counter bumped on each write, which callers
use for optimistic concurrency on read-modify-write updates.

Ordered queries need a composite index (filter fields + ``created_at``). A
backend without the index raises :class:`IndexRequiredError` rather than
scanning, mirroring hosted document databases.
"""
import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

ORDER_FIELD = "created_at"

DEFAULT_INDEXES = {
    "entries:user_id:created_at",
}

SYSTEM_FIELDS = ("id", "created_at", "updated_at", "version")


class IndexRequiredError(RuntimeError):
    pass


class VersionConflictError(RuntimeError):
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def index_key(collection: str, filter_fields: Iterable[str], order_by: str) -> str:
    return ":".join([collection, *sorted(filter_fields), order_by])


def _index_error(collection: str, filter_fields: Iterable[str], order_by: str) -> IndexRequiredError:
    fields = ", ".join(sorted(filter_fields))
    return IndexRequiredError(
        f"The query on '{collection}' ({fields}) ordered by {order_by} requires an index"
    )


def _strip_system_fields(data: dict) -> dict:
    return {k: v for k, v in (data or {}).items() if k not in SYSTEM_FIELDS}


class MemoryDocuments:
    """In-process backend; a lock makes each call atomic across request threads."""

    def __init__(self, indexes: Optional[Iterable[str]] = None):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()
        self.indexes = set(DEFAULT_INDEXES if indexes is None else indexes)

    def _collection(self, name: str) -> Dict[str, dict]:
        return self._collections.setdefault(name, {})

    def insert(self, collection: str, data: dict) -> dict:
        now = utc_now()
        record = copy.deepcopy(_strip_system_fields(data))
        record.update({"id": uuid.uuid4().hex, "created_at": now, "updated_at": now, "version": 1})
        with self._lock:
            self._collection(collection)[record["id"]] = record
            return copy.deepcopy(record)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            record = self._collection(collection).get(doc_id)
            return copy.deepcopy(record) if record is not None else None

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        changes = copy.deepcopy(_strip_system_fields(fields))
        with self._lock:
            record = self._collection(collection).get(doc_id)
            if record is None:
                return None
            if expected_version is not None and record["version"] != expected_version:
                raise VersionConflictError(f"{collection}/{doc_id} is at version {record['version']}")
            record.update(changes)
            record["updated_at"] = utc_now()
            record["version"] += 1
            return copy.deepcopy(record)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def query(
        self,
        collection: str,
        filters: dict,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[dict]:
        if order_by and index_key(collection, filters, order_by) not in self.indexes:
            raise _index_error(collection, filters, order_by)
        with self._lock:
            rows = [
                copy.deepcopy(record)
                for record in self._collection(collection).values()
                if all(record.get(k) == v for k, v in filters.items())
            ]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or "", reverse=descending)
        return rows


class PostgresDocuments:
    """JSONB document table backed by psycopg2 (see db/schema.sql)."""

    def __init__(self, conn):
        self.conn = conn

    @staticmethod
    def _row_to_doc(row: Optional[dict]) -> Optional[dict]:
        if not row:
            return None
        doc = dict(row["data"] or {})
        doc["id"] = row["id"]
        doc["version"] = row["version"]
        doc["created_at"] = row["created_at"].isoformat() if row["created_at"] else None
        doc["updated_at"] = row["updated_at"].isoformat() if row["updated_at"] else None
        return doc

    def insert(self, collection: str, data: dict) -> dict:
        doc_id = uuid.uuid4().hex
        try:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO documents (collection, id, data, version, created_at, updated_at)
                    VALUES (%s, %s, %s, 1, now(), now())
                    RETURNING id, data, version, created_at, updated_at
                    """,
                    (collection, doc_id, Json(_strip_system_fields(data))),
                )
                row = cur.fetchone()
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return self._row_to_doc(row)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT id, data, version, created_at, updated_at
                FROM documents
                WHERE collection = %s AND id = %s
                """,
                (collection, doc_id),
            )
            return self._row_to_doc(cur.fetchone())

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]:
        try:
            with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE documents
                    SET data = data || %s, version = version + 1, updated_at = now()
                    WHERE collection = %s AND id = %s
                      AND (%s::int IS NULL OR version = %s::int)
                    RETURNING id, data, version, created_at, updated_at
                    """,
                    (Json(_strip_system_fields(fields)), collection, doc_id, expected_version, expected_version),
                )
                row = cur.fetchone()
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        if row:
            return self._row_to_doc(row)
        if expected_version is not None and self.get(collection, doc_id) is not None:
            raise VersionConflictError(f"{collection}/{doc_id} changed since version {expected_version}")
        return None

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM documents WHERE collection = %s AND id = %s",
                    (collection, doc_id),
                )
                deleted = cur.rowcount > 0
            self.conn.commit()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        return deleted

    def _has_index(self, collection: str, filters: dict, order_by: str) -> bool:
        name = "documents_" + index_key(collection, filters, order_by).replace(":", "_") + "_idx"
        with self.conn.cursor() as cur:
            cur.execute("SELECT to_regclass(%s)", (name,))
            return cur.fetchone()[0] is not None

    def query(
        self,
        collection: str,
        filters: dict,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[dict]:
        if order_by and order_by != ORDER_FIELD:
            raise ValueError(f"unsupported order field: {order_by}")
        if order_by and not self._has_index(collection, filters, order_by):
            raise _index_error(collection, filters, order_by)

        clauses = ["collection = %s"]
        params: list = [collection]
        for field, value in filters.items():
            clauses.append("data->>%s = %s")
            params.extend([field, str(value)])
        sql = (
            "SELECT id, data, version, created_at, updated_at FROM documents WHERE "
            + " AND ".join(clauses)
        )
        if order_by:
            sql += " ORDER BY created_at " + ("DESC" if descending else "ASC")
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
        return [self._row_to_doc(row) for row in rows]
