import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel

from .errors import DocumentTooLarge, StoreError

Document = Dict[str, Any]

DEFAULT_MAX_DOCUMENT_BYTES = 1_048_576


class WriteOp(BaseModel):
    """One document mutation inside an atomic commit."""

    op: Literal["set", "merge", "delete"]
    path: str
    data: Optional[Document] = None

    @classmethod
    def set(cls, path: str, data: Document) -> "WriteOp":
        return cls(op="set", path=path, data=data)

    @classmethod
    def merge(cls, path: str, data: Document) -> "WriteOp":
        return cls(op="merge", path=path, data=data)

    @classmethod
    def delete(cls, path: str) -> "WriteOp":
        return cls(op="delete", path=path)


def parent_collection(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _encode(path: str, data: Document, limit: int) -> str:
    body = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    size = len(body.encode("utf-8"))
    if size > limit:
        raise DocumentTooLarge(path, size, limit)
    return body


class DocumentStore(Protocol):
    max_document_bytes: int

    def get(self, path: str) -> Optional[Document]:
        ...

    def get_many(self, paths: Sequence[str]) -> List[Optional[Document]]:
        ...

    def list_ids(self, collection: str) -> List[str]:
        ...

    def commit(self, ops: Sequence[WriteOp]) -> None:
        ...

    def metrics(self) -> Dict[str, Any]:
        ...

    def close(self) -> None:
        ...


class InMemoryDocumentStore:
    """Process-local document store; every commit applies all-or-nothing."""

    def __init__(self, max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES):
        self.max_document_bytes = max_document_bytes
        self._docs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[Document]:
        with self._lock:
            body = self._docs.get(path)
        return json.loads(body) if body is not None else None

    def get_many(self, paths: Sequence[str]) -> List[Optional[Document]]:
        return [self.get(path) for path in paths]

    def list_ids(self, collection: str) -> List[str]:
        prefix = collection.rstrip("/") + "/"
        with self._lock:
            paths = list(self._docs)
        return sorted(
            p[len(prefix):] for p in paths if p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def commit(self, ops: Sequence[WriteOp]) -> None:
        with self._lock:
            staged: Dict[str, Optional[str]] = {}
            for op in ops:
                if op.op == "delete":
                    staged[op.path] = None
                    continue
                data = dict(op.data or {})
                if op.op == "merge":
                    current = staged.get(op.path, self._docs.get(op.path))
                    if current is not None:
                        data = {**json.loads(current), **data}
                staged[op.path] = _encode(op.path, data, self.max_document_bytes)
            for path, body in staged.items():
                if body is None:
                    self._docs.pop(path, None)
                else:
                    self._docs[path] = body

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            sizes = [len(body.encode("utf-8")) for body in self._docs.values()]
        return {"backend": "memory", "documents": len(sizes), "bytes": sum(sizes)}

    def close(self) -> None:
        return None


class SQLiteDocumentStore:
    """SQLite-backed store so the cache survives restarts."""

    def __init__(self, db_path: str, max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES):
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.max_document_bytes = max_document_bytes
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                collection TEXT NOT NULL,
                body TEXT NOT NULL
            );
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS documents_collection ON documents (collection)"
        )
        self.conn.commit()

    def get(self, path: str) -> Optional[Document]:
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT body FROM documents WHERE path = ?", (path,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"read of {path} failed: {exc}") from exc
        return json.loads(row["body"]) if row else None

    def get_many(self, paths: Sequence[str]) -> List[Optional[Document]]:
        return [self.get(path) for path in paths]

    def list_ids(self, collection: str) -> List[str]:
        collection = collection.rstrip("/")
        try:
            with self._lock:
                rows = self.conn.execute(
                    "SELECT path FROM documents WHERE collection = ? ORDER BY path",
                    (collection,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"listing {collection} failed: {exc}") from exc
        return [row["path"][len(collection) + 1:] for row in rows]

    def commit(self, ops: Sequence[WriteOp]) -> None:
        try:
            with self._lock, self.conn:
                for op in ops:
                    self._apply(op)
        except sqlite3.Error as exc:
            raise StoreError(f"commit of {len(ops)} operation(s) failed: {exc}") from exc

    def _apply(self, op: WriteOp) -> None:
        if op.op == "delete":
            self.conn.execute("DELETE FROM documents WHERE path = ?", (op.path,))
            return
        data = dict(op.data or {})
        if op.op == "merge":
            row = self.conn.execute(
                "SELECT body FROM documents WHERE path = ?", (op.path,)
            ).fetchone()
            if row:
                data = {**json.loads(row["body"]), **data}
        self.conn.execute(
            """
            INSERT OR REPLACE INTO documents (path, collection, body)
            VALUES (?, ?, ?)
            """,
            (op.path, parent_collection(op.path), _encode(op.path, data, self.max_document_bytes)),
        )

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS c, COALESCE(SUM(LENGTH(CAST(body AS BLOB))), 0) AS b FROM documents"
            ).fetchone()
        return {"backend": "sqlite", "documents": row["c"], "bytes": row["b"]}

    def close(self) -> None:
        self.conn.close()


def create_store(
    backend: str, path: str, max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES
) -> DocumentStore:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteDocumentStore(path, max_document_bytes)
    return InMemoryDocumentStore(max_document_bytes)
