"""Key-value storage with named buckets and JSON values, backed by SQLite."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

BUCKET_CATEGORIES = "categories"
BUCKET_TAGS = "tags"
BUCKET_ITEMS = "items"
BUCKET_PAYMENTS = "payments"
BUCKET_FORM_SUBMISSIONS = "form_submissions"
BUCKET_DOWNLOAD_LOGS = "download_logs"
BUCKET_AUDIT_LOGS = "audit_logs"

BUCKET_PAYMENTS_BY_INVOICE = "payments_by_invoice"
BUCKET_PAYMENTS_BY_STATUS = "payments_by_status"
BUCKET_ITEMS_BY_CATEGORY = "items_by_category"
BUCKET_ITEM_TAGS = "item_tags"
BUCKET_TAG_ITEMS = "tag_items"
BUCKET_DOWNLOADS_BY_PAYMENT = "downloads_by_payment"

ALL_BUCKETS = (
    BUCKET_CATEGORIES,
    BUCKET_TAGS,
    BUCKET_ITEMS,
    BUCKET_PAYMENTS,
    BUCKET_FORM_SUBMISSIONS,
    BUCKET_DOWNLOAD_LOGS,
    BUCKET_AUDIT_LOGS,
    BUCKET_PAYMENTS_BY_INVOICE,
    BUCKET_PAYMENTS_BY_STATUS,
    BUCKET_ITEMS_BY_CATEGORY,
    BUCKET_ITEM_TAGS,
    BUCKET_TAG_ITEMS,
    BUCKET_DOWNLOADS_BY_PAYMENT,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS buckets (name TEXT PRIMARY KEY);
CREATE TABLE IF NOT EXISTS entries (
    bucket TEXT NOT NULL,
    key BLOB NOT NULL,
    value BLOB NOT NULL,
    PRIMARY KEY (bucket, key)
);
"""


class DatabaseError(Exception):
    """Base error for storage failures."""


class BucketNotFoundError(DatabaseError):
    """Raised when a bucket or index bucket does not exist."""

    def __init__(self, name: str, *, index: bool = False) -> None:
        kind = "index bucket" if index else "bucket"
        super().__init__(f"{kind} {name} not found")
        self.name = name


class KeyNotFoundError(DatabaseError):
    """Raised when a key is absent from a bucket."""

    def __init__(self, key: str, bucket: str, *, index: bool = False) -> None:
        kind = "index key" if index else "key"
        super().__init__(f"{kind} {key} not found in bucket {bucket}")
        self.key = key
        self.bucket = bucket


def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (_dt.datetime, _dt.date)):
        return obj.isoformat()
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def _encode(value: Any) -> bytes:
    try:
        return json.dumps(value, default=_json_default).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise DatabaseError(f"failed to marshal value: {exc}") from exc


def _decode(data: bytes) -> Any:
    try:
        return json.loads(data)
    except ValueError as exc:
        raise DatabaseError(f"failed to unmarshal item: {exc}") from exc


class Transaction:
    """A read-only or read-write transaction handed out by :class:`Database`."""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self.writable = writable
        self._active = True

    def bucket(self, name: str) -> Bucket:
        """Return a handle on the named bucket; existence is checked on use."""
        return Bucket(self, name)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if not self._active:
            raise DatabaseError("transaction closed")
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def _require_writable(self) -> None:
        if not self.writable:
            raise DatabaseError("transaction not writable")

    def _bucket_exists(self, name: str) -> bool:
        row = self._execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        return row is not None

    def _create_bucket(self, name: str) -> None:
        self._require_writable()
        try:
            self._execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (name,))
        except DatabaseError as exc:
            raise DatabaseError(f"failed to create bucket {name}: {exc}") from exc


class Bucket:
    """A named key-value bucket holding JSON-encoded values."""

    def __init__(self, tx: Transaction, name: str) -> None:
        self._tx = tx
        self.name = name

    def _require(self, name: str, *, index: bool = False) -> None:
        if not self._tx._bucket_exists(name):
            raise BucketNotFoundError(name, index=index)

    def get(self, key: str) -> Any:
        """Return the decoded value stored at ``key``."""
        self._require(self.name)
        row = self._tx._execute(
            "SELECT value FROM entries WHERE bucket = ? AND key = ?",
            (self.name, key.encode("utf-8")),
        ).fetchone()
        if row is None:
            raise KeyNotFoundError(key, self.name)
        return _decode(row[0])

    def put(self, key: str, value: Any) -> None:
        """Store ``value`` as JSON at ``key``."""
        self._require(self.name)
        self._tx._require_writable()
        if not key:
            raise DatabaseError("key required")
        data = _encode(value)
        self._tx._execute(
            "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
            (self.name, key.encode("utf-8"), data),
        )

    def delete(self, key: str) -> None:
        """Remove ``key``; removing an absent key is not an error."""
        self._require(self.name)
        self._tx._require_writable()
        self._tx._execute(
            "DELETE FROM entries WHERE bucket = ? AND key = ?",
            (self.name, key.encode("utf-8")),
        )

    def get_all(self) -> list[Any]:
        """Return every value in key order."""
        self._require(self.name)
        rows = self._tx._execute(
            "SELECT value FROM entries WHERE bucket = ? ORDER BY key", (self.name,)
        ).fetchall()
        return [_decode(value) for (value,) in rows]

    def get_by_prefix(self, prefix: str) -> list[Any]:
        """Return, in key order, every value whose key starts with ``prefix``."""
        self._require(self.name)
        raw_prefix = prefix.encode("utf-8")
        cursor = self._tx._execute(
            "SELECT key, value FROM entries WHERE bucket = ? AND key >= ? ORDER BY key",
            (self.name, raw_prefix),
        )
        results = []
        for key, value in cursor:
            if not bytes(key).startswith(raw_prefix):
                break
            results.append(_decode(value))
        return results

    def add_index(self, index_name: str, index_key: str, value: str) -> None:
        """Map ``index_key`` to ``value`` in the index bucket ``index_name``."""
        self._require(index_name, index=True)
        self._tx._require_writable()
        if not index_key:
            raise DatabaseError("key required")
        self._tx._execute(
            "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
            (index_name, index_key.encode("utf-8"), value.encode("utf-8")),
        )

    def get_index(self, index_name: str, index_key: str) -> str:
        """Return the value mapped to ``index_key`` in ``index_name``."""
        self._require(index_name, index=True)
        row = self._tx._execute(
            "SELECT value FROM entries WHERE bucket = ? AND key = ?",
            (index_name, index_key.encode("utf-8")),
        ).fetchone()
        if row is None:
            raise KeyNotFoundError(index_key, index_name, index=True)
        return bytes(row[0]).decode("utf-8")

    def delete_index(self, index_name: str, index_key: str) -> None:
        """Remove an index entry."""
        self._require(index_name, index=True)
        self._tx._require_writable()
        self._tx._execute(
            "DELETE FROM entries WHERE bucket = ? AND key = ?",
            (index_name, index_key.encode("utf-8")),
        )


class Database:
    """A file-backed store of buckets; transactions are serialised."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        try:
            conn = sqlite3.connect(
                str(self.path), check_same_thread=False, isolation_level=None
            )
            conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise DatabaseError(f"failed to open database {self.path}: {exc}") from exc
        self._conn: sqlite3.Connection | None = conn

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("database not open")
        return self._conn

    @contextmanager
    def _transaction(self, writable: bool) -> Iterator[Transaction]:
        with self._lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE" if writable else "BEGIN")
            except sqlite3.Error as exc:
                raise DatabaseError(f"failed to begin transaction: {exc}") from exc
            tx = Transaction(conn, writable)
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    conn.execute("ROLLBACK")
                    raise DatabaseError(f"failed to commit: {exc}") from exc
            finally:
                tx._active = False

    def view(self):
        """Context manager yielding a read-only :class:`Transaction`."""
        return self._transaction(writable=False)

    def update(self):
        """Context manager yielding a read-write :class:`Transaction`.

        Changes are committed on normal exit and rolled back on an exception.
        """
        return self._transaction(writable=True)

    def init_buckets(self) -> None:
        """Create every bucket the store needs; safe to call repeatedly."""
        with self.update() as tx:
            for name in ALL_BUCKETS:
                tx._create_bucket(name)

    def bucket_names(self) -> list[str]:
        """Return the names of existing buckets, sorted."""
        with self.view() as tx:
            rows = tx._execute("SELECT name FROM buckets ORDER BY name").fetchall()
        return [name for (name,) in rows]

    def close(self) -> None:
        """Close the database; further transactions raise :class:`DatabaseError`."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()