"""SQLite persistence for executions, delivery dedup, analysis cache, and audit events."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator

from pullmint.shared.errors import StoreError


class WriteResult(str, Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"
    CONDITION_FAILED = "condition_failed"


@dataclass(frozen=True)
class TableSpec:
    key_attr: str
    # index name -> item attribute materialised into an indexed column
    indexes: dict[str, str] = field(default_factory=dict)
    sort_attr: str = ""


TABLES: dict[str, TableSpec] = {
    "executions": TableSpec(
        key_attr="executionId",
        indexes={"repo": "repoFullName", "repo_pr": "repoPrKey"},
        sort_attr="timestamp",
    ),
    "dedup": TableSpec(key_attr="deliveryId"),
    "cache": TableSpec(key_attr="cacheKey"),
}


@dataclass(frozen=True)
class Condition:
    kind: str
    attribute: str
    values: tuple[Any, ...] = ()

    def evaluate(self, item: dict[str, Any] | None) -> bool:
        present = item is not None and item.get(self.attribute) is not None
        if self.kind == "not_exists":
            return not present
        if self.kind == "exists":
            return present
        current = None if item is None else item.get(self.attribute)
        if self.kind == "in":
            return present and current in self.values
        if self.kind == "not_in":
            return current not in self.values
        raise ValueError(f"Unsupported condition: {self.kind}")


def attribute_not_exists(name: str) -> Condition:
    return Condition(kind="not_exists", attribute=name)


def attribute_exists(name: str) -> Condition:
    return Condition(kind="exists", attribute=name)


def attribute_equals(name: str, value: Any) -> Condition:
    return Condition(kind="in", attribute=name, values=(value,))


def attribute_in(name: str, values: set[Any] | tuple[Any, ...] | list[Any]) -> Condition:
    return Condition(kind="in", attribute=name, values=tuple(sorted(values)))


def attribute_not_in(name: str, values: set[Any] | tuple[Any, ...] | list[Any]) -> Condition:
    return Condition(kind="not_in", attribute=name, values=tuple(sorted(values)))


class ExecutionStore:
    """Keyed JSON-document store with conditional writes and secondary indexes.

    Each table keeps the full item as JSON next to its key, its ``ttl`` (epoch
    seconds) and any indexed attributes. Conditional writes evaluate their
    predicate and write inside one ``BEGIN IMMEDIATE`` transaction, so two
    handlers sharing the database file cannot both pass the same predicate.
    Items whose ``ttl`` has passed read as absent.
    """

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = str(db_path)
        self.clock = clock
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS executions (
                item_key TEXT PRIMARY KEY,
                item_json TEXT NOT NULL,
                ttl INTEGER,
                idx_repo TEXT,
                idx_repo_pr TEXT,
                sort_value INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS dedup (
                item_key TEXT PRIMARY KEY,
                item_json TEXT NOT NULL,
                ttl INTEGER,
                sort_value INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS cache (
                item_key TEXT PRIMARY KEY,
                item_json TEXT NOT NULL,
                ttl INTEGER,
                sort_value INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_executions_repo ON executions(idx_repo, sort_value);
            CREATE INDEX IF NOT EXISTS idx_executions_repo_pr ON executions(idx_repo_pr, sort_value);
            CREATE INDEX IF NOT EXISTS idx_executions_recent ON executions(sort_value);
            """
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreError(f"Could not open transaction: {exc}") from exc
            try:
                yield self.conn
            except sqlite3.Error as exc:
                self.conn.execute("ROLLBACK")
                raise StoreError(str(exc)) from exc
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def _spec(self, table: str) -> TableSpec:
        spec = TABLES.get(table)
        if spec is None:
            raise StoreError(f"Unknown table: {table}")
        return spec

    def _now_s(self) -> int:
        return int(self.clock())

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _read(self, conn: sqlite3.Connection, table: str, key: str) -> dict[str, Any] | None:
        row = conn.execute(
            f"SELECT item_json, ttl FROM {table} WHERE item_key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        if row["ttl"] is not None and row["ttl"] <= self._now_s():
            return None
        return json.loads(row["item_json"])

    def _write(self, conn: sqlite3.Connection, table: str, item: dict[str, Any]) -> None:
        spec = self._spec(table)
        key = str(item[spec.key_attr])
        columns = ["item_key", "item_json", "ttl", "sort_value"]
        values: list[Any] = [
            key,
            json.dumps(item, sort_keys=True),
            item.get("ttl"),
            int(item.get(spec.sort_attr) or 0) if spec.sort_attr else 0,
        ]
        for index_name, attr in spec.indexes.items():
            columns.append(f"idx_{index_name}")
            values.append(item.get(attr))
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    def _merge(
        self,
        table: str,
        key: str,
        current: dict[str, Any] | None,
        fields: dict[str, Any],
        touch: str | None,
    ) -> dict[str, Any]:
        spec = self._spec(table)
        merged = dict(current or {spec.key_attr: key})
        merged.update(fields)
        if touch:
            previous = int((current or {}).get(touch) or 0)
            merged[touch] = max(self._now_ms(), previous + 1)
        return merged

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        self._spec(table)
        with self._lock:
            return self._read(self.conn, table, key)

    def put(self, table: str, item: dict[str, Any]) -> None:
        with self._transaction() as conn:
            self._write(conn, table, item)

    def put_if_absent(self, table: str, item: dict[str, Any]) -> WriteResult:
        spec = self._spec(table)
        with self._transaction() as conn:
            if self._read(conn, table, str(item[spec.key_attr])) is not None:
                return WriteResult.ALREADY_EXISTS
            self._write(conn, table, item)
        return WriteResult.OK

    def update(
        self,
        table: str,
        key: str,
        fields: dict[str, Any],
        touch: str | None = None,
    ) -> dict[str, Any]:
        """Merge ``fields`` into the item, creating it when missing."""

        with self._transaction() as conn:
            merged = self._merge(table, key, self._read(conn, table, key), fields, touch)
            self._write(conn, table, merged)
        return merged

    def update_conditional(
        self,
        table: str,
        key: str,
        fields: dict[str, Any],
        conditions: Condition | list[Condition],
        touch: str | None = None,
    ) -> WriteResult:
        checks = conditions if isinstance(conditions, list) else [conditions]
        with self._transaction() as conn:
            current = self._read(conn, table, key)
            if not all(check.evaluate(current) for check in checks):
                return WriteResult.CONDITION_FAILED
            self._write(conn, table, self._merge(table, key, current, fields, touch))
        return WriteResult.OK

    def delete(self, table: str, key: str) -> None:
        self._spec(table)
        with self._transaction() as conn:
            conn.execute(f"DELETE FROM {table} WHERE item_key = ?", (key,))

    def query(
        self,
        table: str,
        index: str,
        key_value: str | None = None,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Newest-first lookup by secondary index; ``recent`` scans the whole table."""

        spec = self._spec(table)
        if index == "recent":
            sql = f"SELECT item_json, ttl FROM {table}"
            params: tuple[Any, ...] = ()
        elif index in spec.indexes:
            sql = f"SELECT item_json, ttl FROM {table} WHERE idx_{index} = ?"
            params = (key_value,)
        else:
            raise StoreError(f"Unknown index {index} on {table}")
        sql += " ORDER BY sort_value DESC, item_key ASC"

        now = self._now_s()
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        items: list[dict[str, Any]] = []
        for row in rows:
            if row["ttl"] is not None and row["ttl"] <= now:
                continue
            item = json.loads(row["item_json"])
            if filters and any(item.get(name) != value for name, value in filters.items()):
                continue
            items.append(item)
            if limit is not None and len(items) >= limit:
                break
        return items

    def purge_expired(self) -> dict[str, int]:
        now = self._now_s()
        removed: dict[str, int] = {}
        with self._transaction() as conn:
            for table in TABLES:
                cur = conn.execute(
                    f"DELETE FROM {table} WHERE ttl IS NOT NULL AND ttl <= ?", (now,)
                )
                removed[table] = cur.rowcount
        return removed

    def append_audit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO audit_events (event_type, event_json) VALUES (?, ?)",
                (event_type, json.dumps(payload, sort_keys=True)),
            )

    def list_audit_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if event_type:
                rows = self.conn.execute(
                    "SELECT * FROM audit_events WHERE event_type = ? ORDER BY id ASC",
                    (event_type,),
                ).fetchall()
            else:
                rows = self.conn.execute("SELECT * FROM audit_events ORDER BY id ASC").fetchall()
        return [
            {
                "id": row["id"],
                "event_type": row["event_type"],
                "payload": json.loads(row["event_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self.conn.close()
