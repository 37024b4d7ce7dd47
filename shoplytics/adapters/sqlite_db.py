"""
SQLite analytics store.

Implements AnalyticsStorePort on stdlib sqlite3:
- write transactions open with BEGIN IMMEDIATE (single writer, waits on busy_timeout)
- bucket increments are single UPSERT statements (atomic add, no read-modify-write)
- WAL journal so readers see a consistent snapshot without blocking the writer
- sqlite3.Error is re-raised as AnalyticsStoreError after rollback

Schema lives in migrations/001_analytics.sql.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from shoplytics.core.entities import AggregateBucket, BucketKey, Contribution, Event
from shoplytics.core.ports.store import AnalyticsStoreError, RemovalStatus

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's host parameter limit.
_CHUNK_SIZE = 500

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def _dimension_in(dimension: str | None) -> str:
    return dimension if dimension is not None else ""


def _dimension_out(dimension: str) -> str | None:
    return dimension or None


def _split(key: BucketKey) -> tuple[str, str]:
    if len(key) == 1:
        return key[0], ""
    return key[0], key[1]


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


class SQLiteRepoBase:
    """Base class for SQLite repositories."""

    def __init__(
        self,
        db_path: str,
        connection: sqlite3.Connection | None = None,
        busy_timeout_ms: int = 5000,
    ):
        self.db_path = db_path
        self._external_conn = connection
        if connection is not None:
            connection.row_factory = dict_factory
            connection.isolation_level = None
        self._busy_timeout_ms = busy_timeout_ms

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection (uses external if provided)."""
        if self._external_conn is not None:
            return self._external_conn

        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self._busy_timeout_ms / 1000,
                isolation_level=None,
            )
            conn.row_factory = dict_factory
            conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)};")
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error as e:
            raise AnalyticsStoreError(f"Cannot open analytics database: {e}") from e
        return conn

    def _should_close(self) -> bool:
        """Whether to close connection after use."""
        return self._external_conn is None


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


class SQLiteAnalyticsSession:
    """Statements run on the connection owned by the surrounding transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # --- events ---

    def insert_event(self, event: Event) -> bool:
        cursor = self._conn.execute(
            """
            INSERT INTO analytics_events (id, user_id, anonymous_id, name, properties, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                event.id,
                event.user_id,
                event.anonymous_id,
                event.name,
                json.dumps(event.properties, default=str),
                event.timestamp,
            ),
        )
        return cursor.rowcount == 1

    def get_event(self, event_id: str) -> Event | None:
        row = self._conn.execute(
            "SELECT * FROM analytics_events WHERE id = ?", (event_id,)
        ).fetchone()
        return self._map_event(row) if row else None

    def delete_event(self, event_id: str) -> None:
        self._conn.execute("DELETE FROM analytics_events WHERE id = ?", (event_id,))

    def list_unlinked_event_ids(self, anonymous_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT id FROM analytics_events WHERE anonymous_id = ? AND user_id IS NULL",
            (anonymous_id,),
        ).fetchall()
        return [r["id"] for r in rows]

    def set_user_id(self, event_ids: list[str], user_id: str) -> int:
        updated = 0
        for i in range(0, len(event_ids), _CHUNK_SIZE):
            chunk = event_ids[i : i + _CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = self._conn.execute(
                f"UPDATE analytics_events SET user_id = ? WHERE id IN ({placeholders})",
                (user_id, *chunk),
            )
            updated += cursor.rowcount
        return updated

    def list_events_before(self, cutoff_ms: int, limit: int) -> list[Event]:
        rows = self._conn.execute(
            """
            SELECT * FROM analytics_events
            WHERE timestamp < ?
            ORDER BY timestamp, id
            LIMIT ?
            """,
            (cutoff_ms, limit),
        ).fetchall()
        return [self._map_event(r) for r in rows]

    def scan_events(
        self,
        start_ms: int,
        end_ms: int,
        names: Iterable[str] | None = None,
        authenticated_only: bool = False,
    ) -> list[Event]:
        query = "SELECT * FROM analytics_events WHERE timestamp >= ? AND timestamp < ?"
        params: list[Any] = [start_ms, end_ms]
        if names is not None:
            names = list(names)
            if not names:
                return []
            query += f" AND name IN ({', '.join('?' for _ in names)})"
            params.extend(names)
        if authenticated_only:
            query += " AND user_id IS NOT NULL"
        query += " ORDER BY timestamp, id"
        rows = self._conn.execute(query, params).fetchall()
        return [self._map_event(r) for r in rows]

    def count_events(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM analytics_events").fetchone()
        return int(row["n"])

    # --- ledger + buckets ---

    def add_contribution(self, contribution: Contribution) -> bool:
        dimension = _dimension_in(contribution.dimension)
        cursor = self._conn.execute(
            """
            INSERT INTO aggregate_contributions (definition, event_id, day, dimension, value)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(definition, event_id) DO NOTHING
            """,
            (
                contribution.definition,
                contribution.event_id,
                contribution.day,
                dimension,
                contribution.value,
            ),
        )
        if cursor.rowcount == 0:
            return False

        self._conn.execute(
            """
            INSERT INTO aggregate_buckets (definition, day, dimension, accumulator, event_count)
            VALUES (?, ?, ?, ?, 1)
            ON CONFLICT(definition, day, dimension) DO UPDATE SET
                accumulator = accumulator + excluded.accumulator,
                event_count = event_count + 1
            """,
            (contribution.definition, contribution.day, dimension, contribution.value),
        )
        return True

    def get_contribution(self, definition: str, event_id: str) -> Contribution | None:
        row = self._conn.execute(
            "SELECT * FROM aggregate_contributions WHERE definition = ? AND event_id = ?",
            (definition, event_id),
        ).fetchone()
        if not row:
            return None
        return Contribution(
            definition=row["definition"],
            event_id=row["event_id"],
            day=row["day"],
            dimension=_dimension_out(row["dimension"]),
            value=row["value"],
        )

    def remove_contribution(self, definition: str, event_id: str) -> RemovalStatus:
        row = self._conn.execute(
            """
            SELECT day, dimension, value FROM aggregate_contributions
            WHERE definition = ? AND event_id = ?
            """,
            (definition, event_id),
        ).fetchone()
        if not row:
            return RemovalStatus.NOT_FOUND

        self._conn.execute(
            "DELETE FROM aggregate_contributions WHERE definition = ? AND event_id = ?",
            (definition, event_id),
        )
        bucket_params = (definition, row["day"], row["dimension"])
        cursor = self._conn.execute(
            """
            UPDATE aggregate_buckets
            SET accumulator = accumulator - ?, event_count = event_count - 1
            WHERE definition = ? AND day = ? AND dimension = ?
            """,
            (row["value"], *bucket_params),
        )
        if cursor.rowcount == 0:
            return RemovalStatus.BUCKET_MISSING

        cursor = self._conn.execute(
            """
            DELETE FROM aggregate_buckets
            WHERE definition = ? AND day = ? AND dimension = ? AND event_count <= 0
            """,
            bucket_params,
        )
        return RemovalStatus.BUCKET_DELETED if cursor.rowcount else RemovalStatus.REMOVED

    def get_bucket(self, definition: str, key: BucketKey) -> AggregateBucket | None:
        day, dimension = _split(key)
        row = self._conn.execute(
            """
            SELECT * FROM aggregate_buckets
            WHERE definition = ? AND day = ? AND dimension = ?
            """,
            (definition, day, dimension),
        ).fetchone()
        return self._map_bucket(row) if row else None

    def scan_buckets(
        self,
        definition: str,
        start_day: str | None = None,
        end_day: str | None = None,
        dimension: str | None = None,
    ) -> list[AggregateBucket]:
        query = "SELECT * FROM aggregate_buckets WHERE definition = ?"
        params: list[Any] = [definition]
        if start_day is not None:
            query += " AND day >= ?"
            params.append(start_day)
        if end_day is not None:
            query += " AND day <= ?"
            params.append(end_day)
        if dimension is not None:
            query += " AND dimension = ?"
            params.append(dimension)
        query += " ORDER BY day, seq"
        rows = self._conn.execute(query, params).fetchall()
        return [self._map_bucket(r) for r in rows]

    # --- mapping ---

    def _map_event(self, row: dict[str, Any]) -> Event:
        return Event(
            id=row["id"],
            user_id=row["user_id"],
            anonymous_id=row["anonymous_id"],
            name=row["name"],
            properties=json.loads(row["properties"]) if row["properties"] else {},
            timestamp=row["timestamp"],
        )

    def _map_bucket(self, row: dict[str, Any]) -> AggregateBucket:
        return AggregateBucket(
            definition=row["definition"],
            day=row["day"],
            dimension=_dimension_out(row["dimension"]),
            accumulator=row["accumulator"],
            count=row["event_count"],
            seq=row["seq"],
        )


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class SQLiteAnalyticsStore(SQLiteRepoBase):
    """SQLite implementation of AnalyticsStorePort."""

    @contextmanager
    def transaction(self) -> Iterator[SQLiteAnalyticsSession]:
        conn = self._get_conn()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise AnalyticsStoreError(f"Cannot start analytics transaction: {e}") from e

            try:
                yield SQLiteAnalyticsSession(conn)
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise AnalyticsStoreError(f"Analytics write failed: {e}") from e
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise AnalyticsStoreError(f"Analytics commit failed: {e}") from e
        finally:
            if self._should_close():
                conn.close()

    @contextmanager
    def reader(self) -> Iterator[SQLiteAnalyticsSession]:
        conn = self._get_conn()
        try:
            # Deferred transaction: every read in the block sees one snapshot.
            try:
                conn.execute("BEGIN")
            except sqlite3.Error as e:
                raise AnalyticsStoreError(f"Cannot read analytics data: {e}") from e

            try:
                yield SQLiteAnalyticsSession(conn)
            except sqlite3.Error as e:
                raise AnalyticsStoreError(f"Analytics read failed: {e}") from e
            finally:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
        finally:
            if self._should_close():
                conn.close()
