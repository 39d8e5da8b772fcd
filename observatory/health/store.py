"""SQLite-backed storage for target descriptors and the observation log.

Two tables: ``monitoring_targets`` keyed by target id, and ``observations``
keyed by ``(monitoring_target_id, timestamp)``. Timestamps are stored as
UTC ISO-8601 text with microsecond precision so that lexical order is
chronological order.

One connection is shared by every caller and guarded by a lock, so the
store can be handed to controllers, the sweeper and request handlers at
the same time (including from worker threads).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .models import (
    Observation,
    ObservedStatus,
    Status,
    TargetDescriptor,
    decode_probe,
    encode_probe,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A storage operation could not be completed."""


class DuplicateObservationError(StoreError):
    """An observation with the same (target_id, timestamp) already exists."""


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ObservationStore:
    """Keyed storage for targets and their observations."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _init_db(self) -> None:
        with self._lock:
            try:
                conn = self._get_conn()
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS monitoring_targets (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        interval REAL NOT NULL,
                        retries INTEGER NOT NULL,
                        timeout REAL NOT NULL,
                        target TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS observations (
                        monitoring_target_id TEXT NOT NULL,
                        timestamp TEXT NOT NULL,
                        status TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        retries INTEGER NOT NULL,
                        PRIMARY KEY (monitoring_target_id, timestamp),
                        FOREIGN KEY (monitoring_target_id) REFERENCES monitoring_targets (id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_observations_timestamp
                        ON observations (timestamp);
                """)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to initialise {self._db_path}: {e}") from e

    # ── Targets ───────────────────────────────────────────────────────────

    def upsert_target(self, target: TargetDescriptor) -> None:
        """Create the target or overwrite every field except its id."""
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    "INSERT INTO monitoring_targets (id, name, interval, retries, timeout, target) "
                    "VALUES (?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (id) DO UPDATE SET "
                    "name = excluded.name, interval = excluded.interval, "
                    "retries = excluded.retries, timeout = excluded.timeout, "
                    "target = excluded.target",
                    (
                        target.id, target.name, target.interval,
                        target.retries, target.timeout, encode_probe(target.probe),
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Failed to upsert target {target.id}: {e}") from e

    def list_targets(self) -> list[TargetDescriptor]:
        with self._lock:
            try:
                rows = self._get_conn().execute(
                    "SELECT * FROM monitoring_targets",
                ).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to list targets: {e}") from e
        return [_row_to_target(r) for r in rows]

    def get_target(self, target_id: str) -> TargetDescriptor | None:
        with self._lock:
            try:
                row = self._get_conn().execute(
                    "SELECT * FROM monitoring_targets WHERE id = ?", (target_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read target {target_id}: {e}") from e
        return _row_to_target(row) if row else None

    # ── Observations ──────────────────────────────────────────────────────

    def append(self, observation: Observation) -> None:
        """Insert one observation. Never overwrites an existing row."""
        status = observation.observed_status
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute(
                    "INSERT INTO observations "
                    "(monitoring_target_id, timestamp, status, description, retries) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        observation.target.id, format_timestamp(status.timestamp),
                        status.status.value, status.description, status.retries,
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateObservationError(
                        f"Observation {observation.target.id}@{status.timestamp} already stored"
                    ) from e
                raise StoreError(f"Observation for unknown target {observation.target.id}: {e}") from e
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Failed to append observation for {observation.target.id}: {e}") from e

    def get_latest(self, target_id: str) -> ObservedStatus | None:
        """Most recent observed status of a target, if any."""
        with self._lock:
            try:
                row = self._get_conn().execute(
                    "SELECT * FROM observations "
                    "WHERE monitoring_target_id = ? "
                    "ORDER BY timestamp DESC LIMIT 1",
                    (target_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read latest status of {target_id}: {e}") from e
        return _row_to_status(row) if row else None

    def get_history(self, target_id: str, limit: int | None = None) -> list[Observation]:
        """All observations of a target, newest first."""
        with self._lock:
            try:
                conn = self._get_conn()
                target_row = conn.execute(
                    "SELECT * FROM monitoring_targets WHERE id = ?", (target_id,),
                ).fetchone()
                if target_row is None:
                    return []
                rows = conn.execute(
                    "SELECT * FROM observations "
                    "WHERE monitoring_target_id = ? "
                    "ORDER BY timestamp DESC LIMIT ?",
                    (target_id, -1 if limit is None else limit),
                ).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read history of {target_id}: {e}") from e

        target = _row_to_target(target_row)
        return [Observation(target=target, observed_status=_row_to_status(r)) for r in rows]

    def delete_older_than(self, days: float, now: datetime | None = None) -> int:
        """Remove observations of every target older than ``now - days``."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        with self._lock:
            conn = self._get_conn()
            try:
                cursor = conn.execute(
                    "DELETE FROM observations WHERE timestamp < ?",
                    (format_timestamp(cutoff),),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Failed to delete old observations: {e}") from e
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def _row_to_target(row: sqlite3.Row) -> TargetDescriptor:
    return TargetDescriptor(
        id=row["id"],
        name=row["name"],
        interval=row["interval"],
        retries=row["retries"],
        timeout=row["timeout"],
        probe=decode_probe(row["target"]),
    )


def _row_to_status(row: sqlite3.Row) -> ObservedStatus:
    return ObservedStatus(
        timestamp=datetime.fromisoformat(row["timestamp"]),
        status=Status(row["status"]),
        description=row["description"],
        retries=row["retries"],
    )
