"""Follower-side share storage.

A follower holds at most one share per epoch and only keeps the newest
epoch: accepting a share for a later epoch supersedes (deletes) older ones.
Stored shares are never updated in place. SQLite persistence with a
thread lock around the shared connection.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ember_node.core.leadership import Epoch
from ember_node.errors import DuplicateShare, StaleShare
from ember_node.utils.crypto import Share

log = structlog.get_logger()


@dataclass(frozen=True)
class StoredShare:
    """The local operator's share for one epoch."""

    epoch: Epoch
    share: Share
    leader: str
    custody_address: str
    signature: str = ""
    stored_at: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        return f"StoredShare(epoch={self.epoch.id}, index={self.share.x}, leader={self.leader})"


class ShareStore:
    """SQLite-backed store of the shares this operator received.

    Falls back to in-memory SQLite when no db_path is provided (useful for tests).
    """

    _MAX_CONNECT_RETRIES = 3
    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn: sqlite3.Connection | None = self._connect_with_retry(str(path))
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    @staticmethod
    def _connect_with_retry(path: str) -> sqlite3.Connection:
        """Connect to SQLite with retry on OperationalError."""
        for attempt in range(ShareStore._MAX_CONNECT_RETRIES):
            try:
                return sqlite3.connect(path, check_same_thread=False)
            except sqlite3.OperationalError:
                if attempt == ShareStore._MAX_CONNECT_RETRIES - 1:
                    raise
                delay = 2**attempt
                log.warning("db_connect_retry", attempt=attempt + 1, delay_s=delay, path=path)
                time.sleep(delay)
        raise RuntimeError("unreachable")

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS epoch_shares (
                block_number INTEGER NOT NULL,
                log_index INTEGER NOT NULL,
                tx_hash TEXT NOT NULL DEFAULT '',
                share_x INTEGER NOT NULL,
                share_y TEXT NOT NULL,
                leader TEXT NOT NULL,
                custody_address TEXT NOT NULL,
                signature TEXT NOT NULL DEFAULT '',
                stored_at REAL NOT NULL,
                PRIMARY KEY (block_number, log_index)
            );
        """)
        row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            self._conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))
            log.info("schema_version_set", version=self.SCHEMA_VERSION)
        self._conn.commit()

    @staticmethod
    def _row_to_share(row: tuple) -> StoredShare:
        return StoredShare(
            epoch=Epoch(block_number=row[0], log_index=row[1], tx_hash=row[2]),
            share=Share(x=row[3], y=int(row[4], 16)),
            leader=row[5],
            custody_address=row[6],
            signature=row[7],
            stored_at=row[8],
        )

    _SELECT = (
        "SELECT block_number, log_index, tx_hash, share_x, share_y, leader, "
        "custody_address, signature, stored_at FROM epoch_shares"
    )

    def store(self, record: StoredShare) -> None:
        """Store the share for a new epoch and drop shares of older epochs.

        Raises DuplicateShare if the epoch already has a share (the stored one
        is left untouched) and StaleShare if a newer epoch is already stored.
        """
        e = record.epoch
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                existing = self._conn.execute(
                    self._SELECT + " WHERE block_number = ? AND log_index = ?",
                    (e.block_number, e.log_index),
                ).fetchone()
                if existing is not None:
                    self._conn.execute("COMMIT")
                    held = self._row_to_share(existing)
                    matches = held.share == record.share and held.leader.lower() == record.leader.lower()
                    log.warning("share_already_stored", epoch=e.id, matches_stored=matches)
                    raise DuplicateShare(f"Share already stored for epoch {e.id}", matches_stored=matches)

                newer = self._conn.execute(
                    "SELECT block_number, log_index FROM epoch_shares "
                    "WHERE block_number > ? OR (block_number = ? AND log_index > ?) LIMIT 1",
                    (e.block_number, e.block_number, e.log_index),
                ).fetchone()
                if newer is not None:
                    self._conn.execute("COMMIT")
                    log.warning("share_for_stale_epoch", epoch=e.id, newest=f"{newer[0]}:{newer[1]}")
                    raise StaleShare(f"Epoch {e.id} is older than stored epoch {newer[0]}:{newer[1]}")

                superseded = self._conn.execute("DELETE FROM epoch_shares").rowcount
                self._conn.execute(
                    "INSERT INTO epoch_shares (block_number, log_index, tx_hash, share_x, share_y, "
                    "leader, custody_address, signature, stored_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        e.block_number,
                        e.log_index,
                        e.tx_hash,
                        record.share.x,
                        format(record.share.y, "x"),
                        record.leader,
                        record.custody_address,
                        record.signature,
                        record.stored_at,
                    ),
                )
                self._conn.execute("COMMIT")
            except (DuplicateShare, StaleShare):
                raise
            except Exception as err:
                log.error("share_store_error", epoch=e.id, error=str(err))
                try:
                    self._conn.execute("ROLLBACK")
                except Exception as rb_err:
                    log.error("share_store_rollback_failed", epoch=e.id, error=str(rb_err))
                raise
        log.info("share_stored", epoch=e.id, index=record.share.x, leader=record.leader, superseded=superseded)

    def get(self, epoch: Epoch) -> StoredShare | None:
        with self._lock:
            row = self._conn.execute(
                self._SELECT + " WHERE block_number = ? AND log_index = ?",
                (epoch.block_number, epoch.log_index),
            ).fetchone()
        return self._row_to_share(row) if row else None

    def latest(self) -> StoredShare | None:
        """The share of the newest stored epoch."""
        with self._lock:
            row = self._conn.execute(
                self._SELECT + " ORDER BY block_number DESC, log_index DESC LIMIT 1",
            ).fetchone()
        return self._row_to_share(row) if row else None

    def has(self, epoch: Epoch) -> bool:
        return self.get(epoch) is not None

    @property
    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM epoch_shares").fetchone()
        return row[0] if row else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception as e:
                log.warning("share_store_close_error", error=str(e))
            self._conn = None
