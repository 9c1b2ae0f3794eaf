"""
SQLite-backed bookkeeping store (last good build, last refresh, outcome per channel).
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from fcsearch.data.models import ChannelBookkeeping
from fcsearch.domain.errors import StateStoreError
from fcsearch.storage.state_store import StateStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    name TEXT PRIMARY KEY,
    last_good_sequence INTEGER NOT NULL DEFAULT 0,
    last_refresh_at TEXT,
    last_success_at TEXT,
    last_outcome TEXT NOT NULL DEFAULT 'never',
    last_error TEXT,
    options_revision TEXT,
    packages_revision TEXT
)
"""

_COLUMNS = (
    "name",
    "last_good_sequence",
    "last_refresh_at",
    "last_success_at",
    "last_outcome",
    "last_error",
    "options_revision",
    "packages_revision",
)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SqliteStateStore(StateStore):
    """Stores channel bookkeeping in a single SQLite file (or in memory when no path is given)."""

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        if self.conn is not None:
            return

        target = ":memory:" if self.db_path is None else str(self.db_path)
        if self.db_path is not None:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Opening state store: {target}")

        conn = sqlite3.connect(target, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            row = conn.execute("PRAGMA integrity_check").fetchone()
            if row is None or row[0] != "ok":
                raise StateStoreError(
                    f"state store {target} failed integrity check: {row[0] if row else None}"
                )

            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise StateStoreError(
                    f"state store {target} has schema version {version}, "
                    f"this build understands up to {SCHEMA_VERSION}"
                )
            conn.execute(_SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
        except sqlite3.DatabaseError as e:
            conn.close()
            logger.error(f"State store {target} is unusable: {e}", exc_info=True)
            raise StateStoreError(f"state store {target} is unusable: {e}") from e
        except StateStoreError:
            conn.close()
            raise

        self.conn = conn

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            self.initialize()
        return self.conn

    def _row_to_record(self, row: sqlite3.Row) -> ChannelBookkeeping:
        try:
            return ChannelBookkeeping(**{k: row[k] for k in _COLUMNS})
        except ValidationError as e:
            raise StateStoreError(f"corrupted bookkeeping for channel {row['name']!r}: {e}") from e

    def load_channel(self, name: str) -> Optional[ChannelBookkeeping]:
        with self._lock:
            row = self._connection().execute(
                "SELECT * FROM channels WHERE name = ? LIMIT 1", (name,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def save_channel(self, record: ChannelBookkeeping) -> None:
        values = (
            record.name,
            record.last_good_sequence,
            _to_text(record.last_refresh_at),
            _to_text(record.last_success_at),
            record.last_outcome.value,
            record.last_error,
            record.options_revision,
            record.packages_revision,
        )
        with self._lock:
            conn = self._connection()
            conn.execute(
                f"INSERT OR REPLACE INTO channels ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                values,
            )
            conn.commit()

    def list_channels(self) -> List[ChannelBookkeeping]:
        with self._lock:
            rows = self._connection().execute("SELECT * FROM channels ORDER BY name").fetchall()
        return [self._row_to_record(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
