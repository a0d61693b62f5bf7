"""
SQLite Schema and Connection Handling for the Mirror Store

Tables:
- record: one row per mirrored record (uri primary key)
- record_kv: hot-field secondary index, (uri, key) -> value
- facet_index: inverted index over rich-text facets, cascades with record
- actor: identities the mirror has seen
- labels: moderation labels, (src, uri, cid, val) primary key

Usage:
    from database.schema import Database

    db = Database(':memory:')
    with db.transaction() as conn:
        conn.execute('SELECT COUNT(*) FROM record')
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

SCHEMA = '''
CREATE TABLE IF NOT EXISTS "actor" (
    "did" TEXT PRIMARY KEY NOT NULL,
    "handle" TEXT,
    "indexedAt" TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS actor_handle_idx ON actor(handle);

CREATE TABLE IF NOT EXISTS "record" (
    "uri" TEXT PRIMARY KEY NOT NULL,
    "cid" TEXT NOT NULL,
    "did" TEXT NOT NULL,
    "collection" TEXT NOT NULL,
    "json" TEXT NOT NULL,
    "indexedAt" TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_record_did ON record(did);
CREATE INDEX IF NOT EXISTS idx_record_collection ON record(collection);
CREATE INDEX IF NOT EXISTS idx_record_did_collection ON record(did, collection);

-- Hot fields, one row per configured key present in the body
CREATE TABLE IF NOT EXISTS record_kv (
    uri TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (uri, key)
);

CREATE INDEX IF NOT EXISTS idx_record_kv_uri ON record_kv(uri);
CREATE INDEX IF NOT EXISTS idx_record_kv_key_value ON record_kv(key, value);

CREATE TABLE IF NOT EXISTS labels (
    src TEXT NOT NULL,
    uri TEXT NOT NULL,
    cid TEXT NOT NULL DEFAULT '',
    val TEXT NOT NULL,
    neg BOOLEAN DEFAULT FALSE,
    cts DATETIME NOT NULL,
    exp DATETIME,
    PRIMARY KEY (src, uri, cid, val)
);

CREATE INDEX IF NOT EXISTS idx_labels_uri ON labels(uri);

CREATE TABLE IF NOT EXISTS "facet_index" (
    "uri" TEXT NOT NULL,         -- record.uri
    "type" TEXT NOT NULL,        -- 'mention', 'tag', 'link'
    "value" TEXT NOT NULL,       -- did, lower-cased tag, or link uri
    PRIMARY KEY ("uri", "type", "value"),
    FOREIGN KEY ("uri") REFERENCES record("uri") ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS facet_index_type_value ON facet_index (type, value);
'''

# Columns added after the first release: (table, column, DDL type)
MIGRATIONS = [
    ('actor', 'lastSeenNotifs', 'TEXT'),
]


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Add any missing columns. Returns the number of columns added."""
    added = 0
    for table, column, ddl_type in MIGRATIONS:
        exists = conn.execute(
            f"SELECT 1 FROM pragma_table_info('{table}') WHERE name = ?",
            (column,)
        ).fetchone()
        if not exists:
            conn.execute(f'ALTER TABLE {table} ADD COLUMN "{column}" {ddl_type}')
            logger.info(f'Added column {table}.{column}')
            added += 1
    return added


# =============================================================================
# Connection
# =============================================================================

class Database:
    """
    Single shared SQLite connection for the process.

    All access goes through transaction(), which serializes callers with a
    re-entrant lock so the stream callback, backfill loop and request handlers
    can share one connection.
    """

    def __init__(self, db_path: Union[str, Path] = ':memory:'):
        """
        Open (and initialize) the database.

        Args:
            db_path: SQLite file path or ':memory:'
        """
        self.db_path = str(db_path)
        if self.db_path != ':memory:' and not self.db_path.startswith('file:'):
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            uri=self.db_path.startswith('file:')
        )
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        """Initialize pragmas, schema and migrations."""
        with self._lock:
            self._conn.execute('PRAGMA journal_mode = WAL')
            self._conn.execute('PRAGMA foreign_keys = ON')
            self._conn.executescript(SCHEMA)
            apply_migrations(self._conn)
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        Nested calls join the outermost transaction; only the outermost block
        commits or rolls back.
        """
        with self._lock:
            self._depth += 1
            try:
                yield self._conn
                if self._depth == 1:
                    self._conn.commit()
            except Exception:
                if self._depth == 1:
                    self._conn.rollback()
                raise
            finally:
                self._depth -= 1

    def close(self):
        with self._lock:
            self._conn.close()
