"""
Record Repository for the Mirror Store

Provides:
- Upserts keyed on URI, with hot-field (record_kv) and facet index sync
- Deletes that cascade to secondary indexes
- Hydrated reads
- Filtered, ordered, keyset-paginated listing via the QueryCompiler
- Store statistics and a facet cloud

Every write runs in one transaction, so a record is never visible without
its index rows (or vice versa).

Usage:
    from database import Database, Record, RecordRepository

    repo = RecordRepository(Database(':memory:'), index_config)
    repo.put(Record.create('at://did:x/app.test.post/abc', 'bafy...', {'title': 'hi'}))
    page = repo.list('app.test.post', where={'field': 'title', 'equals': 'hi'})
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.config import CollectionIndexConfig

from .facets import index_facets
from .models import Record, hydrate_row
from .query import QueryCompiler, QueryOptions, QueryResult, get_path, index_text
from .schema import Database

logger = logging.getLogger(__name__)


class RecordRepository:
    """
    Sole writer of the record, record_kv and facet_index tables.

    Storage failures (sqlite3.Error) propagate unmodified.
    """

    def __init__(self, db: Database, index_config: Optional[CollectionIndexConfig] = None):
        """
        Initialize the repository.

        Args:
            db: Shared database
            index_config: Hot fields per collection; none by default
        """
        self.db = db
        self.index_config = index_config or CollectionIndexConfig()
        self.compiler = QueryCompiler(db, self.index_config)

    # =========================================================================
    # Writes
    # =========================================================================

    def put(self, record: Record) -> None:
        """
        Insert or update a record, replacing its secondary index rows.

        Args:
            record: Record built with Record.create (collection/did come from the URI)
        """
        body = record.body
        kv_rows = self._kv_rows(record.collection, body)
        facets = index_facets(record.uri, body.get('facets'))

        with self.db.transaction() as conn:
            conn.execute('''
                INSERT INTO record (uri, cid, did, collection, json, "indexedAt")
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(uri) DO UPDATE SET
                    cid = excluded.cid,
                    did = excluded.did,
                    collection = excluded.collection,
                    json = excluded.json,
                    "indexedAt" = excluded."indexedAt"
            ''', (record.uri, record.cid, record.did, record.collection,
                  record.json, record.indexed_at))

            self._sync_kv(conn, record.uri, kv_rows)

            conn.execute('DELETE FROM facet_index WHERE uri = ?', (record.uri,))
            if facets:
                conn.executemany(
                    'INSERT OR IGNORE INTO facet_index (uri, type, value) VALUES (?, ?, ?)',
                    [(f.uri, f.type, f.value) for f in facets]
                )

        logger.debug(
            f'Indexed {record.uri}',
            extra={'cid': record.cid, 'kv_fields': len(kv_rows), 'facets': len(facets)}
        )

    def put_many(self, records: Iterable[Record]) -> int:
        """Put each record in turn. Returns the number written."""
        count = 0
        for record in records:
            self.put(record)
            count += 1
        return count

    def delete(self, uri: str) -> bool:
        """
        Delete a record and its index rows.

        Returns:
            True if a record was removed
        """
        with self.db.transaction() as conn:
            cursor = conn.execute('DELETE FROM record WHERE uri = ?', (uri,))
            conn.execute('DELETE FROM record_kv WHERE uri = ?', (uri,))
            removed = cursor.rowcount > 0

        if removed:
            logger.debug(f'Deleted {uri}')
        return removed

    def _kv_rows(self, collection: str, body: Dict[str, Any]) -> List[Tuple[str, str]]:
        rows = []
        for key in self.index_config.indexed_fields(collection):
            value = get_path(body, key)
            if value is not None:
                rows.append((key, index_text(value)))
        return rows

    def _sync_kv(self, conn, uri: str, rows: List[Tuple[str, str]]):
        """Make record_kv for `uri` contain exactly `rows`."""
        keys = [key for key, _ in rows]
        if keys:
            placeholders = ', '.join('?' for _ in keys)
            conn.execute(
                f'DELETE FROM record_kv WHERE uri = ? AND key NOT IN ({placeholders})',
                [uri] + keys
            )
            conn.executemany('''
                INSERT INTO record_kv (uri, key, value) VALUES (?, ?, ?)
                ON CONFLICT(uri, key) DO UPDATE SET value = excluded.value
            ''', [(uri, key, value) for key, value in rows])
        else:
            conn.execute('DELETE FROM record_kv WHERE uri = ?', (uri,))

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, uri: str) -> Optional[Dict[str, Any]]:
        """
        Get a hydrated record by URI.

        Returns:
            {uri, cid, did, indexedAt, **body} or None
        """
        with self.db.transaction() as conn:
            row = conn.execute('SELECT * FROM record WHERE uri = ?', (uri,)).fetchone()

        if row is None:
            return None
        return hydrate_row(row)

    def exists(self, uri: str) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute('SELECT 1 FROM record WHERE uri = ?', (uri,)).fetchone()
        return row is not None

    def list(
        self,
        collection: str,
        where: Any = None,
        order_by: Optional[List[Dict[str, str]]] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        facet: Optional[Dict[str, str]] = None
    ) -> QueryResult:
        """
        List records of a collection.

        Args:
            collection: Collection NSID
            where: Filter tree (see QueryOptions)
            order_by: [{'field', 'direction'}]
            cursor: Cursor from a previous page
            limit: Page size
            facet: {'type', 'value'}

        Returns:
            QueryResult with hydrated items and the next cursor, if any
        """
        return self.compiler.select(collection, QueryOptions(
            where=where, order_by=order_by, cursor=cursor, limit=limit, facet=facet
        ))

    def count(
        self,
        collection: str,
        where: Any = None,
        facet: Optional[Dict[str, str]] = None
    ) -> int:
        """Count records of a collection matching the filter."""
        return self.compiler.count(collection, QueryOptions(where=where, facet=facet))

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self.db.transaction() as conn:
            stats = {}

            stats['total'] = conn.execute('SELECT COUNT(*) FROM record').fetchone()[0]

            rows = conn.execute('''
                SELECT collection, COUNT(*) as count
                FROM record
                GROUP BY collection
                ORDER BY count DESC
            ''').fetchall()
            stats['by_collection'] = {row['collection']: row['count'] for row in rows}

            stats['repos'] = conn.execute(
                'SELECT COUNT(DISTINCT did) FROM record'
            ).fetchone()[0]

            stats['kv_rows'] = conn.execute('SELECT COUNT(*) FROM record_kv').fetchone()[0]

            rows = conn.execute('''
                SELECT type, COUNT(*) as count
                FROM facet_index
                GROUP BY type
            ''').fetchall()
            stats['facets'] = {row['type']: row['count'] for row in rows}

            return stats

    def top_facets(self, facet_type: str = 'tag', limit: int = 50) -> List[Tuple[str, int]]:
        """Most common facet values of a type, with counts."""
        with self.db.transaction() as conn:
            rows = conn.execute('''
                SELECT value, COUNT(*) as count
                FROM facet_index
                WHERE type = ?
                GROUP BY value
                ORDER BY count DESC, value ASC
                LIMIT ?
            ''', (facet_type, limit)).fetchall()

        return [(row['value'], row['count']) for row in rows]

    def export_jsonl(self, path: str, collection: Optional[str] = None) -> int:
        """
        Export hydrated records to a JSONL file.

        Returns:
            Number of exported records
        """
        sql = 'SELECT * FROM record'
        params: List[Any] = []
        if collection:
            sql += ' WHERE collection = ?'
            params.append(collection)
        sql += ' ORDER BY "indexedAt", cid'

        with self.db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()

        with open(path, 'w') as f:
            for row in rows:
                f.write(json.dumps(hydrate_row(row), ensure_ascii=False) + '\n')

        logger.info(f'Exported {len(rows)} records to {path}')
        return len(rows)
