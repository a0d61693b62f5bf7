"""
Actor Repository

Identities the mirror has observed: DID, current handle, when it was first
(or last) indexed, and a per-actor notification watermark.
"""

import logging
from typing import List, Optional

from .models import Actor, utc_now_iso
from .schema import Database

logger = logging.getLogger(__name__)


def _row_to_actor(row) -> Actor:
    return Actor(
        did=row['did'],
        handle=row['handle'],
        indexed_at=row['indexedAt'],
        last_seen_notifs=row['lastSeenNotifs'],
    )


class ActorRepository:
    """Sole writer of the actor table. Actors are never deleted automatically."""

    def __init__(self, db: Database):
        self.db = db

    def put(self, actor: Actor) -> None:
        """Insert an actor or update its handle and indexedAt."""
        with self.db.transaction() as conn:
            conn.execute('''
                INSERT INTO actor (did, handle, "indexedAt") VALUES (?, ?, ?)
                ON CONFLICT(did) DO UPDATE SET
                    handle = excluded.handle,
                    "indexedAt" = excluded."indexedAt"
            ''', (actor.did, actor.handle, actor.indexed_at))

    def ensure(self, did: str, handle: Optional[str] = None) -> bool:
        """
        Create the actor if it is not known yet.

        An existing row keeps its indexedAt; its handle is only filled in
        when it was missing.

        Returns:
            True if a new actor was created
        """
        with self.db.transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO actor (did, handle, "indexedAt") VALUES (?, ?, ?)
                ON CONFLICT(did) DO NOTHING
            ''', (did, handle, utc_now_iso()))
            created = cursor.rowcount > 0

            if not created and handle:
                conn.execute(
                    'UPDATE actor SET handle = ? WHERE did = ? AND handle IS NULL',
                    (handle, did)
                )

        if created:
            logger.debug(f'New actor {did}', extra={'handle': handle})
        return created

    def exists(self, did: str) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute('SELECT 1 FROM actor WHERE did = ?', (did,)).fetchone()
        return row is not None

    def get(self, did: str) -> Optional[Actor]:
        with self.db.transaction() as conn:
            row = conn.execute('SELECT * FROM actor WHERE did = ?', (did,)).fetchone()
        return _row_to_actor(row) if row else None

    def get_by_handle(self, handle: str) -> Optional[Actor]:
        with self.db.transaction() as conn:
            row = conn.execute('SELECT * FROM actor WHERE handle = ?', (handle,)).fetchone()
        return _row_to_actor(row) if row else None

    def search(self, query: str, limit: int = 25) -> List[Actor]:
        """Actors whose handle contains `query`."""
        with self.db.transaction() as conn:
            rows = conn.execute('''
                SELECT * FROM actor
                WHERE handle LIKE ?
                ORDER BY handle
                LIMIT ?
            ''', (f'%{query}%', limit)).fetchall()
        return [_row_to_actor(row) for row in rows]

    def update_last_seen_notifs(self, did: str, timestamp: Optional[str] = None) -> bool:
        """Move the notification watermark. Returns False for unknown actors."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                'UPDATE actor SET "lastSeenNotifs" = ? WHERE did = ?',
                (timestamp or utc_now_iso(), did)
            )
            return cursor.rowcount > 0

    def get_mentioning_uris(self, did: str, since: Optional[str] = None) -> List[str]:
        """
        URIs of other actors' records that mention `did`, newest first.

        Args:
            did: Mentioned actor
            since: Only records indexed after this time (e.g. lastSeenNotifs)
        """
        sql = '''
            SELECT record.uri FROM record
            JOIN facet_index ON facet_index.uri = record.uri
            WHERE facet_index.type = 'mention' AND facet_index.value = ?
              AND record.did != ?
        '''
        params = [did, did]
        if since:
            sql += ' AND record."indexedAt" > ?'
            params.append(since)
        sql += '''
            ORDER BY COALESCE(
                json_extract(record.json, '$.updatedAt'),
                json_extract(record.json, '$.createdAt'),
                record."indexedAt"
            ) DESC
        '''

        with self.db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row['uri'] for row in rows]
