"""
Database Layer for atmirror

SQLite-based hybrid relational/JSON store for mirrored records.

Features:
- Upserts with hot-field and facet secondary indexes
- Filtered, ordered, keyset-paginated queries
- Actor and moderation label stores

Usage:
    from database import Database, Record, RecordRepository

    db = Database('data/mirror.db')
    repo = RecordRepository(db, index_config)
    repo.put(Record.create(uri, cid, body))
    page = repo.list('app.test.post', limit=20)
"""

from .schema import Database
from .models import AtUri, Record, Actor
from .query import QueryCompiler, QueryOptions, QueryResult, encode_cursor, decode_cursor
from .repository import RecordRepository
from .actors import ActorRepository
from .labels import Label, LabelRepository

__all__ = [
    'Database',
    'AtUri',
    'Record',
    'Actor',
    'QueryCompiler',
    'QueryOptions',
    'QueryResult',
    'encode_cursor',
    'decode_cursor',
    'RecordRepository',
    'ActorRepository',
    'Label',
    'LabelRepository',
]
