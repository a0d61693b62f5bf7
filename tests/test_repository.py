"""
Tests for the Record and Actor Repositories

Covers upserts, secondary index maintenance, deletes, hydration and
statistics.
"""

import json
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import CollectionIndexConfig
from database import ActorRepository, Database, Record, RecordRepository
from database.models import Actor, AtUri, hydrate_blob_refs
from tests.fixtures.sample_data import ALICE, BOB, CAROL, POST, PROFILE, post_body, uri


@pytest.fixture
def db():
    database = Database(':memory:')
    yield database
    database.close()


@pytest.fixture
def repo(db):
    return RecordRepository(db, CollectionIndexConfig({POST: ['title', 'lang']}))


def kv_rows(db, record_uri):
    with db.transaction() as conn:
        rows = conn.execute(
            'SELECT key, value FROM record_kv WHERE uri = ? ORDER BY key', (record_uri,)
        ).fetchall()
    return [(row['key'], row['value']) for row in rows]


def facet_rows(db, record_uri):
    with db.transaction() as conn:
        rows = conn.execute(
            'SELECT type, value FROM facet_index WHERE uri = ? ORDER BY type, value', (record_uri,)
        ).fetchall()
    return [(row['type'], row['value']) for row in rows]


class TestEndToEnd:
    """The basic put / get / list / delete cycle."""

    def test_put_get_list_delete(self, db):
        """A record round-trips through the store."""
        repo = RecordRepository(db, CollectionIndexConfig({'app.test.post': ['title']}))
        record_uri = 'at://did:x/app.test.post/abc'

        repo.put(Record.create(record_uri, 'bafyabc',
                               {'title': 'hi', 'createdAt': '2024-01-01T00:00:00Z'}))

        stored = repo.get(record_uri)
        assert stored['title'] == 'hi'
        assert stored['did'] == 'did:x'
        assert stored['cid'] == 'bafyabc'

        page = repo.list('app.test.post',
                         order_by=[{'field': 'createdAt', 'direction': 'asc'}], limit=1)
        assert [item['uri'] for item in page.items] == [record_uri]
        assert page.cursor is None

        assert repo.delete(record_uri) is True
        assert repo.get(record_uri) is None

    def test_get_missing_returns_none(self, repo):
        """Missing records are not an error."""
        assert repo.get(uri(ALICE, POST, 'nope')) is None

    def test_delete_missing_returns_false(self, repo):
        assert repo.delete(uri(ALICE, POST, 'nope')) is False


class TestPut:
    """Tests for upserts and secondary index sync."""

    def test_upsert_is_keyed_on_uri(self, repo):
        """A new revision replaces the old one in place."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body('first')))
        repo.put(Record.create(record_uri, 'bafy2', post_body('second')))

        stored = repo.get(record_uri)
        assert stored['cid'] == 'bafy2'
        assert stored['title'] == 'second'
        assert repo.count(POST) == 1

    def test_collection_and_did_come_from_uri(self, repo):
        """The URI is the source of truth for collection and did."""
        record = Record.create(uri(BOB, POST, 'a'), 'bafy1', {'title': 'x'})
        assert record.collection == POST
        assert record.did == BOB

    def test_kv_rows_follow_configured_fields(self, db, repo):
        """Only configured fields that are present get a kv row."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body('hi', lang='en', other='x')))

        assert kv_rows(db, record_uri) == [('lang', 'en'), ('title', 'hi')]

    def test_kv_rows_removed_when_field_disappears(self, db, repo):
        """A field dropped from the body loses its kv row."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body('hi', lang='en')))
        repo.put(Record.create(record_uri, 'bafy2', {'title': 'hi again'}))

        assert kv_rows(db, record_uri) == [('title', 'hi again')]

    def test_kv_rows_removed_when_field_unconfigured(self, db):
        """Reconfiguring the collection prunes stale keys on the next write."""
        record_uri = uri(ALICE, POST, 'a')
        RecordRepository(db, CollectionIndexConfig({POST: ['title', 'lang']})).put(
            Record.create(record_uri, 'bafy1', post_body('hi', lang='en')))
        RecordRepository(db, CollectionIndexConfig({POST: ['lang']})).put(
            Record.create(record_uri, 'bafy2', post_body('hi', lang='de')))

        assert kv_rows(db, record_uri) == [('lang', 'de')]

    def test_kv_text_rule(self, db):
        """Non-string values are stored in their text form."""
        repo = RecordRepository(db, CollectionIndexConfig({POST: ['n', 'b', 'o']}))
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', {'n': 42, 'b': False, 'o': {'k': 1}}))

        assert kv_rows(db, record_uri) == [('b', 'false'), ('n', '42'), ('o', '{"k":1}')]

    def test_facets_indexed(self, db, repo):
        """Mentions, tags and links become facet rows; tags lower-cased."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body(
            'hi', tags=['Python', 'python'], mentions=[BOB], links=['https://example.com'])))

        assert facet_rows(db, record_uri) == [
            ('link', 'https://example.com'),
            ('mention', BOB),
            ('tag', 'python'),
        ]

    def test_facets_cleared_by_update_without_facets(self, db, repo):
        """Facet rows are recomputed even when the new body has none."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body('hi', tags=['music'])))
        repo.put(Record.create(record_uri, 'bafy2', post_body('hi')))

        assert facet_rows(db, record_uri) == []

    def test_put_many(self, repo):
        records = [Record.create(uri(ALICE, POST, f'r{i}'), f'bafy{i}', post_body(f't{i}'))
                   for i in range(3)]
        assert repo.put_many(records) == 3
        assert repo.count(POST) == 3


class TestDelete:
    """Tests for deletes."""

    def test_delete_removes_index_rows(self, db, repo):
        """kv rows are deleted and facet rows cascade."""
        record_uri = uri(ALICE, POST, 'a')
        repo.put(Record.create(record_uri, 'bafy1', post_body('hi', lang='en', tags=['x'])))

        assert repo.delete(record_uri) is True
        assert kv_rows(db, record_uri) == []
        assert facet_rows(db, record_uri) == []

    def test_failed_write_is_rolled_back(self, db, repo, monkeypatch):
        """A failure mid-put leaves no partial state."""
        record_uri = uri(ALICE, POST, 'a')

        def explode(*args, **kwargs):
            raise RuntimeError('disk full')

        monkeypatch.setattr(repo, '_sync_kv', explode)
        with pytest.raises(RuntimeError):
            repo.put(Record.create(record_uri, 'bafy1', post_body('hi')))

        assert repo.get(record_uri) is None


class TestHydration:
    """Tests for read-side hydration."""

    def test_blob_ref_flattened(self, repo):
        """Typed blob refs lose the $link wrapper."""
        record_uri = uri(ALICE, PROFILE, 'self')
        repo.put(Record.create(record_uri, 'bafy1', {
            'avatar': {'$type': 'blob', 'ref': {'$link': 'bafkrei'}, 'mimeType': 'image/png', 'size': 12},
        }))

        assert repo.get(record_uri)['avatar'] == {
            '$type': 'blob', 'ref': 'bafkrei', 'mimeType': 'image/png', 'size': 12,
        }

    def test_legacy_blob_ref(self):
        """The untyped {cid, mimeType} shape is normalised too."""
        assert hydrate_blob_refs({'images': [{'image': {'cid': 'bafk', 'mimeType': 'image/jpeg'}}]}) == {
            'images': [{'image': {'$type': 'blob', 'ref': 'bafk', 'mimeType': 'image/jpeg', 'size': None}}]
        }

    def test_non_blob_values_untouched(self):
        body = {'title': 'x', 'nested': {'a': [1, 2]}}
        assert hydrate_blob_refs(body) == body


class TestStats:
    """Tests for statistics helpers."""

    def test_get_stats(self, repo):
        repo.put(Record.create(uri(ALICE, POST, 'a'), 'bafy1', post_body('hi', tags=['x'])))
        repo.put(Record.create(uri(BOB, PROFILE, 'self'), 'bafy2', {'displayName': 'Bob'}))

        stats = repo.get_stats()

        assert stats['total'] == 2
        assert stats['by_collection'] == {POST: 1, PROFILE: 1}
        assert stats['repos'] == 2
        assert stats['kv_rows'] == 1
        assert stats['facets'] == {'tag': 1}

    def test_top_facets(self, repo):
        for i, tags in enumerate([['a', 'b'], ['b'], ['b', 'c'], ['a']]):
            repo.put(Record.create(uri(ALICE, POST, f'r{i}'), f'bafy{i}', post_body('t', tags=tags)))

        assert repo.top_facets('tag', limit=2) == [('b', 3), ('a', 2)]

    def test_export_jsonl(self, repo, tmp_path):
        repo.put(Record.create(uri(ALICE, POST, 'a'), 'bafy1', post_body('hi')))
        output = tmp_path / 'records.jsonl'

        assert repo.export_jsonl(str(output)) == 1
        line = json.loads(output.read_text().strip())
        assert line['title'] == 'hi'


class TestAtUri:
    """Tests for URI parsing."""

    def test_parse(self):
        parsed = AtUri.parse('at://did:plc:abc/app.test.post/3k2')
        assert (parsed.did, parsed.collection, parsed.rkey) == ('did:plc:abc', 'app.test.post', '3k2')
        assert str(parsed) == 'at://did:plc:abc/app.test.post/3k2'

    def test_invalid(self):
        with pytest.raises(ValueError):
            AtUri.parse('https://example.com')


class TestActorRepository:
    """Tests for the actor store."""

    @pytest.fixture
    def actors(self, db):
        return ActorRepository(db)

    def test_put_updates_handle(self, actors):
        actors.put(Actor(did=ALICE, handle='alice.test'))
        actors.put(Actor(did=ALICE, handle='alice.example'))

        assert actors.get(ALICE).handle == 'alice.example'
        assert actors.get_by_handle('alice.example').did == ALICE

    def test_ensure_creates_once(self, actors):
        """ensure() never overwrites an existing handle."""
        assert actors.ensure(BOB) is True
        assert actors.ensure(BOB, handle='bob.test') is False
        assert actors.get(BOB).handle == 'bob.test'

        actors.ensure(BOB, handle='other.test')
        assert actors.get(BOB).handle == 'bob.test'

    def test_search(self, actors):
        actors.put(Actor(did=ALICE, handle='alice.test'))
        actors.put(Actor(did=BOB, handle='bob.test'))

        assert [a.did for a in actors.search('ali')] == [ALICE]

    def test_last_seen_notifs(self, actors):
        actors.put(Actor(did=ALICE, handle='alice.test'))

        assert actors.update_last_seen_notifs(ALICE, '2024-01-01T00:00:00.000Z') is True
        assert actors.get(ALICE).last_seen_notifs == '2024-01-01T00:00:00.000Z'
        assert actors.update_last_seen_notifs(CAROL) is False

    def test_mentioning_uris(self, actors, repo):
        """Other actors' records that mention a DID, newest first."""
        repo.put(Record.create(uri(BOB, POST, 'old'), 'bafy1', post_body('old', 1, mentions=[ALICE])))
        repo.put(Record.create(uri(CAROL, POST, 'new'), 'bafy2', post_body('new', 5, mentions=[ALICE])))
        repo.put(Record.create(uri(ALICE, POST, 'self'), 'bafy3', post_body('me', 9, mentions=[ALICE])))
        repo.put(Record.create(uri(BOB, POST, 'none'), 'bafy4', post_body('none', 7)))

        assert actors.get_mentioning_uris(ALICE) == [uri(CAROL, POST, 'new'), uri(BOB, POST, 'old')]
