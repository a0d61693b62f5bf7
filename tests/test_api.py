"""
Tests for the HTTP Query Surface
"""

import json
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from api import create_app
from core.config import CollectionIndexConfig, MirrorConfig
from database import Database, Label, Record
from ingestion.service import MirrorService
from tests.fixtures.sample_data import ALICE, BOB, POST, post_body, uri


@pytest.fixture
def service():
    config = MirrorConfig(collections=[POST], index=CollectionIndexConfig({POST: ['title']}))
    mirror = MirrorService(config, db=Database(':memory:'))
    for i, (did, title, tags) in enumerate([
        (ALICE, 'first', ['python']),
        (BOB, 'second', []),
        (ALICE, 'third', ['Python', 'sqlite']),
    ]):
        mirror.records.put(Record.create(
            uri(did, POST, f'r{i}'), f'bafy{i}', post_body(title, minutes=i, tags=tags)
        ))
    yield mirror
    mirror.close()


@pytest.fixture
def client(service):
    return create_app(service).test_client()


class TestHealth:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'
        assert response.get_json()['records'] == 3

    def test_request_id_echoed(self, client):
        response = client.get('/health', headers={'X-Request-ID': 'req-123'})
        assert response.headers['X-Request-ID'] == 'req-123'


class TestListRecords:
    """Tests for GET /records/<collection>."""

    def test_list(self, client):
        data = client.get(f'/records/{POST}').get_json()

        assert [item['title'] for item in data['items']] == ['first', 'second', 'third']
        assert 'nextCursor' not in data

    def test_where_and_order(self, client):
        response = client.get(f'/records/{POST}', query_string={
            'where': json.dumps({'field': 'did', 'equals': ALICE}),
            'orderBy': json.dumps([{'field': 'createdAt', 'direction': 'desc'}]),
        })

        assert [item['title'] for item in response.get_json()['items']] == ['third', 'first']

    def test_pagination(self, client):
        order = json.dumps([{'field': 'title', 'direction': 'asc'}])
        first = client.get(f'/records/{POST}', query_string={'orderBy': order, 'limit': 2}).get_json()
        assert [item['title'] for item in first['items']] == ['first', 'second']

        second = client.get(f'/records/{POST}', query_string={
            'orderBy': order, 'limit': 2, 'cursor': first['nextCursor'],
        }).get_json()
        assert [item['title'] for item in second['items']] == ['third']
        assert 'nextCursor' not in second

    def test_facet(self, client):
        response = client.get(f'/records/{POST}', query_string={
            'facetType': 'tag', 'facetValue': 'PYTHON',
        })
        assert [item['title'] for item in response.get_json()['items']] == ['first', 'third']

    def test_limit_capped(self, client):
        response = client.get(f'/records/{POST}', query_string={'limit': 1000})
        assert len(response.get_json()['items']) == 3

    @pytest.mark.parametrize('query_string', [
        {'where': '{not json'},
        {'orderBy': json.dumps({'field': 'title'})},
        {'facetType': 'tag'},
        {'limit': 0},
    ])
    def test_bad_parameters(self, client, query_string):
        response = client.get(f'/records/{POST}', query_string=query_string)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'validation_error'

    def test_count(self, client):
        response = client.get(f'/records/{POST}/count', query_string={
            'where': json.dumps({'field': 'title', 'in': ['first', 'third']}),
        })
        assert response.get_json() == {'collection': POST, 'count': 2}


class TestGetRecord:
    """Tests for GET /record."""

    def test_found(self, client):
        response = client.get('/record', query_string={'uri': uri(ALICE, POST, 'r0')})

        assert response.status_code == 200
        assert response.get_json()['title'] == 'first'

    def test_not_found(self, client):
        response = client.get('/record', query_string={'uri': uri(ALICE, POST, 'missing')})

        assert response.status_code == 404
        assert response.get_json()['error'] == 'not_found'

    def test_uri_required(self, client):
        assert client.get('/record').status_code == 400


class TestLabels:
    """Tests for GET /labels."""

    def test_labels(self, client, service):
        subject = uri(ALICE, POST, 'r0')
        service.labels.put(Label(src='did:plc:mod', uri=subject, val='spam', cts='2024-01-01T00:00:00Z'))

        response = client.get('/labels', query_string={'subject': subject})

        labels = response.get_json()['labels']
        assert [label['val'] for label in labels] == ['spam']

    def test_subject_required(self, client):
        assert client.get('/labels').status_code == 400


class TestErrors:
    """Tests for the JSON error handlers."""

    def test_unknown_route(self, client):
        response = client.get('/nope')

        assert response.status_code == 404
        assert response.get_json()['error'] == 'not_found'

    def test_method_not_allowed(self, client):
        response = client.post('/health')

        assert response.status_code == 405
        assert response.get_json()['error'] == 'method_not_allowed'

    def test_unexpected_error(self, client, service, monkeypatch):
        def broken():
            raise RuntimeError('boom')

        monkeypatch.setattr(service.records, 'get_stats', broken)
        response = client.get('/health')

        assert response.status_code == 500
        assert response.get_json()['error'] == 'unexpected_error'
        assert 'boom' not in response.get_json()['message']
