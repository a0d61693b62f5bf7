"""
Read-only Query Routes

Endpoints:
- GET /health                          - liveness plus store/stream status
- GET /records/<collection>            - filtered, ordered, paginated listing
      ?where=<json>&orderBy=<json>&cursor=&limit=&facetType=&facetValue=
- GET /records/<collection>/count      - count with the same filters
- GET /record?uri=at://...             - one hydrated record
- GET /labels?subject=...&issuer=...   - active labels (repeat params for many)
"""

import json
import time
from typing import Any, Optional

from flask import Blueprint, current_app, jsonify, request

from core.errors import NotFoundError, ValidationError

records_bp = Blueprint('records', __name__)

STARTUP_TIME = time.time()
DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def get_service():
    return current_app.extensions['mirror']


def _json_arg(name: str) -> Any:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError(f"'{name}' must be valid JSON", param=name)


def _facet_arg() -> Optional[dict]:
    facet_type = request.args.get('facetType')
    facet_value = request.args.get('facetValue')
    if not facet_type and not facet_value:
        return None
    if not facet_type or not facet_value:
        raise ValidationError("'facetType' and 'facetValue' must be given together")
    return {'type': facet_type, 'value': facet_value}


def _limit_arg() -> int:
    limit = request.args.get('limit', DEFAULT_LIMIT, type=int)
    if limit is None or limit < 1:
        raise ValidationError("'limit' must be a positive integer", param='limit')
    return min(limit, MAX_LIMIT)


@records_bp.route('/health')
def health():
    """Liveness plus a cheap database check."""
    service = get_service()
    stats = service.records.get_stats()

    response = {
        'status': 'ok',
        'uptime_seconds': int(time.time() - STARTUP_TIME),
        'records': stats['total'],
    }
    if service.ingestor is not None:
        response['stream'] = service.ingestor.state.value
    return jsonify(response)


@records_bp.route('/records/<collection>')
def list_records(collection):
    service = get_service()
    order_by = _json_arg('orderBy')
    if order_by is not None and not isinstance(order_by, list):
        raise ValidationError("'orderBy' must be a JSON list", param='orderBy')

    return jsonify(service.get_records(
        collection,
        where=_json_arg('where'),
        order_by=order_by,
        cursor=request.args.get('cursor') or None,
        limit=_limit_arg(),
        facet=_facet_arg(),
    ))


@records_bp.route('/records/<collection>/count')
def count_records(collection):
    service = get_service()
    count = service.count_records(
        collection,
        where=_json_arg('where'),
        facet=_facet_arg(),
    )
    return jsonify({'collection': collection, 'count': count})


@records_bp.route('/record')
def get_record():
    uri = request.args.get('uri')
    if not uri:
        raise ValidationError("'uri' is required", param='uri')

    record = get_service().get_record(uri)
    if record is None:
        raise NotFoundError('Record not found', uri=uri)
    return jsonify(record)


@records_bp.route('/labels')
def query_labels():
    subjects = request.args.getlist('subject')
    if not subjects:
        raise ValidationError("At least one 'subject' is required", param='subject')

    issuers = request.args.getlist('issuer') or None
    return jsonify({'labels': get_service().query_labels(subjects, issuers)})
