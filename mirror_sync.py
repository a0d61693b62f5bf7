#!/usr/bin/env python3
"""
atmirror Command Line

Runs the mirror and answers queries against its store.

Usage:
    # Follow the live stream (Ctrl+C to stop)
    python mirror_sync.py -c config/mirror.yaml stream

    # Backfill the configured collections (optionally for given repos)
    python mirror_sync.py backfill --repo did:plc:abc

    # Fetch individual records missing from the store
    python mirror_sync.py backfill-uris at://did:plc:abc/app.test.post/3k...

    # Query
    python mirror_sync.py query app.test.post --where '{"field": "title", "equals": "hi"}' \\
        --order-by '[{"field": "createdAt", "direction": "desc"}]' --limit 10
    python mirror_sync.py count app.test.post --facet-type tag --facet-value python
    python mirror_sync.py get at://did:plc:abc/app.test.post/3k...
    python mirror_sync.py labels at://did:plc:abc/app.test.post/3k... --issuer did:plc:mod

    # Maintenance
    python mirror_sync.py stats
    python mirror_sync.py clear-labels

    # Serve the read-only HTTP API (optionally with the stream running)
    python mirror_sync.py serve --port 8080 --stream
"""

import argparse
import asyncio
import json
import logging
import sys
import threading
from typing import Any, List, Optional

from core.config import load_config
from core.errors import MirrorError, StreamConnectionError
from core.logging_config import setup_logging
from ingestion.service import MirrorService

logger = logging.getLogger('atmirror.cli')


def _json_option(value: Optional[str], name: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        raise MirrorError(f'{name} is not valid JSON: {e}')


def _facet_option(args) -> Optional[dict]:
    if args.facet_type and args.facet_value:
        return {'type': args.facet_type, 'value': args.facet_value}
    return None


def _print_json(data: Any):
    print(json.dumps(data, indent=2, ensure_ascii=False))


# =============================================================================
# Commands
# =============================================================================

def cmd_stream(service: MirrorService, args) -> int:
    async def run():
        try:
            await service.run_stream()
        finally:
            await service.stop_stream()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\n  Stream stopped.")
    except StreamConnectionError as e:
        logger.error(f'Stream gave up: {e.message}')
        return 1
    return 0


def cmd_backfill(service: MirrorService, args) -> int:
    report = service.backfill(repos=args.repo or None)
    _print_json(report.to_dict())
    return 0 if not report.failures else 2


def cmd_backfill_uris(service: MirrorService, args) -> int:
    report = service.backfill_uris(args.uris)
    _print_json(report.to_dict())
    return 0 if not report.failures else 2


def cmd_query(service: MirrorService, args) -> int:
    result = service.get_records(
        args.collection,
        where=_json_option(args.where, '--where'),
        order_by=_json_option(args.order_by, '--order-by'),
        cursor=args.cursor,
        limit=args.limit,
        facet=_facet_option(args),
    )
    _print_json(result)
    return 0


def cmd_count(service: MirrorService, args) -> int:
    count = service.count_records(
        args.collection,
        where=_json_option(args.where, '--where'),
        facet=_facet_option(args),
    )
    print(count)
    return 0


def cmd_get(service: MirrorService, args) -> int:
    record = service.get_record(args.uri)
    if record is None:
        print(f"  Record not found: {args.uri}")
        return 1
    _print_json(record)
    return 0


def cmd_labels(service: MirrorService, args) -> int:
    _print_json(service.query_labels(args.subjects, args.issuer or None))
    return 0


def cmd_clear_labels(service: MirrorService, args) -> int:
    removed = service.labels.clear()
    print(f"  Removed {removed} labels.")
    return 0


def cmd_stats(service: MirrorService, args) -> int:
    stats = service.stats()
    stats['top_tags'] = service.records.top_facets('tag', limit=args.top)
    _print_json(stats)
    return 0


def cmd_serve(service: MirrorService, args) -> int:
    from api import create_app

    if args.stream:
        thread = threading.Thread(
            target=lambda: asyncio.run(service.run_stream()),
            name='jetstream',
            daemon=True
        )
        thread.start()

    app = create_app(service)
    setup_logging(service.config.log_level, json_format=service.config.log_json, app=app)
    app.run(
        host=args.host or service.config.api_host,
        port=args.port or service.config.api_port,
    )
    return 0


COMMANDS = {
    'stream': cmd_stream,
    'backfill': cmd_backfill,
    'backfill-uris': cmd_backfill_uris,
    'query': cmd_query,
    'count': cmd_count,
    'get': cmd_get,
    'labels': cmd_labels,
    'clear-labels': cmd_clear_labels,
    'stats': cmd_stats,
    'serve': cmd_serve,
}


# =============================================================================
# Main
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="atmirror - local mirror of network records",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', '-c', help='YAML config file (default: $MIRROR_CONFIG)')
    parser.add_argument('--db', help='Database path (overrides config)')
    parser.add_argument('--log-level', help='Log level (overrides config)')
    parser.add_argument('--json-logs', action='store_true', help='Emit JSON log lines')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('stream', help='Follow the live commit stream')

    backfill_parser = subparsers.add_parser('backfill', help='Backfill configured collections')
    backfill_parser.add_argument('--repo', '-r', action='append', help='Repository DID (repeatable)')

    uris_parser = subparsers.add_parser('backfill-uris', help='Fetch individual records')
    uris_parser.add_argument('uris', nargs='+', help='at:// URIs')

    for name, help_text in (('query', 'List records'), ('count', 'Count records')):
        query_parser = subparsers.add_parser(name, help=help_text)
        query_parser.add_argument('collection', help='Collection NSID')
        query_parser.add_argument('--where', '-w', help='Filter tree as JSON')
        query_parser.add_argument('--facet-type', help='Facet type (tag, mention, link)')
        query_parser.add_argument('--facet-value', help='Facet value')
        if name == 'query':
            query_parser.add_argument('--order-by', '-o', help='Ordering list as JSON')
            query_parser.add_argument('--cursor', help='Cursor from a previous page')
            query_parser.add_argument('--limit', '-l', type=int, default=25, help='Page size')

    get_parser = subparsers.add_parser('get', help='Get one record')
    get_parser.add_argument('uri', help='at:// URI')

    labels_parser = subparsers.add_parser('labels', help='Active labels for subjects')
    labels_parser.add_argument('subjects', nargs='+', help='Subject URIs or DIDs')
    labels_parser.add_argument('--issuer', '-i', action='append', help='Label source DID (repeatable)')

    subparsers.add_parser('clear-labels', help='Delete all labels')

    stats_parser = subparsers.add_parser('stats', help='Store statistics')
    stats_parser.add_argument('--top', '-t', type=int, default=10, help='Number of top tags')

    serve_parser = subparsers.add_parser('serve', help='Serve the read-only HTTP API')
    serve_parser.add_argument('--host', help='Bind host')
    serve_parser.add_argument('--port', '-p', type=int, help='Bind port')
    serve_parser.add_argument('--stream', action='store_true', help='Also follow the live stream')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except MirrorError as e:
        print(f"  Configuration error: {e.message}", file=sys.stderr)
        return 1

    if args.db:
        config.database_url = args.db
    if args.log_level:
        config.log_level = args.log_level
    if args.json_logs:
        config.log_json = True

    setup_logging(config.log_level, json_format=config.log_json)

    service = MirrorService(config)
    try:
        return COMMANDS[args.command](service, args)
    except MirrorError as e:
        print(f"  Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        service.close()


if __name__ == '__main__':
    sys.exit(main())
