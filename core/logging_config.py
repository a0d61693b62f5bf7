"""
atmirror Structured Logging Configuration

Provides:
- JSON lines for production (one object per record, `extra` fields inlined)
- Colorized console output for development
- Request IDs and access logging for the HTTP query surface
- Duration logging for backfill steps and SQL queries

Usage:
    from core.logging_config import setup_logging, get_logger

    # At process startup
    setup_logging(level='INFO', json_format=True)

    # In modules
    logger = get_logger(__name__)
    logger.info('Indexed record', extra={'uri': uri})
"""

import logging
import json
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from functools import wraps


# =============================================================================
# Custom Formatters
# =============================================================================

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'taskName'}


def _extra_fields(record):
    return {
        key: value for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith('_')
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record):
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            'ts': created.strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': record.getMessage(),
        }
        entry.update(_extra_fields(record))

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            entry['exc_type'] = exc_type.__name__
            entry['exc'] = str(exc)
            entry['stack'] = ''.join(traceback.format_exception(exc_type, exc, tb))

        return json.dumps(entry, default=repr)


class ColoredFormatter(logging.Formatter):
    """Short colored lines with `extra` fields appended as key=value."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[1;31m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, '')
        clock = time.strftime('%H:%M:%S', time.localtime(record.created))

        line = f'{clock} {color}{record.levelname[:4]}{self.RESET} {record.name} {record.getMessage()}'

        extras = _extra_fields(record)
        if extras:
            line += ' ' + ' '.join(f'{key}={value}' for key, value in extras.items())

        if record.exc_info:
            line += '\n' + self.formatException(record.exc_info)

        return line


# =============================================================================
# Logger Setup
# =============================================================================

def setup_logging(level='INFO', json_format=False, app=None, stream=None):
    """
    Configure root logging for the mirror process.

    Replaces any handlers already on the root logger, so calling it again
    (e.g. from `serve` after the CLI has configured logging) is safe.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON lines instead of colored console output
        app: Optional Flask app whose logger should use the same handler
        stream: Output stream, stdout by default
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f'Unknown log level: {level}')

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else ColoredFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    if app is not None:
        app.logger.handlers = [handler]
        app.logger.setLevel(log_level)

    # websockets logs every frame at DEBUG
    logging.getLogger('websockets').setLevel(max(log_level, logging.INFO))

    return root_logger


def get_logger(name):
    return logging.getLogger(name)


# =============================================================================
# Request Logging
# =============================================================================

def setup_request_logging(app):
    """
    Tag each request with an ID and log one access line when it completes.

    A caller-supplied X-Request-ID is reused; otherwise a new UUID is
    generated. The ID is echoed back in the response header.
    """
    from flask import request, g

    access_log = get_logger('atmirror.requests')

    @app.before_request
    def start_request():
        g.request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        g.started = time.perf_counter()

    @app.after_request
    def finish_request(response):
        request_id = g.get('request_id', '-')
        elapsed = time.perf_counter() - g.get('started', time.perf_counter())

        status = response.status_code
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        access_log.log(level, f'{request.method} {request.full_path.rstrip("?")} {status}', extra={
            'request_id': request_id,
            'status_code': status,
            'duration_ms': round(elapsed * 1000, 1),
        })

        response.headers['X-Request-ID'] = request_id
        return response


# =============================================================================
# Timing Helpers
# =============================================================================

def log_performance(logger_name=None):
    """
    Decorator that logs how long each call took.

    Successful calls are logged at DEBUG, failures at ERROR; the exception
    is re-raised either way.

    Usage:
        @log_performance('atmirror.backfill')
        def reconcile(self, identities, collections):
            ...
    """
    def decorator(func):
        logger = get_logger(logger_name or func.__module__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            started = time.perf_counter()
            outcome = 'failed'
            try:
                result = func(*args, **kwargs)
                outcome = 'completed'
                return result
            finally:
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                logger.log(
                    logging.DEBUG if outcome == 'completed' else logging.ERROR,
                    f'{func.__qualname__} {outcome}',
                    extra={'duration_ms': duration_ms}
                )

        return wrapper
    return decorator


def timed_query(conn, sql, params, label, fetch='all'):
    """
    Execute a query and log its duration at DEBUG.

    Args:
        conn: sqlite3 connection
        sql: Query text
        params: Bound parameters
        label: Name used in the log line (e.g. 'getRecords')
        fetch: 'all' for fetchall(), 'one' for fetchone()

    Returns:
        List of rows or a single row
    """
    logger = get_logger('atmirror.query')
    started = time.perf_counter()

    cursor = conn.execute(sql, params)
    result = cursor.fetchall() if fetch == 'all' else cursor.fetchone()

    if logger.isEnabledFor(logging.DEBUG):
        rows = len(result) if fetch == 'all' else int(result is not None)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.debug(f'{label}: {rows} rows in {duration_ms}ms',
                     extra={'query_label': label, 'duration_ms': duration_ms})

    return result
