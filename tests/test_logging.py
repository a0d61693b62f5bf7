"""
Tests for Logging Configuration
"""

import io
import json
import logging
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.logging_config import ColoredFormatter, JSONFormatter, log_performance, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def make_record(msg='hello', exc_info=None, **extra):
    record = logging.LogRecord('atmirror.test', logging.WARNING, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_inlines_extra_fields(self):
        entry = json.loads(JSONFormatter().format(make_record(uri='at://x', count=3)))

        assert entry['msg'] == 'hello'
        assert entry['level'] == 'warning'
        assert entry['logger'] == 'atmirror.test'
        assert entry['uri'] == 'at://x'
        assert entry['count'] == 3
        assert entry['ts'].endswith('Z')
        assert 'exc_type' not in entry

    def test_json_exception(self):
        try:
            raise KeyError('missing')
        except KeyError:
            record = make_record(exc_info=sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry['exc_type'] == 'KeyError'
        assert 'Traceback' in entry['stack']

    def test_json_unserializable_extra(self):
        entry = json.loads(JSONFormatter().format(make_record(obj=object())))
        assert entry['obj'].startswith('<object')

    def test_colored_appends_extras(self):
        line = ColoredFormatter().format(make_record(uri='at://x'))

        assert 'atmirror.test hello' in line
        assert line.endswith('uri=at://x')


class TestSetup:
    def test_replaces_handlers(self):
        stream = io.StringIO()
        setup_logging('INFO', json_format=True, stream=stream)
        setup_logging('INFO', json_format=True, stream=stream)

        logging.getLogger('atmirror.test').info('once')

        assert len(logging.getLogger().handlers) == 1
        assert [json.loads(line)['msg'] for line in stream.getvalue().splitlines()] == ['once']

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging('LOUD')


class TestLogPerformance:
    def test_logs_failure_and_reraises(self):
        stream = io.StringIO()
        setup_logging('DEBUG', json_format=True, stream=stream)

        @log_performance('atmirror.test')
        def explode():
            raise RuntimeError('boom')

        with pytest.raises(RuntimeError):
            explode()

        entry = json.loads(stream.getvalue().splitlines()[-1])
        assert entry['level'] == 'error'
        assert entry['msg'].endswith('explode failed')
        assert 'duration_ms' in entry

    def test_returns_result(self):
        @log_performance()
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
