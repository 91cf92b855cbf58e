"""Tests for structured logging."""

import json
import logging

from fleetdeploy.utils.logging import ConsoleFormatter, JSONFormatter, LogContext, setup_logging


def _record(message='hello', **fields):
    record = logging.LogRecord('fleetdeploy.test', logging.INFO, __file__, 1, message, None, None)
    for key, value in fields.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_copies_structured_fields(self):
        data = json.loads(JSONFormatter().format(_record(stack='web', attempt=2, other='x')))

        assert data['message'] == 'hello'
        assert data['level'] == 'INFO'
        assert data['stack'] == 'web'
        assert data['attempt'] == 2
        assert 'other' not in data

    def test_console_formatter_prefixes(self):
        line = ConsoleFormatter().format(_record(stack='web', operation='deploy'))
        assert line.endswith('(deploy) [web] hello')


class TestLogContext:
    def test_adds_fields_and_restores_factory(self):
        logger = logging.getLogger('fleetdeploy.test')
        factory = logging.getLogRecordFactory()

        with LogContext(logger, revision='b' * 40):
            record = logging.getLogRecordFactory()('x', logging.INFO, __file__, 1, 'm', None, None)
            assert record.revision == 'b' * 40

        assert logging.getLogRecordFactory() is factory


def test_setup_logging_writes_json_lines(tmp_path):
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    try:
        setup_logging('debug', str(tmp_path))
        logging.getLogger('fleetdeploy.test').info('written', extra={'stack': 'web'})
        for handler in root.handlers:
            handler.flush()

        files = list(tmp_path.glob('fleetdeploy-*.jsonl'))
        assert len(files) == 1
        entry = json.loads(files[0].read_text().strip().splitlines()[-1])
        assert entry['message'] == 'written'
        assert entry['stack'] == 'web'
        assert logging.getLogger('paramiko').level == logging.WARNING
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[1]
        root.setLevel(saved[0])
