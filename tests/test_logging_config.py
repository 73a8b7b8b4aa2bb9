"""Tests for logging setup and session token masking."""

import logging

from common.logging_config import SessionTokenFilter, setup_logging


def make_record(msg, args=None):
    return logging.LogRecord('relay', logging.INFO, __file__, 1, msg, args, None)


def test_session_ids_masked_in_message():
    """Test session tokens keep only a short prefix."""
    record = make_record('Started session session_AbCdEfGhIjKlMnOpQrStUvWx [peer_id=a]')
    SessionTokenFilter().filter(record)
    assert record.getMessage() == 'Started session session_AbCdEf*** [peer_id=a]'


def test_session_ids_masked_in_args():
    """Test session tokens passed as format arguments are masked."""
    record = make_record('Ended %s', ('session_0123456789abcdef',))
    SessionTokenFilter().filter(record)
    assert record.getMessage() == 'Ended session_012345***'


def test_other_text_untouched():
    """Test messages without tokens pass through unchanged."""
    record = make_record('Request completed: GET /relay/status status=200')
    assert SessionTokenFilter().filter(record) is True
    assert record.getMessage() == 'Request completed: GET /relay/status status=200'


def test_setup_logging_configures_package_loggers():
    """Test component and package loggers share the configured level."""
    logger = setup_logging('relay-test', log_level='DEBUG')
    assert logger.name == 'relay-test'
    assert logger.level == logging.DEBUG
    assert logging.getLogger('peer').level == logging.DEBUG
    assert any(isinstance(f, SessionTokenFilter) for h in logger.handlers for f in h.filters)
