"""Logging configuration and provision-correlated context."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from provision_engine.observability import logging as obs_logging
from provision_engine.observability.logging import bound_context, configure_logging, get_logger


@pytest.fixture
def fresh_logging(monkeypatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(obs_logging, '_configured', False)
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_configure_sets_level_and_single_handler(fresh_logging):
    configure_logging(level='debug', json_output=True)

    assert fresh_logging.level == logging.DEBUG
    assert len(fresh_logging.handlers) == 1
    assert logging.getLogger('httpx').level == logging.WARNING


def test_configure_runs_once(fresh_logging):
    configure_logging(level='WARNING', json_output=True)
    configure_logging(level='DEBUG', json_output=False)

    assert fresh_logging.level == logging.WARNING


def test_bound_context_reaches_json_lines(fresh_logging, capsys):
    configure_logging(level='INFO', json_output=True)
    logger = get_logger('provision_engine.test')

    with bound_context(provision_id='p-1'):
        logger.info('provision_state_changed', state='PURCHASING')
    logger.info('after_context')

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert lines[0]['event'] == 'provision_state_changed'
    assert lines[0]['provision_id'] == 'p-1'
    assert lines[0]['state'] == 'PURCHASING'
    assert 'provision_id' not in lines[1]
