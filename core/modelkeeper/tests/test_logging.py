"""Tests for logging setup."""

import logging

from modelkeeper.utils.logging import setup_logging


class TestSetupLogging:
    def test_level_by_name(self):
        logger = setup_logging("debug")
        try:
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 1
        finally:
            setup_logging(logging.INFO)

    def test_unknown_level_falls_back_to_info(self):
        assert setup_logging("chatty").level == logging.INFO

    def test_http_clients_are_quieted(self):
        setup_logging(logging.DEBUG)
        try:
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            setup_logging(logging.INFO)
