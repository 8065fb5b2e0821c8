"""
Tests for the metrics logger wiring.
"""
import logging
import os
import shutil
import tempfile
import unittest

from helpdesk.logging_config import METRICS_LOGGER_NAME, setup_metrics_logger


class TestMetricsLogger(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        setup_metrics_logger(None)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_writes_to_own_file_without_propagating(self):
        path = os.path.join(self.tmpdir, "logs", "chat_metrics.log")
        metrics_logger = setup_metrics_logger(path)

        metrics_logger.info("conversation_id=c1 | total_ms=12")
        for handler in metrics_logger.handlers:
            handler.flush()

        assert metrics_logger.propagate is False
        with open(path, encoding="utf-8") as f:
            assert "conversation_id=c1 | total_ms=12" in f.read()

    def test_reconfiguring_replaces_handlers(self):
        setup_metrics_logger(os.path.join(self.tmpdir, "a.log"))
        metrics_logger = setup_metrics_logger(None)

        assert metrics_logger is logging.getLogger(METRICS_LOGGER_NAME)
        assert len(metrics_logger.handlers) == 1
        assert isinstance(metrics_logger.handlers[0], logging.NullHandler)
