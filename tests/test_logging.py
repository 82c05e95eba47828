"""Tests for strata.core.logging."""

import json
import logging
import sys

from strata.core.logging import StructuredFormatter, configure_logging


def _record(msg="Promoted %d patterns", args=(3,), **extra):
    record = logging.LogRecord("strata.consolidation", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_fields(self):
        entry = json.loads(StructuredFormatter().format(_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "strata.consolidation"
        assert entry["msg"] == "Promoted 3 patterns"
        assert entry["ts"].endswith("Z")

    def test_extra_keys_copied(self):
        entry = json.loads(StructuredFormatter().format(_record(org="org-1", route="r:v1")))
        assert entry["org"] == "org-1"
        assert entry["route"] == "r:v1"

    def test_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "strata", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(StructuredFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]


class TestConfigureLogging:
    def test_structured(self):
        configure_logging(structured=True, level="DEBUG", logger_name="strata.test_structured")
        logger = logging.getLogger("strata.test_structured")
        assert logger.level == logging.DEBUG
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)
        assert logger.propagate is False

    def test_plain_only_sets_level(self):
        configure_logging(level="warning", logger_name="strata.test_plain")
        logger = logging.getLogger("strata.test_plain")
        assert logger.level == logging.WARNING
        assert logger.handlers == []
