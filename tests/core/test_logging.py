"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from calwatch.core.logging import (
    _NOISE_LOGGERS,
    _user_context,
    add_otel_context,
    add_user_context,
    configure_logging,
    get_user_context,
    set_user_context,
    user_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and user context between tests."""
    token = _user_context.set(None)
    yield
    _user_context.reset(token)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestUserContext:
    def test_set_and_get(self):
        set_user_context("u1")
        assert get_user_context() == "u1"

    def test_default_is_none(self):
        assert get_user_context() is None

    def test_context_manager_restores_previous(self):
        set_user_context("outer")
        with user_context("inner"):
            assert get_user_context() == "inner"
        assert get_user_context() == "outer"


class TestProcessors:
    def test_injects_user_id(self):
        with user_context("u1"):
            result = add_user_context(None, "info", {"event": "test"})
        assert result["user_id"] == "u1"

    def test_omits_unset_user(self):
        assert "user_id" not in add_user_context(None, "info", {"event": "test"})

    def test_otel_ids_without_active_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16


class TestConfigureLogging:
    def test_sets_root_level_and_quiets_noise(self):
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG
        assert len(logging.getLogger().handlers) == 1
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_reconfiguration_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()

        assert len(logging.getLogger().handlers) == 1

    def test_log_root_writes_json_lines(self, tmp_path):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)

        with user_context("u1"):
            logging.getLogger("calwatch.test").info("Reconciled %d event(s)", 2)
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "calwatch.log").read_text().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "Reconciled 2 event(s)"
        assert record["user_id"] == "u1"
        assert record["level"] == "info"
        assert record["logger"] == "calwatch.test"
