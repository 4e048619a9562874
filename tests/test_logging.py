"""Tests for structlog configuration and run-scoped log context."""

from __future__ import annotations

import logging

import structlog
from structlog.testing import capture_logs

from src.crm_sync.core.logging import configure_structlog
from src.crm_sync.sync.schemas import Direction


class TestConfigureStructlog:
    """Test logging setup."""

    def test_configures_structlog_and_quiets_http_client(self):
        try:
            configure_structlog("debug")

            assert structlog.is_configured()
            processors = structlog.get_config()["processors"]
            assert structlog.contextvars.merge_contextvars in processors
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            structlog.reset_defaults()


class TestRunEvents:
    """Test the events a run emits."""

    async def test_run_logs_start_and_completion(self, engine):
        with capture_logs() as logs:
            await engine.run(Direction.PRIMARY_TO_PARTNER, {"project": [{"id": "p1", "name": "Clinic", "client_id": "c9"}]})

        events = [entry["event"] for entry in logs]
        assert events[0] == "sync.run_started"
        assert events[-1] == "sync.run_complete"
        assert "guard.reference_dropped" in events
        complete = logs[-1]
        assert complete["status"] == "success"
        assert complete["warnings"] == 1
