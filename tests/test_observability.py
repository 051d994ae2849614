"""Tests for logging processors, metrics helpers and the migration runner."""

from pathlib import Path
from unittest.mock import patch

import structlog

from broker.db import migration_runner
from broker.db.migration_runner import run_migrations, sync_database_url
from broker.observability import log_context, metrics
from broker.observability.logging import redact_secrets


class TestRedactSecrets:
    def test_sensitive_keys_redacted(self):
        event = redact_secrets(
            None,
            "info",
            {"event": "x", "secret_access_key": "abc", "session_token": "t", "user_id": "u"},
        )
        assert event["secret_access_key"] == "[REDACTED]"
        assert event["session_token"] == "[REDACTED]"
        assert event["user_id"] == "u"


class TestLogContext:
    def test_binds_and_unbinds(self):
        with log_context(request_id="req-1", user_id=None):
            bound = structlog.contextvars.get_contextvars()
            assert bound["request_id"] == "req-1"
            assert "user_id" not in bound

        assert "request_id" not in structlog.contextvars.get_contextvars()


class TestMetrics:
    def test_record_consent_decision(self):
        counter = metrics.consent_decisions_total.labels(category="sns_publish", outcome="blocked")
        before = counter._value.get()

        metrics.record_consent_decision("sns_publish", "blocked")

        assert counter._value.get() == before + 1


class TestMigrationRunner:
    def test_sync_url(self):
        url = sync_database_url("postgresql+asyncpg://u:p@db:5432/broker")
        assert url == "postgresql+psycopg2://u:p@db:5432/broker"

    def test_missing_alembic_ini_is_skipped(self, tmp_path: Path):
        with (
            patch.object(migration_runner, "ALEMBIC_INI_PATH", tmp_path / "missing.ini"),
            patch.object(migration_runner, "create_engine") as create_engine,
        ):
            run_migrations()

        create_engine.assert_not_called()
