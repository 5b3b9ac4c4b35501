"""Tests for the database initialization script."""

import logging

import pytest
from sqlalchemy import create_engine, inspect

from scripts.init_db import check_billing_config, get_database_url, init_database


class TestGetDatabaseUrl:

    def test_missing_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(ValueError):
            get_database_url()

    def test_postgres_scheme_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/billing")
        assert get_database_url() == "postgresql://u:p@db:5432/billing"


def test_init_database_creates_all_tables(tmp_path):
    url = f"sqlite:///{tmp_path / 'init.db'}"

    missing = init_database(url)

    assert missing == []
    engine = create_engine(url)
    tables = set(inspect(engine).get_table_names())
    engine.dispose()
    assert {
        "tenants",
        "tier_ownerships",
        "addon_subscriptions",
        "billing_retries",
        "usage_counters",
        "payment_transactions",
        "processed_payment_events",
        "payment_outcome_conflicts",
        "audit_logs",
    } <= tables


def test_check_billing_config_logs_price_table(caplog):
    with caplog.at_level(logging.INFO, logger="scripts.init_db"):
        check_billing_config()

    assert "tier 1 (starter): 1900 usd" in caplog.text
    assert "Billing config 2025.1 loaded" in caplog.text
