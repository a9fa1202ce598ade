"""Tests for the command line interface."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from wallet_fee_tracker.cli import EXIT_CONFIG_ERROR, app
from wallet_fee_tracker.config import clear_settings_cache

WALLET = "0x1234567890abcdef1234567890abcdef12345678"
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("REDIS_URL", "EVENTS_REDIS_ENABLED", "CHAIN_FALLBACK_RPC_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("TRACKER_WALLET_ADDRESS", WALLET)
    monkeypatch.setenv("TRACKER_TOKEN_CONTRACTS", USDC)
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestConfiguration:
    def test_missing_database_url_exits_with_config_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL")
        result = runner.invoke(app, ["status"])
        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_wallet_listed_as_token_is_refused(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKER_TOKEN_CONTRACTS", WALLET)
        result = runner.invoke(app, ["sync-once"])
        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_bad_interval(self) -> None:
        result = runner.invoke(app, ["summary", "--interval", "week"])
        assert result.exit_code == EXIT_CONFIG_ERROR


class TestCommands:
    def test_status_on_fresh_database(self) -> None:
        assert runner.invoke(app, ["init-db"]).exit_code == 0

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["wallet_address"] == WALLET
        assert data["token_contracts"] == [USDC]
        assert data["last_processed_block"] is None
        assert data["open_gaps"] == []
        assert data["stored_transactions"] == 0
        assert data["ledger"] is None

    def test_recompute_with_no_records(self) -> None:
        runner.invoke(app, ["init-db"])

        result = runner.invoke(app, ["recompute"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data == {"records": 0, "repaired": False, "discrepancies": []}

    def test_summary_with_no_records(self) -> None:
        runner.invoke(app, ["init-db"])

        result = runner.invoke(app, ["summary", "--days", "2"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["performance"]["total_days"] == 0
        assert data["balance_history"] == []
