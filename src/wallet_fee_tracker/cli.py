"""Command line entry points for the wallet fee tracker."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import typer
from pydantic import ValidationError

from wallet_fee_tracker.chain.client import ChainClientError
from wallet_fee_tracker.config import Settings, get_settings
from wallet_fee_tracker.ledger.analytics import balance_history, performance_summary
from wallet_fee_tracker.ledger.models import WalletLedger
from wallet_fee_tracker.poller import Poller
from wallet_fee_tracker.storage.database import DatabaseManager
from wallet_fee_tracker.storage.repos import TransactionRepository, WalletLedgerRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2

app = typer.Typer(
    name="wallet-fee-tracker",
    help="Ingest ERC-20 transfers of a fee wallet and keep an exact per-token ledger.",
    no_args_is_help=True,
)


def _load_settings(command: str | None = None) -> Settings:
    try:
        settings = get_settings()
        if command is not None:
            settings.validate_requirements(command=command)  # type: ignore[arg-type]
    except (ValidationError, ValueError) as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from e

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())
    return settings


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    async def main() -> T:
        return await coro_factory()

    try:
        return asyncio.run(main())
    except (ChainClientError, RuntimeError, OSError) as e:
        logger.error("%s", e)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_RUNTIME_ERROR) from e


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def run() -> None:
    """Run the poller until interrupted."""
    settings = _load_settings("run")

    async def main() -> None:
        poller = Poller(settings)
        try:
            await poller.run()
        except asyncio.CancelledError:
            pass

    try:
        _run(main)
    except KeyboardInterrupt:
        logger.info("Interrupted")


@app.command("sync-once")
def sync_once() -> None:
    """Run one ingestion cycle followed by one reconciliation pass."""
    settings = _load_settings("sync-once")

    async def main() -> dict[str, Any]:
        poller = Poller(settings)
        try:
            report = await poller.run_cycle()
            results = await poller.run_reconciliation()
            return {
                "from_block": report.from_block,
                "to_block": report.to_block,
                "checkpoint": report.checkpoint_after,
                "stored": report.stored,
                "duplicates": report.duplicates,
                "malformed": report.malformed,
                "failed": report.failed,
                "gaps": [str(g.range) for g in report.gaps],
                "stopped_reason": report.stopped_reason,
                "reconciliation": [r.to_dict() for r in results],
            }
        finally:
            await poller.close()

    _echo_json(_run(main))


@app.command()
def reconcile() -> None:
    """Compare ledger balances with on-chain balanceOf."""
    settings = _load_settings("reconcile")

    async def main() -> list[dict[str, object]]:
        poller = Poller(settings)
        try:
            return [r.to_dict() for r in await poller.run_reconciliation()]
        finally:
            await poller.close()

    _echo_json(_run(main))


@app.command()
def recompute(
    repair: bool = typer.Option(False, "--repair", help="Replace the stored ledger when it differs"),
) -> None:
    """Rebuild the ledger from stored transactions and report differences."""
    settings = _load_settings()

    async def main() -> dict[str, Any]:
        poller = Poller(settings)
        try:
            report = await poller.recompute_ledger(repair=repair)
        finally:
            await poller.close()
        return {
            "records": report.records,
            "repaired": report.repaired,
            "discrepancies": [
                {"scope": d.scope, "field": d.field, "stored": str(d.stored), "recomputed": str(d.recomputed)}
                for d in report.discrepancies
            ],
        }

    result = _run(main)
    _echo_json(result)
    if result["discrepancies"] and not repair:
        raise typer.Exit(EXIT_RUNTIME_ERROR)


@app.command()
def status() -> None:
    """Show checkpoint, open gaps and the stored ledger totals."""
    settings = _load_settings()

    async def main() -> dict[str, Any]:
        poller = Poller(settings)
        try:
            await poller.open()
            snapshot = await poller.status()
            async with poller.db.get_async_session() as session:
                ledger = await WalletLedgerRepository(session).get(
                    settings.tracker.wallet_address, chain_id=settings.chain.chain_id
                )
        finally:
            await poller.close()
        snapshot["ledger"] = _ledger_summary(ledger)
        return snapshot

    _echo_json(_run(main))


@app.command()
def summary(
    days: int = typer.Option(30, min=1, help="Balance history window in days"),
    interval: str = typer.Option("day", help="Balance history bucket: day or hour"),
    clamp: bool = typer.Option(False, "--clamp", help="Show negative running balances as 0"),
) -> None:
    """Show performance figures and running balance history."""
    settings = _load_settings()
    if interval not in ("day", "hour"):
        typer.echo("Error: --interval must be 'day' or 'hour'", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    async def main() -> dict[str, Any]:
        wallet = settings.tracker.wallet_address
        chain_id = settings.chain.chain_id
        db = DatabaseManager(settings.database.url)
        try:
            async with db.get_async_session() as session:
                ledger = await WalletLedgerRepository(session).get(wallet, chain_id=chain_id)
                records = await TransactionRepository(session).list_for_wallet(wallet, chain_id=chain_id)
        finally:
            await db.dispose_async()

        ledger = ledger or WalletLedger(wallet_address=wallet, chain_id=chain_id)
        start = datetime.now(UTC) - timedelta(days=days)
        history = balance_history(
            records,
            wallet_address=wallet,
            interval=interval,  # type: ignore[arg-type]
            start=start,
            clamp=clamp,
        )
        return {
            "performance": performance_summary(ledger, records).to_dict(),
            "balance_history": [p.to_dict() for p in history],
        }

    _echo_json(_run(main))


@app.command("init-db")
def init_db() -> None:
    """Create the schema directly (local runs; use Alembic in production)."""
    settings = _load_settings()

    async def main() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    _run(main)
    typer.echo("Schema created")


def _ledger_summary(ledger: WalletLedger | None) -> dict[str, Any] | None:
    if ledger is None:
        return None
    return {
        "as_of_block": ledger.as_of_block,
        "total_transactions": ledger.total_transactions,
        "total_fee_collections": ledger.total_fee_collections,
        "first_transaction_at": ledger.first_transaction_at,
        "last_transaction_at": ledger.last_transaction_at,
        "tokens": {symbol: token.to_dict() for symbol, token in sorted(ledger.tokens.items())},
    }


def main() -> None:
    app()
