"""Ingestion service for the wallet fee tracker.

This module provides the Poller class that wires the chain client,
chunk collection, materialization, ledger aggregation and checkpointing
together and runs them on a schedule.

Cycle flow:
    Checkpoint → plan chunks → collect (per token) → materialize
    → aggregate → advance checkpoint (one DB transaction per chunk)
    → publish events
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from itertools import groupby
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from wallet_fee_tracker.chain.client import ChainClient, ChainClientError, ChainUnavailableError
from wallet_fee_tracker.config import Settings, get_settings
from wallet_fee_tracker.events.bus import (
    EventBus,
    RedisEventSink,
    balances_reconciled_event,
    ledger_updated_event,
    new_transaction_event,
    new_transactions_event,
)
from wallet_fee_tracker.ingest import planner
from wallet_fee_tracker.ingest.collector import ChunkCollector
from wallet_fee_tracker.ingest.fetcher import TransferFetcher
from wallet_fee_tracker.ingest.materializer import OutcomeKind, TransactionMaterializer
from wallet_fee_tracker.ledger import aggregator
from wallet_fee_tracker.ledger.models import LedgerInvariantError, WalletLedger
from wallet_fee_tracker.ledger.reconcile import LedgerReconciler, ReconciliationResult
from wallet_fee_tracker.storage.database import DatabaseManager
from wallet_fee_tracker.storage.repos import (
    CheckpointRepository,
    IngestionGapRepository,
    TransactionRepository,
    WalletLedgerRepository,
)

if TYPE_CHECKING:
    from wallet_fee_tracker.events.bus import Event
    from wallet_fee_tracker.ingest.models import ChunkGap, ChunkResult, TransferEvent
    from wallet_fee_tracker.ledger.models import LedgerDiscrepancy
    from wallet_fee_tracker.storage.repos import TransactionDTO

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Poller lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class CycleState(str, Enum):
    """Phase of the ingestion cycle in progress."""

    IDLE = "idle"
    FETCHING = "fetching"
    MATERIALIZING = "materializing"
    AGGREGATING = "aggregating"
    ADVANCING = "advancing"


@dataclass
class PollerStats:
    """Statistics for the poller."""

    started_at: datetime | None = None
    cycles_completed: int = 0
    cycles_skipped: int = 0
    chunks_committed: int = 0
    transactions_stored: int = 0
    duplicates_skipped: int = 0
    malformed_skipped: int = 0
    materialize_failures: int = 0
    gaps_recorded: int = 0
    reconciliations: int = 0
    errors: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None


@dataclass
class CycleReport:
    """What one ingestion cycle did."""

    skipped: bool = False
    head: int | None = None
    from_block: int | None = None
    to_block: int | None = None
    checkpoint_before: int | None = None
    checkpoint_after: int | None = None
    chunks_committed: int = 0
    stored: int = 0
    duplicates: int = 0
    malformed: int = 0
    failed: int = 0
    gaps: list[ChunkGap] = field(default_factory=list)
    stopped_reason: str | None = None

    @property
    def caught_up(self) -> bool:
        return (
            not self.skipped
            and self.stopped_reason is None
            and self.head is not None
            and self.checkpoint_after is not None
            and self.checkpoint_after >= self.head
        )


@dataclass
class RecomputeReport:
    discrepancies: list[LedgerDiscrepancy]
    repaired: bool
    records: int


class Poller:
    """Checkpointed ingestion service for one wallet on one chain.

    Example:
        ```python
        from wallet_fee_tracker.config import get_settings
        from wallet_fee_tracker.poller import Poller

        async with Poller(get_settings()) as poller:
            await asyncio.sleep(3600)
        ```

    Collaborators may be injected; anything not injected is built from
    settings in `open()` and owned (closed) by the poller.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        chain: ChainClient | None = None,
        bus: EventBus | None = None,
        redis: Redis | None = None,
        dry_run: bool | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the poller.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager to use instead of one built from settings.
            chain: Chain client to use instead of one built from settings.
            bus: Event bus to publish to.
            redis: Redis client for caching and event forwarding.
            dry_run: If True, events stay in-process. Overrides settings.dry_run.
            sleep: Inter-chunk delay function.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._sleep = sleep

        tracker = self._settings.tracker
        self._wallet = tracker.wallet_address.lower()
        self._tokens = [t.lower() for t in tracker.token_contracts]
        self._chain_id = self._settings.chain.chain_id

        self._state = ServiceState.STOPPED
        self._cycle_state = CycleState.IDLE
        self._stats = PollerStats()

        self._db = db
        self._chain = chain
        self._bus = bus
        self._redis = redis
        self._owns_db = db is None
        self._owns_chain = chain is None
        self._owns_redis = redis is None

        self._collector: ChunkCollector | None = None
        self._materializer: TransactionMaterializer | None = None
        self._reconciler: LedgerReconciler | None = None
        self._opened = False
        self._sink_added = False

        # Synchronization
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._poll_task: asyncio.Task[None] | None = None
        self._stats_task: asyncio.Task[None] | None = None
        self._last_checkpoint: int | None = None

    @property
    def state(self) -> ServiceState:
        """Current lifecycle state."""
        return self._state

    @property
    def cycle_state(self) -> CycleState:
        """Phase of the cycle in progress (IDLE between cycles)."""
        return self._cycle_state

    @property
    def stats(self) -> PollerStats:
        """Current poller statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            self._bus = EventBus(queue_size=self._settings.events.subscriber_queue_size)
        return self._bus

    @property
    def db(self) -> DatabaseManager:
        if self._db is None:
            raise RuntimeError("Poller is not open")
        return self._db

    async def open(self) -> None:
        """Build collaborators that were not injected. Idempotent."""
        if self._opened:
            return
        settings = self._settings

        if self._redis is None and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._db is None:
            logger.debug("Initializing database manager...")
            self._db = DatabaseManager(settings.database.url)

        if self._chain is None:
            logger.debug("Initializing chain client...")
            self._chain = ChainClient(
                settings.chain.rpc_url,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                poa_middleware=settings.chain.poa_middleware,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_retries=settings.chain.max_retries,
                request_timeout_seconds=settings.chain.request_timeout_seconds,
                cache_prefix=f"wallet_fee_tracker:{self._chain_id}:",
            )

        if (
            settings.events.redis_enabled
            and not self._dry_run
            and self._redis is not None
            and not self._sink_added
        ):
            self.bus.add_sink(RedisEventSink(self._redis, channel_prefix=settings.events.redis_channel_prefix))
            self._sink_added = True

        tracker = settings.tracker
        self._collector = ChunkCollector(
            TransferFetcher(self._chain, wallet_address=self._wallet),
            self._tokens,
            max_narrowings=tracker.max_narrowings,
        )
        self._materializer = TransactionMaterializer(
            self._chain,
            wallet_address=self._wallet,
            chain_id=self._chain_id,
            fee_type=tracker.fee_type,
            receipt_max_attempts=tracker.receipt_max_attempts,
        )
        self._reconciler = LedgerReconciler(
            self._chain,
            self._db,
            wallet_address=self._wallet,
            chain_id=self._chain_id,
            token_contracts=self._tokens,
        )
        self._opened = True

    async def close(self) -> None:
        """Release owned resources."""
        if self._owns_chain and self._chain is not None:
            await self._chain.aclose()
            self._chain = None
        if self._owns_db and self._db is not None:
            await self._db.dispose_async()
            self._db = None
        if self._owns_redis and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._opened = False
        logger.debug("Resources cleaned up")

    async def start(self) -> None:
        """Start the poll and reconciliation loops.

        Raises:
            RuntimeError: If the poller is not stopped.
            ChainUnavailableError: If the chain RPC does not answer.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start poller in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting poller for wallet %s on chain %d...", self._wallet, self._chain_id)

        try:
            await self.open()
            assert self._chain is not None
            if not await self._chain.health_check():
                raise ChainUnavailableError("Chain RPC is unreachable")
            self._poll_task = asyncio.create_task(self._run_poll_loop())
            self._stats_task = asyncio.create_task(self._run_stats_loop())
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Poller started successfully")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start poller: %s", e)
            await self.close()
            raise

    async def stop(self) -> None:
        """Stop gracefully; an in-flight cycle finishes its current chunk."""
        if self._state in (ServiceState.STOPPED, ServiceState.ERROR):
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping poller...")
        self._stop_event.set()

        if self._poll_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        if self._stats_task:
            self._stats_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stats_task
            self._stats_task = None

        await self.close()
        self._state = ServiceState.STOPPED
        logger.info("Poller stopped")

    async def _run_poll_loop(self) -> None:
        interval = self._settings.tracker.poll_interval_seconds
        while not self._stop_event.is_set():
            try:
                report = await self.run_cycle()
                # Keep going without waiting while there is backlog.
                if report.stopped_reason is None and not report.skipped and not report.caught_up:
                    continue
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("Ingestion cycle error: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def _run_stats_loop(self) -> None:
        interval = self._settings.tracker.stats_interval_seconds
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass
                await self.run_reconciliation()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.warning("Reconciliation loop error: %s", e)

    async def run_cycle(self) -> CycleReport:
        """Run one ingestion cycle; skipped if one is already in progress."""
        if self._cycle_lock.locked():
            self._stats.cycles_skipped += 1
            logger.debug("Ingestion cycle already in progress; skipping")
            return CycleReport(skipped=True)

        async with self._cycle_lock:
            await self.open()
            report = CycleReport()
            try:
                await self._run_cycle_locked(report)
            except (ChainClientError, SQLAlchemyError) as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                report.stopped_reason = f"error: {e}"
                logger.error("Ingestion cycle aborted: %s", e)
            finally:
                self._cycle_state = CycleState.IDLE
            self._stats.cycles_completed += 1
            self._stats.last_cycle_at = datetime.now(UTC)
            return report

    async def _run_cycle_locked(self, report: CycleReport) -> None:
        assert self._chain is not None and self._collector is not None
        tracker = self._settings.tracker

        self._cycle_state = CycleState.FETCHING
        latest = await self._chain.get_latest_block_number()
        head = max(latest - tracker.confirmations, 0)
        report.head = head

        checkpoint = await self._ensure_checkpoint(head)
        report.checkpoint_before = checkpoint
        report.checkpoint_after = checkpoint
        if head <= checkpoint:
            logger.debug("No new blocks (head=%d, checkpoint=%d)", head, checkpoint)
            return

        from_block = checkpoint + 1
        to_block = min(head, checkpoint + tracker.max_blocks_per_poll)
        report.from_block, report.to_block = from_block, to_block
        chunks = planner.plan(from_block, to_block)
        logger.info(
            "Checking blocks %d to %d in %d chunks for new transfers...",
            from_block,
            to_block,
            len(chunks),
        )

        semaphore = asyncio.Semaphore(tracker.chunk_concurrency)
        collector = self._collector

        async def collect(chunk: Any) -> ChunkResult:
            async with semaphore:
                return await collector.collect(chunk)

        tasks = [asyncio.create_task(collect(chunk)) for chunk in chunks]
        try:
            for i, task in enumerate(tasks):
                if self._stop_event.is_set():
                    report.stopped_reason = "stop requested"
                    break
                self._cycle_state = CycleState.FETCHING
                result = await task
                if result.gaps:
                    await self._record_gaps(result.gaps)
                    report.gaps.extend(result.gaps)
                    report.stopped_reason = f"gap in blocks {result.gaps[0].range}"
                    break
                if not await self._commit_chunk(result, report):
                    break
                if i < len(tasks) - 1 and tracker.inter_chunk_delay_seconds > 0:
                    await self._sleep(tracker.inter_chunk_delay_seconds)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _ensure_checkpoint(self, head: int) -> int:
        async with self.db.get_async_session() as session:
            repo = CheckpointRepository(session)
            existing = await repo.get(self._wallet, chain_id=self._chain_id)
            if existing is not None:
                self._last_checkpoint = existing.last_processed_block
                return existing.last_processed_block

            latest = await TransactionRepository(session).latest_block_for_wallet(
                self._wallet, chain_id=self._chain_id
            )
            if latest is not None:
                # Re-scan the newest stored block; duplicates are skipped.
                seed = max(latest - 1, 0)
            else:
                seed = max(head - self._settings.tracker.lookback_blocks, 0)
            cp = await repo.seed(self._wallet, chain_id=self._chain_id, block_number=seed)
            self._last_checkpoint = cp.last_processed_block
            return cp.last_processed_block

    async def _record_gaps(self, gaps: list[ChunkGap]) -> None:
        async with self.db.get_async_session() as session:
            repo = IngestionGapRepository(session)
            for gap in gaps:
                await repo.record(
                    self._wallet,
                    chain_id=self._chain_id,
                    token_contract=gap.token_contract,
                    from_block=gap.range.start,
                    to_block=gap.range.end,
                    error=gap.error,
                    attempts=gap.attempts,
                )
        self._stats.gaps_recorded += len(gaps)
        for gap in gaps:
            logger.warning(
                "Ingestion gap in blocks %s for token %s after %d requests; checkpoint held",
                gap.range,
                gap.token_contract,
                gap.attempts,
            )

    async def _commit_chunk(self, result: ChunkResult, report: CycleReport) -> bool:
        """Persist one chunk atomically. Returns False if the cycle must stop."""
        assert self._materializer is not None
        materializer = self._materializer
        chunk = result.chunk
        stored: list[TransactionDTO] = []
        duplicates = 0
        malformed = 0
        failed_event: TransferEvent | None = None
        failed_error = ""
        events: list[Event] = []

        async with self.db.get_async_session() as session:
            ledger_repo = WalletLedgerRepository(session)
            ledger = await ledger_repo.get(self._wallet, chain_id=self._chain_id) or WalletLedger(
                wallet_address=self._wallet, chain_id=self._chain_id
            )

            self._cycle_state = CycleState.MATERIALIZING
            # A block is committed all-or-nothing so the checkpoint can sit
            # exactly below a block that failed.
            for _block, block_events in groupby(result.transfers, key=lambda t: t.block_number):
                outcomes = []
                for event in block_events:
                    outcome = await materializer.resolve(session, event)
                    if outcome.kind is OutcomeKind.FAILED:
                        failed_event = event
                        failed_error = outcome.error or "materialization failed"
                        break
                    outcomes.append(outcome)
                if failed_event is not None:
                    break
                for outcome in outcomes:
                    if outcome.kind is OutcomeKind.SKIPPED:
                        malformed += 1
                        continue
                    if outcome.kind is OutcomeKind.STORED:
                        outcome = await materializer.persist(session, outcome)
                    if outcome.kind is OutcomeKind.STORED and outcome.record is not None:
                        stored.append(outcome.record)
                    else:
                        duplicates += 1

            self._cycle_state = CycleState.AGGREGATING
            for record in stored:
                aggregator.apply(ledger, record)
            try:
                ledger.check_invariants()
            except LedgerInvariantError as e:
                logger.warning("Ledger anomaly for %s: %s", self._wallet, e)

            self._cycle_state = CycleState.ADVANCING
            cp_repo = CheckpointRepository(session)
            current = await cp_repo.get(self._wallet, chain_id=self._chain_id)
            current_block = current.last_processed_block if current else 0
            target = chunk.end if failed_event is None else failed_event.block_number - 1
            new_block = current_block
            if target > current_block:
                advanced = await cp_repo.advance(self._wallet, chain_id=self._chain_id, block_number=target)
                new_block = advanced.last_processed_block
                await IngestionGapRepository(session).resolve_covered(
                    self._wallet, chain_id=self._chain_id, from_block=0, to_block=new_block
                )
            ledger.as_of_block = max(ledger.as_of_block, new_block)
            if stored or new_block != current_block:
                await ledger_repo.save(ledger)
            if failed_event is not None:
                await IngestionGapRepository(session).record(
                    self._wallet,
                    chain_id=self._chain_id,
                    token_contract=failed_event.token_contract,
                    from_block=failed_event.block_number,
                    to_block=failed_event.block_number,
                    error=failed_error,
                    attempts=self._settings.tracker.receipt_max_attempts,
                )

        # Committed.
        self._last_checkpoint = new_block
        report.checkpoint_after = new_block
        report.stored += len(stored)
        self._stats.transactions_stored += len(stored)
        report.duplicates += duplicates
        report.malformed += malformed
        self._stats.duplicates_skipped += duplicates
        self._stats.malformed_skipped += malformed
        if failed_event is None:
            report.chunks_committed += 1
            self._stats.chunks_committed += 1

        if stored:
            events.extend(new_transaction_event(r) for r in stored)
            events.append(new_transactions_event(len(stored), new_block))
            events.append(ledger_updated_event(ledger))
        for event in events:
            await self.bus.publish(event)

        if failed_event is not None:
            report.failed += 1
            self._stats.materialize_failures += 1
            self._stats.gaps_recorded += 1
            report.stopped_reason = f"materialization failed at block {failed_event.block_number}"
            logger.warning(
                "Holding checkpoint at %d: transfer %s in block %d could not be materialized; gap recorded",
                new_block,
                failed_event.tx_hash,
                failed_event.block_number,
            )
            return False
        return True

    async def run_reconciliation(self) -> list[ReconciliationResult]:
        """Compare ledger balances with on-chain balances (read-only)."""
        await self.open()
        assert self._reconciler is not None
        results = await self._reconciler.reconcile()
        self._stats.reconciliations += 1
        if results:
            await self.bus.publish(balances_reconciled_event(self._wallet, results))
        return results

    async def recompute_ledger(self, *, repair: bool = False) -> RecomputeReport:
        """Rebuild the ledger from stored records and compare it with the stored one.

        The stored ledger is replaced only when `repair` is True.
        """
        await self.open()
        async with self._cycle_lock:
            async with self.db.get_async_session() as session:
                records = await TransactionRepository(session).list_for_wallet(
                    self._wallet, chain_id=self._chain_id
                )
                ledger_repo = WalletLedgerRepository(session)
                stored = await ledger_repo.get(self._wallet, chain_id=self._chain_id)
                checkpoint = await CheckpointRepository(session).get(self._wallet, chain_id=self._chain_id)
                as_of = checkpoint.last_processed_block if checkpoint else 0
                baseline = stored or WalletLedger(wallet_address=self._wallet, chain_id=self._chain_id)
                discrepancies = aggregator.verify(baseline, records)

                repaired = False
                if repair and (discrepancies or stored is None):
                    rebuilt = aggregator.recompute(
                        records,
                        wallet_address=self._wallet,
                        chain_id=self._chain_id,
                        as_of_block=max(as_of, baseline.as_of_block),
                    )
                    await ledger_repo.save(rebuilt)
                    repaired = True
                    logger.warning(
                        "Ledger for %s replaced by recompute over %d records (%d discrepancies)",
                        self._wallet,
                        len(records),
                        len(discrepancies),
                    )

        if not discrepancies:
            logger.info("Ledger for %s matches recompute over %d records", self._wallet, len(records))
        return RecomputeReport(discrepancies=discrepancies, repaired=repaired, records=len(records))

    async def status(self) -> dict[str, Any]:
        """Snapshot of the service for operators."""
        open_gaps: list[dict[str, Any]] = []
        stored_transactions: int | None = None
        if self._db is not None:
            async with self._db.get_async_session() as session:
                cp = await CheckpointRepository(session).get(self._wallet, chain_id=self._chain_id)
                if cp is not None:
                    self._last_checkpoint = cp.last_processed_block
                gaps = await IngestionGapRepository(session).list_open(self._wallet, chain_id=self._chain_id)
                open_gaps = [
                    {
                        "token_contract": g.token_contract,
                        "from_block": g.from_block,
                        "to_block": g.to_block,
                        "attempts": g.attempts,
                        "last_error": g.last_error,
                    }
                    for g in gaps
                ]
                stored_transactions = await TransactionRepository(session).count_for_wallet(
                    self._wallet, chain_id=self._chain_id
                )
        stats = {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in asdict(self._stats).items()}
        return {
            "state": self._state.value,
            "cycle_state": self._cycle_state.value,
            "is_running": self.is_running,
            "wallet_address": self._wallet,
            "chain_id": self._chain_id,
            "token_contracts": list(self._tokens),
            "last_processed_block": self._last_checkpoint,
            "poll_interval_seconds": self._settings.tracker.poll_interval_seconds,
            "open_gaps": open_gaps,
            "stored_transactions": stored_transactions,
            "stats": stats,
        }

    async def run(self) -> None:
        """Start the poller and run until cancelled or stopped.

        Example:
            ```python
            poller = Poller()
            try:
                await poller.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Poller:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
