"""In-process publish/subscribe fan-out with optional Redis forwarding.

Publishing never blocks on a slow consumer: each subscriber owns a bounded
queue and the oldest buffered event is dropped when it is full. Sinks (such
as Redis pub/sub) are awaited in turn and their failures are logged, never
raised to the publisher.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from wallet_fee_tracker.ledger.models import WalletLedger
    from wallet_fee_tracker.ledger.reconcile import ReconciliationResult
    from wallet_fee_tracker.storage.repos import TransactionDTO

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

EVENT_NEW_TRANSACTION = "new_transaction"
EVENT_NEW_TRANSACTIONS = "new_transactions"
EVENT_LEDGER_UPDATED = "ledger_updated"
EVENT_BALANCES_RECONCILED = "balances_reconciled"


@dataclass(frozen=True)
class Event:
    event_type: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "emitted_at": self.emitted_at.isoformat(),
            "payload": self.payload,
        }


def new_transaction_event(record: TransactionDTO) -> Event:
    return Event(
        event_type=EVENT_NEW_TRANSACTION,
        payload={
            "tx_hash": record.tx_hash,
            "block_number": record.block_number,
            "log_index": record.log_index,
            "timestamp": record.timestamp.isoformat(),
            "token_contract": record.token_contract,
            "token_symbol": record.token_symbol,
            "from_address": record.from_address,
            "to_address": record.to_address,
            "value_raw": str(record.value_raw),
            "value_formatted": record.value_formatted,
            "transaction_type": record.transaction_type,
            "is_fee_collection": record.is_fee_collection,
            "fee_type": record.fee_type,
            "status": record.status,
        },
    )


def new_transactions_event(count: int, latest_block: int) -> Event:
    return Event(
        event_type=EVENT_NEW_TRANSACTIONS,
        payload={"count": count, "latest_block": latest_block},
    )


def ledger_updated_event(ledger: WalletLedger) -> Event:
    return Event(
        event_type=EVENT_LEDGER_UPDATED,
        payload={
            "wallet_address": ledger.wallet_address,
            "chain_id": ledger.chain_id,
            "as_of_block": ledger.as_of_block,
            "total_transactions": ledger.total_transactions,
            "total_fee_collections": ledger.total_fee_collections,
            "tokens": {
                symbol: {
                    "current_balance": str(t.current_balance),
                    "current_balance_formatted": t.current_balance_formatted,
                    "total_fees_collected": str(t.total_fees_collected),
                    "total_fees_collected_formatted": t.total_fees_collected_formatted,
                }
                for symbol, t in sorted(ledger.tokens.items())
            },
        },
    )


def balances_reconciled_event(
    wallet_address: str,
    results: Iterable[ReconciliationResult],
) -> Event:
    return Event(
        event_type=EVENT_BALANCES_RECONCILED,
        payload={
            "wallet_address": wallet_address,
            "results": [r.to_dict() for r in results],
        },
    )


class EventSink(Protocol):
    async def send(self, event: Event) -> None: ...


class Subscription:
    """Bounded, async-iterable stream of events for one consumer."""

    def __init__(self, bus: EventBus, event_types: frozenset[str] | None, maxsize: int) -> None:
        self._bus = bus
        self.event_types = event_types
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    def offer(self, event: Event) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> Event:
        return await self.queue.get()

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            yield await self.queue.get()


class EventBus:
    """Fan-out of pipeline events to in-process subscribers and sinks."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._sinks: list[EventSink] = []
        self.published = 0

    def subscribe(self, event_types: Iterable[str] | None = None) -> Subscription:
        types = frozenset(event_types) if event_types is not None else None
        sub = Subscription(self, types, self._queue_size)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    async def publish(self, event: Event) -> None:
        """Deliver `event` to every interested subscriber and sink."""
        self.published += 1
        for sub in list(self._subscriptions):
            if sub.wants(event):
                before = sub.dropped
                sub.offer(event)
                if sub.dropped != before:
                    logger.warning("Subscriber queue full; dropped oldest %s event", event.event_type)
        for sink in list(self._sinks):
            try:
                await sink.send(event)
            except Exception as e:
                logger.warning("Event sink %s failed for %s: %s", type(sink).__name__, event.event_type, e)


class RedisEventSink:
    """Forward events as JSON to Redis pub/sub channel `<prefix>:<event_type>`."""

    def __init__(self, redis: Redis, *, channel_prefix: str) -> None:
        self._redis = redis
        self._prefix = channel_prefix

    def channel_for(self, event_type: str) -> str:
        return f"{self._prefix}:{event_type}"

    async def send(self, event: Event) -> None:
        await self._redis.publish(self.channel_for(event.event_type), json.dumps(event.to_dict()))
