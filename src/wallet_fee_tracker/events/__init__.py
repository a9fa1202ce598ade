"""Pipeline event fan-out."""

from wallet_fee_tracker.events.bus import Event, EventBus, RedisEventSink, Subscription

__all__ = ["Event", "EventBus", "RedisEventSink", "Subscription"]
