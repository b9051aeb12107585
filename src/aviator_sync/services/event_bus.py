"""
Event Bus Service - synchronous publish/subscribe on the engine's event loop

Key behaviors:
- Dispatch happens inline in publish(); there is no worker thread or queue, so a
  subscriber always sees events in commit order
- Weak references for automatic subscriber cleanup (WeakMethod for bound methods)
- Callback ID tracking for proper unsubscribe and duplicate prevention
- Subscriber exceptions are logged and counted, never propagated to the publisher
"""

import logging
import weakref
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Events(Enum):
    """Engine notifications for the presentation layer"""

    # Round / phase events
    STATE_CHANGED = "round.state_changed"
    NEW_ROUND = "round.new"
    ROUND_STARTED = "round.started"
    ROUND_CRASHED = "round.crashed"
    HISTORY_UPDATED = "round.history_updated"

    # Bet slip events
    SLIP_PLACED = "slip.placed"  # optimistic insert
    SLIP_CONFIRMED = "slip.confirmed"
    SLIP_ROLLED_BACK = "slip.rolled_back"
    SLIP_CASHED = "slip.cashed"
    SLIP_LOST = "slip.lost"
    BALANCE_CHANGED = "wallet.balance_changed"
    SESSION_EXPIRED = "wallet.session_expired"

    # Connection events
    CONNECTION_CHANGED = "connection.changed"
    RESYNC_SCHEDULED = "connection.resync_scheduled"
    RESYNC_COMPLETED = "connection.resync_completed"


class EventBus:
    """
    Synchronous event bus.

    One instance per engine. Every publisher and subscriber runs on the same asyncio
    loop, so subscription management needs no lock.
    """

    def __init__(self):
        # Subscribers stored as (callback_id, weak_ref_or_callback) tuples
        self._subscribers: dict[Events, list[tuple[int, Any]]] = {}

        # Track callbacks by ID for proper unsubscribe (no strong refs for weak subscriptions)
        self._callback_ids: dict[Events, dict[int, Any]] = {}

        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "errors": 0,
        }

    def subscribe(self, event: Events, callback: Callable, weak: bool = True):
        """
        Subscribe to an event.

        Args:
            event: Event to subscribe to
            callback: Called with ``{"name": event.value, "data": data}``
            weak: Hold only a weak reference (default True). Pass False for lambdas
                and closures nobody else keeps alive.
        """
        self._subscribers.setdefault(event, [])
        self._callback_ids.setdefault(event, {})

        cb_id = self._callback_key(callback)

        existing = self._callback_ids[event].get(cb_id)
        if existing is not None:
            if self._resolve_callback(existing) is not None:
                logger.debug(f"Already subscribed to {event.value}, skipping duplicate")
                return
            # Stale weakref entry: remove it and re-subscribe
            self._drop(event, cb_id)
            self._subscribers.setdefault(event, [])
            self._callback_ids.setdefault(event, {})

        if weak:
            try:
                if hasattr(callback, "__self__") and hasattr(callback, "__func__"):
                    ref = weakref.WeakMethod(callback)
                else:
                    ref = weakref.ref(callback)
            except TypeError:
                # Not weak-referenceable (e.g. a builtin), store directly
                ref = callback
        else:
            ref = callback

        self._subscribers[event].append((cb_id, ref))
        self._callback_ids[event][cb_id] = ref
        logger.debug(f"Subscribed to {event.value}")

    def unsubscribe(self, event: Events, callback: Callable):
        """Unsubscribe from an event using callback ID matching."""
        if event not in self._subscribers:
            logger.debug(f"No subscribers for {event.value}, nothing to unsubscribe")
            return
        self._drop(event, self._callback_key(callback))
        logger.debug(f"Unsubscribed from {event.value}")

    def publish(self, event: Events, data: Any = None):
        """Dispatch an event to all live subscribers, in subscription order."""
        self._stats["events_published"] += 1

        entries = self._subscribers.get(event)
        if not entries:
            return

        callbacks_to_call = []
        alive_entries = []
        for cb_id, ref in entries:
            callback = self._resolve_callback(ref)
            if callback is not None:
                callbacks_to_call.append(callback)
                alive_entries.append((cb_id, ref))
            else:
                self._callback_ids.get(event, {}).pop(cb_id, None)
        self._subscribers[event] = alive_entries

        message = {"name": event.value, "data": data}
        for callback in callbacks_to_call:
            try:
                callback(message)
                self._stats["events_processed"] += 1
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"Error in callback for {event.value}: {e}", exc_info=True)

    def has_subscribers(self, event: Events) -> bool:
        """Return True if there are any live subscribers for an event."""
        entries = self._subscribers.get(event)
        if not entries:
            return False
        return any(self._resolve_callback(ref) is not None for _, ref in entries)

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics including processing counters."""
        stats = {
            "subscriber_count": sum(len(entries) for entries in self._subscribers.values()),
            "event_types": len(self._subscribers),
        }
        stats.update(self._stats)
        return stats

    def clear_all(self):
        """Clear all subscribers (engine shutdown, tests)."""
        self._subscribers.clear()
        self._callback_ids.clear()
        logger.debug("All subscribers cleared")

    def _drop(self, event: Events, cb_id: int):
        self._callback_ids.get(event, {}).pop(cb_id, None)
        remaining = [(cid, ref) for cid, ref in self._subscribers.get(event, []) if cid != cb_id]
        if remaining:
            self._subscribers[event] = remaining
        else:
            self._subscribers.pop(event, None)
            self._callback_ids.pop(event, None)

    @staticmethod
    def _callback_key(callback: Callable) -> int:
        # Bound methods are recreated on every attribute access; key on (instance, function)
        if hasattr(callback, "__self__") and hasattr(callback, "__func__"):
            return hash((id(callback.__self__), id(callback.__func__)))
        return id(callback)

    @staticmethod
    def _resolve_callback(ref):
        """Resolve weak or direct callback reference"""
        if isinstance(ref, weakref.ReferenceType):
            return ref()
        if callable(ref):
            return ref
        return None
