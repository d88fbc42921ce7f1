"""
Subscription registry for the live bar stream.

Maps instrument -> resolution -> Subscription. Each subscription holds the
listeners for that instrument/resolution and exactly one authoritative "last
known bar". Ticks are folded into every resolution's bar first, then the
results are fanned out to the instrument's listeners in registration order.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Optional

from barfeed.live.aggregator import first_bar, next_bar, parse_resolution
from barfeed.live.errors import SubscriptionError
from barfeed.live.types import Bar, ListenerHandle, SupervisorState, Tick

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """Live binding between one instrument/resolution and its listeners."""

    instrument_id: str
    resolution: str
    last_bar: Optional[Bar] = None
    listeners: dict[str, ListenerHandle] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.listeners


@dataclass
class RegistryStats:
    """Statistics for the subscription registry."""

    dispatches: int = 0
    deliveries: int = 0
    dropped_ticks: int = 0  # Ticks for instruments nobody subscribed to
    rejected_ticks: int = 0  # Ticks whose time cannot be placed in a period
    listener_errors: int = 0


class SubscriptionRegistry:
    """
    Owns every active subscription of one running client.

    All methods are expected to run on the event loop thread. Dispatch stores
    the new bars before fan-out starts, so a later dispatch always sees them.

    Usage:
        registry = SubscriptionRegistry()
        registry.subscribe("Crypto.BTC/USD", ListenerHandle("ui-1", on_bar, "1D"), seed)
        await registry.dispatch("Crypto.BTC/USD", tick)
        registry.unsubscribe("ui-1")
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, dict[str, Subscription]] = {}
        # instrument -> listener_id -> handle, in registration order across resolutions
        self._fanout: dict[str, dict[str, ListenerHandle]] = {}
        self._listener_index: dict[str, tuple[str, str]] = {}
        self._stats = RegistryStats()

    @property
    def stats(self) -> RegistryStats:
        """Get registry statistics."""
        return self._stats

    def __len__(self) -> int:
        return sum(len(by_res) for by_res in self._subscriptions.values())

    def __contains__(self, instrument_id: object) -> bool:
        return instrument_id in self._subscriptions

    def subscribe(
        self,
        instrument_id: str,
        listener: ListenerHandle,
        seed_bar: Optional[Bar] = None,
    ) -> Subscription:
        """
        Register `listener` for `instrument_id` bars at `listener.resolution`.

        The first listener creates the subscription, seeded with `seed_bar`.
        Later listeners join the existing subscription and keep its current
        bar; their seed only fills in a subscription that has no bar yet.

        Raises:
            SubscriptionError: If the instrument or listener id is empty
            ConfigurationError: If the resolution is not understood
        """
        if not instrument_id:
            raise SubscriptionError(
                "instrument_id must not be empty",
                listener_id=listener.listener_id,
                component="SubscriptionRegistry",
            )
        if not listener.listener_id:
            raise SubscriptionError(
                "listener_id must not be empty",
                instrument_id=instrument_id,
                component="SubscriptionRegistry",
            )
        parse_resolution(listener.resolution)

        if listener.listener_id in self._listener_index:
            logger.debug(f"[registry] Re-subscribing listener {listener.listener_id}")
            self.unsubscribe(listener.listener_id)

        by_resolution = self._subscriptions.setdefault(instrument_id, {})
        subscription = by_resolution.get(listener.resolution)
        if subscription is None:
            subscription = Subscription(
                instrument_id=instrument_id,
                resolution=listener.resolution,
                last_bar=seed_bar,
            )
            by_resolution[listener.resolution] = subscription
            logger.info(
                f"[registry] Subscribe to streaming. Channel: {instrument_id} "
                f"({listener.resolution})"
            )
        elif subscription.last_bar is None and seed_bar is not None:
            subscription.last_bar = seed_bar

        subscription.listeners[listener.listener_id] = listener
        self._fanout.setdefault(instrument_id, {})[listener.listener_id] = listener
        self._listener_index[listener.listener_id] = (instrument_id, listener.resolution)
        return subscription

    def unsubscribe(self, listener_id: str) -> bool:
        """
        Remove one listener. Drops its subscription once no listeners remain.

        Returns:
            True if the listener was registered, False otherwise
        """
        key = self._listener_index.pop(listener_id, None)
        if key is None:
            return False

        instrument_id, resolution = key
        fanout = self._fanout.get(instrument_id, {})
        fanout.pop(listener_id, None)
        if not fanout:
            self._fanout.pop(instrument_id, None)

        by_resolution = self._subscriptions.get(instrument_id, {})
        subscription = by_resolution.get(resolution)
        if subscription is None:
            return False

        subscription.listeners.pop(listener_id, None)
        if subscription.is_empty:
            del by_resolution[resolution]
            if not by_resolution:
                del self._subscriptions[instrument_id]
            logger.info(
                f"[registry] Unsubscribe from streaming. Channel: {instrument_id} ({resolution})"
            )
        return True

    def get_subscription(self, instrument_id: str, resolution: str) -> Optional[Subscription]:
        return self._subscriptions.get(instrument_id, {}).get(resolution)

    def get_last_bar(self, instrument_id: str, resolution: str) -> Optional[Bar]:
        subscription = self.get_subscription(instrument_id, resolution)
        return subscription.last_bar if subscription else None

    def instruments(self) -> list[str]:
        """Instruments with at least one listener, in subscription order."""
        return list(self._subscriptions)

    def listener_count(self, instrument_id: Optional[str] = None) -> int:
        if instrument_id is not None:
            return len(self._fanout.get(instrument_id, {}))
        return len(self._listener_index)

    def _advance(self, subscription: Subscription, tick: Tick) -> Bar:
        previous = subscription.last_bar
        if previous is None:
            bar = first_bar(tick, subscription.resolution)
        else:
            bar = next_bar(previous, tick, subscription.resolution)

        if previous is None or bar.period_start_s != previous.period_start_s:
            logger.debug(f"[registry] Generate new bar {subscription.instrument_id}: {bar}")
        subscription.last_bar = bar
        return bar

    async def dispatch(self, instrument_id: str, tick: Tick) -> int:
        """
        Fold `tick` into every subscription of `instrument_id` and fan out.

        Unknown instruments are ignored. Listeners are called in the order
        they subscribed to the instrument, whatever their resolution. A
        listener that raises is logged and does not stop delivery to the
        listeners after it.

        Returns:
            Number of successful listener deliveries
        """
        by_resolution = self._subscriptions.get(instrument_id)
        if not by_resolution:
            self._stats.dropped_ticks += 1
            return 0

        self._stats.dispatches += 1

        bars: dict[str, Bar] = {}
        for resolution, subscription in list(by_resolution.items()):
            try:
                bars[resolution] = self._advance(subscription, tick)
            except (ValueError, OverflowError, OSError) as e:
                self._stats.rejected_ticks += 1
                logger.warning(
                    f"[registry] Cannot place tick at t={tick.timestamp_s} for "
                    f"{instrument_id} ({resolution}): {e}"
                )

        # Snapshot: listeners may unsubscribe from inside their callback
        deliveries = [
            (listener, bars[listener.resolution])
            for listener in list(self._fanout.get(instrument_id, {}).values())
            if listener.resolution in bars
        ]

        delivered = 0
        for listener, bar in deliveries:
            try:
                result = listener.on_bar(bar)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(
                    f"[registry] Listener {listener.listener_id} failed for "
                    f"{instrument_id}: {e}",
                    exc_info=True,
                )

        self._stats.deliveries += delivered
        return delivered

    async def broadcast_status(self, state: SupervisorState) -> None:
        """Tell listeners that asked for it about a stream state change."""
        listeners = [
            listener
            for fanout in self._fanout.values()
            for listener in fanout.values()
            if listener.on_status is not None
        ]
        for listener in listeners:
            try:
                result = listener.on_status(state)  # type: ignore[misc]
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._stats.listener_errors += 1
                logger.error(
                    f"[registry] Status callback of {listener.listener_id} failed: {e}",
                    exc_info=True,
                )

    def clear(self) -> None:
        """Drop every subscription."""
        self._subscriptions.clear()
        self._fanout.clear()
        self._listener_index.clear()

    def reset_stats(self) -> None:
        """Reset registry statistics."""
        self._stats = RegistryStats()
