"""
Bar Stream Client - public facade for charting collaborators.

Wires the streaming components together:
- SubscriptionRegistry for listener bookkeeping and the current bar
- StreamSupervisor for the upstream connection
- HistoryClient for seed bars when a subscriber hands in none
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from barfeed.live.config import FeedConfig
from barfeed.live.errors import HistoryError, SubscriptionError
from barfeed.live.history import HistoryClient
from barfeed.live.registry import SubscriptionRegistry
from barfeed.live.supervisor import StreamSupervisor
from barfeed.live.transport import StreamTransport
from barfeed.live.types import (
    Bar,
    BarCallback,
    ClientState,
    ListenerHandle,
    StatusCallback,
    SupervisorState,
)

logger = logging.getLogger(__name__)


class BarStreamClient:
    """
    Real-time bar stream for charting widgets.

    One client owns one registry and one supervisor. The stream is started
    lazily by the first subscription and restarted by any later subscription
    once the supervisor has given up.

    State Machine:
        [STOPPED] --subscribe()/start()--> [RUNNING] --stop()--> [STOPPED]

    Usage:
        async with BarStreamClient(FeedConfig()) as client:
            await client.subscribe("Crypto.BTC/USD", "1D", on_bar, "chart-1")
            ...
            client.unsubscribe("chart-1")
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        *,
        transport: Optional[StreamTransport] = None,
        history: Optional[HistoryClient] = None,
        name: str = "bars",
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Feed configuration, defaults to FeedConfig()
            transport: Byte stream source passed to the supervisor
            history: Seed bar source, built from config.history when omitted
            name: Name for logging purposes
        """
        self._config = config or FeedConfig()
        self._name = name
        self._state = ClientState.STOPPED

        self._registry = SubscriptionRegistry()
        self._supervisor = StreamSupervisor(
            config=self._config.connection,
            registry=self._registry,
            transport=transport,
            on_state_change=self._on_stream_state_change,
            name=f"{name}_stream",
        )

        self._history: Optional[HistoryClient] = history
        if self._history is None and self._config.fetch_seed_bars:
            self._history = HistoryClient(self._config.history)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def supervisor(self) -> StreamSupervisor:
        return self._supervisor

    async def __aenter__(self) -> BarStreamClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def subscribe(
        self,
        instrument_id: str,
        resolution: Optional[str],
        on_bar: BarCallback,
        subscriber_id: str,
        seed_bar: Optional[Bar] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        """
        Register `on_bar` for bar updates of `instrument_id`.

        Without a seed bar the most recent history bar is looked up first
        (when enabled). The stream is started if it is not running.

        Raises:
            SubscriptionError: If the client is closed or arguments are invalid
            ConfigurationError: If the resolution is not understood
        """
        if self._state == ClientState.CLOSED:
            raise SubscriptionError(
                "Client is closed",
                instrument_id=instrument_id,
                listener_id=subscriber_id,
                component="BarStreamClient",
            )

        resolution = resolution or self._config.default_resolution
        logger.info(
            f"[{self._name}] subscribeBars: {instrument_id} ({resolution}) "
            f"subscriber={subscriber_id}"
        )

        if seed_bar is None and self._registry.get_last_bar(instrument_id, resolution) is None:
            seed_bar = await self._lookup_seed(instrument_id, resolution)

        listener = ListenerHandle(
            listener_id=subscriber_id,
            on_bar=on_bar,
            resolution=resolution,
            on_status=on_status,
        )
        self._registry.subscribe(instrument_id, listener, seed_bar)
        self.start()

    def unsubscribe(self, subscriber_id: str) -> bool:
        """Remove one subscriber. Returns False if it was not registered."""
        logger.info(f"[{self._name}] unsubscribeBars: subscriber={subscriber_id}")
        return self._registry.unsubscribe(subscriber_id)

    def start(self) -> bool:
        """
        Make sure the stream is running.

        Returns:
            True if a new connection attempt chain was started
        """
        if self._state == ClientState.CLOSED:
            return False
        self._state = ClientState.RUNNING
        return self._supervisor.ensure_running()

    async def stop(self) -> None:
        """Stop streaming and release network resources."""
        if self._state == ClientState.STOPPED and not self._supervisor.is_running:
            return

        logger.info(f"[{self._name}] Stopping bar stream client...")
        try:
            await self._supervisor.stop()
        finally:
            if self._history is not None:
                await self._history.close()
            self._state = ClientState.STOPPED
        logger.info(f"[{self._name}] Bar stream client stopped")

    async def close(self) -> None:
        """Stop and refuse further subscriptions."""
        await self.stop()
        self._registry.clear()
        self._state = ClientState.CLOSED

    def get_last_bar(self, instrument_id: str, resolution: Optional[str] = None) -> Optional[Bar]:
        return self._registry.get_last_bar(
            instrument_id, resolution or self._config.default_resolution
        )

    async def _lookup_seed(self, instrument_id: str, resolution: str) -> Optional[Bar]:
        if self._history is None:
            return None
        try:
            return await self._history.fetch_seed_bar(instrument_id, resolution)
        except HistoryError as e:
            logger.warning(f"[{self._name}] No seed bar for {instrument_id}: {e}")
            return None

    async def _on_stream_state_change(self, state: SupervisorState) -> None:
        """Log stream state changes."""
        if state == SupervisorState.STREAMING:
            logger.info(f"[{self._name}] Stream connected")
        elif state == SupervisorState.RECONNECT_PENDING:
            logger.warning(f"[{self._name}] Stream lost, reconnect pending")
        elif state == SupervisorState.EXHAUSTED:
            logger.error(
                f"[{self._name}] Stream gave up; {self._registry.listener_count()} "
                "listener(s) will stall until the next subscription"
            )

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        stream = self._supervisor.get_stats()
        registry = self._registry.stats
        return {
            "state": self._state.value,
            "stream_state": self._supervisor.state.value,
            "instruments": self._registry.instruments(),
            "listeners": self._registry.listener_count(),
            "stream": {
                "connection_attempts": stream.connection_attempts,
                "connections_established": stream.connections_established,
                "reconnections": stream.reconnections,
                "chunks_received": stream.chunks_received,
                "ticks_decoded": stream.ticks_decoded,
                "ticks_dispatched": stream.ticks_dispatched,
                "decode_errors": stream.decode_errors,
                "errors": stream.errors,
                "last_error": stream.last_error,
            },
            "registry": {
                "dispatches": registry.dispatches,
                "deliveries": registry.deliveries,
                "dropped_ticks": registry.dropped_ticks,
                "rejected_ticks": registry.rejected_ticks,
                "listener_errors": registry.listener_errors,
            },
        }
