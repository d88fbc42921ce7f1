"""
Stream Supervisor for the live bar stream.

Owns the single long-lived connection to the upstream tick feed:
- Connection establishment through a StreamTransport
- Chunk reading, tick decoding and dispatch to the SubscriptionRegistry
- Fixed-delay reconnection with a bounded retry budget
- Deterministic teardown of pending reads and reconnect waits
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from barfeed.live.config import ConnectionConfig
from barfeed.live.decoder import TickDecoder
from barfeed.live.registry import SubscriptionRegistry
from barfeed.live.transport import HttpStreamTransport, StreamTransport
from barfeed.live.types import SupervisorState, SupervisorStats, Tick

logger = logging.getLogger(__name__)


class StreamSupervisor:
    """
    Keeps one upstream stream alive and feeds its ticks to the registry.

    State Machine:
        [IDLE] --ensure_running()--> [CONNECTING] --ok--> [STREAMING]
                                          |                    |
                                       failure        read error / end of stream
                                          v                    v
                                   [RECONNECT_PENDING] <-------+
                                     |            |
                            retries left       no retries left
                            (wait delay)          v
                                     v        [EXHAUSTED] --ensure_running()--> [CONNECTING]
                               [CONNECTING]

    ensure_running() is the only trigger. While a chain is active it is a
    no-op, so overlapping triggers never start a second connection. With a
    budget of N retries and a feed that never answers, exactly N + 1
    connection attempts are made.

    Usage:
        supervisor = StreamSupervisor(ConnectionConfig(), registry)
        supervisor.ensure_running()
        # ... later ...
        await supervisor.stop()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        registry: SubscriptionRegistry,
        transport: Optional[StreamTransport] = None,
        on_state_change: Optional[Callable[[SupervisorState], Awaitable[None]]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        name: str = "stream",
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Connection configuration (URL, retry budget, delay)
            registry: Registry that receives every decoded tick
            transport: Byte stream source, defaults to HttpStreamTransport
            on_state_change: Optional callback for state changes
            sleep: Reconnect delay coroutine, defaults to a wait that stop() interrupts
            name: Name for logging purposes
        """
        self._config = config
        self._registry = registry
        self._transport = transport or HttpStreamTransport(config)
        self._on_state_change = on_state_change
        self._sleep = sleep or self._wait_for_shutdown
        self._name = name

        self._state = SupervisorState.IDLE
        self._decoder = TickDecoder(max_line_bytes=config.max_line_bytes)
        self._stats = SupervisorStats()
        self._retries_left = config.max_retries

        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> SupervisorState:
        """Current supervisor state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """True while a connection attempt chain is active."""
        return self._task is not None and not self._task.done()

    @property
    def retries_left(self) -> int:
        return self._retries_left

    @property
    def decoder(self) -> TickDecoder:
        return self._decoder

    def get_stats(self) -> SupervisorStats:
        """Connection and decoding counters."""
        self._stats.decode_errors = self._decoder.stats.decode_errors
        return self._stats

    async def _set_state(self, new_state: SupervisorState) -> None:
        """Update state and notify listeners."""
        old_state = self._state
        self._state = new_state

        if old_state == new_state:
            return

        logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
        if self._on_state_change:
            try:
                await self._on_state_change(new_state)
            except Exception as e:
                logger.warning(f"[{self._name}] State change callback error: {e}")
        await self._registry.broadcast_status(new_state)

    def ensure_running(self) -> bool:
        """
        Start a connection attempt chain unless one is already active.

        Must be called from a running event loop.

        Returns:
            True if a new chain was started
        """
        if self.is_running:
            return False

        self._task = asyncio.create_task(self.run(), name=f"{self._name}_supervisor")
        return True

    async def run(self) -> None:
        """
        Run one connection attempt chain with a fresh retry budget.

        Returns once the budget is exhausted or stop() is called.
        """
        self._shutdown_event.clear()
        self._retries_left = self._config.max_retries

        while not self._shutdown_event.is_set():
            await self._set_state(SupervisorState.CONNECTING)
            self._stats.connection_attempts += 1

            try:
                await self._transport.connect(
                    self._config.stream_url, attempt=self._stats.connection_attempts
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_error(e)
                logger.error(f"[{self._name}] Error fetching from the streaming endpoint: {e}")
            else:
                await self._stream()

            if self._shutdown_event.is_set():
                break

            await self._set_state(SupervisorState.RECONNECT_PENDING)

            if self._retries_left <= 0:
                logger.error(f"[{self._name}] Maximum reconnection attempts reached.")
                await self._set_state(SupervisorState.EXHAUSTED)
                return

            delay = self._config.reconnect_delay_s
            logger.warning(
                f"[{self._name}] Attempting to reconnect in {delay:.2f}s "
                f"({self._retries_left} retries left)..."
            )
            await self._sleep(delay)
            self._retries_left -= 1
            self._stats.reconnections += 1

    async def _stream(self) -> None:
        """Read chunks until the stream fails or ends, dispatching every tick."""
        await self._set_state(SupervisorState.STREAMING)
        self._stats.connections_established += 1
        self._stats.connected_at = datetime.now(timezone.utc)
        if self._config.reset_retries_on_connect:
            self._retries_left = self._config.max_retries
        self._decoder.reset()

        try:
            async for chunk in self._transport.iter_chunks():
                if self._shutdown_event.is_set():
                    break
                self._stats.chunks_received += 1
                self._stats.bytes_received += len(chunk)
                await self._dispatch(self._decoder.feed(chunk))
            else:
                await self._dispatch(self._decoder.flush())
                logger.error(f"[{self._name}] Streaming ended.")

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Stream read cancelled")
            raise
        except Exception as e:
            self._record_error(e)
            logger.error(f"[{self._name}] Error reading from stream: {e}")
        finally:
            self._stats.connected_at = None
            await self._transport.disconnect()

    async def _dispatch(self, ticks: Iterable[Tick]) -> None:
        for tick in ticks:
            self._stats.ticks_decoded += 1
            self._stats.last_tick_at = datetime.now(timezone.utc)
            if tick.instrument_id in self._registry:
                self._stats.ticks_dispatched += 1
            await self._registry.dispatch(tick.instrument_id, tick)

    def _record_error(self, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)
        self._stats.last_error_at = datetime.now(timezone.utc)

    async def _wait_for_shutdown(self, delay: float) -> None:
        """Sleep for `delay` seconds, returning early if stop() is called."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def wait(self) -> None:
        """Wait for the current chain to finish (exhausted or stopped)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def stop(self) -> None:
        """Cancel pending reads and waits and release the transport."""
        logger.info(f"[{self._name}] Stopping stream")
        self._shutdown_event.set()

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        await self._transport.close()
        await self._set_state(SupervisorState.STOPPED)
        logger.info(f"[{self._name}] Stream stopped")
