"""
Unit tests for the stream supervisor.

The upstream feed is scripted with ReplayTransport and reconnect waits are
recorded instead of slept, so every test runs without network or real delays.
"""

import asyncio
import logging

import pytest

from barfeed.live.config import ConnectionConfig
from barfeed.live.errors import StreamConnectionError
from barfeed.live.registry import SubscriptionRegistry
from barfeed.live.supervisor import StreamSupervisor
from barfeed.live.transport import ReplayTransport
from barfeed.live.types import Bar, ListenerHandle, SupervisorState

SEED = Bar(period_start_s=100_000, open=10.0, high=10.0, low=10.0, close=10.0)
TICK_1 = b'{"id":"BTC","p":12,"t":100500}\n'
TICK_2 = b'{"id":"BTC","p":8,"t":186500}\n'


class SleepRecorder:
    """Stands in for the reconnect wait and remembers every delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry()


@pytest.fixture
def bars(registry: SubscriptionRegistry) -> list[Bar]:
    received: list[Bar] = []
    registry.subscribe("BTC", ListenerHandle("chart", received.append, "1D"), SEED)
    return received


def make_supervisor(
    registry: SubscriptionRegistry,
    transport: ReplayTransport,
    sleep: SleepRecorder,
    **config_kwargs,
) -> StreamSupervisor:
    config = ConnectionConfig(stream_url="https://feed.test/streaming", **config_kwargs)
    return StreamSupervisor(config, registry, transport=transport, sleep=sleep, name="test")


class TestRetryBudget:
    """Tests for bounded reconnection."""

    @pytest.mark.asyncio
    async def test_persistent_failure_makes_n_plus_one_attempts(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        """Test 3 retries against a dead feed means exactly 4 attempts."""
        transport = ReplayTransport([])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=3)

        await supervisor.run()

        assert len(transport.connect_urls) == 4
        assert sleeps.delays == [3.0, 3.0, 3.0]
        assert supervisor.state == SupervisorState.EXHAUSTED
        assert supervisor.get_stats().connection_attempts == 4
        assert supervisor.get_stats().reconnections == 3

    @pytest.mark.asyncio
    async def test_zero_retries(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()

        assert len(transport.connect_urls) == 1
        assert sleeps.delays == []
        assert supervisor.state == SupervisorState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_custom_delay(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([])
        supervisor = make_supervisor(
            registry, transport, sleeps, max_retries=2, reconnect_delay_s=0.5
        )

        await supervisor.run()
        assert sleeps.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_exhaustion_logged(
        self,
        registry: SubscriptionRegistry,
        sleeps: SleepRecorder,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        supervisor = make_supervisor(registry, ReplayTransport([]), sleeps, max_retries=1)

        with caplog.at_level(logging.ERROR, logger="barfeed.live.supervisor"):
            await supervisor.run()

        messages = [r.message for r in caplog.records]
        assert any("Error fetching from the streaming endpoint" in m for m in messages)
        assert any("Maximum reconnection attempts reached." in m for m in messages)

    @pytest.mark.asyncio
    async def test_successful_connect_resets_budget(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        """Test a connection that worked refills the retry budget."""
        transport = ReplayTransport([StreamConnectionError("down"), [TICK_1]])
        supervisor = make_supervisor(
            registry, transport, sleeps, max_retries=1, reset_retries_on_connect=True
        )

        await supervisor.run()

        # fail, retry -> stream ends with budget back to 1, retry -> fail, give up
        assert len(transport.connect_urls) == 3
        assert sleeps.delays == [3.0, 3.0]

    @pytest.mark.asyncio
    async def test_budget_not_reset_by_default(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([StreamConnectionError("down"), [TICK_1]])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=1)

        await supervisor.run()
        assert len(transport.connect_urls) == 2

    @pytest.mark.asyncio
    async def test_clean_endings_spend_the_budget(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        """Test a feed that accepts and then closes still exhausts after N + 1 attempts."""
        transport = ReplayTransport([[TICK_1] for _ in range(10)])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=3)

        await supervisor.run()

        assert len(transport.connect_urls) == 4
        assert transport.sessions_left == 6
        assert sleeps.delays == [3.0, 3.0, 3.0]
        assert supervisor.state == SupervisorState.EXHAUSTED
        assert supervisor.get_stats().connections_established == 4


class TestStreaming:
    """Tests for chunk reading and dispatch."""

    @pytest.mark.asyncio
    async def test_ticks_reach_listeners(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[TICK_1, TICK_2]])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()

        assert bars == [
            Bar(100_000, 10.0, 12.0, 10.0, 12.0),
            Bar(186_400, 8.0, 8.0, 8.0, 8.0),
        ]
        stats = supervisor.get_stats()
        assert stats.ticks_decoded == 2
        assert stats.ticks_dispatched == 2
        assert stats.connections_established == 1

    @pytest.mark.asyncio
    async def test_record_split_across_chunks(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[TICK_1[:9], TICK_1[9:]]])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()
        assert bars == [Bar(100_000, 10.0, 12.0, 10.0, 12.0)]

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[b"not json\n" + TICK_1 + b'{"id":"BTC"\n']])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()

        assert len(bars) == 1
        assert supervisor.get_stats().decode_errors == 2

    @pytest.mark.asyncio
    async def test_unsubscribed_instrument_ignored(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[b'{"id":"ETH","p":1,"t":100500}\n']])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()

        assert bars == []
        assert supervisor.get_stats().ticks_dispatched == 0
        assert registry.stats.dropped_ticks == 1

    @pytest.mark.asyncio
    async def test_read_error_reconnects(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        """Test a mid-stream failure triggers a reconnect that resumes delivery."""
        transport = ReplayTransport(
            [
                [TICK_1, StreamConnectionError("connection reset")],
                [TICK_2],
            ]
        )
        supervisor = make_supervisor(
            registry, transport, sleeps, max_retries=1, reset_retries_on_connect=False
        )

        await supervisor.run()

        assert len(bars) == 2
        assert bars[-1] == Bar(186_400, 8.0, 8.0, 8.0, 8.0)
        assert sleeps.delays == [3.0]
        assert transport.disconnects == 2
        stats = supervisor.get_stats()
        assert stats.errors >= 1
        assert "connection reset" in (stats.last_error or "")

    @pytest.mark.asyncio
    async def test_clean_end_reconnects(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[TICK_1], [TICK_2]])
        supervisor = make_supervisor(
            registry, transport, sleeps, max_retries=1, reset_retries_on_connect=False
        )

        await supervisor.run()

        assert len(bars) == 2
        assert supervisor.get_stats().connections_established == 2

    @pytest.mark.asyncio
    async def test_unterminated_last_record_flushed(
        self, registry: SubscriptionRegistry, bars: list[Bar], sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([[TICK_1.rstrip(b"\n")]])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        await supervisor.run()
        assert len(bars) == 1


class TestLifecycle:
    """Tests for ensure_running, stop and state reporting."""

    @pytest.mark.asyncio
    async def test_ensure_running_is_idempotent(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        """Test overlapping triggers start only one attempt chain."""
        transport = ReplayTransport([])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=2)

        assert supervisor.ensure_running() is True
        assert supervisor.ensure_running() is False
        assert supervisor.is_running

        await supervisor.wait()

        assert len(transport.connect_urls) == 3
        assert not supervisor.is_running

    @pytest.mark.asyncio
    async def test_restart_after_exhaustion(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([])
        supervisor = make_supervisor(registry, transport, sleeps, max_retries=0)

        supervisor.ensure_running()
        await supervisor.wait()
        assert supervisor.state == SupervisorState.EXHAUSTED

        assert supervisor.ensure_running() is True
        await supervisor.wait()
        assert len(transport.connect_urls) == 2

    @pytest.mark.asyncio
    async def test_state_sequence(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        states: list[SupervisorState] = []

        async def on_state_change(state: SupervisorState) -> None:
            states.append(state)

        config = ConnectionConfig(stream_url="https://feed.test/streaming", max_retries=0)
        supervisor = StreamSupervisor(
            config,
            registry,
            transport=ReplayTransport([[TICK_1]]),
            on_state_change=on_state_change,
            sleep=sleeps,
        )

        await supervisor.run()

        assert states == [
            SupervisorState.CONNECTING,
            SupervisorState.STREAMING,
            SupervisorState.RECONNECT_PENDING,
            SupervisorState.EXHAUSTED,
        ]

    @pytest.mark.asyncio
    async def test_failing_state_callback_ignored(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        async def on_state_change(state: SupervisorState) -> None:
            raise RuntimeError("observer broke")

        config = ConnectionConfig(stream_url="https://feed.test/streaming", max_retries=0)
        supervisor = StreamSupervisor(
            config,
            registry,
            transport=ReplayTransport([]),
            on_state_change=on_state_change,
            sleep=sleeps,
        )

        await supervisor.run()
        assert supervisor.state == SupervisorState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_status_reaches_listeners(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        statuses: list[SupervisorState] = []
        registry.subscribe(
            "BTC", ListenerHandle("chart", lambda b: None, "1D", on_status=statuses.append)
        )
        supervisor = make_supervisor(registry, ReplayTransport([]), sleeps, max_retries=0)

        await supervisor.run()
        assert statuses[-1] == SupervisorState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_stop_cancels_open_stream(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        """Test stop() tears down a stream that is waiting for data."""
        delivered = asyncio.Event()
        registry.subscribe("BTC", ListenerHandle("chart", lambda b: delivered.set(), "1D"), SEED)
        transport = ReplayTransport([[TICK_1]], hold_open=True)
        supervisor = make_supervisor(registry, transport, sleeps)

        supervisor.ensure_running()
        await asyncio.wait_for(delivered.wait(), timeout=1.0)
        assert supervisor.state == SupervisorState.STREAMING

        await asyncio.wait_for(supervisor.stop(), timeout=1.0)

        assert supervisor.state == SupervisorState.STOPPED
        assert not supervisor.is_running
        assert transport.closed
        assert transport.disconnects >= 1
        assert len(transport.connect_urls) == 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_reconnect_wait(self, registry: SubscriptionRegistry) -> None:
        """Test stop() does not wait out the reconnect delay."""
        pending = asyncio.Event()

        async def on_state_change(state: SupervisorState) -> None:
            if state == SupervisorState.RECONNECT_PENDING:
                pending.set()

        config = ConnectionConfig(
            stream_url="https://feed.test/streaming", reconnect_delay_s=60.0
        )
        transport = ReplayTransport([])
        supervisor = StreamSupervisor(
            config, registry, transport=transport, on_state_change=on_state_change
        )

        supervisor.ensure_running()
        await asyncio.wait_for(pending.wait(), timeout=1.0)
        await asyncio.wait_for(supervisor.stop(), timeout=1.0)

        assert supervisor.state == SupervisorState.STOPPED
        assert len(transport.connect_urls) == 1

    @pytest.mark.asyncio
    async def test_stop_when_idle(
        self, registry: SubscriptionRegistry, sleeps: SleepRecorder
    ) -> None:
        transport = ReplayTransport([])
        supervisor = make_supervisor(registry, transport, sleeps)

        await supervisor.stop()

        assert supervisor.state == SupervisorState.STOPPED
        assert transport.connect_urls == []
