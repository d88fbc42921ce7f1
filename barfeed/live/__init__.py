"""
Live Bar Stream Module.

This module turns a newline-delimited JSON trade stream into per-instrument
OHLC bars and fans every bar update out to the registered listeners, keeping
the upstream connection alive across transient failures.

Components:
- BarStreamClient: Public facade (subscribe / unsubscribe / stop)
- StreamSupervisor: Connection lifecycle and bounded reconnection
- TickDecoder: Chunk splitting and record parsing
- next_bar: Pure OHLC aggregation with calendar period boundaries
- SubscriptionRegistry: Listener sets and the current bar per instrument
- HistoryClient: Seed bars, datafeed configuration, symbol search and resolution

Usage:
    from barfeed.live import BarStreamClient, FeedConfig

    async with BarStreamClient(FeedConfig()) as client:
        await client.subscribe("Crypto.BTC/USD", "1D", on_bar, "chart-1")
        ...
"""

from barfeed.live.aggregator import next_bar, next_period_start, parse_resolution
from barfeed.live.client import BarStreamClient
from barfeed.live.config import ConnectionConfig, FeedConfig, HistoryConfig
from barfeed.live.decoder import TickDecoder, decode_chunk
from barfeed.live.errors import (
    BarFeedError,
    ConfigurationError,
    HistoryError,
    MessageParseError,
    StreamConnectionError,
    SubscriptionError,
)
from barfeed.live.history import (
    DatafeedConfiguration,
    HistoryClient,
    SymbolInfo,
    SymbolSearchResult,
)
from barfeed.live.registry import SubscriptionRegistry
from barfeed.live.supervisor import StreamSupervisor
from barfeed.live.types import (
    Bar,
    ClientState,
    ListenerHandle,
    SupervisorState,
    Tick,
)

__all__ = [
    # Main entry point
    "BarStreamClient",
    "FeedConfig",
    "ConnectionConfig",
    "HistoryConfig",
    # Components
    "StreamSupervisor",
    "SubscriptionRegistry",
    "TickDecoder",
    "HistoryClient",
    "decode_chunk",
    "next_bar",
    "next_period_start",
    "parse_resolution",
    # Types
    "Bar",
    "Tick",
    "ListenerHandle",
    "SupervisorState",
    "ClientState",
    "DatafeedConfiguration",
    "SymbolInfo",
    "SymbolSearchResult",
    # Errors
    "BarFeedError",
    "StreamConnectionError",
    "MessageParseError",
    "SubscriptionError",
    "HistoryError",
    "ConfigurationError",
]
