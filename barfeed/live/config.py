"""
Configuration types for the live bar stream.

Provides immutable, validated configuration dataclasses for all streaming components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from barfeed.live.aggregator import parse_resolution
from barfeed.live.errors import ConfigurationError

# Pyth benchmarks TradingView shim
DEFAULT_API_URL = "https://benchmarks.pyth.network/v1/shims/tradingview"
DEFAULT_STREAM_URL = f"{DEFAULT_API_URL}/streaming"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RECONNECT_DELAY_S = 3.0


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the upstream tick stream connection."""

    stream_url: str = DEFAULT_STREAM_URL

    # Reconnect behavior
    max_retries: int = DEFAULT_MAX_RETRIES
    reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S
    reset_retries_on_connect: bool = False  # Refill the budget after every established stream

    # Timeouts
    connect_timeout_s: float = 30.0
    read_timeout_s: Optional[float] = None  # None waits forever for the next chunk

    # Decoder
    max_line_bytes: int = 64 * 1024

    def __post_init__(self) -> None:
        if not self.stream_url:
            raise ConfigurationError("stream_url must not be empty", field="stream_url")
        if self.max_retries < 0:
            raise ConfigurationError(
                "max_retries must be non-negative",
                field="max_retries",
                value=self.max_retries,
            )
        if self.reconnect_delay_s < 0:
            raise ConfigurationError(
                "reconnect_delay_s must be non-negative",
                field="reconnect_delay_s",
                value=self.reconnect_delay_s,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.read_timeout_s is not None and self.read_timeout_s <= 0:
            raise ConfigurationError(
                "read_timeout_s must be positive",
                field="read_timeout_s",
                value=self.read_timeout_s,
            )
        if self.max_line_bytes <= 0:
            raise ConfigurationError(
                "max_line_bytes must be positive",
                field="max_line_bytes",
                value=self.max_line_bytes,
            )


@dataclass(frozen=True)
class HistoryConfig:
    """Configuration for seed bar lookups against the history endpoint."""

    api_url: str = DEFAULT_API_URL
    request_timeout_s: float = 10.0
    lookback_periods: int = 2  # How many periods back to ask for

    def __post_init__(self) -> None:
        if not self.api_url:
            raise ConfigurationError("api_url must not be empty", field="api_url")
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                "request_timeout_s must be positive",
                field="request_timeout_s",
                value=self.request_timeout_s,
            )
        if self.lookback_periods < 1:
            raise ConfigurationError(
                "lookback_periods must be at least 1",
                field="lookback_periods",
                value=self.lookback_periods,
            )

    @property
    def history_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/history"

    @property
    def config_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/config"

    @property
    def search_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/search"

    @property
    def symbols_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/symbols"


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration for the bar stream client.

    Example:
        config = FeedConfig(
            connection=ConnectionConfig(max_retries=5, reconnect_delay_s=1.0),
            default_resolution="1D",
        )
    """

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)

    default_resolution: str = "1D"

    # Ask the history endpoint for a seed when a subscriber hands in none
    fetch_seed_bars: bool = True

    def __post_init__(self) -> None:
        # Raises ConfigurationError for unknown resolutions
        parse_resolution(self.default_resolution)
