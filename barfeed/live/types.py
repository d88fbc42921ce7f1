"""
Shared types, enums, and data structures for the live bar stream.

This module contains types that are used across multiple components
of the streaming client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union


class SupervisorState(str, Enum):
    """State machine for the StreamSupervisor."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECT_PENDING = "reconnect_pending"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


class ClientState(str, Enum):
    """Lifecycle of the BarStreamClient facade."""

    STOPPED = "stopped"
    RUNNING = "running"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class Tick:
    """One trade event decoded from a stream record."""

    instrument_id: str
    price: float
    timestamp_s: int  # Exchange trade time (Unix seconds)


@dataclass(frozen=True, slots=True)
class Bar:
    """OHLC aggregate of ticks over one period."""

    period_start_s: int  # Period boundary (Unix seconds)
    open: float
    high: float
    low: float
    close: float

    @classmethod
    def from_price(cls, period_start_s: int, price: float) -> Bar:
        """Create a bar where every price equals `price`."""
        return cls(
            period_start_s=period_start_s,
            open=price,
            high=price,
            low=price,
            close=price,
        )

    @property
    def start(self) -> datetime:
        """Period start as an aware UTC datetime."""
        return datetime.fromtimestamp(self.period_start_s, tz=timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """JSON friendly representation, `time` in seconds."""
        return {
            "time": self.period_start_s,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


BarCallback = Callable[[Bar], Union[None, Awaitable[None]]]
StatusCallback = Callable[[SupervisorState], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ListenerHandle:
    """A subscriber registered for one instrument's bar updates."""

    listener_id: str
    on_bar: BarCallback
    resolution: str
    on_status: Optional[StatusCallback] = None


@dataclass
class SupervisorStats:
    """Counters for the stream supervisor and its current connection."""

    connection_attempts: int = 0
    connections_established: int = 0
    reconnections: int = 0
    chunks_received: int = 0
    bytes_received: int = 0
    ticks_decoded: int = 0
    ticks_dispatched: int = 0
    decode_errors: int = 0
    errors: int = 0

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None

    @property
    def uptime_s(self) -> Optional[float]:
        """Seconds since the current connection was established."""
        if self.connected_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_at).total_seconds()

    @property
    def seconds_since_tick(self) -> Optional[float]:
        """Seconds since the last decoded tick, or None if none yet."""
        if self.last_tick_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_tick_at).total_seconds()


@dataclass
class DecoderStats:
    """Statistics for the tick decoder."""

    lines_seen: int = 0
    ticks_decoded: int = 0
    decode_errors: int = 0
    dropped_partials: int = 0
    by_instrument: dict[str, int] = field(default_factory=dict)
