"""
Tick decoder for the newline-delimited JSON trade stream.

Each line of the upstream stream is one record:

    {"id": "Crypto.BTC/USD", "p": 67012.5, "t": 1717430400}

Malformed or partial lines are expected at chunk boundaries. They are dropped
and counted, never raised to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional, Union

import orjson

from barfeed.live.errors import MessageParseError
from barfeed.live.types import DecoderStats, Tick

logger = logging.getLogger(__name__)

Chunk = Union[bytes, bytearray, str]


def _safe_float(value: Any, field_name: str) -> float:
    """Safely convert a value to float."""
    if isinstance(value, bool):
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        )
    try:
        if isinstance(value, float):
            return value
        return float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int."""
    if isinstance(value, bool):
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        )
    try:
        return int(value)
    except (ValueError, TypeError, OverflowError) as e:
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        ) from e


def parse_record(record: Any) -> Tick:
    """
    Convert one parsed JSON record into a Tick.

    Raises:
        MessageParseError: If the record is not a valid trade record
    """
    if not isinstance(record, dict):
        raise MessageParseError(
            f"Expected a JSON object, got {type(record).__name__}",
            expected_type="object",
        )

    instrument_id = record.get("id")
    if not isinstance(instrument_id, str) or not instrument_id:
        raise MessageParseError("Missing instrument id", expected_type="str")

    if "p" not in record or "t" not in record:
        raise MessageParseError("Missing price or time field", expected_type="object")

    return Tick(
        instrument_id=instrument_id,
        price=_safe_float(record["p"], "p"),
        timestamp_s=_safe_int(record["t"], "t"),
    )


def parse_line(line: Union[bytes, str]) -> Tick:
    """
    Parse a single trimmed line into a Tick.

    Raises:
        MessageParseError: If the line is not valid JSON or not a trade record
    """
    try:
        record = orjson.loads(line)
    except orjson.JSONDecodeError as e:
        raise MessageParseError(
            f"Invalid JSON: {e}",
            raw_data=line if isinstance(line, str) else line.decode("utf-8", "replace"),
            expected_type="json",
        ) from e
    return parse_record(record)


def _to_bytes(chunk: Chunk) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    return bytes(chunk)


def decode_chunk(chunk: Chunk, stats: Optional[DecoderStats] = None) -> Iterator[Tick]:
    """
    Lazily decode every complete, well-formed line in `chunk`.

    Lines are split on line breaks and trimmed; empty lines are skipped and
    lines that fail to parse are dropped. Never raises.
    """
    for raw_line in _to_bytes(chunk).splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if stats is not None:
            stats.lines_seen += 1

        try:
            tick = parse_line(line)
        except MessageParseError as e:
            if stats is not None:
                stats.decode_errors += 1
            logger.debug(f"[decoder] Dropped line: {e}")
            continue

        if stats is not None:
            stats.ticks_decoded += 1
            stats.by_instrument[tick.instrument_id] = (
                stats.by_instrument.get(tick.instrument_id, 0) + 1
            )
        yield tick


class TickDecoder:
    """
    Stateful decoder that reassembles records split across chunk boundaries.

    The trailing segment of a chunk that is not yet newline-terminated is kept
    and prepended to the next chunk. A carried segment that grows beyond
    `max_line_bytes` is discarded.

    Usage:
        decoder = TickDecoder()
        for chunk in chunks:
            for tick in decoder.feed(chunk):
                ...
        ticks = decoder.flush()
    """

    def __init__(self, max_line_bytes: int = 64 * 1024) -> None:
        self._max_line_bytes = max_line_bytes
        self._buffer = b""
        self._stats = DecoderStats()

    @property
    def stats(self) -> DecoderStats:
        """Get decoder statistics."""
        return self._stats

    @property
    def pending_bytes(self) -> int:
        """Bytes held back waiting for a line terminator."""
        return len(self._buffer)

    def feed(self, chunk: Chunk) -> list[Tick]:
        """Decode all complete lines in `self._buffer + chunk`."""
        data = self._buffer + _to_bytes(chunk)

        cut = max(data.rfind(b"\n"), data.rfind(b"\r"))
        if cut == -1:
            complete, self._buffer = b"", data
        else:
            complete, self._buffer = data[: cut + 1], data[cut + 1 :]

        if len(self._buffer) > self._max_line_bytes:
            logger.warning(
                f"[decoder] Discarding {len(self._buffer)} bytes without a line terminator"
            )
            self._stats.dropped_partials += 1
            self._buffer = b""

        return list(decode_chunk(complete, self._stats))

    def flush(self) -> list[Tick]:
        """Decode whatever is left in the buffer (end of stream)."""
        remainder, self._buffer = self._buffer, b""
        return list(decode_chunk(remainder, self._stats))

    def reset(self) -> None:
        """Drop any carried partial line."""
        if self._buffer:
            self._stats.dropped_partials += 1
        self._buffer = b""

    def reset_stats(self) -> None:
        """Reset decoder statistics."""
        self._stats = DecoderStats()
