"""
Datafeed REST lookups: seed bars and symbol metadata.

The history endpoint answers with parallel arrays:

    {"s": "ok", "t": [...], "o": [...], "h": [...], "l": [...], "c": [...]}

Only the most recent bar matters here: it seeds a new subscription so the
first live tick extends the bar the chart already shows.

The same API also serves the datafeed configuration (`/config`), symbol
search (`/search`) and symbol resolution (`/symbols`). A resolved symbol's
ticker is the instrument id used on the tick stream.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from barfeed.live.aggregator import period_length_s
from barfeed.live.config import HistoryConfig
from barfeed.live.errors import HistoryError
from barfeed.live.types import Bar

logger = logging.getLogger(__name__)


class HistoryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    s: Optional[str] = Field(default=None, description="status, 'ok' or 'no_data'")
    errmsg: Optional[str] = Field(default=None, description="error message when s == 'error'")
    t: list[int] = Field(default_factory=list, description="bar start times (seconds)")
    o: list[float] = Field(default_factory=list)
    h: list[float] = Field(default_factory=list)
    l: list[float] = Field(default_factory=list)  # noqa: E741
    c: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> HistoryPayload:
        n = len(self.t)
        if any(len(col) != n for col in (self.o, self.h, self.l, self.c)):
            raise ValueError("history arrays t/o/h/l/c must have equal length")
        return self

    def to_bars(self) -> list[Bar]:
        return [
            Bar(period_start_s=t, open=o, high=h, low=low, close=c)
            for t, o, h, low, c in zip(self.t, self.o, self.h, self.l, self.c)
        ]


class DatafeedConfiguration(BaseModel):
    """Capabilities advertised by the datafeed (`/config`)."""

    model_config = ConfigDict(extra="allow")
    supported_resolutions: list[str] = Field(default_factory=list)
    supports_search: bool = True
    supports_group_request: bool = False
    supports_marks: bool = False
    supports_timescale_marks: bool = False
    supports_time: bool = False
    exchanges: list[dict[str, Any]] = Field(default_factory=list)
    symbols_types: list[dict[str, Any]] = Field(default_factory=list)

    def supports_resolution(self, resolution: str) -> bool:
        """True when the feed lists `resolution`, or lists nothing at all."""
        if not self.supported_resolutions:
            return True
        wanted = resolution.strip().upper()
        return any(r.strip().upper() == wanted for r in self.supported_resolutions)


class SymbolSearchResult(BaseModel):
    """One match returned by symbol search."""

    model_config = ConfigDict(extra="allow")
    symbol: str
    full_name: Optional[str] = None
    description: str = ""
    exchange: str = ""
    ticker: Optional[str] = None
    type: str = ""


class SymbolInfo(BaseModel):
    """Resolved symbol metadata (`/symbols`)."""

    model_config = ConfigDict(extra="allow")
    name: str
    ticker: Optional[str] = None
    description: str = ""
    type: str = ""
    session: str = "24x7"
    exchange: str = ""
    listed_exchange: str = ""
    timezone: str = "Etc/UTC"
    minmov: float = 1
    pricescale: int = 1
    has_intraday: bool = False
    supported_resolutions: list[str] = Field(default_factory=list)

    @property
    def instrument_id(self) -> str:
        """Channel id of this symbol on the tick stream."""
        return self.ticker or self.name


def bars_from_payload(payload: Mapping[str, Any], symbol: Optional[str] = None) -> list[Bar]:
    """
    Convert a history response into bars, oldest first.

    Raises:
        HistoryError: If the payload is malformed or reports an error
    """
    try:
        parsed = HistoryPayload.model_validate(payload)
    except ValidationError as e:
        raise HistoryError(
            f"Malformed history payload: {e.error_count()} error(s)",
            symbol=symbol,
            component="history",
        ) from e

    if parsed.s == "error":
        raise HistoryError(
            f"History endpoint error: {parsed.errmsg or 'unknown'}",
            symbol=symbol,
            component="history",
        )
    return parsed.to_bars()


def latest_bar(payload: Mapping[str, Any], symbol: Optional[str] = None) -> Optional[Bar]:
    """Most recent bar in a history response, or None when it holds no data."""
    bars = bars_from_payload(payload, symbol)
    if not bars:
        return None
    return max(bars, key=lambda b: b.period_start_s)


def _raise_on_error_status(data: Any, symbol: Optional[str], what: str) -> None:
    if isinstance(data, dict) and data.get("s") == "error":
        raise HistoryError(
            f"{what} failed: {data.get('errmsg') or 'unknown'}",
            symbol=symbol,
            component="HistoryClient",
        )


class HistoryClient:
    """
    Fetches seed bars and symbol metadata over HTTP.

    Usage:
        client = HistoryClient(HistoryConfig())
        info = await client.resolve_symbol("Crypto.BTC/USD")
        seed = await client.fetch_seed_bar(info.instrument_id, "1D")
        await client.close()
    """

    def __init__(
        self,
        config: HistoryConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _get_json(
        self,
        url: str,
        params: Mapping[str, str],
        symbol: Optional[str] = None,
    ) -> Any:
        """
        GET `url` and decode the JSON answer.

        Raises:
            HistoryError: On transport failures, HTTP errors or non-JSON answers
        """
        session = self._ensure_session()
        logger.debug(f"[history] GET {url} {dict(params)}")
        try:
            async with session.get(url, params=params) as response:
                response.raise_for_status()
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise HistoryError(
                f"Request to {url} failed: {e}",
                symbol=symbol,
                component="HistoryClient",
            ) from e

    async def fetch_payload(
        self,
        symbol: str,
        resolution: str,
        from_s: int,
        to_s: int,
    ) -> dict[str, Any]:
        """
        Raw history response for `symbol` between `from_s` and `to_s`.

        Raises:
            HistoryError: On transport failures or non-JSON answers
        """
        params = {
            "symbol": symbol,
            "resolution": resolution,
            "from": str(from_s),
            "to": str(to_s),
        }
        data = await self._get_json(self._config.history_url, params, symbol)
        if not isinstance(data, dict):
            raise HistoryError(
                "History response is not a JSON object",
                symbol=symbol,
                component="HistoryClient",
            )
        return data

    async def fetch_bars(
        self,
        symbol: str,
        resolution: str,
        from_s: int,
        to_s: int,
    ) -> list[Bar]:
        payload = await self.fetch_payload(symbol, resolution, from_s, to_s)
        return bars_from_payload(payload, symbol)

    async def fetch_seed_bar(
        self,
        symbol: str,
        resolution: str,
        now_s: Optional[int] = None,
    ) -> Optional[Bar]:
        """Most recent bar within the configured lookback, or None."""
        to_s = int(time.time()) if now_s is None else now_s
        from_s = to_s - self._config.lookback_periods * period_length_s(resolution)
        payload = await self.fetch_payload(symbol, resolution, from_s, to_s)
        seed = latest_bar(payload, symbol)
        if seed is None:
            logger.info(f"[history] No seed bar for {symbol} ({resolution})")
        return seed

    async def fetch_config(self) -> DatafeedConfiguration:
        """Datafeed capabilities, including the supported resolutions."""
        data = await self._get_json(self._config.config_url, {})
        _raise_on_error_status(data, None, "Datafeed configuration")
        try:
            return DatafeedConfiguration.model_validate(data)
        except ValidationError as e:
            raise HistoryError(
                f"Malformed datafeed configuration: {e.error_count()} error(s)",
                component="HistoryClient",
            ) from e

    async def search_symbols(
        self,
        query: str,
        *,
        exchange: Optional[str] = None,
        symbol_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SymbolSearchResult]:
        """Symbols matching `query`, in the order the endpoint ranks them."""
        params = {"query": query}
        if exchange:
            params["exchange"] = exchange
        if symbol_type:
            params["type"] = symbol_type
        if limit is not None:
            params["limit"] = str(limit)

        data = await self._get_json(self._config.search_url, params)
        _raise_on_error_status(data, None, "Symbol search")
        if not isinstance(data, list):
            raise HistoryError(
                "Search response is not a JSON array",
                component="HistoryClient",
                details={"query": query},
            )
        try:
            return [SymbolSearchResult.model_validate(item) for item in data]
        except ValidationError as e:
            raise HistoryError(
                f"Malformed search result: {e.error_count()} error(s)",
                component="HistoryClient",
                details={"query": query},
            ) from e

    async def resolve_symbol(self, symbol: str) -> SymbolInfo:
        """
        Full metadata for `symbol`.

        Raises:
            HistoryError: If the symbol cannot be resolved
        """
        logger.info(f"[history] Resolve symbol {symbol}")
        data = await self._get_json(self._config.symbols_url, {"symbol": symbol}, symbol)
        _raise_on_error_status(data, symbol, "Symbol resolution")
        try:
            return SymbolInfo.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[history] Cannot resolve symbol {symbol}")
            raise HistoryError(
                f"Cannot resolve symbol: {e.error_count()} error(s)",
                symbol=symbol,
                component="HistoryClient",
            ) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
