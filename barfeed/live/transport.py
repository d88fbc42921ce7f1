"""
Stream transports for the live bar stream.

A transport opens the upstream feed and yields raw byte chunks in arrival
order. It does NOT parse anything; decoding is handled by TickDecoder.

- HttpStreamTransport: chunked HTTP(S) GET over aiohttp
- ReplayTransport: scripted or recorded sessions, for offline runs and tests
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Sequence, Union

import aiohttp

from barfeed.live.config import ConnectionConfig
from barfeed.live.errors import StreamConnectionError

logger = logging.getLogger(__name__)


class StreamTransport(ABC):
    """Source of raw byte chunks from the upstream feed."""

    @abstractmethod
    async def connect(self, url: str, attempt: int = 0) -> None:
        """
        Open the stream.

        Args:
            url: Stream endpoint
            attempt: Connection attempt number, reported in raised errors

        Raises:
            StreamConnectionError: If the stream cannot be opened
        """
        ...

    @abstractmethod
    def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield chunks until the stream ends; raise StreamConnectionError on failure."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the current stream. Safe to call when not connected."""
        ...

    async def close(self) -> None:
        """Release every resource held by the transport."""
        await self.disconnect()


class HttpStreamTransport(StreamTransport):
    """
    Chunked HTTP(S) GET streaming over aiohttp.

    One ClientSession is kept across reconnects; each connect() issues a new
    request on it.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._url: Optional[str] = None
        self._attempt = 0

    @property
    def is_connected(self) -> bool:
        return self._response is not None and not self._response.closed

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                connect=self._config.connect_timeout_s,
                sock_read=self._config.read_timeout_s,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def connect(self, url: str, attempt: int = 0) -> None:
        await self.disconnect()
        session = self._ensure_session()
        self._url = url
        self._attempt = attempt

        logger.info(f"[transport] Connecting to {url}")
        try:
            response = await session.get(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamConnectionError(
                f"Error fetching from the streaming endpoint: {e}",
                url=url,
                attempt=attempt,
                component="HttpStreamTransport",
            ) from e

        if response.status >= 400:
            response.close()
            raise StreamConnectionError(
                f"Streaming endpoint returned HTTP {response.status}",
                url=url,
                attempt=attempt,
                component="HttpStreamTransport",
                details={"status": response.status},
            )

        self._response = response
        logger.info(f"[transport] Connected (HTTP {response.status})")

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        if self._response is None:
            raise StreamConnectionError(
                "Transport is not connected",
                url=self._url,
                attempt=self._attempt,
                component="HttpStreamTransport",
            )

        try:
            async for chunk in self._response.content.iter_any():
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamConnectionError(
                f"Error reading from stream: {e}",
                url=self._url,
                attempt=self._attempt,
                component="HttpStreamTransport",
            ) from e

    async def disconnect(self) -> None:
        if self._response is not None:
            self._response.close()
        self._response = None

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


SessionScript = Union[Sequence[Union[bytes, Exception]], Exception]


class ReplayTransport(StreamTransport):
    """
    Replays scripted stream sessions, one per connect().

    Each session is either an exception (connect() fails with it) or a
    sequence of chunks; an exception inside a sequence is raised mid-read.
    Once every session is used up, connect() fails. With `hold_open` the
    last session stays open after its final chunk until disconnect().

    Usage:
        transport = ReplayTransport([[b'{"id":"X","p":1,"t":1}\\n'], StreamConnectionError("down")])
    """

    def __init__(self, sessions: Iterable[SessionScript], hold_open: bool = False) -> None:
        self._sessions: list[SessionScript] = list(sessions)
        self._hold_open = hold_open
        self._current: Optional[list[Union[bytes, Exception]]] = None
        self._released = asyncio.Event()
        self.connect_urls: list[str] = []
        self.disconnects = 0
        self.closed = False

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        chunk_size: int = 4096,
        hold_open: bool = False,
    ) -> ReplayTransport:
        """Replay a recorded stream file as a single session of fixed-size chunks."""
        data = Path(path).read_bytes()
        chunks = [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]
        return cls([chunks], hold_open=hold_open)

    @property
    def sessions_left(self) -> int:
        return len(self._sessions)

    async def connect(self, url: str, attempt: int = 0) -> None:
        self.connect_urls.append(url)
        if not self._sessions:
            raise StreamConnectionError(
                "No more replay sessions",
                url=url,
                attempt=attempt or len(self.connect_urls),
                component="ReplayTransport",
            )

        script = self._sessions.pop(0)
        if isinstance(script, Exception):
            raise script
        self._current = list(script)
        self._released.clear()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        for item in self._current or []:
            if isinstance(item, Exception):
                raise item
            yield item
            # Let other tasks run between chunks like a real socket would
            await asyncio.sleep(0)

        if self._hold_open and not self._sessions:
            await self._released.wait()

    async def disconnect(self) -> None:
        if self._current is not None:
            self.disconnects += 1
        self._current = None
        self._released.set()

    async def close(self) -> None:
        await self.disconnect()
        self.closed = True
