"""barfeed CLI entrypoint.

Subcommands:
    watch            stream bar updates for one or more instruments
    search           look up symbols matching a query
    symbol           print the resolved metadata of one symbol
    datafeed-config  print the datafeed capabilities

Usage: barfeed watch Crypto.BTC/USD Crypto.ETH/USD --resolution 1D

Every bar update or lookup result is written to stdout as one JSON line.
Logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence, TextIO

import orjson

from barfeed import __version__
from barfeed.live.client import BarStreamClient
from barfeed.live.config import (
    DEFAULT_API_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RECONNECT_DELAY_S,
    DEFAULT_STREAM_URL,
    ConnectionConfig,
    FeedConfig,
    HistoryConfig,
)
from barfeed.live.errors import (
    BarFeedError,
    ConfigurationError,
    HistoryError,
    SubscriptionError,
)
from barfeed.live.history import HistoryClient
from barfeed.live.transport import ReplayTransport, StreamTransport
from barfeed.live.types import Bar, SupervisorState

logger = logging.getLogger("barfeed.cli")


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--history-url", default=DEFAULT_API_URL, help="Datafeed API base URL")
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    p = argparse.ArgumentParser(prog="barfeed")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    watch = sub.add_parser(
        "watch", parents=[common], help="Print live bar updates as JSON lines"
    )
    watch.add_argument("symbols", nargs="+", help="Instrument ids, e.g. Crypto.BTC/USD")
    watch.add_argument("--resolution", default="1D", help="Bar resolution (default: 1D)")
    watch.add_argument("--stream-url", default=DEFAULT_STREAM_URL, help="Tick stream URL")
    watch.add_argument(
        "--replay",
        type=Path,
        default=None,
        help="Replay a recorded stream file instead of connecting",
    )
    watch.add_argument(
        "--no-seed",
        action="store_true",
        help="Do not look up seed bars; the first tick opens the bar",
    )
    watch.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_MAX_RETRIES,
        help="Reconnect attempts before giving up",
    )
    watch.add_argument(
        "--reconnect-delay",
        type=float,
        default=DEFAULT_RECONNECT_DELAY_S,
        help="Seconds between reconnect attempts",
    )
    watch.add_argument(
        "--read-timeout",
        type=float,
        default=None,
        help="Treat the stream as lost after this many silent seconds",
    )
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )

    search = sub.add_parser("search", parents=[common], help="Search symbols")
    search.add_argument("query", help="Search text, e.g. BTC")
    search.add_argument("--exchange", default=None, help="Restrict to one exchange")
    search.add_argument("--type", dest="symbol_type", default=None, help="Restrict to a type")
    search.add_argument("--limit", type=int, default=None, help="Maximum number of results")

    symbol = sub.add_parser("symbol", parents=[common], help="Resolve one symbol")
    symbol.add_argument("symbol", help="Symbol name, e.g. Crypto.BTC/USD")

    sub.add_parser("datafeed-config", parents=[common], help="Print datafeed capabilities")
    return p


def config_from_args(args: argparse.Namespace) -> FeedConfig:
    """Build the feed configuration from parsed `watch` arguments."""
    return FeedConfig(
        connection=ConnectionConfig(
            stream_url=args.stream_url,
            max_retries=args.retries,
            reconnect_delay_s=args.reconnect_delay,
            read_timeout_s=args.read_timeout,
        ),
        history=HistoryConfig(api_url=args.history_url),
        default_resolution=args.resolution,
        fetch_seed_bars=not args.no_seed,
    )


def validate_symbols(symbols: Sequence[str]) -> list[str]:
    """Strip symbols and reject blank or repeated ones."""
    cleaned = [s.strip() for s in symbols]
    for raw, symbol in zip(symbols, cleaned):
        if not symbol:
            raise SubscriptionError(f"Invalid symbol: {raw!r}", component="cli")
    duplicates = sorted({s for s in cleaned if cleaned.count(s) > 1})
    if duplicates:
        raise SubscriptionError(
            f"Symbols given more than once: {', '.join(duplicates)}", component="cli"
        )
    return cleaned


def format_bar(symbol: str, resolution: str, bar: Bar) -> str:
    return orjson.dumps({"symbol": symbol, "resolution": resolution, **bar.to_dict()}).decode()


async def watch(
    client: BarStreamClient,
    symbols: Sequence[str],
    resolution: str,
    duration: Optional[float] = None,
    out: Optional[TextIO] = None,
) -> int:
    """Subscribe to `symbols` and print bars until the stream gives up or time runs out."""
    stream = out or sys.stdout
    logger.info(f"Watching {', '.join(symbols)} at {resolution}")
    exhausted = asyncio.Event()

    def on_status(state: SupervisorState) -> None:
        if state == SupervisorState.EXHAUSTED:
            exhausted.set()

    for symbol in symbols:

        def on_bar(bar: Bar, symbol: str = symbol) -> None:
            print(format_bar(symbol, resolution, bar), file=stream, flush=True)

        await client.subscribe(symbol, resolution, on_bar, f"cli:{symbol}", on_status=on_status)

    try:
        await asyncio.wait_for(exhausted.wait(), timeout=duration)
    except asyncio.TimeoutError:
        return 0
    finally:
        await client.stop()
    return 1


async def lookup(
    history: HistoryClient,
    args: argparse.Namespace,
    out: Optional[TextIO] = None,
) -> int:
    """Run one of the datafeed lookup subcommands and print its result."""
    stream = out or sys.stdout
    try:
        if args.command == "search":
            results = await history.search_symbols(
                args.query,
                exchange=args.exchange,
                symbol_type=args.symbol_type,
                limit=args.limit,
            )
            for result in results:
                print(orjson.dumps(result.model_dump()).decode(), file=stream)
        elif args.command == "symbol":
            info = await history.resolve_symbol(args.symbol)
            print(orjson.dumps(info.model_dump()).decode(), file=stream)
        else:
            config = await history.fetch_config()
            print(orjson.dumps(config.model_dump()).decode(), file=stream)
    finally:
        await history.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    if args.command != "watch":
        try:
            history = HistoryClient(HistoryConfig(api_url=args.history_url))
        except ConfigurationError as exc:
            print(f"[!] {exc}", file=sys.stderr)
            return 2
        try:
            return asyncio.run(lookup(history, args))
        except HistoryError as exc:
            print(f"[!] Lookup failed: {exc}", file=sys.stderr)
            return 1

    try:
        config = config_from_args(args)
        symbols = validate_symbols(args.symbols)
    except BarFeedError as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2

    transport: Optional[StreamTransport] = None
    if args.replay is not None:
        if not args.replay.is_file():
            print(f"[!] Replay file not found: {args.replay}", file=sys.stderr)
            return 2
        transport = ReplayTransport.from_file(args.replay)
        # A replay ends when the file does
        config = replace(config, connection=replace(config.connection, max_retries=0))

    client = BarStreamClient(config, transport=transport)
    try:
        code = asyncio.run(watch(client, symbols, args.resolution, args.duration))
        return 0 if transport is not None else code
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except (SubscriptionError, ConfigurationError) as exc:
        print(f"[!] {exc}", file=sys.stderr)
        return 2
    except BarFeedError as exc:
        print(f"[!] Streaming failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
