#!/usr/bin/env python3
"""
my_ping.py - ICMP ping tool using raw sockets.

Usage:
    sudo python my_ping.py [-c count] [-i interval] [--timeout secs] [-t] [-s size] [-v] [-d] <host>

Requires root/administrator privileges to use raw sockets.
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import List, Optional

from rich.logging import RichHandler

import icmp_packet
from pinger import (
    DEFAULT_COUNT,
    DEFAULT_INTERVAL,
    DEFAULT_PAYLOAD_SIZE,
    DEFAULT_TIMEOUT,
    Pinger,
    ProbeResult,
)
from ping_errors import PingError

logger = logging.getLogger("my_ping")


def format_rtt(seconds: float) -> str:
    return f"{seconds * 1000:.3f} ms"


def print_result(pinger: Pinger, result: ProbeResult) -> None:
    """Print one line for a finished probe."""
    if result.error is not None:
        print(f"seq={result.sequence} failed: {result.error}", file=sys.stderr)
    elif result.received:
        stamp = ""
        if pinger.verbose:
            stamp = f" [{datetime.now().strftime('%H:%M:%S.%f')[:-3]}]"
        print(f"reply from {pinger.addr}: seq={result.sequence} latency={format_rtt(result.rtt)}{stamp}")
    else:
        print(f"request timeout for seq={result.sequence}")


def print_stats(host: str, pinger: Pinger) -> None:
    """Print the end-of-run summary."""
    stats = pinger.statistics()
    print(f"\n--- {host} ping statistics ---")
    print(
        f"{stats.sent} packets transmitted, {stats.received} received, "
        f"{stats.loss:.1f}% packet loss"
    )
    if stats.received > 0:
        print(
            f"rtt min/avg/max/stddev = {stats.min * 1000:.3f}/{stats.avg * 1000:.3f}/"
            f"{stats.max * 1000:.3f}/{stats.stddev * 1000:.3f} ms"
        )


def install_stop_handlers(stop: threading.Event) -> None:
    """Set *stop* on SIGINT/SIGTERM so the probe loop ends between probes."""

    def _handler(signum, _frame):
        logger.debug("received signal %d, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def ping(
    host: str,
    count: int = DEFAULT_COUNT,
    interval: float = DEFAULT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    size: int = DEFAULT_PAYLOAD_SIZE,
    verbose: bool = False,
    stop: Optional[threading.Event] = None,
) -> int:
    """Run a ping session against *host* and print results.

    Args:
        host:     Hostname or IP address to ping.
        count:    Number of probes, -1 to ping until stopped.
        interval: Seconds between probes.
        timeout:  Seconds to wait for each reply.
        size:     Payload size in bytes.
        verbose:  Append a receive timestamp to each reply line.
        stop:     Event that ends the session between probes.

    Returns:
        Process exit status: 0 if any reply came back, 1 otherwise or when
        the session could not start.
    """
    try:
        pinger = Pinger(
            host,
            count=count,
            interval=interval,
            timeout=timeout,
            payload_size=size,
            verbose=verbose,
        )
        pinger.resolve()
    except (PingError, ValueError) as exc:
        print(f"my_ping: {exc}", file=sys.stderr)
        return 1

    packet_size = pinger.payload_size + icmp_packet.HEADER_SIZE
    print(f"PING {host} ({pinger.addr}) with {packet_size}-byte packets")

    try:
        for result in pinger.run(stop):
            print_result(pinger, result)
    finally:
        print_stats(host, pinger)

    return 0 if pinger.received > 0 else 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="my_ping",
        description="Send ICMP Echo Requests to a network host.",
    )
    parser.add_argument("host", help="Hostname or IPv4/IPv6 address to ping.")
    parser.add_argument(
        "-c", "--count",
        type=int,
        default=DEFAULT_COUNT,
        help="Number of pings to send, -1 = infinite (default: %(default)s).",
    )
    parser.add_argument(
        "-i", "--interval",
        type=float,
        default=DEFAULT_INTERVAL,
        help="Interval between pings in seconds (default: %(default)s).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Per-packet timeout in seconds (default: %(default)s).",
    )
    parser.add_argument(
        "-t",
        dest="infinite",
        action="store_true",
        default=False,
        help="Ping until interrupted (same as -c -1).",
    )
    parser.add_argument(
        "-s", "--size",
        type=int,
        default=DEFAULT_PAYLOAD_SIZE,
        help="Payload size in bytes (default: %(default)s).",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Show a timestamp for each reply.",
    )
    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )
    args = parser.parse_args(argv)
    if args.infinite:
        args.count = -1
    return args


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for my_ping."""
    args = parse_args(argv)
    configure_logging(args.debug)

    stop = threading.Event()
    install_stop_handlers(stop)

    return ping(
        host=args.host,
        count=args.count,
        interval=args.interval,
        timeout=args.timeout,
        size=args.size,
        verbose=args.verbose,
        stop=stop,
    )


if __name__ == "__main__":
    raise SystemExit(main())
