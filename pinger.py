"""
pinger.py - ICMP Echo probe session over raw sockets.

A :class:`Pinger` resolves one target, sends numbered Echo Requests one at
a time, waits a bounded time for the matching Echo Reply and keeps the
loss/latency counters for the run.

Raw sockets require root/administrator privileges.
"""

import enum
import itertools
import logging
import random
import socket
import statistics
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple

import icmp_packet
from ping_errors import (
    EncodingError,
    ParseError,
    PingError,
    ResolutionError,
    SocketError,
)

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 4              # -1 = ping until stopped
DEFAULT_INTERVAL = 1.0         # seconds between probes
DEFAULT_TIMEOUT = 3.0          # seconds to wait for each reply
DEFAULT_PAYLOAD_SIZE = 56      # bytes after the 8-byte ICMP header
RECV_BUFFER_SIZE = 1500

SocketFactory = Callable[[int], socket.socket]


class ReceiveState(enum.Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    EXPIRED = "expired"


@dataclass
class ProbeResult:
    """Outcome of one send/receive cycle.

    ``rtt`` is in seconds and only meaningful when ``received`` is true.
    A timeout leaves ``error`` unset; ``error`` is a :class:`SocketError`
    when the probe could not be sent or read.
    """

    sequence: int
    received: bool = False
    rtt: float = 0.0
    error: Optional[PingError] = None


@dataclass(frozen=True)
class Stats:
    """Summary of a session. Durations are in seconds, zero if nothing came back."""

    sent: int
    received: int
    lost: int
    loss: float
    min: float = 0.0
    avg: float = 0.0
    max: float = 0.0
    stddev: float = 0.0


def resolve(host: str) -> Tuple[str, int]:
    """Resolve *host* to a numeric address, preferring IPv4.

    Args:
        host: Hostname or numeric IPv4/IPv6 address.

    Returns:
        ``(address, family)`` where *family* is ``socket.AF_INET`` or
        ``socket.AF_INET6``.

    Raises:
        ResolutionError: If the lookup fails or yields no IPv4/IPv6 address.
    """
    try:
        infos = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(f"lookup {host!r}: {exc}") from exc

    for wanted in (socket.AF_INET, socket.AF_INET6):
        for family, _type, _proto, _canonname, sockaddr in infos:
            if family == wanted:
                return sockaddr[0], family
    raise ResolutionError(f"no usable IP address for {host!r}")


def open_icmp_socket(family: int) -> socket.socket:
    """Open a raw ICMP (IPv4) or ICMPv6 socket.

    Raises:
        SocketError: If the socket cannot be created, most often for lack
            of privileges.
    """
    if family == socket.AF_INET6:
        proto = socket.IPPROTO_ICMPV6
    else:
        proto = socket.IPPROTO_ICMP
    try:
        return socket.socket(family, socket.SOCK_RAW, proto)
    except PermissionError as exc:
        raise SocketError(f"listen: {exc} (try running as root)") from exc
    except OSError as exc:
        raise SocketError(f"listen: {exc}") from exc


def match_reply(
    datagram: bytes,
    identifier: int,
    sequence: int,
    is_ipv6: bool,
) -> Optional[icmp_packet.ProbeReply]:
    """Return the Echo Reply in *datagram* if it answers our request, else None.

    IPv4 raw sockets hand over the IP header too; it is stripped first.
    Anything that fails to parse is inbound noise and is dropped.
    """
    try:
        message = datagram if is_ipv6 else icmp_packet.strip_ipv4_header(datagram)
        reply = icmp_packet.parse_reply(message, is_ipv6=is_ipv6, verify=True)
    except ParseError as exc:
        logger.debug("discarding datagram: %s", exc)
        return None

    if not reply.is_echo_reply(is_ipv6):
        logger.debug("discarding ICMP type %d", reply.type)
        return None
    if reply.identifier != identifier or reply.sequence != sequence:
        logger.debug(
            "discarding reply id=%d seq=%d, waiting for id=%d seq=%d",
            reply.identifier, reply.sequence, identifier, sequence,
        )
        return None
    return reply


def await_reply(
    sock: socket.socket,
    identifier: int,
    sequence: int,
    is_ipv6: bool,
    sent_at: float,
    timeout: float,
) -> Tuple[ReceiveState, float]:
    """Read from *sock* until the matching reply arrives or the deadline passes.

    The deadline is fixed once at ``now + timeout``; discarded datagrams do
    not extend it.

    Args:
        sock:       Socket the request was sent on.
        identifier: Session identifier to match.
        sequence:   Sequence number of the outstanding request.
        is_ipv6:    Family of the session.
        sent_at:    ``time.perf_counter()`` value taken just before sending.
        timeout:    Seconds to wait.

    Returns:
        ``(ReceiveState.MATCHED, rtt_seconds)`` or ``(ReceiveState.EXPIRED, 0.0)``.

    Raises:
        OSError: If reading from the socket fails for a reason other than
            the deadline.
    """
    deadline = time.perf_counter() + timeout
    state = ReceiveState.WAITING
    rtt = 0.0

    while state is ReceiveState.WAITING:
        remaining = deadline - time.perf_counter()
        if remaining <= 0:
            state = ReceiveState.EXPIRED
            continue

        sock.settimeout(remaining)
        try:
            datagram, _source = sock.recvfrom(RECV_BUFFER_SIZE)
        except socket.timeout:
            state = ReceiveState.EXPIRED
            continue
        received_at = time.perf_counter()

        if match_reply(datagram, identifier, sequence, is_ipv6) is not None:
            rtt = received_at - sent_at
            state = ReceiveState.MATCHED

    return state, rtt


class Pinger:
    """One ping run against one target.

    Args:
        host:           Hostname or IP address to probe.
        count:          Number of probes for :meth:`run`, -1 for no limit.
        interval:       Seconds between probes in :meth:`run`.
        timeout:        Seconds to wait for each reply.
        payload_size:   Bytes of payload after the ICMP header.
        verbose:        Show receive timestamps (used by the front end).
        identifier:     16-bit ICMP identifier; random when omitted.
        socket_factory: Callable taking an address family and returning a
                        socket; opens a raw ICMP socket by default.

    Raises:
        EncodingError: For a negative payload size or an identifier that
            does not fit in 16 bits.
        ValueError: For a non-positive timeout or a negative interval.
    """

    def __init__(
        self,
        host: str,
        count: int = DEFAULT_COUNT,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        payload_size: int = DEFAULT_PAYLOAD_SIZE,
        verbose: bool = False,
        identifier: Optional[int] = None,
        socket_factory: Optional[SocketFactory] = None,
    ) -> None:
        if payload_size < 0:
            raise EncodingError(f"payload size must not be negative, got {payload_size}")
        if identifier is None:
            identifier = random.randint(0, icmp_packet.MAX_UINT16)
        elif not 0 <= identifier <= icmp_packet.MAX_UINT16:
            raise EncodingError(f"identifier {identifier} does not fit in 16 bits")
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if interval < 0:
            raise ValueError(f"interval must not be negative, got {interval}")

        self.host = host
        self.count = count
        self.interval = interval
        self.timeout = timeout
        self.payload_size = payload_size
        self.verbose = verbose
        self._identifier = identifier
        self._socket_factory = socket_factory or open_icmp_socket

        self._address: Optional[str] = None
        self._family = socket.AF_INET

        self._sent = 0
        self._received = 0
        self._rtts: List[float] = []

    @property
    def identifier(self) -> int:
        return self._identifier

    @property
    def family(self) -> int:
        return self._family

    @property
    def is_ipv6(self) -> bool:
        return self._family == socket.AF_INET6

    @property
    def addr(self) -> str:
        """Resolved address, or the host as given before resolution."""
        return self._address if self._address is not None else self.host

    @property
    def sent(self) -> int:
        return self._sent

    @property
    def received(self) -> int:
        return self._received

    @property
    def rtts(self) -> Tuple[float, ...]:
        return tuple(self._rtts)

    def resolve(self) -> Tuple[str, int]:
        """Look up the target and fix the address and family for the session."""
        self._address, self._family = resolve(self.host)
        logger.debug("resolved %s to %s", self.host, self._address)
        return self._address, self._family

    def send_probe(self, sequence: int) -> ProbeResult:
        """Send one Echo Request and wait for its reply.

        Socket failures are reported on the result, never raised. The sent
        counter grows by one on every call that gets as far as a send
        attempt; the received counter only on a matched reply.

        Args:
            sequence: Sequence number of this probe, 0..65535.

        Returns:
            The probe outcome.

        Raises:
            EncodingError: If *sequence* does not fit in 16 bits.
            ResolutionError: If the session was not resolved yet and the
                lookup fails.
        """
        if self._address is None:
            self.resolve()

        if not 0 <= sequence <= icmp_packet.MAX_UINT16:
            raise EncodingError(f"sequence number {sequence} does not fit in 16 bits")

        self._sent += 1
        try:
            with self._socket_factory(self._family) as sock:
                return self._exchange(sock, sequence)
        except SocketError as exc:
            logger.warning("seq=%d: %s", sequence, exc)
            return ProbeResult(sequence=sequence, error=exc)
        except OSError as exc:
            error = SocketError(f"socket: {exc}")
            logger.warning("seq=%d: %s", sequence, error)
            return ProbeResult(sequence=sequence, error=error)

    def _exchange(self, sock: socket.socket, sequence: int) -> ProbeResult:
        packet = icmp_packet.build_request(
            sequence, self._identifier, self.payload_size, self.is_ipv6
        )

        sent_at = time.perf_counter()
        try:
            sock.sendto(packet, (self._address, 0))
        except OSError as exc:
            raise SocketError(f"write: {exc}") from exc
        logger.debug(
            "sent %d bytes to %s id=%d seq=%d",
            len(packet), self._address, self._identifier, sequence,
        )

        try:
            state, rtt = await_reply(
                sock, self._identifier, sequence, self.is_ipv6, sent_at, self.timeout
            )
        except OSError as exc:
            raise SocketError(f"read: {exc}") from exc

        if state is ReceiveState.EXPIRED:
            logger.debug("seq=%d expired after %.3fs", sequence, self.timeout)
            return ProbeResult(sequence=sequence)

        self._received += 1
        self._rtts.append(rtt)
        return ProbeResult(sequence=sequence, received=True, rtt=rtt)

    def statistics(self) -> Stats:
        """Snapshot of the counters; no I/O."""
        lost = self._sent - self._received
        loss = lost / self._sent * 100 if self._sent > 0 else 0.0
        rtts = list(self._rtts)
        if not rtts:
            return Stats(sent=self._sent, received=self._received, lost=lost, loss=loss)

        return Stats(
            sent=self._sent,
            received=self._received,
            lost=lost,
            loss=loss,
            min=min(rtts),
            avg=statistics.fmean(rtts),
            max=max(rtts),
            stddev=statistics.pstdev(rtts),
        )

    def run(self, stop: Optional[threading.Event] = None) -> Iterator[ProbeResult]:
        """Probe ``count`` times (or until stopped), pacing by ``interval``.

        *stop* is checked before every probe and interrupts the wait
        between probes; a probe already in flight finishes or times out on
        its own. Sequence numbers start at 1 and wrap within 16 bits.
        """
        if stop is None:
            stop = threading.Event()

        for n in itertools.count(1):
            if self.count >= 0 and n > self.count:
                return
            if stop.is_set():
                return

            yield self.send_probe(wire_sequence(n))

            last = self.count >= 0 and n >= self.count
            if not last and stop.wait(self.interval):
                return


def wire_sequence(n: int) -> int:
    """Map the n-th probe (n >= 1) onto 1..65535."""
    return (n - 1) % icmp_packet.MAX_UINT16 + 1
