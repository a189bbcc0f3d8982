"""
icmp_packet.py - Build and parse ICMP Echo Request/Reply messages.

ICMP Echo layout (RFC 792 for IPv4, RFC 4443 for IPv6):

     0                   1                   2                   3
     0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |     Type      |     Code      |          Checksum             |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |           Identifier          |        Sequence Number        |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                             Payload                           |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

The first 8 payload bytes of a request carry the send time in nanoseconds
since the epoch, big-endian. The rest of the payload is zero-filled.
"""

import struct
import time
from dataclasses import dataclass
from typing import Optional

from ping_errors import EncodingError, ParseError

ICMP_ECHO_REQUEST = 8
ICMP_ECHO_REPLY = 0
ICMPV6_ECHO_REQUEST = 128
ICMPV6_ECHO_REPLY = 129
ICMP_CODE = 0

PROTOCOL_ICMP = 1
PROTOCOL_ICMPV6 = 58

HEADER_FORMAT = "!BBHHH"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
TIMESTAMP_FORMAT = "!Q"
TIMESTAMP_SIZE = struct.calcsize(TIMESTAMP_FORMAT)

MAX_UINT16 = 0xFFFF


def echo_request_type(is_ipv6: bool) -> int:
    return ICMPV6_ECHO_REQUEST if is_ipv6 else ICMP_ECHO_REQUEST


def echo_reply_type(is_ipv6: bool) -> int:
    return ICMPV6_ECHO_REPLY if is_ipv6 else ICMP_ECHO_REPLY


def checksum(data: bytes) -> int:
    """Compute the Internet checksum (RFC 1071) over *data*.

    Adds the input as big-endian 16-bit words, padding an odd trailing
    byte with a zero low byte, folds every carry back into the low 16 bits
    and returns the one's complement.

    Args:
        data: Raw bytes to checksum.

    Returns:
        16-bit checksum as an integer.
    """
    if len(data) % 2 != 0:
        data += b'\x00'

    total = 0
    for (word,) in struct.iter_unpack("!H", data):
        total += word

    # Fold carries until the sum fits in 16 bits
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)

    return ~total & 0xFFFF


def insert_checksum(packet: bytes) -> bytes:
    """Return *packet* with its checksum field (bytes 2-3) filled in.

    The field is zeroed before the sum is taken, so the result verifies
    to zero under :func:`checksum`.
    """
    if len(packet) < HEADER_SIZE:
        raise EncodingError(f"ICMP message is {len(packet)} bytes, need at least {HEADER_SIZE}")
    zeroed = packet[:2] + b'\x00\x00' + packet[4:]
    return zeroed[:2] + struct.pack("!H", checksum(zeroed)) + zeroed[4:]


def build_payload(payload_size: int, timestamp_ns: Optional[int] = None) -> bytes:
    """Build a request payload of exactly *payload_size* bytes.

    Args:
        payload_size: Total payload length in bytes.
        timestamp_ns: Send time to embed; defaults to the current wall clock.

    Returns:
        The timestamp in the first 8 bytes followed by zero padding. A
        payload shorter than 8 bytes holds the leading bytes of the
        timestamp only.
    """
    if payload_size < 0:
        raise EncodingError(f"payload size must not be negative, got {payload_size}")
    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    stamp = struct.pack(TIMESTAMP_FORMAT, timestamp_ns & 0xFFFFFFFFFFFFFFFF)
    payload = bytearray(payload_size)
    prefix = min(payload_size, TIMESTAMP_SIZE)
    payload[:prefix] = stamp[:prefix]
    return bytes(payload)


def build_request(
    sequence: int,
    identifier: int,
    payload_size: int,
    is_ipv6: bool = False,
    timestamp_ns: Optional[int] = None,
) -> bytes:
    """Build one ICMP Echo Request message.

    For IPv4 the checksum is computed here. For IPv6 the field is left
    zero: the ICMPv6 checksum covers a pseudo-header with the source and
    destination addresses, and the kernel fills it in on a raw ICMPv6
    socket.

    Args:
        sequence:     Sequence number, 0..65535.
        identifier:   Session identifier, 0..65535.
        payload_size: Payload length in bytes after the 8-byte header.
        is_ipv6:      Build an ICMPv6 (type 128) rather than ICMP (type 8) request.
        timestamp_ns: Send time to embed; defaults to the current wall clock.

    Returns:
        The encoded message, header plus payload.

    Raises:
        EncodingError: For a negative payload size or an identifier or
            sequence number that does not fit in 16 bits.
    """
    if not 0 <= identifier <= MAX_UINT16:
        raise EncodingError(f"identifier {identifier} does not fit in 16 bits")
    if not 0 <= sequence <= MAX_UINT16:
        raise EncodingError(f"sequence number {sequence} does not fit in 16 bits")

    payload = build_payload(payload_size, timestamp_ns)
    header = struct.pack(
        HEADER_FORMAT, echo_request_type(is_ipv6), ICMP_CODE, 0, identifier, sequence
    )
    packet = header + payload
    if is_ipv6:
        return packet
    return insert_checksum(packet)


@dataclass(frozen=True)
class ProbeReply:
    """One parsed inbound ICMP Echo message."""

    type: int
    code: int
    checksum: int
    identifier: int
    sequence: int
    payload: bytes

    @property
    def timestamp_ns(self) -> Optional[int]:
        """Send time embedded by the request, or None if the payload is too short."""
        if len(self.payload) < TIMESTAMP_SIZE:
            return None
        return struct.unpack(TIMESTAMP_FORMAT, self.payload[:TIMESTAMP_SIZE])[0]

    def is_echo_reply(self, is_ipv6: bool) -> bool:
        return self.type == echo_reply_type(is_ipv6)


def parse_reply(data: bytes, is_ipv6: bool = False, verify: bool = False) -> ProbeReply:
    """Parse an ICMP message (no IP header) into a :class:`ProbeReply`.

    Args:
        data:    The ICMP message bytes.
        is_ipv6: Interpret the type field with ICMPv6 codes.
        verify:  Reject IPv4 messages whose checksum does not verify.
                 IPv6 checksums are checked by the kernel.

    Returns:
        The parsed message.

    Raises:
        ParseError: On truncated input, a type other than Echo Request or
            Echo Reply for the family, or a bad IPv4 checksum.
    """
    if len(data) < HEADER_SIZE:
        raise ParseError(f"truncated ICMP message: {len(data)} bytes")

    icmp_type, code, csum, identifier, sequence = struct.unpack(
        HEADER_FORMAT, data[:HEADER_SIZE]
    )
    if icmp_type not in (echo_request_type(is_ipv6), echo_reply_type(is_ipv6)):
        family = "ICMPv6" if is_ipv6 else "ICMP"
        raise ParseError(f"unhandled {family} type {icmp_type} code {code}")
    if verify and not is_ipv6 and checksum(data) != 0:
        raise ParseError(f"bad ICMP checksum 0x{csum:04x}")

    return ProbeReply(
        type=icmp_type,
        code=code,
        checksum=csum,
        identifier=identifier,
        sequence=sequence,
        payload=bytes(data[HEADER_SIZE:]),
    )


def strip_ipv4_header(datagram: bytes) -> bytes:
    """Return the IPv4 payload of *datagram*.

    Raw IPv4 sockets deliver the IP header in front of the ICMP message;
    its length comes from the IHL field.

    Raises:
        ParseError: If the datagram is not IPv4 or is shorter than its header.
    """
    if not datagram:
        raise ParseError("empty datagram")
    version = datagram[0] >> 4
    if version != 4:
        raise ParseError(f"expected an IPv4 header, got version {version}")
    header_len = (datagram[0] & 0x0F) * 4
    if header_len < 20 or len(datagram) < header_len:
        raise ParseError(f"truncated IPv4 header: {len(datagram)} bytes, IHL {header_len}")
    return datagram[header_len:]
