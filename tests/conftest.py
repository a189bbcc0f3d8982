import socket
import struct
import time
from collections import deque

import pytest

import icmp_packet


def ipv4_header(payload_len: int, src: str = "127.0.0.1", dst: str = "127.0.0.1") -> bytes:
    """Minimal 20-byte IPv4 header, as delivered by a raw IPv4 socket."""
    return struct.pack(
        "!BBHHHBBH4s4s",
        0x45, 0, 20 + payload_len, 0, 0, 64, icmp_packet.PROTOCOL_ICMP, 0,
        socket.inet_aton(src), socket.inet_aton(dst),
    )


def echo_reply(identifier: int, sequence: int, payload: bytes = b"", is_ipv6: bool = False) -> bytes:
    """Build a datagram carrying an Echo Reply the way the socket would hand it over."""
    message = struct.pack(
        icmp_packet.HEADER_FORMAT,
        icmp_packet.echo_reply_type(is_ipv6), 0, 0, identifier, sequence,
    ) + payload
    if is_ipv6:
        return message
    message = icmp_packet.insert_checksum(message)
    return ipv4_header(len(message)) + message


def reflect(packet: bytes, is_ipv6: bool = False) -> bytes:
    """Turn an outbound Echo Request into the Echo Reply a host would send back."""
    reply_type = icmp_packet.echo_reply_type(is_ipv6)
    message = bytes([reply_type]) + packet[1:]
    if is_ipv6:
        return message
    message = icmp_packet.insert_checksum(message)
    return ipv4_header(len(message)) + message


class FakeSocket:
    """In-memory stand-in for a raw ICMP socket.

    *responder* is called with every transmitted packet and returns the
    datagrams that become readable afterwards. Reads with nothing queued
    sleep for the configured timeout and raise ``socket.timeout``.
    """

    def __init__(self, responder=None, send_error=None, reply_delay=0.001):
        self.responder = responder
        self.send_error = send_error
        self.reply_delay = reply_delay
        self.inbox = deque()
        self.sent = []
        self.timeouts = []
        self.closed = False

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendto(self, data, address):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((bytes(data), address))
        if self.responder is not None:
            time.sleep(self.reply_delay)
            self.inbox.extend(self.responder(bytes(data)))
        return len(data)

    def recvfrom(self, bufsize):
        if self.inbox:
            return self.inbox.popleft()[:bufsize], ("127.0.0.1", 0)
        time.sleep(self.timeouts[-1] if self.timeouts else 0)
        raise socket.timeout("timed out")

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class SocketFactory:
    """Hands out FakeSockets and remembers them."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sockets = []
        self.families = []

    def __call__(self, family):
        self.families.append(family)
        sock = FakeSocket(**self.kwargs)
        self.sockets.append(sock)
        return sock


@pytest.fixture
def echo_factory():
    return SocketFactory(responder=lambda packet: [reflect(packet)])


@pytest.fixture
def silent_factory():
    return SocketFactory()
