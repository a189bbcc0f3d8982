"""Exceptions raised by the ping codec and probe session."""


class PingError(Exception):
    """Base class for every error raised by this package."""


class EncodingError(PingError):
    """An Echo Request could not be built from the given fields."""


class ParseError(PingError):
    """An inbound datagram is not a usable ICMP Echo message."""


class ResolutionError(PingError):
    """The target host has no usable IPv4 or IPv6 address."""


class SocketError(PingError):
    """Opening, writing to or reading from the raw socket failed."""
