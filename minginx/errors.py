"""
Error types raised by the relay.

BindError and AcceptError are server-level: they stop the listener.
Everything else belongs to a single connection and is reported through
its RelayResult instead of being raised.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors"""


class ConfigError(RelayError, ValueError):
    """Invalid relay configuration"""


class BindError(RelayError):
    def __init__(self, address: str, cause: BaseException):
        self.address = address
        self.cause = cause
        super().__init__(f"Cannot bind {address}: {cause}")


class AcceptError(RelayError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Accept failed: {cause}")


class UpstreamUnreachable(RelayError):
    def __init__(self, address: str, cause: BaseException):
        self.address = address
        self.cause = cause
        super().__init__(f"Upstream {address} unreachable: {cause!r}")


class PumpError(RelayError):
    """A copy loop failed with a transport error"""

    def __init__(self, direction, cause: Optional[BaseException]):
        self.direction = direction
        self.cause = cause
        super().__init__(f"Pump {direction} failed: {cause!r}")


class ConnectionAborted(PumpError):
    """The peer reset the connection mid-copy"""
