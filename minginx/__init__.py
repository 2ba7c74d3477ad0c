"""
minginx - A transparent TCP relay

This package provides a reverse proxy that accepts TCP connections and
forwards every byte, in both directions, to a single upstream address.
"""

from minginx.config import AcceptErrorPolicy, RelayConfig
from minginx.errors import (
    AcceptError,
    BindError,
    ConfigError,
    ConnectionAborted,
    PumpError,
    RelayError,
    UpstreamUnreachable,
)
from minginx.events import LoggingObserver, RelayObserver
from minginx.relay import Direction, Relay, RelayResult
from minginx.server import RelayServer

__version__ = "0.1.0"

__all__ = [
    "AcceptError",
    "AcceptErrorPolicy",
    "BindError",
    "ConfigError",
    "ConnectionAborted",
    "Direction",
    "LoggingObserver",
    "PumpError",
    "Relay",
    "RelayConfig",
    "RelayError",
    "RelayObserver",
    "RelayResult",
    "RelayServer",
    "UpstreamUnreachable",
]
