import json
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Self, Tuple

from minginx.errors import ConfigError

DEFAULT_LISTEN_ADDR = "0.0.0.0:8081"
DEFAULT_UPSTREAM_ADDR = "0.0.0.0:8080"


class AcceptErrorPolicy(str, Enum):
    CONTINUE = "continue"
    FATAL = "fatal"


def parse_address(address: str) -> Tuple[str, int]:
    """Split "host:port" (or "[v6]:port") into a (host, port) tuple"""
    if not isinstance(address, str) or ":" not in address:
        raise ConfigError(f"Address must be host:port, got {address!r}")

    host, _, port_text = address.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        raise ConfigError(f"Missing host in address {address!r}")

    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"Invalid port in address {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"Port out of range in address {address!r}")
    return host, port


def format_address(address: Any) -> str:
    """Render a socket address tuple as host:port"""
    if isinstance(address, tuple) and len(address) >= 2:
        host, port = address[0], address[1]
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(address)


@dataclass(frozen=True)
class RelayConfig:
    """Immutable relay settings, shared read-only by every connection"""

    listen_addr: str = DEFAULT_LISTEN_ADDR
    upstream_addr: str = DEFAULT_UPSTREAM_ADDR
    accept_error_policy: AcceptErrorPolicy = AcceptErrorPolicy.CONTINUE
    accept_retry_delay: float = 1.0
    connect_timeout: Optional[float] = 10.0
    idle_timeout: Optional[float] = None
    max_connections: Optional[int] = None
    buffer_size: int = 65536

    def __post_init__(self):
        parse_address(self.listen_addr)
        parse_address(self.upstream_addr)

        try:
            policy = AcceptErrorPolicy(self.accept_error_policy)
        except ValueError:
            raise ConfigError(
                f"Unknown accept error policy {self.accept_error_policy!r}"
            ) from None
        object.__setattr__(self, "accept_error_policy", policy)

        if self.accept_retry_delay < 0:
            raise ConfigError("accept_retry_delay must not be negative")
        for name in ("connect_timeout", "idle_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.max_connections is not None and self.max_connections < 1:
            raise ConfigError("max_connections must be at least 1")
        if self.buffer_size < 1:
            raise ConfigError("buffer_size must be at least 1")

    @property
    def listen_endpoint(self) -> Tuple[str, int]:
        return parse_address(self.listen_addr)

    @property
    def upstream_endpoint(self) -> Tuple[str, int]:
        return parse_address(self.upstream_addr)

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load a config from a JSON file"""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)
