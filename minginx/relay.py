import asyncio
import logging
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from minginx.config import RelayConfig
from minginx.errors import (
    ConnectionAborted,
    PumpError,
    RelayError,
    UpstreamUnreachable,
)

logger = logging.getLogger("minginx.relay")

# Errors that mean the peer went away rather than a local transport failure
PEER_RESET_ERRORS = (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)


class Direction(str, Enum):
    CLIENT_TO_UPSTREAM = "client_to_upstream"
    UPSTREAM_TO_CLIENT = "upstream_to_client"

    def __str__(self) -> str:
        return self.value


class ConnectionState(str, Enum):
    ACCEPTED = "accepted"
    CONNECTING_UPSTREAM = "connecting_upstream"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Connection:
    """One accepted client paired with its upstream, owned by a single relay unit"""

    client_addr: str
    upstream_addr: str
    state: ConnectionState = ConnectionState.ACCEPTED
    client_to_upstream_bytes: int = 0
    upstream_to_client_bytes: int = 0
    last_activity: float = field(default_factory=time.monotonic)

    def transition(self, state: ConnectionState) -> None:
        logger.debug(f"{self.client_addr}: {self.state.value} -> {state.value}")
        self.state = state
        if state is ConnectionState.RELAYING:
            # the idle clock starts once bytes can flow, not at accept
            self.last_activity = time.monotonic()

    def record(self, direction: Direction, count: int) -> None:
        if direction is Direction.CLIENT_TO_UPSTREAM:
            self.client_to_upstream_bytes += count
        else:
            self.upstream_to_client_bytes += count
        self.last_activity = time.monotonic()

    def idle_for(self) -> float:
        return time.monotonic() - self.last_activity


@dataclass(frozen=True)
class RelayResult:
    client_addr: str
    upstream_addr: str
    client_to_upstream_bytes: int = 0
    upstream_to_client_bytes: int = 0
    error: Optional[RelayError] = None
    state: ConnectionState = ConnectionState.COMPLETED

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_connection(cls, conn: Connection, error: Optional[RelayError] = None):
        conn.transition(ConnectionState.FAILED if error is not None else ConnectionState.COMPLETED)
        return cls(
            client_addr=conn.client_addr,
            upstream_addr=conn.upstream_addr,
            client_to_upstream_bytes=conn.client_to_upstream_bytes,
            upstream_to_client_bytes=conn.upstream_to_client_bytes,
            error=error,
            state=conn.state,
        )


class Relay:
    """Moves bytes between one client connection and the upstream.

    A Relay holds only the shared read-only config, so a single instance can
    serve every connection; all per-connection state lives in the Connection
    created by run().
    """

    def __init__(self, config: RelayConfig):
        self.config = config

    async def run(self, client_sock: socket.socket, client_addr: str) -> RelayResult:
        """Relay one accepted client socket until both directions are done.

        Per-connection failures are returned in RelayResult.error, never raised.
        """
        conn = Connection(client_addr=client_addr, upstream_addr=self.config.upstream_addr)

        try:
            client_reader, client_writer = await asyncio.open_connection(
                sock=client_sock, limit=self.config.buffer_size
            )
        except OSError as e:
            client_sock.close()
            return RelayResult.from_connection(
                conn, ConnectionAborted(Direction.CLIENT_TO_UPSTREAM, e)
            )

        upstream_writer = None
        try:
            conn.transition(ConnectionState.CONNECTING_UPSTREAM)
            try:
                upstream_reader, upstream_writer = await self._connect_upstream()
            except UpstreamUnreachable as e:
                return RelayResult.from_connection(conn, e)

            conn.transition(ConnectionState.RELAYING)

            # Both directions run to completion; neither is cancelled when the
            # other finishes, so a half-closed client still gets the reply.
            outcomes = await asyncio.gather(
                self.pump(conn, Direction.CLIENT_TO_UPSTREAM, client_reader, upstream_writer),
                self.pump(conn, Direction.UPSTREAM_TO_CLIENT, upstream_reader, client_writer),
                return_exceptions=True,
            )
            return RelayResult.from_connection(conn, self._first_error(outcomes))
        finally:
            await self._close(client_writer)
            if upstream_writer is not None:
                await self._close(upstream_writer)

    async def _connect_upstream(self):
        host, port = self.config.upstream_endpoint
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=self.config.buffer_size),
                timeout=self.config.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise UpstreamUnreachable(self.config.upstream_addr, e) from e

    async def pump(
        self,
        conn: Connection,
        direction: Direction,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Copy from reader to writer until end of stream, then half-close the writer"""
        try:
            while True:
                data = await self._read(conn, direction, reader)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                conn.record(direction, len(data))
        except PEER_RESET_ERRORS as e:
            raise ConnectionAborted(direction, e) from e
        except (OSError, asyncio.TimeoutError) as e:
            raise PumpError(direction, e) from e
        finally:
            self._half_close(writer, direction)

    async def _read(self, conn: Connection, direction: Direction, reader: asyncio.StreamReader) -> bytes:
        idle_timeout = self.config.idle_timeout
        if idle_timeout is None:
            return await reader.read(self.config.buffer_size)

        while True:
            remaining = idle_timeout - conn.idle_for()
            if remaining <= 0:
                raise asyncio.TimeoutError(
                    f"No traffic for {idle_timeout}s on {conn.client_addr}"
                )
            try:
                # a cancelled read leaves buffered bytes in the reader
                return await asyncio.wait_for(reader.read(self.config.buffer_size), remaining)
            except asyncio.TimeoutError:
                # the other direction may have seen traffic meanwhile
                continue

    def _half_close(self, writer: asyncio.StreamWriter, direction: Direction) -> None:
        if writer.is_closing() or not writer.can_write_eof():
            return
        try:
            writer.write_eof()
        except OSError as e:
            logger.debug(f"Half-close after {direction} failed: {e}")

    @staticmethod
    def _first_error(outcomes) -> Optional[RelayError]:
        for outcome in outcomes:
            if isinstance(outcome, RelayError):
                return outcome
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return None

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection: {e}")
