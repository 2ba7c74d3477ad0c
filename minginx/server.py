import asyncio
import functools
import logging
import socket
from typing import Optional, Self, Set, Tuple

from minginx.config import AcceptErrorPolicy, RelayConfig, format_address
from minginx.errors import AcceptError, BindError
from minginx.events import LoggingObserver, RelayObserver
from minginx.relay import Relay, RelayResult

logger = logging.getLogger("minginx.server")


class RelayServer:
    """Accepts client connections and relays each one to the upstream in its own task"""

    def __init__(self, config: RelayConfig, observer: Optional[RelayObserver] = None):
        self.config = config
        self.observer = observer or LoggingObserver()
        self.relay = Relay(config)
        self._sock: Optional[socket.socket] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._relay_tasks: Set[asyncio.Task] = set()
        self._slots: Optional[asyncio.Semaphore] = None
        if config.max_connections is not None:
            self._slots = asyncio.Semaphore(config.max_connections)

    @property
    def address(self) -> Tuple[str, int]:
        """The address actually bound, resolving port 0 to the real port"""
        if self._sock is None:
            raise RuntimeError("Server is not bound")
        return self._sock.getsockname()[:2]

    @property
    def active_connections(self) -> int:
        return len(self._relay_tasks)

    async def bind(self) -> None:
        if self._sock is not None:
            return
        try:
            host, port = self.config.listen_endpoint
            infos = await asyncio.get_running_loop().getaddrinfo(
                host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
            family, _, _, _, sockaddr = infos[0]
            sock = socket.create_server(sockaddr[:2], family=family)
        except OSError as e:
            raise BindError(self.config.listen_addr, e) from e

        sock.setblocking(False)
        self._sock = sock
        logger.info(f"Listening on {format_address(self.address)}")

    async def start(self) -> None:
        """Bind and serve until cancelled. Never returns on success."""
        logger.info(f"Upstream is {self.config.upstream_addr}")
        await self.bind()
        await self.serve_forever()

    async def serve_forever(self) -> None:
        await self.bind()
        try:
            while True:
                if self._slots is not None:
                    await self._slots.acquire()
                try:
                    client_sock, addr = await self._accept()
                except OSError as e:
                    if self._slots is not None:
                        self._slots.release()
                    if self.config.accept_error_policy is AcceptErrorPolicy.FATAL:
                        logger.error(f"Accept failed, stopping server: {e}")
                        raise AcceptError(e) from e
                    logger.error(
                        f"Accept failed, retrying in {self.config.accept_retry_delay}s: {e}"
                    )
                    await asyncio.sleep(self.config.accept_retry_delay)
                    continue

                client_addr = format_address(addr)
                self._notify("connection_accepted", client_addr)
                self._dispatch(client_sock, client_addr)
        finally:
            self._close_listener()

    def _dispatch(self, client_sock: socket.socket, client_addr: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._handle(client_sock, client_addr))
        self._relay_tasks.add(task)
        task.add_done_callback(functools.partial(self._relay_done, client_sock))
        return task

    async def _accept(self) -> Tuple[socket.socket, tuple]:
        return await asyncio.get_running_loop().sock_accept(self._sock)

    async def _handle(self, client_sock: socket.socket, client_addr: str) -> None:
        try:
            result = await self.relay.run(client_sock, client_addr)
        except Exception:
            logger.exception(f"Relay for {client_addr} crashed")
            return
        self._report(result)

    def _report(self, result: RelayResult) -> None:
        if result.ok:
            self._notify("connection_relayed", result)
        else:
            self._notify("connection_failed", result)

    def _notify(self, event: str, payload) -> None:
        try:
            getattr(self.observer, event)(payload)
        except Exception:
            logger.exception(f"Observer failed handling {event}")

    def _relay_done(self, client_sock: socket.socket, task: asyncio.Task) -> None:
        # a task cancelled before its first step never ran the relay teardown
        client_sock.close()
        self._relay_tasks.discard(task)
        if self._slots is not None:
            self._slots.release()

    def _serve_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and isinstance(task.exception(), AcceptError):
            for relay_task in list(self._relay_tasks):
                relay_task.cancel()

    def _close_listener(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    async def stop(self) -> None:
        """Stop accepting and tear down every in-flight connection.

        Raises the AcceptError that ended a background accept loop, once
        everything is torn down.
        """
        accept_error = None
        if self._serve_task is not None:
            serve_task, self._serve_task = self._serve_task, None
            serve_task.cancel()
            try:
                await serve_task
            except asyncio.CancelledError:
                pass
            except AcceptError as e:
                accept_error = e
        self._close_listener()

        tasks = list(self._relay_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Relay server stopped")

        if accept_error is not None:
            raise accept_error

    async def __aenter__(self) -> Self:
        await self.bind()
        self._serve_task = asyncio.create_task(self.serve_forever())
        self._serve_task.add_done_callback(self._serve_done)
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()
