import logging

logger = logging.getLogger("minginx.events")


class RelayObserver:
    """Receives one event per connection milestone. Default hooks do nothing."""

    def connection_accepted(self, client_addr: str) -> None:
        pass

    def connection_relayed(self, result) -> None:
        pass

    def connection_failed(self, result) -> None:
        pass


class LoggingObserver(RelayObserver):
    """Writes relay events to the minginx.events logger"""

    def connection_accepted(self, client_addr: str) -> None:
        logger.info(
            f"Accepted connection from {client_addr}",
            extra={"event": "connection_accepted", "client_addr": client_addr},
        )

    def connection_relayed(self, result) -> None:
        logger.info(
            f"Proxied {result.client_to_upstream_bytes} bytes from client to upstream, "
            f"{result.upstream_to_client_bytes} bytes from upstream to client "
            f"({result.client_addr})",
            extra={
                "event": "connection_relayed",
                "state": result.state.value,
                "client_addr": result.client_addr,
                "client_to_upstream_bytes": result.client_to_upstream_bytes,
                "upstream_to_client_bytes": result.upstream_to_client_bytes,
            },
        )

    def connection_failed(self, result) -> None:
        logger.warning(
            f"Error proxying {result.client_addr}: {result.error}",
            extra={
                "event": "connection_failed",
                "state": result.state.value,
                "client_addr": result.client_addr,
                "error": result.error,
            },
        )
