import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from minginx.config import (
    DEFAULT_LISTEN_ADDR,
    DEFAULT_UPSTREAM_ADDR,
    AcceptErrorPolicy,
    RelayConfig,
)
from minginx.errors import AcceptError, BindError, ConfigError
from minginx.server import RelayServer


def setup_logging(level="INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="minginx - A transparent TCP relay")
    parser.add_argument(
        "-l",
        "--listen",
        type=str,
        default=None,
        help=f"Address to accept clients on (default: {DEFAULT_LISTEN_ADDR})",
    )
    parser.add_argument(
        "-u",
        "--upstream",
        type=str,
        default=None,
        help=f"Address every connection is forwarded to (default: {DEFAULT_UPSTREAM_ADDR})",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file; command-line flags take precedence",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Seconds allowed for connecting to the upstream, 0 disables (default: 10)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close connections with no traffic for this many seconds, 0 disables (default: never)",
    )
    parser.add_argument(
        "--max-connections",
        type=int,
        default=None,
        help="Maximum number of connections relayed at once (default: unlimited)",
    )
    parser.add_argument(
        "--fatal-accept-errors",
        action="store_true",
        default=False,
        help="Stop the server on the first accept error instead of retrying",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def build_config(args) -> RelayConfig:
    base = RelayConfig.from_file(Path(args.config)) if args.config else RelayConfig()

    overrides = {
        "listen_addr": args.listen,
        "upstream_addr": args.upstream,
        "connect_timeout": args.connect_timeout,
        "idle_timeout": args.idle_timeout,
        "max_connections": args.max_connections,
    }
    if args.fatal_accept_errors:
        overrides["accept_error_policy"] = AcceptErrorPolicy.FATAL

    values = {k: v for k, v in overrides.items() if v is not None}
    # 0 switches a timeout off, overriding the config file
    for name in ("connect_timeout", "idle_timeout"):
        if values.get(name) == 0:
            values[name] = None
    return replace(base, **values)


async def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("minginx")

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    server = RelayServer(config)
    try:
        await server.start()
    except (BindError, AcceptError) as e:
        logger.error(f"Relay server failed: {e}")
        return 1
    finally:
        await server.stop()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logging.getLogger("minginx").info("Server shutdown requested")
