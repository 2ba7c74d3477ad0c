import argparse
import asyncio
import logging
import sys

import aiohttp

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("minginx.check")

# Paths requested from the upstream, through the relay
DEFAULT_PATHS = ["/"]


async def check_relay(url, timeout=20):
    """Request url through the relay and report whether the upstream answered"""
    try:
        logger.info(f"Relay check: {url}")

        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout), allow_redirects=False
            ) as response:
                status = response.status
                content = await response.read()
                logger.info(f"Status: {status}")
                logger.info(f"Content length: {len(content)} bytes")
                return True
    except aiohttp.ClientConnectorError as e:
        logger.error(f"Connection refused, is the relay running? {e}")
        return False
    except aiohttp.ServerDisconnectedError as e:
        logger.error(f"Relay closed the connection, is the upstream reachable? {e}")
        return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Relay check failed: {e!r}")
        return False


async def run_checks(host="127.0.0.1", port=8081, paths=None):
    """Run a check per path and log a summary. Returns the number of successes."""
    paths = paths or DEFAULT_PATHS
    logger.info("====== Checking relay ======")
    logger.info(f"Relay: {host}:{port}")

    success_count = 0
    for path in paths:
        url = f"http://{host}:{port}{path}"
        result = await check_relay(url)
        if result:
            success_count += 1
        logger.info(f"Check {url}: {'OK' if result else 'FAILED'}")
        logger.info("-" * 50)

    logger.info("====== Summary ======")
    logger.info(f"Relay success rate: {success_count}/{len(paths)}")

    if success_count == 0:
        logger.error("All relay checks failed")
    elif success_count < len(paths):
        logger.warning(f"Relay checks partially passed: {success_count}/{len(paths)}")
    else:
        logger.info("All relay checks passed")
    return success_count


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Check a running minginx relay over HTTP")
    parser.add_argument("-H", "--host", type=str, default="127.0.0.1",
                        help="Relay host (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, default=8081,
                        help="Relay port (default: 8081)")
    parser.add_argument("--path", action="append", dest="paths", default=None,
                        help="Path to request through the relay, repeatable (default: /)")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()

    try:
        passed = asyncio.run(run_checks(args.host, args.port, args.paths))
        sys.exit(0 if passed else 1)
    except KeyboardInterrupt:
        logger.info("Check interrupted by user")
        sys.exit(0)
