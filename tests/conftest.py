import pytest

from minginx.config import RelayConfig
from minginx.server import RelayServer
from tests.helpers import RecordingObserver, echo_handler, start_upstream


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
async def echo_upstream():
    server, address = await start_upstream(echo_handler)
    yield address
    server.close()


@pytest.fixture
async def relay_server(echo_upstream, observer):
    config = RelayConfig(listen_addr="127.0.0.1:0", upstream_addr=echo_upstream)
    async with RelayServer(config, observer=observer) as server:
        yield server
