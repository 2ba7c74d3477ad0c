import asyncio
import socket

from minginx.events import RelayObserver


class RecordingObserver(RelayObserver):
    """Collects relay events so tests can await them"""

    def __init__(self):
        self.accepted = []
        self.results = asyncio.Queue()

    def connection_accepted(self, client_addr):
        self.accepted.append(client_addr)

    def connection_relayed(self, result):
        self.results.put_nowait(result)

    def connection_failed(self, result):
        self.results.put_nowait(result)

    async def next_result(self, timeout=5):
        return await asyncio.wait_for(self.results.get(), timeout)


async def echo_handler(reader, writer):
    """Echo everything back, close after the client half-closes"""
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


async def start_upstream(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    return server, f"{host}:{port}"


def closed_port_address():
    """An address on 127.0.0.1 that nothing listens on"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"127.0.0.1:{port}"


async def read_all(reader, timeout=5):
    return await asyncio.wait_for(reader.read(), timeout)

