import asyncio
import shutil
import socket
import tempfile
import threading
from pathlib import Path

import pytest

from ipcbus.protocol import recv_msg_sync


@pytest.fixture
def socket_dir():
    """Short temp dir to stay under the 108-char AF_UNIX path limit."""
    d = tempfile.mkdtemp(prefix="ipc")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir):
    return str(socket_dir / "s.sock")


@pytest.fixture
def peer_path(socket_dir):
    return str(socket_dir / "p.sock")


async def echo_handler(service, payload, conn):
    await service.respond_raw(conn, payload)


async def run_blocking(fn, *args):
    """Run a blocking client call off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def one_shot_server(path: str, reply: bytes) -> threading.Thread:
    """Accept one connection, read its request, write ``reply`` verbatim and close."""
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(path)
    srv.listen(1)

    def serve():
        try:
            conn, _ = srv.accept()
            with conn:
                recv_msg_sync(conn)
                conn.sendall(reply)
        finally:
            srv.close()

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    return t
