"""Async Unix domain socket service dispatching typed requests to handlers."""

import asyncio
import itertools
from dataclasses import dataclass
from pathlib import Path

import structlog

from ipcbus.client import IPCClient
from ipcbus.config import Settings
from ipcbus.errors import ProtocolError, SetupError
from ipcbus.pool import WorkerPool
from ipcbus.protocol import (
    MAX_MSG_SIZE,
    RESPONSE_TYPE,
    Message,
    encode_int,
    recv_msg,
    send_msg,
)
from ipcbus.registry import Handler, HandlerTable

logger = structlog.get_logger()


@dataclass
class Connection:
    """One accepted client connection, owned by a single worker until closed."""

    id: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    async def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            # peer already reset the connection
            logger.debug("Connection closed with error", conn=self.id, error=str(e))


class IPCService:
    """Listens on ``listen_path`` and calls outbound to ``peer_path``.

    Every accepted connection carries exactly one request. It is handed to a
    bounded worker pool, decoded, and dispatched to the handler registered for
    its type as ``await handler(service, payload, connection)``. The handler
    replies, if it needs to, through ``respond_raw`` before returning.
    """

    def __init__(
        self,
        listen_path: str,
        peer_path: str = "",
        handlers: HandlerTable | dict[int, Handler] | None = None,
        *,
        max_workers: int = 30,
        queue_size: int = 128,
        socket_mode: int = 0o666,
        max_message_size: int = MAX_MSG_SIZE,
        read_timeout: float | None = None,
        write_timeout: float | None = None,
        client_timeout: float | None = None,
        drain_timeout: float | None = 5.0,
    ):
        self.listen_path = listen_path
        self.peer_path = peer_path
        if isinstance(handlers, HandlerTable):
            self.handlers = handlers
        else:
            self.handlers = HandlerTable(handlers)
        self.socket_mode = socket_mode
        self.max_message_size = max_message_size
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.client_timeout = client_timeout
        self.drain_timeout = drain_timeout
        self._pool = WorkerPool(self._process, max_workers, queue_size)
        self._server: asyncio.AbstractServer | None = None
        self._conn_ids = itertools.count(1)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        handlers: HandlerTable | dict[int, Handler] | None = None,
    ) -> "IPCService":
        return cls(
            settings.listen_path,
            settings.peer_path,
            handlers,
            max_workers=settings.max_workers,
            queue_size=settings.queue_size,
            socket_mode=settings.socket_mode,
            max_message_size=settings.max_message_size,
            read_timeout=settings.read_timeout,
            write_timeout=settings.write_timeout,
            client_timeout=settings.client_timeout,
            drain_timeout=settings.drain_timeout,
        )

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def add_handler(self, msg_type: int, handler: Handler) -> None:
        self.handlers.register(msg_type, handler)

    def get_handler(self, msg_type: int) -> Handler | None:
        return self.handlers.get(msg_type)

    async def start(self) -> None:
        """Bind the socket and begin accepting connections.

        Raises SetupError at the first failing step; earlier steps are left
        as they are and the service must not be used.
        """
        path = Path(self.listen_path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise self._setup_failed("remove stale socket", e) from e

        try:
            self._server = await asyncio.start_unix_server(
                self._on_connect, path=str(path), start_serving=False
            )
        except OSError as e:
            raise self._setup_failed("bind/listen", e) from e

        try:
            path.chmod(self.socket_mode)
        except OSError as e:
            raise self._setup_failed("chmod", e) from e

        try:
            self._pool.start()
        except RuntimeError as e:
            raise self._setup_failed("worker pool", e) from e

        await self._server.start_serving()
        logger.info(
            "IPC service listening",
            socket=self.listen_path,
            workers=self._pool.max_workers,
            handlers=self.handlers.types,
        )

    async def stop(self) -> None:
        """Stop accepting, let workers finish, and remove the socket file."""
        if self._server:
            self._server.close()
        leftover = await self._pool.stop(timeout=self.drain_timeout)
        for conn in leftover:
            await conn.close()
        if self._server:
            await self._server.wait_closed()
            self._server = None
        Path(self.listen_path).unlink(missing_ok=True)
        logger.info("IPC service stopped", socket=self.listen_path)

    def _setup_failed(self, step: str, exc: Exception) -> SetupError:
        logger.error(
            "IPC service setup failed",
            step=step,
            socket=self.listen_path,
            error=str(exc),
        )
        return SetupError(f"{step} failed for {self.listen_path}: {exc}")

    async def _on_connect(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        conn = Connection(next(self._conn_ids), reader, writer)
        logger.debug("New IPC connection", conn=conn.id)
        if not self._pool.submit(conn):
            logger.warning(
                "Worker pool rejected connection, dropping",
                conn=conn.id,
                active=self._pool.active,
                pending=self._pool.pending,
            )
            await conn.close()

    async def _process(self, conn: Connection) -> None:
        """Read one request from ``conn``, dispatch it, then close ``conn``."""
        try:
            msg = await self._read_request(conn)
            if msg is None:
                return

            if msg.type == RESPONSE_TYPE:
                logger.warning("Response frame sent as request", conn=conn.id)
                return

            handler = self.handlers.get(msg.type)
            if handler is None:
                logger.warning("Unknown request type", type=msg.type, conn=conn.id)
                return

            try:
                await handler(self, msg.payload, conn)
            except Exception:
                logger.exception("IPC handler failed", type=msg.type, conn=conn.id)
        finally:
            await conn.close()

    async def _read_request(self, conn: Connection) -> Message | None:
        try:
            msg = await asyncio.wait_for(
                recv_msg(conn.reader, self.max_message_size),
                timeout=self.read_timeout,
            )
        except ProtocolError as e:
            logger.warning("Dropping malformed request", conn=conn.id, error=str(e))
            return None
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out reading request", conn=conn.id, timeout=self.read_timeout
            )
            return None
        except OSError as e:
            logger.warning("Failed to read request", conn=conn.id, error=str(e))
            return None

        if msg is None:
            logger.warning("Client closed without sending a request", conn=conn.id)
        return msg

    async def respond_raw(self, conn: Connection, payload: bytes) -> bool:
        """Write ``payload`` back as a type-0 frame. Failures are logged, not raised."""
        try:
            await asyncio.wait_for(
                send_msg(conn.writer, RESPONSE_TYPE, payload),
                timeout=self.write_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out sending response", conn=conn.id, timeout=self.write_timeout
            )
            return False
        except OSError as e:
            logger.warning("Failed to send response", conn=conn.id, error=str(e))
            return False
        logger.debug("Response sent", conn=conn.id, size=len(payload))
        return True

    async def respond_int(self, conn: Connection, value: int) -> bool:
        return await self.respond_raw(conn, encode_int(value))

    async def respond_str(self, conn: Connection, text: str) -> bool:
        return await self.respond_raw(conn, text.encode())

    # Outbound calls to the peer. These block; from inside the event loop run
    # them with loop.run_in_executor.

    def send(self, msg_type: int, data: bytes | str | int = b"") -> None:
        self._peer().send(msg_type, data)

    def send_wait_response(self, msg_type: int, data: bytes | str | int = b"") -> bytes:
        return self._peer().send_wait_response(msg_type, data)

    def send_wait_response_int(self, msg_type: int, data: bytes | str | int = b"") -> int:
        return self._peer().send_wait_response_int(msg_type, data)

    def _peer(self) -> IPCClient:
        return IPCClient(
            self.peer_path,
            timeout=self.client_timeout,
            max_size=self.max_message_size,
        )
