"""Blocking Unix domain socket client: one short-lived connection per call."""

import selectors
import socket
import threading
import time

import structlog

from ipcbus.errors import (
    CallCancelled,
    IPCConnectionError,
    ProtocolError,
    TransportError,
)
from ipcbus.protocol import (
    HEADER_SIZE,
    MAX_MSG_SIZE,
    as_payload,
    decode_int,
    decode_message,
    encode_message,
    recv_frame_sync,
)

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 0.1


class IPCClient:
    """Client bound to one peer socket path.

    ``timeout`` applies to each blocking step (connect, send, receive);
    ``None`` waits indefinitely.
    """

    def __init__(
        self,
        socket_path: str,
        timeout: float | None = None,
        max_size: int = MAX_MSG_SIZE,
    ):
        self.socket_path = socket_path
        self.timeout = timeout
        self.max_size = max_size

    def send(self, msg_type: int, data: bytes | str | int = b"") -> None:
        """Fire-and-forget: deliver the request and close without reading a reply."""
        frame = encode_message(msg_type, as_payload(data))
        _exchange(self.socket_path, frame, False, self.timeout, self.max_size)

    def send_wait_response(self, msg_type: int, data: bytes | str | int = b"") -> bytes:
        """Send a request and return the payload of the response.

        Returns ``b""`` when the peer closes without a complete response header.
        """
        frame = encode_message(msg_type, as_payload(data))
        resp = _exchange(self.socket_path, frame, True, self.timeout, self.max_size)
        return _unwrap(resp, self.socket_path)

    def send_wait_response_int(self, msg_type: int, data: bytes | str | int = b"") -> int:
        """Like send_wait_response but decodes the reply as a native int32.

        Raises ProtocolError if the reply is shorter than an int.
        """
        return decode_int(self.send_wait_response(msg_type, data))


def send_and_wait_response(
    path: str,
    msg_type: int,
    data: bytes | str | int,
    wait: bool = True,
    *,
    timeout: float | None = None,
    max_size: int = MAX_MSG_SIZE,
) -> bytes:
    """Send one typed request to ``path``; return the reply payload if ``wait``."""
    frame = encode_message(msg_type, as_payload(data))
    resp = _exchange(path, frame, wait, timeout, max_size)
    if not wait:
        return b""
    return _unwrap(resp, path)


def send_raw_and_wait_response(
    path: str,
    data: bytes,
    wait: bool = True,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    max_size: int = MAX_MSG_SIZE,
) -> bytes:
    """Send an already framed request and return the raw framed reply.

    While waiting, readiness is polled every ``poll_interval`` seconds so the
    calling thread can give up through ``cancel`` or the overall ``timeout``.
    Without either, this behaves like an indefinite wait.
    """
    if poll_interval <= 0:
        raise ValueError("poll_interval must be positive")
    return _exchange(
        path,
        bytes(data),
        wait,
        timeout,
        max_size,
        poll_interval=poll_interval,
        cancel=cancel,
    )


def _exchange(
    path: str,
    frame: bytes,
    wait: bool,
    timeout: float | None,
    max_size: int,
    poll_interval: float | None = None,
    cancel: threading.Event | None = None,
) -> bytes:
    """Connect, send ``frame`` and, if ``wait``, read one raw response frame."""
    sock = _connect(path, timeout)
    try:
        try:
            sock.sendall(frame)
        except OSError as e:
            logger.warning("IPC send failed", path=path, error=str(e))
            raise TransportError(f"Send to {path} failed: {e}") from e
        logger.debug("IPC request sent", path=path, size=len(frame))

        if not wait:
            return b""

        if poll_interval is not None:
            _wait_readable(sock, poll_interval, cancel, timeout)

        try:
            return recv_frame_sync(sock, max_size)
        except ProtocolError:
            logger.warning("IPC response malformed", path=path)
            raise
        except OSError as e:
            logger.warning("IPC receive failed", path=path, error=str(e))
            raise TransportError(f"Receive from {path} failed: {e}") from e
    finally:
        sock.close()


def _connect(path: str, timeout: float | None) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(path)
    except OSError as e:
        sock.close()
        logger.warning("IPC connect failed", path=path, error=str(e))
        raise IPCConnectionError(f"Cannot connect to {path}: {e}") from e
    return sock


def _wait_readable(
    sock: socket.socket,
    poll_interval: float,
    cancel: threading.Event | None,
    timeout: float | None,
) -> None:
    deadline = None if timeout is None else time.monotonic() + timeout
    with selectors.DefaultSelector() as sel:
        sel.register(sock, selectors.EVENT_READ)
        while True:
            if cancel is not None and cancel.is_set():
                raise CallCancelled("IPC call cancelled while waiting for response")
            wait = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportError(f"No response within {timeout}s")
                wait = min(wait, remaining)
            if sel.select(wait):
                return


def _unwrap(frame: bytes, path: str) -> bytes:
    if len(frame) < HEADER_SIZE:
        logger.warning("IPC response shorter than header", path=path, size=len(frame))
        return b""
    return decode_message(frame).payload
