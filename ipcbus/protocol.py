"""Framed messages over a Unix domain socket: packed type/length header + payload."""

import asyncio
import struct
from dataclasses import dataclass

from ipcbus.errors import ProtocolError

HEADER_FMT = "=IQ"  # host byte order, no padding: uint32 type, uint64 length
HEADER_SIZE = struct.calcsize(HEADER_FMT)
INT_FMT = "=i"
INT_SIZE = struct.calcsize(INT_FMT)
RESPONSE_TYPE = 0
MAX_TYPE = 0xFFFFFFFF
CHUNK_SIZE = 1024
MAX_MSG_SIZE = 16 * 1024 * 1024  # 16 MB


@dataclass(frozen=True)
class Message:
    type: int
    payload: bytes

    @property
    def length(self) -> int:
        return len(self.payload)


def encode_message(msg_type: int, payload: bytes) -> bytes:
    """Build ``header(type, len) || payload``."""
    if not 0 <= msg_type <= MAX_TYPE:
        raise ValueError(f"Message type {msg_type} does not fit in uint32")
    return struct.pack(HEADER_FMT, msg_type, len(payload)) + bytes(payload)


def decode_header(buf: bytes) -> tuple[int, int]:
    if len(buf) < HEADER_SIZE:
        raise ProtocolError(
            f"Frame of {len(buf)} bytes is shorter than header ({HEADER_SIZE})"
        )
    return struct.unpack_from(HEADER_FMT, buf)


def decode_message(buf: bytes) -> Message:
    """Decode one complete frame. Trailing bytes past the declared length are ignored."""
    msg_type, length = decode_header(buf)
    end = HEADER_SIZE + length
    if len(buf) < end:
        raise ProtocolError(
            f"Frame truncated: header declares {length} bytes, got {len(buf) - HEADER_SIZE}"
        )
    return Message(msg_type, bytes(buf[HEADER_SIZE:end]))


def encode_int(value: int) -> bytes:
    return struct.pack(INT_FMT, value)


def decode_int(payload: bytes) -> int:
    """Read a native int32 from the start of ``payload``."""
    if len(payload) < INT_SIZE:
        raise ProtocolError(
            f"Payload of {len(payload)} bytes is too short for an int ({INT_SIZE})"
        )
    (value,) = struct.unpack_from(INT_FMT, payload)
    return value


def as_payload(data: bytes | str | int) -> bytes:
    """Coerce a str (UTF-8) or int (native int32) argument to payload bytes."""
    if isinstance(data, bool):
        raise TypeError("bool is not a valid payload")
    if isinstance(data, int):
        return encode_int(data)
    if isinstance(data, str):
        return data.encode()
    return bytes(data)


def _check_length(length: int, max_size: int) -> None:
    if length > max_size:
        raise ProtocolError(f"Message size {length} exceeds maximum {max_size}")


async def send_msg(writer: asyncio.StreamWriter, msg_type: int, payload: bytes) -> None:
    """Write one frame and wait for the transport to drain."""
    writer.write(encode_message(msg_type, payload))
    await writer.drain()


async def recv_msg(
    reader: asyncio.StreamReader, max_size: int = MAX_MSG_SIZE
) -> Message | None:
    """Read exactly one frame. Returns None if the peer closed before sending anything."""
    try:
        header = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise ProtocolError(
            f"Request of {len(e.partial)} bytes is shorter than header ({HEADER_SIZE})"
        ) from e
    msg_type, length = decode_header(header)
    _check_length(length, max_size)
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Frame truncated: header declares {length} bytes, got {len(e.partial)}"
        ) from e
    return Message(msg_type, payload)


def send_msg_sync(sock, msg_type: int, payload: bytes) -> None:
    """Blocking send of one frame."""
    sock.sendall(encode_message(msg_type, payload))


def recv_frame_sync(sock, max_size: int = MAX_MSG_SIZE) -> bytes:
    """Blocking receive of one raw frame, header included.

    The header is read first and then exactly the declared number of payload
    bytes, so completion never depends on the size of the last receive. If the
    peer closes inside the header the partial bytes are returned as-is (callers
    treat anything shorter than ``HEADER_SIZE`` as "no response"); a close
    inside the payload raises ``ProtocolError``.
    """
    header = _recvall(sock, HEADER_SIZE)
    if len(header) < HEADER_SIZE:
        return header
    _, length = decode_header(header)
    _check_length(length, max_size)
    payload = _recvall(sock, length)
    if len(payload) < length:
        raise ProtocolError(
            f"Frame truncated: header declares {length} bytes, got {len(payload)}"
        )
    return header + payload


def recv_msg_sync(sock, max_size: int = MAX_MSG_SIZE) -> Message | None:
    """Blocking receive of one frame. Returns None on EOF before a full header."""
    frame = recv_frame_sync(sock, max_size)
    if len(frame) < HEADER_SIZE:
        return None
    return decode_message(frame)


def _recvall(sock, n: int) -> bytes:
    """Read up to n bytes in CHUNK_SIZE pieces, stopping early only on EOF."""
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(min(CHUNK_SIZE, n - len(buf)))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)
