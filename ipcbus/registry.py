"""Registry mapping request types to their handlers."""

import threading
from collections.abc import Awaitable, Callable
from typing import Any

from ipcbus.protocol import MAX_TYPE, RESPONSE_TYPE

# handler(service, payload, connection)
Handler = Callable[[Any, bytes, Any], Awaitable[None]]


class HandlerTable:
    """Registry of request handlers keyed by message type.

    Entries can be overwritten but never removed. Access is locked so handlers
    may be registered while workers are already dispatching.
    """

    def __init__(self, handlers: dict[int, Handler] | None = None):
        self._handlers: dict[int, Handler] = {}
        self._lock = threading.Lock()
        for msg_type, handler in (handlers or {}).items():
            self.register(msg_type, handler)

    def register(self, msg_type: int, handler: Handler | None) -> None:
        if msg_type == RESPONSE_TYPE:
            raise ValueError("Type 0 is reserved for responses")
        if not 0 < msg_type <= MAX_TYPE:
            raise ValueError(f"Message type {msg_type} does not fit in uint32")
        if handler is None:
            return
        with self._lock:
            self._handlers[msg_type] = handler

    def get(self, msg_type: int) -> Handler | None:
        with self._lock:
            return self._handlers.get(msg_type)

    def __contains__(self, msg_type: int) -> bool:
        return self.get(msg_type) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    @property
    def types(self) -> list[int]:
        with self._lock:
            return sorted(self._handlers)
