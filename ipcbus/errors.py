"""Typed errors raised across the ipcbus public boundary."""


class IPCError(RuntimeError):
    """Base class for all ipcbus failures."""


class SetupError(IPCError):
    """The listening service could not be brought up."""


class IPCConnectionError(IPCError):
    """Could not connect to the peer socket."""


class ProtocolError(IPCError):
    """A frame was truncated, oversized or otherwise malformed."""


class TransportError(IPCError):
    """A send or receive failed or timed out on an established connection."""


class CallCancelled(IPCError):
    """The caller abandoned a pending exchange via its cancel token."""
