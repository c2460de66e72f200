"""CLI for hosting an ipcbus service and sending requests to one."""

import asyncio
import importlib
import logging
import signal
import struct
import sys

import click
import structlog

from ipcbus.client import IPCClient
from ipcbus.config import load_settings
from ipcbus.errors import IPCConnectionError, IPCError, SetupError
from ipcbus.protocol import MAX_TYPE, encode_int


@click.group()
def main():
    """ipcbus: typed request/response IPC over Unix domain sockets."""


@main.command()
@click.option("--config", default=None, help="Path to ipcbus config YAML.")
@click.option("--socket", default=None, help="Socket path to listen on.")
@click.option(
    "--handler",
    "handler_specs",
    multiple=True,
    help="Handler as TYPE=module:function (repeatable).",
)
def serve(config, socket, handler_specs):
    """Run a service in the foreground until SIGINT/SIGTERM."""
    from ipcbus.server import IPCService

    cfg = load_settings(config)
    _configure_logging(cfg.log_level)
    if socket:
        cfg.listen_path = socket

    try:
        handlers = dict(_load_handler(spec) for spec in handler_specs)
    except (ValueError, ImportError, AttributeError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if not handlers:
        click.echo("Error: at least one --handler is required", err=True)
        sys.exit(1)

    service = IPCService.from_settings(cfg, handlers)
    try:
        asyncio.run(_run_service(service))
    except SetupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("--type", "msg_type", required=True, type=click.IntRange(1, MAX_TYPE))
@click.option("--data", default="", help="Request payload (UTF-8 text).")
@click.option("--int", "as_int", is_flag=True, help="Send --data as a native int32.")
@click.option("--socket", default=None, help="Service socket path.")
@click.option("--config", default=None, help="Path to ipcbus config YAML.")
def send(msg_type, data, as_int, socket, config):
    """Send a request without waiting for a response."""
    cfg = load_settings(config)
    _configure_logging(cfg.log_level)
    client = IPCClient(socket or cfg.listen_path, timeout=cfg.client_timeout)
    payload = _build_payload(data, as_int)
    _ipc_call(lambda: client.send(msg_type, payload))
    click.echo("sent")


@main.command()
@click.option("--type", "msg_type", required=True, type=click.IntRange(1, MAX_TYPE))
@click.option("--data", default="", help="Request payload (UTF-8 text).")
@click.option("--int", "as_int", is_flag=True, help="Send --data as a native int32.")
@click.option("--int-response", is_flag=True, help="Decode the reply as an int32.")
@click.option("--hex", "as_hex", is_flag=True, help="Print the reply as hex.")
@click.option("--timeout", type=float, default=None, help="Per-step timeout (s).")
@click.option("--socket", default=None, help="Service socket path.")
@click.option("--config", default=None, help="Path to ipcbus config YAML.")
def request(msg_type, data, as_int, int_response, as_hex, timeout, socket, config):
    """Send a request and print the response."""
    cfg = load_settings(config)
    _configure_logging(cfg.log_level)
    client = IPCClient(
        socket or cfg.listen_path,
        timeout=timeout if timeout is not None else cfg.client_timeout,
        max_size=cfg.max_message_size,
    )
    payload = _build_payload(data, as_int)

    if int_response:
        click.echo(_ipc_call(lambda: client.send_wait_response_int(msg_type, payload)))
        return

    resp = _ipc_call(lambda: client.send_wait_response(msg_type, payload))
    if as_hex:
        click.echo(resp.hex())
    else:
        click.echo(resp.decode(errors="replace"))


async def _run_service(service) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    await service.start()
    try:
        await shutdown.wait()
    finally:
        await service.stop()


def _load_handler(spec: str):
    """Parse ``TYPE=module:function`` into ``(type, handler)``."""
    type_str, sep, target = spec.partition("=")
    module_name, colon, attr = target.partition(":")
    if not sep or not colon or not module_name or not attr:
        raise ValueError(f"Invalid handler spec {spec!r}, expected TYPE=module:function")
    try:
        msg_type = int(type_str)
    except ValueError:
        raise ValueError(f"Invalid handler type {type_str!r} in {spec!r}")
    if not 0 < msg_type <= MAX_TYPE:
        raise ValueError(f"Handler type {msg_type} out of range")
    module = importlib.import_module(module_name)
    return msg_type, getattr(module, attr)


def _build_payload(data: str, as_int: bool) -> bytes:
    if not as_int:
        return data.encode()
    try:
        return encode_int(int(data))
    except (ValueError, struct.error):
        click.echo(f"Error: --data {data!r} is not an int32", err=True)
        sys.exit(1)


def _ipc_call(fn):
    try:
        return fn()
    except IPCConnectionError as e:
        click.echo(f"Error: service is not running ({e})", err=True)
        sys.exit(2)
    except IPCError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )
