"""
CLI utility helpers: consoles, option parsing, stdio bridging.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, BinaryIO

import typer
from rich.console import Console
from rich.markup import escape

from podlink.core.errors import ConfigValidationError, SessionError

console = Console()
err_console = Console(stderr=True)

_STDIN_CHUNK = 64 * 1024


# ── Option parsing ───────────────────────────────────────────────────────


def parse_env(values: list[str] | None) -> dict[str, str]:
    """``["A=1", "B=x=y"]`` -> ``{"A": "1", "B": "x=y"}``."""
    env: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--env")
        env[name] = value
    return env


# ── Error output ─────────────────────────────────────────────────────────


def print_config_error(exc: ConfigValidationError) -> None:
    err_console.print(f"[bold red]Invalid configuration[/bold red]: {escape(exc.message)}")
    for error in exc.errors:
        err_console.print(f"  • [cyan]{error['loc'] or '<root>'}[/cyan]: {escape(error['msg'])}")


def print_session_error(exc: SessionError) -> None:
    err_console.print(f"[bold red]{type(exc).__name__}[/bold red]: {escape(str(exc))}")
    context = exc.context.to_dict()
    for key in ("pod", "namespace", "phase"):
        if key in context:
            err_console.print(f"  {key}: {context[key]}")
    for status in context.get("container_statuses", []):
        detail = ", ".join(f"{k}={v}" for k, v in status.items() if k != "name")
        err_console.print(f"  container {status['name']}: {detail}")


# ── Stdio bridging ───────────────────────────────────────────────────────


def start_stdin_reader(stream: BinaryIO, queue: asyncio.Queue[bytes]) -> threading.Thread:
    """Read *stream* on a daemon thread and feed chunks into *queue*.

    ``b""`` is queued at end of input. A daemon thread is used so that an
    interactive stdin that never reaches EOF cannot hold up interpreter
    exit.
    """
    loop = asyncio.get_running_loop()
    read = getattr(stream, "read1", stream.read)

    def _run() -> None:
        while True:
            try:
                chunk = read(_STDIN_CHUNK)
            except (OSError, ValueError):
                chunk = b""
            try:
                loop.call_soon_threadsafe(queue.put_nowait, chunk or b"")
            except RuntimeError:
                return
            if not chunk:
                return

    thread = threading.Thread(target=_run, name="podlink-stdin", daemon=True)
    thread.start()
    return thread


async def copy_stdin(stream: BinaryIO, channel: Any) -> None:
    """Forward local stdin to the channel, then half-close it."""
    queue: asyncio.Queue[bytes] = asyncio.Queue()
    start_stdin_reader(stream, queue)
    while True:
        chunk = await queue.get()
        if not chunk:
            break
        await channel.write(chunk)
    await channel.close_write()


async def copy_output(read: Any, out: BinaryIO) -> None:
    """Copy chunks from an async *read* callable until it returns ``b""``."""
    while True:
        chunk = await read()
        if not chunk:
            return
        out.write(chunk)
        out.flush()
