"""
Attached I/O Transport: a duplex byte channel on a running container.

Manifesto:
    Attaching is only meaningful while the main container runs, so the
    phase precondition is checked before any API call is made. Once open,
    the channel is a plain asyncio byte stream: writes go to stdin, reads
    come from stdout, stderr is buffered separately and never dropped.
    A broken connection is reported, never silently reconnected.

Architecture:
    ::

        AttachedTransport.attach(deployment, container)
            │  phase == RUNNING?  no ─▶ AttachError(NOT_RUNNING)
            │  handle.attach(...)  4xx/handshake ─▶ REJECTED
            │                      transport     ─▶ UNREACHABLE
            ▼
        DuplexChannel
            pump task:   stream.read(poll) ─▶ stdout / stderr buffers
            write():     stream.write_stdin   (worker thread, serialized)
            close_write: half-close stdin, reads continue
            close():     stop pump, close stream, on_close(channel)
            finish():    drain up to grace, then close stream

Tags:
    podlink, kubernetes, attach, asyncio, streams

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Awaitable, Callable
from typing import Any

from podlink.config.settings import PodlinkSettings, get_settings
from podlink.core.errors import (
    AttachError,
    AttachErrorKind,
    ChannelClosedError,
    ErrorContext,
    TransportBrokenError,
)
from podlink.kube._types import Deployment, Phase
from podlink.kube.api import STDERR_CHANNEL, AttachStream, api_status
from podlink.kube.connection import ClientHandle
from podlink.logging import get_logger

logger = get_logger(__name__)

OnClose = Callable[["DuplexChannel"], Awaitable[None] | None]

_HANDSHAKE_REJECTED = re.compile(r"Handshake status 4\d\d")


def classify_attach_error(exc: BaseException, *, context: ErrorContext | None = None) -> AttachError:
    status = api_status(exc)
    if context is not None and status is not None:
        context.http_status = status
    if (status is not None and 400 <= status < 500) or _HANDSHAKE_REJECTED.search(str(exc)):
        return AttachError(f"attach rejected: {exc}", kind=AttachErrorKind.REJECTED, context=context, cause=exc)
    return AttachError(f"attach failed: {exc}", kind=AttachErrorKind.UNREACHABLE, context=context, cause=exc)


class DuplexChannel:
    """Bidirectional byte stream bound to a container's stdio.

    Reads return buffered data first; an error or end of stream is only
    reported once the buffer is empty. ``read`` returns ``b""`` at end of
    stream, ``TransportBrokenError`` if the connection broke.

    Example:
        >>> async with channel:
        ...     await channel.write(b"input\\n")
        ...     await channel.close_write()
        ...     async for chunk in channel:
        ...         sys.stdout.buffer.write(chunk)
    """

    def __init__(
        self,
        stream: AttachStream,
        *,
        poll_interval: float = 0.2,
        on_close: OnClose | None = None,
        name: str = "attach",
    ):
        self.name = name
        self._stream = stream
        self._poll_interval = poll_interval
        self._on_close = on_close
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._changed = asyncio.Event()
        self._eof_event = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._pump_task: asyncio.Task | None = None
        self._error: TransportBrokenError | None = None
        self._write_closed = False
        self._stream_closed = False
        self._closed = False
        self._remote_eof = False
        self.bytes_written = 0
        self.bytes_read = 0

    def start(self) -> DuplexChannel:
        if self._pump_task is None:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump(), name=f"podlink-pump-{self.name}")
        return self

    # --- state ---

    @property
    def at_eof(self) -> bool:
        """True once the stream ended and every buffered byte was read."""
        return self._eof_event.is_set() and not self._stdout and not self._stderr

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def write_closed(self) -> bool:
        return self._write_closed

    @property
    def ended_cleanly(self) -> bool:
        """True if the container side ended the stream without an error."""
        return self._remote_eof and self._error is None

    @property
    def error(self) -> TransportBrokenError | None:
        return self._error

    async def wait_eof(self) -> None:
        """Wait until the remote end finished sending."""
        await self._eof_event.wait()

    # --- pump ---

    def _notify(self) -> None:
        self._changed.set()

    async def _pump(self) -> None:
        try:
            while not self._stream_closed:
                chunks = await asyncio.to_thread(self._stream.read, self._poll_interval)
                if chunks is None:
                    self._remote_eof = True
                    logger.debug("attach.eof", stdout_bytes=self.bytes_read)
                    break
                for channel, data in chunks:
                    if channel == STDERR_CHANNEL:
                        self._stderr += data
                    else:
                        self._stdout += data
                    self.bytes_read += len(data)
                if chunks:
                    self._notify()
        except Exception as exc:
            if not self._stream_closed:
                self._error = TransportBrokenError(f"attach connection broken: {exc}", cause=exc)
                logger.warning("attach.broken", error=str(exc))
        finally:
            self._eof_event.set()
            self._notify()

    # --- reading ---

    @staticmethod
    def _take(buffer: bytearray, n: int) -> bytes:
        if n < 0 or n >= len(buffer):
            data = bytes(buffer)
            buffer.clear()
        else:
            data = bytes(buffer[:n])
            del buffer[:n]
        return data

    async def _read_from(self, buffer: bytearray, n: int) -> bytes:
        if n == 0:
            return b""
        while True:
            if buffer:
                return self._take(buffer, n)
            if self._error is not None:
                raise self._error
            if self._eof_event.is_set() or self._closed:
                return b""
            self._changed.clear()
            await self._changed.wait()

    async def read(self, n: int = -1) -> bytes:
        """Read up to *n* stdout bytes (all buffered if n < 0).

        Waits until data is available. Returns ``b""`` at end of stream.

        Raises:
            TransportBrokenError: the connection broke and the buffer is empty
        """
        return await self._read_from(self._stdout, n)

    async def read_stderr(self, n: int = -1) -> bytes:
        """Like :meth:`read`, for stderr."""
        return await self._read_from(self._stderr, n)

    def __aiter__(self) -> DuplexChannel:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk

    # --- writing ---

    async def write(self, data: bytes) -> None:
        """Send *data* to the container's stdin.

        Raises:
            ChannelClosedError: after close_write(), close() or end of stream
            TransportBrokenError: the connection broke
        """
        if self._closed or self._write_closed:
            raise ChannelClosedError("channel is closed for writing")
        if self._error is not None:
            raise self._error
        if self._eof_event.is_set():
            raise ChannelClosedError("container stream has ended")
        if not data:
            return
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._stream.write_stdin, bytes(data))
            except Exception as exc:
                if self._closed or self._stream_closed:
                    raise ChannelClosedError("channel closed during write", cause=exc) from exc
                if self._error is None:
                    self._error = TransportBrokenError(f"attach connection broken: {exc}", cause=exc)
                    logger.warning("attach.broken", error=str(exc))
                self._notify()
                raise self._error from exc
        self.bytes_written += len(data)

    async def close_write(self) -> None:
        """Signal end of input. Reading continues."""
        if self._write_closed or self._closed:
            return
        self._write_closed = True
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._stream.close_stdin)
            except Exception as exc:
                logger.debug("attach.close_stdin_failed", error=str(exc))

    # --- teardown ---

    async def _shutdown(self) -> None:
        task = self._pump_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._eof_event.set()
        if not self._stream_closed:
            self._stream_closed = True
            try:
                await asyncio.to_thread(self._stream.close)
            except Exception as exc:
                logger.debug("attach.stream_close_failed", error=str(exc))
        self._notify()

    async def finish(self, grace: float) -> None:
        """Let the stream drain for up to *grace* seconds, then close it.

        Used once the workload reached a terminal phase. Buffered output
        stays readable; ``on_close`` is not invoked.
        """
        if not self._eof_event.is_set() and grace > 0:
            try:
                await asyncio.wait_for(self._eof_event.wait(), grace)
            except TimeoutError:
                logger.debug("attach.drain_timeout", grace_seconds=grace)
        await self._shutdown()

    async def close(self) -> None:
        """Release both directions, then invoke ``on_close``. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._write_closed = True
        await self._shutdown()
        callback, self._on_close = self._on_close, None
        if callback is not None:
            result = callback(self)
            if inspect.isawaitable(result):
                await result

    async def __aenter__(self) -> DuplexChannel:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class AttachedTransport:
    """Opens :class:`DuplexChannel` instances through a client handle."""

    def __init__(self, handle: ClientHandle, *, settings: PodlinkSettings | None = None):
        self.handle = handle
        self.settings = settings or get_settings()

    async def attach(
        self,
        deployment: Deployment,
        container: str | None = None,
        *,
        on_close: OnClose | None = None,
    ) -> DuplexChannel:
        """Attach to *container* (the main container by default).

        Raises:
            AttachError: NOT_RUNNING before any API call, REJECTED or
                UNREACHABLE from the server
        """
        container = container or deployment.main_container
        snapshot = deployment.snapshot()
        context = ErrorContext(
            namespace=snapshot.namespace,
            pod=snapshot.name,
            phase=snapshot.phase.value,
            container=container,
            container_statuses=[s.to_dict() for s in snapshot.container_statuses],
        )
        if snapshot.phase is not Phase.RUNNING:
            raise AttachError(
                f"pod is {snapshot.phase.value}, attach requires running",
                kind=AttachErrorKind.NOT_RUNNING,
                context=context,
            )

        try:
            stream = await self.handle.attach(snapshot.namespace, snapshot.name, container)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise classify_attach_error(exc, context=context) from exc

        logger.info("attach.open", container=container)
        return DuplexChannel(
            stream,
            poll_interval=self.settings.read_poll_seconds,
            on_close=on_close,
            name=f"{snapshot.name}/{container}",
        ).start()
