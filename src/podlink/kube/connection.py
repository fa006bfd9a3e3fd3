"""
Connection Manager: authenticated, throttled access to the API server.

Manifesto:
    Every control-plane call a session makes goes through one
    ``ClientHandle``. The handle owns the token bucket, so the aggregate
    call rate of a session is bounded no matter which component issues
    the call. Connection problems are classified once, here, into the
    three kinds a caller can act on.

Architecture:
    ::

        ConnectionManager.connect(connection, timeouts)
            │  api_factory(connection, timeouts) ─▶ PodApi
            │  probe (GET /api) ─▶ classify failures
            │     AUTH / TLS       ─▶ raise immediately
            │     UNREACHABLE      ─▶ backoff, retry (bounded)
            ▼
        ClientHandle(api, limiter)
            ├── create_pod / read_pod / delete_pod / attach   (async, throttled,
            │                                                   worker threads)
            └── open_watch(...) ─▶ WatchRelay (daemon thread ─▶ event loop)

Examples:
    >>> manager = ConnectionManager()
    >>> handle = await manager.connect(config.connection, config.timeouts)
    >>> pod = await handle.read_pod("default", "runner-x")
    >>> handle.close()

Tags:
    podlink, kubernetes, connection, throttling, retry

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import re
import ssl
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from urllib3.exceptions import SSLError as Urllib3SSLError

from podlink.config.models import ConnectionConfig, Timeouts
from podlink.config.settings import PodlinkSettings, get_settings
from podlink.core.errors import ClusterConnectionError, ConnectionErrorKind, ErrorContext
from podlink.execution.rate_limit import TokenBucketLimiter
from podlink.execution.retry import ExponentialBackoff, RetryContext
from podlink.execution.timeout import TimeoutExpired, run_with_timeout_async
from podlink.kube.api import AttachStream, KubernetesPodApi, PodApi, WatchEvent, api_status
from podlink.logging import get_logger

logger = get_logger(__name__)

ApiFactory = Callable[[ConnectionConfig, Timeouts], PodApi]

_TLS_MARKERS = re.compile(r"CERTIFICATE_VERIFY_FAILED|certificate verify failed|SSLError|hostname mismatch", re.I)


# ── Error classification ─────────────────────────────────────────────


def _exception_chain(exc: BaseException) -> list[BaseException]:
    """exc plus everything reachable through cause/context/urllib3 ``reason``."""
    seen: list[BaseException] = []
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop()
        if any(current is s for s in seen):
            continue
        seen.append(current)
        for linked in (current.__cause__, current.__context__, getattr(current, "reason", None)):
            if isinstance(linked, BaseException):
                pending.append(linked)
    return seen


def classify_connection_error(exc: BaseException, *, host: str | None = None) -> ClusterConnectionError:
    """Map a failed call onto AUTH, TLS or UNREACHABLE."""
    context = ErrorContext(metadata={"host": host} if host else {})
    status = api_status(exc)
    if status in (401, 403):
        context.http_status = status
        return ClusterConnectionError(
            f"API server rejected the credentials ({status})",
            kind=ConnectionErrorKind.AUTH,
            context=context,
            cause=exc,
        )

    chain = _exception_chain(exc)
    if any(isinstance(e, (ssl.SSLError, ssl.CertificateError, Urllib3SSLError)) for e in chain) or any(
        _TLS_MARKERS.search(str(e)) for e in chain
    ):
        return ClusterConnectionError(
            f"TLS handshake with the API server failed: {exc}",
            kind=ConnectionErrorKind.TLS,
            context=context,
            cause=exc,
        )

    if status is not None:
        context.http_status = status
    return ClusterConnectionError(
        f"API server unreachable: {exc}",
        kind=ConnectionErrorKind.UNREACHABLE,
        context=context,
        cause=exc,
    )


# ── Watch relay ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class WatchItem:
    """What a watch relay delivers to the event loop."""

    generation: int
    event: WatchEvent | None = None
    error: BaseException | None = None
    ended: bool = False


class WatchRelay:
    """Runs a blocking Pod watch in a daemon thread.

    Items are handed to ``sink`` on the event loop thread. The relay always
    ends with exactly one terminal item: ``ended=True`` when the server
    closed the watch, or ``error`` when establishing or reading it failed.
    A stopped relay delivers nothing further.
    """

    def __init__(
        self,
        handle: ClientHandle,
        namespace: str,
        name: str,
        resource_version: str | None,
        window_seconds: int,
        generation: int,
        sink: Callable[[WatchItem], None],
    ):
        self._handle = handle
        self._namespace = namespace
        self._name = name
        self._resource_version = resource_version
        self._window_seconds = window_seconds
        self.generation = generation
        self._sink = sink
        self._loop = asyncio.get_running_loop()
        self._stopped = threading.Event()
        self._watch: Any = None
        self._lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run, name=f"podlink-watch-{name}-{generation}", daemon=True
        )

    def start(self) -> WatchRelay:
        self._thread.start()
        return self

    def _deliver(self, item: WatchItem) -> None:
        if self._stopped.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self._sink, item)
        except RuntimeError:
            # Loop already closed
            self._stopped.set()

    def _run(self) -> None:
        try:
            self._handle.limiter.acquire(block=True)
            pod_watch = self._handle.api.watch_pod(
                self._namespace, self._name, self._resource_version, self._window_seconds
            )
            with self._lock:
                self._watch = pod_watch
            if self._stopped.is_set():
                pod_watch.stop()
                return
            for event in pod_watch:
                if self._stopped.is_set():
                    return
                self._deliver(WatchItem(self.generation, event=event))
        except Exception as exc:
            self._deliver(WatchItem(self.generation, error=exc))
            return
        self._deliver(WatchItem(self.generation, ended=True))

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            pod_watch = self._watch
        if pod_watch is not None:
            pod_watch.stop()


# ── Client handle ────────────────────────────────────────────────────


class ClientHandle:
    """Authenticated, throttled access to one API server.

    Shared by every component of a session. Each call waits for a token,
    then runs the blocking client call in a worker thread. Attach, which
    the client library does not bound on its own, is cut off after
    ``http_timeout`` seconds.
    """

    def __init__(
        self,
        api: PodApi,
        limiter: TokenBucketLimiter,
        *,
        host: str | None = None,
        http_timeout: float | None = None,
    ):
        self.api = api
        self.limiter = limiter
        self.host = host
        self.http_timeout = http_timeout
        self._closed = False

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        await self.limiter.acquire_async()
        return await asyncio.to_thread(func, *args)

    async def probe(self) -> None:
        await self._call(self.api.probe)

    async def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._call(self.api.create_pod, namespace, body)

    async def read_pod(self, namespace: str, name: str) -> dict[str, Any]:
        return await self._call(self.api.read_pod, namespace, name)

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._call(self.api.delete_pod, namespace, name)

    async def attach(self, namespace: str, name: str, container: str) -> AttachStream:
        """Open an attach stream.

        If the caller is cancelled, or the handshake outlasts ``http_timeout``,
        a stream that still arrives later is closed instead of leaking.

        Raises:
            TimeoutExpired: the handshake took longer than ``http_timeout``
        """
        await self.limiter.acquire_async()
        future = asyncio.ensure_future(asyncio.to_thread(self.api.attach, namespace, name, container))
        try:
            if self.http_timeout is None:
                return await asyncio.shield(future)
            return await run_with_timeout_async(asyncio.shield(future), self.http_timeout, operation="pod attach")
        except (asyncio.CancelledError, TimeoutExpired):
            future.add_done_callback(_close_orphaned_stream)
            raise

    def open_watch(
        self,
        namespace: str,
        name: str,
        resource_version: str | None,
        window_seconds: int,
        generation: int,
        sink: Callable[[WatchItem], None],
    ) -> WatchRelay:
        """Start relaying a watch on one Pod into ``sink`` (event loop side)."""
        return WatchRelay(self, namespace, name, resource_version, window_seconds, generation, sink).start()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.api.close()


def _close_orphaned_stream(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
    except Exception as exc:
        logger.debug("attach.orphan_close_failed", error=str(exc))


# ── Connection manager ───────────────────────────────────────────────


class ConnectionManager:
    """Builds ``ClientHandle`` instances.

    Args:
        api_factory: Creates the ``PodApi`` for a connection. Defaults to
            the Kubernetes client; tests pass a stub.
        settings: Retry budget and backoff for transient failures
    """

    def __init__(
        self,
        api_factory: ApiFactory | None = None,
        settings: PodlinkSettings | None = None,
    ):
        self._api_factory = api_factory or KubernetesPodApi.from_connection
        self._settings = settings or get_settings()

    async def connect(self, connection: ConnectionConfig, timeouts: Timeouts) -> ClientHandle:
        """Return a verified handle or raise :class:`ClusterConnectionError`."""
        strategy = ExponentialBackoff(
            max_attempts=self._settings.connect_attempts,
            base_delay=self._settings.connect_backoff_seconds,
            max_delay=max(self._settings.connect_backoff_seconds * 8, 1.0),
            retry_if=lambda exc: isinstance(exc, ClusterConnectionError) and exc.retryable,
        )

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "cluster.connect_retry",
                host=connection.host,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error=str(error),
            )

        retry = RetryContext(strategy, on_retry=on_retry)
        try:
            handle = await retry.run_async(self._connect_once, connection, timeouts)
        except ClusterConnectionError as exc:
            exc.with_context(attempts=retry.attempts, errors=[str(e) for _, e in retry.errors])
            logger.warning(
                "cluster.connect_failed",
                host=connection.host,
                kind=exc.kind.value,
                attempts=retry.attempts,
            )
            raise
        logger.info(
            "cluster.connected",
            host=connection.host,
            auth=connection.auth_strategy,
            attempts=retry.attempts,
        )
        return handle

    async def _connect_once(self, connection: ConnectionConfig, timeouts: Timeouts) -> ClientHandle:
        try:
            api = self._api_factory(connection, timeouts)
        except Exception as exc:
            raise classify_connection_error(exc, host=connection.host) from exc

        handle = ClientHandle(
            api,
            TokenBucketLimiter(rate=connection.qps, capacity=connection.burst),
            host=connection.host,
            http_timeout=timeouts.http,
        )
        try:
            await handle.probe()
        except Exception as exc:
            handle.close()
            raise classify_connection_error(exc, host=connection.host) from exc
        except BaseException:
            handle.close()
            raise
        return handle
