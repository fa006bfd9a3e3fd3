"""Pod API adapter: the narrow control-plane surface a session needs.

Everything above this module works with plain camelCase Pod documents
(``dict``) and a handful of blocking calls. ``KubernetesPodApi`` implements
them with the official ``kubernetes`` client; ``podlink.kube.stub``
provides an in-memory implementation with the same shape.

Calls are synchronous. The client handle runs them in worker threads and
applies throttling in front of them.

Design Notes:
    ``kubernetes.stream.stream`` temporarily replaces the ``request``
    method of the ``ApiClient`` it is given. A fresh ``ApiClient`` is
    created for each attach so that the watch thread, which shares the
    main client, never sees a websocket request function.

    The v4 channel protocol has no way to close a single stream, so
    ``close_stdin`` is best-effort: it sends the close signal when the
    server negotiated ``v5.channel.k8s.io`` and is a no-op otherwise.
    The plugin container is created with ``stdinOnce`` so its stdin is
    closed when the attach session ends.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from urllib3.util import make_headers

from podlink.config.models import ConnectionConfig, Timeouts
from podlink.logging import get_logger

logger = get_logger(__name__)

STDOUT_CHANNEL = 1
STDERR_CHANNEL = 2
_V5_PROTOCOL = "v5.channel.k8s.io"
_CLOSE_SIGNAL_CHANNEL = 255
_STDIN_CHANNEL = 0


@dataclass(frozen=True)
class WatchEvent:
    """One watch notification: ``ADDED``, ``MODIFIED`` or ``DELETED``."""

    type: str
    pod: dict[str, Any]


class PodWatch(Protocol):
    """A server-side watch on one Pod. Iteration blocks; ``stop`` ends it."""

    def __iter__(self) -> Iterator[WatchEvent]: ...

    def stop(self) -> None: ...


class AttachStream(Protocol):
    """Blocking duplex stream bound to a container's stdio."""

    def write_stdin(self, data: bytes) -> None: ...

    def close_stdin(self) -> None: ...

    def read(self, timeout: float) -> list[tuple[int, bytes]] | None:
        """Wait up to *timeout* for output.

        Returns (channel, data) chunks, possibly empty, or None at end of
        stream.
        """
        ...

    def close(self) -> None: ...


class PodApi(Protocol):
    """Synchronous control-plane operations used by a session."""

    def probe(self) -> None: ...

    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def read_pod(self, namespace: str, name: str) -> dict[str, Any]: ...

    def watch_pod(
        self, namespace: str, name: str, resource_version: str | None, timeout_seconds: int
    ) -> PodWatch: ...

    def delete_pod(self, namespace: str, name: str) -> None: ...

    def attach(self, namespace: str, name: str, container: str) -> AttachStream: ...

    def close(self) -> None: ...


def api_status(exc: BaseException) -> int | None:
    """HTTP status of a rejected API call, None for transport errors."""
    if isinstance(exc, ApiException) and exc.status:
        return int(exc.status)
    return None


def split_api_path(path: str) -> str:
    """Return the URL prefix in front of the core API group path.

    ``/api`` -> ``""``, ``/proxy/k8s/api`` -> ``/proxy/k8s``. Paths not
    ending in ``/api`` are used whole as the prefix.
    """
    trimmed = path.rstrip("/")
    if trimmed.endswith("/api"):
        trimmed = trimmed[: -len("/api")]
    return trimmed


def base_url(connection: ConnectionConfig) -> str:
    host = connection.host.rstrip("/")
    if "://" not in host:
        host = f"https://{host}"
    return host + split_api_path(connection.path)


def _write_pem(contents: str, suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix="podlink-", suffix=suffix)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(contents)
    return path


def build_configuration(connection: ConnectionConfig) -> tuple[client.Configuration, list[str]]:
    """Translate connection settings into a client ``Configuration``.

    PEM material is written to private temporary files because the client
    library only accepts paths. The caller owns (and must remove) the
    returned file paths.
    """
    configuration = client.Configuration()
    configuration.host = base_url(connection)
    temp_files: list[str] = []

    try:
        if connection.cacert is not None:
            configuration.ssl_ca_cert = _write_pem(connection.cacert, ".ca.pem")
            temp_files.append(configuration.ssl_ca_cert)
        if connection.insecure:
            # Verification off; the connection still uses TLS.
            configuration.verify_ssl = False
        if connection.server_name:
            configuration.tls_server_name = connection.server_name

        strategy = connection.auth_strategy
        if strategy == "bearer":
            configuration.api_key = {"authorization": connection.bearer_token}
            configuration.api_key_prefix = {"authorization": "Bearer"}
        elif strategy == "client-cert":
            configuration.cert_file = _write_pem(connection.cert, ".crt.pem")
            temp_files.append(configuration.cert_file)
            configuration.key_file = _write_pem(connection.key, ".key.pem")
            temp_files.append(configuration.key_file)
        elif strategy == "basic":
            header = make_headers(basic_auth=f"{connection.username}:{connection.password}")
            configuration.api_key = {"authorization": header["authorization"]}
    except BaseException:
        remove_files(temp_files)
        raise

    return configuration, temp_files


def remove_files(paths: list[str]) -> None:
    for path in paths:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("credentials.cleanup_failed", path=path, error=str(exc))


class _KubernetesPodWatch:
    def __init__(
        self,
        core: client.CoreV1Api,
        namespace: str,
        name: str,
        resource_version: str | None,
        timeout_seconds: int,
        request_timeout: float,
    ):
        self._core = core
        self._namespace = namespace
        self._name = name
        self._resource_version = resource_version
        self._timeout_seconds = timeout_seconds
        self._request_timeout = request_timeout
        self._watch = watch.Watch()

    def __iter__(self) -> Iterator[WatchEvent]:
        kwargs: dict[str, Any] = {
            "field_selector": f"metadata.name={self._name}",
            "timeout_seconds": self._timeout_seconds,
            "_request_timeout": (self._request_timeout, self._timeout_seconds + self._request_timeout),
        }
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        for event in self._watch.stream(self._core.list_namespaced_pod, self._namespace, **kwargs):
            yield WatchEvent(type=event["type"], pod=event["raw_object"])

    def stop(self) -> None:
        self._watch.stop()


class _KubernetesAttachStream:
    def __init__(self, ws: Any):
        self._ws = ws

    def write_stdin(self, data: bytes) -> None:
        self._ws.write_stdin(data)

    def close_stdin(self) -> None:
        sock = getattr(self._ws, "sock", None)
        if getattr(sock, "subprotocol", None) == _V5_PROTOCOL:
            self._ws.write_channel(_CLOSE_SIGNAL_CHANNEL, bytes([_STDIN_CHANNEL]))
        else:
            logger.debug("attach.stdin_half_close_unsupported")

    def _drain(self) -> list[tuple[int, bytes]]:
        chunks = []
        for channel in (STDOUT_CHANNEL, STDERR_CHANNEL):
            if self._ws.peek_channel(channel):
                data = self._ws.read_channel(channel)
                if isinstance(data, str):
                    data = data.encode("utf-8")
                if data:
                    chunks.append((channel, data))
        return chunks

    def read(self, timeout: float) -> list[tuple[int, bytes]] | None:
        chunks = self._drain()
        if chunks:
            return chunks
        if not self._ws.is_open():
            return None
        self._ws.update(timeout=timeout)
        return self._drain()

    def close(self) -> None:
        self._ws.close()


class KubernetesPodApi:
    """``PodApi`` backed by the official Kubernetes client."""

    def __init__(self, configuration: client.Configuration, request_timeout: float, temp_files: list[str] | None = None):
        self._configuration = configuration
        self._request_timeout = request_timeout
        self._temp_files = list(temp_files or [])
        self._api_client = client.ApiClient(configuration)
        self._core = client.CoreV1Api(self._api_client)

    @classmethod
    def from_connection(cls, connection: ConnectionConfig, timeouts: Timeouts) -> KubernetesPodApi:
        configuration, temp_files = build_configuration(connection)
        return cls(configuration, timeouts.http, temp_files)

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    def probe(self) -> None:
        client.CoreApi(self._api_client).get_api_versions(_request_timeout=self._request_timeout)

    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        pod = self._core.create_namespaced_pod(namespace, body, _request_timeout=self._request_timeout)
        return self._to_dict(pod)

    def read_pod(self, namespace: str, name: str) -> dict[str, Any]:
        pod = self._core.read_namespaced_pod(name, namespace, _request_timeout=self._request_timeout)
        return self._to_dict(pod)

    def watch_pod(
        self, namespace: str, name: str, resource_version: str | None, timeout_seconds: int
    ) -> PodWatch:
        return _KubernetesPodWatch(
            self._core, namespace, name, resource_version, timeout_seconds, self._request_timeout
        )

    def delete_pod(self, namespace: str, name: str) -> None:
        self._core.delete_namespaced_pod(
            name,
            namespace,
            grace_period_seconds=0,
            propagation_policy="Background",
            _request_timeout=self._request_timeout,
        )

    def attach(self, namespace: str, name: str, container: str) -> AttachStream:
        core = client.CoreV1Api(client.ApiClient(self._configuration))
        ws = stream(
            core.connect_get_namespaced_pod_attach,
            name,
            namespace,
            container=container,
            stdin=True,
            stdout=True,
            stderr=True,
            tty=False,
            _preload_content=False,
            binary=True,
        )
        return _KubernetesAttachStream(ws)

    def close(self) -> None:
        try:
            self._api_client.close()
        finally:
            remove_files(self._temp_files)
            self._temp_files = []
