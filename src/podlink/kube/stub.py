"""In-memory cluster for tests.

``StubPodApi`` implements :class:`~podlink.kube.api.PodApi` without a
network. Pods advance through a scripted list of ``StubStep`` values on a
background thread; every change is recorded in an event log that watches
replay from a resource version, like the real API server does.

Failure injection covers each stage: probe errors, create conflicts,
watch failures, dropped and expired watches, attach errors, broken attach
streams and delete errors. Counters (``create_count``, ``delete_calls``,
``attach_calls``, ``watch_calls``) let tests assert how often each call
was made.

Example:
    >>> api = StubPodApi(stdout=[b"ok\\n"])
    >>> manager = ConnectionManager(api_factory=api.factory)
    >>> async with run_session(config, Workload(image="busybox"), connection_manager=manager) as (session, channel):
    ...     assert await channel.read() == b"ok\\n"
"""

from __future__ import annotations

import copy
import random
import string
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from podlink.config.models import ConnectionConfig, Timeouts
from podlink.kube.api import STDERR_CHANNEL, STDOUT_CHANNEL, WatchEvent

_OUTPUT_WAIT_SECONDS = 5.0


def api_error(status: int, reason: str) -> ApiException:
    return ApiException(status=status, reason=reason)


# ── Scripted pod progression ─────────────────────────────────────────


@dataclass(frozen=True)
class StubStep:
    """One scripted status change of a stub Pod.

    Attributes:
        pod_phase: ``status.phase`` after this step
        state: State of the main container (None: no container status yet)
        exit_code: Exit code when ``state`` is terminated
        reason: Container (or Pod) reason
        delay: Seconds to wait before applying the step
        after_output: Hold the step until the attach stream reached EOF
        deleted: Remove the Pod instead of updating it
    """

    pod_phase: str = "Pending"
    state: Literal["waiting", "running", "terminated"] | None = None
    exit_code: int = 0
    reason: str | None = None
    delay: float = 0.01
    after_output: bool = False
    deleted: bool = False

    def render(self, pod: dict[str, Any], main_container: str) -> dict[str, Any]:
        """Build the ``status`` document for *pod* at this step."""
        spec = pod.get("spec") or {}
        status: dict[str, Any] = {"phase": self.pod_phase}
        if self.state is None:
            if self.reason:
                status["reason"] = self.reason
            return status

        started = self.state != "waiting"
        status["initContainerStatuses"] = [
            _container_status(c["name"], "terminated" if started else "waiting", 0, "Completed" if started else "PodInitializing")
            for c in spec.get("initContainers") or []
        ]
        statuses = []
        for c in spec.get("containers") or []:
            if c["name"] == main_container:
                statuses.append(_container_status(c["name"], self.state, self.exit_code, self.reason))
            else:
                statuses.append(_container_status(c["name"], "running" if started else "waiting", 0, self.reason))
        status["containerStatuses"] = statuses
        return status


def _container_status(name: str, state: str, exit_code: int, reason: str | None) -> dict[str, Any]:
    detail: dict[str, Any] = {}
    if state == "terminated":
        detail = {"exitCode": exit_code, "reason": reason or ("Completed" if exit_code == 0 else "Error")}
    elif state == "waiting":
        detail = {"reason": reason or "ContainerCreating"}
    elif state == "running":
        detail = {"startedAt": "2024-01-01T00:00:00Z"}
    return {
        "name": name,
        "state": {state: detail},
        "ready": state == "running",
        "started": state == "running",
        "restartCount": 0,
    }


def creating(delay: float = 0.01) -> StubStep:
    return StubStep("Pending", "waiting", reason="ContainerCreating", delay=delay)


def pending(delay: float = 0.01) -> StubStep:
    """Unscheduled: no container statuses."""
    return StubStep("Pending", None, delay=delay)


def running(delay: float = 0.01) -> StubStep:
    return StubStep("Running", "running", delay=delay)


def exited(exit_code: int = 0, *, after_output: bool = False, delay: float = 0.01) -> StubStep:
    return StubStep(
        "Succeeded" if exit_code == 0 else "Failed",
        "terminated",
        exit_code=exit_code,
        delay=delay,
        after_output=after_output,
    )


def pod_failed(reason: str = "Evicted", delay: float = 0.01) -> StubStep:
    return StubStep("Failed", None, reason=reason, delay=delay)


def vanished(delay: float = 0.01) -> StubStep:
    return StubStep(deleted=True, delay=delay)


DEFAULT_SCENARIO: tuple[StubStep, ...] = (creating(), running(), exited(0, after_output=True))


# ── Attach stream ────────────────────────────────────────────────────


class StubAttachStream:
    """Scripted attach stream.

    Delivers ``stdout`` and ``stderr`` chunks, then ends. In echo mode
    everything written to stdin comes back on stdout and the stream ends
    once stdin is closed. ``break_after`` simulates a connection reset
    after that many chunks.
    """

    def __init__(
        self,
        stdout: Sequence[bytes] = (),
        stderr: Sequence[bytes] = (),
        *,
        echo: bool = False,
        break_after: int | None = None,
        on_eof: Any = None,
    ):
        self._cond = threading.Condition()
        self._pending: deque[tuple[int, bytes]] = deque(
            [(STDOUT_CHANNEL, bytes(c)) for c in stdout] + [(STDERR_CHANNEL, bytes(c)) for c in stderr]
        )
        self._echo = echo
        self._break_after = break_after
        self._on_eof = on_eof
        self._delivered = 0
        self.stdin = bytearray()
        self.stdin_closed = False
        self.closed = False
        self.eof_sent = False

    def _finished(self) -> bool:
        if self.closed:
            return True
        if self._pending:
            return False
        return self.stdin_closed if self._echo else True

    def write_stdin(self, data: bytes) -> None:
        with self._cond:
            if self.closed:
                raise ConnectionResetError("attach stream closed")
            if self._break_after is not None and self._delivered >= self._break_after:
                raise ConnectionResetError("connection reset by peer")
            if self.stdin_closed:
                raise BrokenPipeError("stdin already closed")
            self.stdin += data
            if self._echo:
                self._pending.append((STDOUT_CHANNEL, bytes(data)))
            self._cond.notify_all()

    def close_stdin(self) -> None:
        with self._cond:
            self.stdin_closed = True
            self._cond.notify_all()

    def read(self, timeout: float) -> list[tuple[int, bytes]] | None:
        with self._cond:
            if self._break_after is not None and self._delivered >= self._break_after:
                raise ConnectionResetError("connection reset by peer")
            if not self._pending and not self._finished():
                self._cond.wait(timeout)
            if self._pending:
                limit = len(self._pending)
                if self._break_after is not None:
                    limit = min(limit, self._break_after - self._delivered)
                chunks = [self._pending.popleft() for _ in range(limit)]
                self._delivered += len(chunks)
                return chunks
            if not self._finished():
                return []
            self.eof_sent = True
        if self._on_eof is not None:
            self._on_eof()
        return None

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()


# ── Watch ────────────────────────────────────────────────────────────


@dataclass
class _Event:
    resource_version: int
    type: str
    namespace: str
    name: str
    pod: dict[str, Any]


class _StubWatch:
    def __init__(self, api: StubPodApi, namespace: str, name: str, since: int, window: float, drop_after: int | None):
        self._api = api
        self._namespace = namespace
        self._name = name
        self._since = since
        self._window = window
        self._drop_after = drop_after
        self._stopped = False

    def __iter__(self) -> Iterator[WatchEvent]:
        deadline = time.monotonic() + self._window
        delivered = 0
        cond = self._api._cond
        while not self._stopped:
            with cond:
                pending = [
                    e
                    for e in self._api.events
                    if e.resource_version > self._since and e.namespace == self._namespace and e.name == self._name
                ]
                if not pending:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return
                    cond.wait(min(remaining, 0.05))
                    continue
            for event in pending:
                if self._stopped:
                    return
                self._since = event.resource_version
                yield WatchEvent(type=event.type, pod=copy.deepcopy(event.pod))
                delivered += 1
                if self._drop_after is not None and delivered >= self._drop_after:
                    raise ProtocolError("Connection broken: IncompleteRead")

    def stop(self) -> None:
        self._stopped = True
        with self._api._cond:
            self._api._cond.notify_all()


# ── Pod API ──────────────────────────────────────────────────────────


@dataclass
class StubPodApi:
    """In-memory ``PodApi``.

    Attributes:
        scenario: Steps every created Pod goes through
        stdout / stderr: Chunks each attach stream delivers
        echo: Attach streams echo stdin back on stdout
        break_after: Attach streams reset after this many chunks
        conflicts: Number of create calls answered with 409
        probe_errors: Raised (in order) by successive probe calls
        create_error: Raised by every create call
        watch_failures: Number of watch opens that fail to connect
        watch_drops: Number of watches that break after one event
        gone_on_watch: Number of watch opens answered with 410
        watch_window: Server-side watch lifetime in seconds
        attach_error / attach_delay: Attach failure and latency
        delete_error / delete_delay: Delete failure and latency
    """

    scenario: Sequence[StubStep] = DEFAULT_SCENARIO
    stdout: Sequence[bytes] = ()
    stderr: Sequence[bytes] = ()
    echo: bool = False
    break_after: int | None = None
    conflicts: int = 0
    probe_errors: list[BaseException] = field(default_factory=list)
    probe_delay: float = 0.0
    create_error: BaseException | None = None
    create_delay: float = 0.0
    watch_failures: int = 0
    watch_drops: int = 0
    gone_on_watch: int = 0
    watch_window: float | None = None
    attach_error: BaseException | None = None
    attach_delay: float = 0.0
    delete_error: BaseException | None = None
    delete_delay: float = 0.0

    pods: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict, init=False)
    events: list[_Event] = field(default_factory=list, init=False)
    streams: list[StubAttachStream] = field(default_factory=list, init=False)
    connections: list[ConnectionConfig] = field(default_factory=list, init=False)
    probe_calls: int = field(default=0, init=False)
    create_count: int = field(default=0, init=False)
    created: list[str] = field(default_factory=list, init=False)
    watch_calls: list[str | None] = field(default_factory=list, init=False)
    read_calls: int = field(default=0, init=False)
    attach_calls: list[tuple[str, str, str]] = field(default_factory=list, init=False)
    delete_calls: list[tuple[str, str]] = field(default_factory=list, init=False)
    close_calls: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self._cond = threading.Condition()
        self._resource_version = 0
        self._drained: dict[tuple[str, str], threading.Event] = {}

    def factory(self, connection: ConnectionConfig, timeouts: Timeouts) -> StubPodApi:
        """``ConnectionManager`` api_factory returning this instance."""
        self.connections.append(connection)
        return self

    # --- inspection ---

    def pod_exists(self, namespace: str, name: str) -> bool:
        with self._cond:
            return (namespace, name) in self.pods

    def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None:
        with self._cond:
            pod = self.pods.get((namespace, name))
            return copy.deepcopy(pod) if pod is not None else None

    # --- event log ---

    def _record(self, event_type: str, namespace: str, name: str, pod: dict[str, Any]) -> None:
        """Caller holds the condition lock."""
        self._resource_version += 1
        pod["metadata"]["resourceVersion"] = str(self._resource_version)
        self.events.append(_Event(self._resource_version, event_type, namespace, name, copy.deepcopy(pod)))
        self._cond.notify_all()

    # --- PodApi ---

    def probe(self) -> None:
        self.probe_calls += 1
        if self.probe_delay:
            time.sleep(self.probe_delay)
        if self.probe_errors:
            raise self.probe_errors.pop(0)

    def create_pod(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._cond:
            self.create_count += 1
            if self.create_error is not None:
                raise self.create_error
            if self.conflicts > 0:
                self.conflicts -= 1
                raise api_error(409, "AlreadyExists")

            metadata = body.get("metadata") or {}
            containers = (body.get("spec") or {}).get("containers") or []
            if not containers or any(not c.get("image") for c in containers):
                raise api_error(422, "Unprocessable Entity: spec.containers[].image is required")
            name = metadata.get("name")
            if not name:
                prefix = metadata.get("generateName")
                if not prefix:
                    raise api_error(422, "Unprocessable Entity: name or generateName is required")
                name = prefix + "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
            key = (namespace, name)
            if key in self.pods:
                raise api_error(409, "AlreadyExists")

            pod = copy.deepcopy(body)
            pod["metadata"].update(
                name=name,
                namespace=namespace,
                uid=str(uuid.uuid4()),
                creationTimestamp="2024-01-01T00:00:00Z",
            )
            pod["status"] = {"phase": "Pending"}
            self.pods[key] = pod
            self.created.append(name)
            self._drained[key] = threading.Event()
            self._record("ADDED", namespace, name, pod)
            response = copy.deepcopy(pod)

        main = next((c["name"] for c in containers if c.get("stdin")), containers[0]["name"])
        threading.Thread(
            target=self._progress,
            args=(namespace, name, main, tuple(self.scenario)),
            name=f"stub-pod-{name}",
            daemon=True,
        ).start()
        return response

    def _progress(self, namespace: str, name: str, main: str, steps: tuple[StubStep, ...]) -> None:
        key = (namespace, name)
        for step in steps:
            if step.after_output:
                self._drained[key].wait(_OUTPUT_WAIT_SECONDS)
            time.sleep(step.delay)
            with self._cond:
                pod = self.pods.get(key)
                if pod is None:
                    return
                if step.deleted:
                    del self.pods[key]
                    self._record("DELETED", namespace, name, pod)
                    return
                pod["status"] = step.render(pod, main)
                self._record("MODIFIED", namespace, name, pod)

    def read_pod(self, namespace: str, name: str) -> dict[str, Any]:
        self.read_calls += 1
        pod = self.get_pod(namespace, name)
        if pod is None:
            raise api_error(404, "Not Found")
        return pod

    def watch_pod(self, namespace: str, name: str, resource_version: str | None, timeout_seconds: int) -> _StubWatch:
        with self._cond:
            self.watch_calls.append(resource_version)
            if self.watch_failures > 0:
                self.watch_failures -= 1
                raise ProtocolError("Connection aborted: ConnectionRefusedError(111, 'Connection refused')")
            if self.gone_on_watch > 0:
                self.gone_on_watch -= 1
                raise api_error(410, "Gone: too old resource version")
            drop_after = None
            if self.watch_drops > 0:
                self.watch_drops -= 1
                drop_after = 1
            since = int(resource_version) if resource_version else 0
        window = self.watch_window if self.watch_window is not None else float(timeout_seconds)
        return _StubWatch(self, namespace, name, since, window, drop_after)

    def delete_pod(self, namespace: str, name: str) -> None:
        self.delete_calls.append((namespace, name))
        if self.delete_delay:
            time.sleep(self.delete_delay)
        if self.delete_error is not None:
            raise self.delete_error
        with self._cond:
            pod = self.pods.pop((namespace, name), None)
            if pod is None:
                raise api_error(404, "Not Found")
            self._record("DELETED", namespace, name, pod)

    def attach(self, namespace: str, name: str, container: str) -> StubAttachStream:
        self.attach_calls.append((namespace, name, container))
        if self.attach_delay:
            time.sleep(self.attach_delay)
        if self.attach_error is not None:
            raise self.attach_error
        key = (namespace, name)
        with self._cond:
            if key not in self.pods:
                raise api_error(404, "Not Found")
            drained = self._drained[key]
        stream = StubAttachStream(
            self.stdout,
            self.stderr,
            echo=self.echo,
            break_after=self.break_after,
            on_eof=drained.set,
        )
        self.streams.append(stream)
        return stream

    def close(self) -> None:
        self.close_calls += 1
