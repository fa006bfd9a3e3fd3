"""Session data model: phases, workload, deployment state and results.

This module defines the value types shared by the lifecycle controller,
the attached transport and the session coordinator:

- Phase: locally tracked lifecycle stage of the Pod
- PHASE_VALID_TRANSITIONS: the phase state machine
- Workload: what to run in the plugin container
- ContainerSnapshot: one observed container status
- Deployment: the mutable, lock-protected per-session Pod state
- PhaseTransition / DeleteResult / SessionResult: outcomes

Design Notes:
    The Pod's real state lives in the API server and is observed
    asynchronously. ``Deployment.phase`` moves only through
    ``Deployment.transition_to``, which the lifecycle controller calls
    when a status observation arrives. Observations are coalesced by the
    watch, so skipping forward is legal; moving backwards is not.

Architecture:

    .. code-block:: text

        CREATED ─submit─▶ PENDING ─▶ STARTING ─▶ RUNNING ─▶ SUCCEEDED
           │                │           │           │  └──▶ FAILED
           │                └───────────┴───────────┴─▶ CANCELLED
           │                └───────────┴─▶ TIMED_OUT (before RUNNING)
           └──────────────── any ──delete()──▶ DELETED
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from podlink.execution.timeout import DeadlineContext


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class Phase(str, Enum):
    """Lifecycle stage of a Deployment as locally tracked."""

    CREATED = "created"  # Built locally, not yet accepted by the API server
    PENDING = "pending"  # Accepted, waiting for scheduling / image pull
    STARTING = "starting"  # Some container started, main container not yet
    RUNNING = "running"  # Main container running; attach allowed
    SUCCEEDED = "succeeded"  # Main container exited 0
    FAILED = "failed"  # Non-zero exit, Pod Failed, or Pod vanished
    TIMED_OUT = "timed_out"  # Startup deadline elapsed before RUNNING
    CANCELLED = "cancelled"  # External cancellation
    DELETED = "deleted"  # delete() was issued

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_active(self) -> bool:
        """True before the workload reached an outcome."""
        return self in (Phase.CREATED, Phase.PENDING, Phase.STARTING, Phase.RUNNING)


TERMINAL_PHASES: frozenset[Phase] = frozenset({
    Phase.SUCCEEDED,
    Phase.FAILED,
    Phase.TIMED_OUT,
    Phase.CANCELLED,
    Phase.DELETED,
})


# --- Phase transition rules ---

PHASE_VALID_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.CREATED: frozenset({
        Phase.PENDING,
        Phase.TIMED_OUT,
        Phase.CANCELLED,
        Phase.DELETED,
    }),
    Phase.PENDING: frozenset({
        Phase.STARTING,
        Phase.RUNNING,  # coalesced observation
        Phase.SUCCEEDED,  # finished between two observations
        Phase.FAILED,
        Phase.TIMED_OUT,
        Phase.CANCELLED,
        Phase.DELETED,
    }),
    Phase.STARTING: frozenset({
        Phase.RUNNING,
        Phase.SUCCEEDED,
        Phase.FAILED,
        Phase.TIMED_OUT,
        Phase.CANCELLED,
        Phase.DELETED,
    }),
    Phase.RUNNING: frozenset({
        Phase.SUCCEEDED,
        Phase.FAILED,
        Phase.CANCELLED,
        Phase.DELETED,
    }),
    Phase.SUCCEEDED: frozenset({Phase.DELETED}),
    Phase.FAILED: frozenset({Phase.DELETED}),
    Phase.TIMED_OUT: frozenset({Phase.DELETED}),
    Phase.CANCELLED: frozenset({Phase.DELETED}),
    Phase.DELETED: frozenset(),  # terminal
}


class InvalidTransitionError(ValueError):
    """Raised when an illegal phase transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "Phase") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


def is_valid_transition(current: Phase, target: Phase) -> bool:
    return target in PHASE_VALID_TRANSITIONS.get(current, frozenset())


def validate_phase_transition(current: Phase, target: Phase) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_phase_transition(Phase.PENDING, Phase.RUNNING)
        >>> validate_phase_transition(Phase.RUNNING, Phase.PENDING)
        InvalidTransitionError: Invalid Phase transition: running → pending
    """
    if not is_valid_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


# --- Workload ---


@dataclass(frozen=True)
class Workload:
    """What the plugin container runs.

    Attributes:
        image: Container image reference
        command: Entrypoint override (None keeps the image's entrypoint)
        args: Arguments (None keeps the image's CMD)
        env: Extra environment variables, merged over the config's env
        working_dir: Working directory override
    """

    image: str
    command: tuple[str, ...] | None = None
    args: tuple[str, ...] | None = None
    env: dict[str, str] = field(default_factory=dict)
    working_dir: str | None = None

    def __post_init__(self) -> None:
        if not self.image:
            raise ValueError("Workload.image must not be empty")
        # Accept lists from callers, store tuples
        if self.command is not None:
            object.__setattr__(self, "command", tuple(self.command))
        if self.args is not None:
            object.__setattr__(self, "args", tuple(self.args))


# --- Observed container state ---


ContainerState = Literal["waiting", "running", "terminated", "unknown"]


@dataclass(frozen=True)
class ContainerSnapshot:
    """One container status as reported by the API server."""

    name: str
    state: ContainerState = "unknown"
    init: bool = False
    reason: str | None = None
    message: str | None = None
    exit_code: int | None = None
    started: bool = False
    ready: bool = False
    restart_count: int = 0

    @classmethod
    def from_status(cls, status: dict[str, Any], *, init: bool = False) -> ContainerSnapshot:
        """Build from a camelCase ``containerStatuses`` entry."""
        state_doc = status.get("state") or {}
        state: ContainerState = "unknown"
        detail: dict[str, Any] = {}
        for candidate in ("terminated", "running", "waiting"):
            if state_doc.get(candidate) is not None:
                state = candidate  # type: ignore[assignment]
                detail = state_doc[candidate] or {}
                break
        return cls(
            name=status.get("name", ""),
            state=state,
            init=init,
            reason=detail.get("reason"),
            message=detail.get("message"),
            exit_code=detail.get("exitCode"),
            started=bool(status.get("started")),
            ready=bool(status.get("ready")),
            restart_count=int(status.get("restartCount") or 0),
        )

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    @property
    def is_terminated(self) -> bool:
        return self.state == "terminated"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "state": self.state}
        if self.init:
            result["init"] = True
        for key in ("reason", "message", "exit_code"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.restart_count:
            result["restart_count"] = self.restart_count
        return result


def snapshots_from_pod(pod: dict[str, Any]) -> tuple[ContainerSnapshot, ...]:
    """All init and regular container statuses of a Pod document."""
    status = pod.get("status") or {}
    init = [ContainerSnapshot.from_status(s, init=True) for s in status.get("initContainerStatuses") or []]
    regular = [ContainerSnapshot.from_status(s) for s in status.get("containerStatuses") or []]
    return tuple(init + regular)


# --- Transitions and outcomes ---


@dataclass(frozen=True)
class PhaseTransition:
    """One applied phase change."""

    previous: Phase
    phase: Phase
    reason: str | None = None
    exit_code: int | None = None
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DeploymentSnapshot:
    """Consistent, immutable view of a Deployment."""

    namespace: str
    name: str | None
    generate_name: str | None
    uid: str | None
    resource_version: str | None
    phase: Phase
    pod_phase: str | None
    main_container: str
    container_statuses: tuple[ContainerSnapshot, ...]
    created_at: datetime | None


@dataclass
class Deployment:
    """The one Pod of a session, as known locally.

    Mutated only by the lifecycle controller. Readers go through
    :attr:`phase` or :meth:`snapshot`, both of which take the lock.
    """

    namespace: str
    main_container: str
    generate_name: str | None = None
    name: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    pod_phase: str | None = None
    container_statuses: tuple[ContainerSnapshot, ...] = ()
    created_at: datetime | None = None
    deadline: DeadlineContext | None = None

    _phase: Phase = field(default=Phase.CREATED, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def submitted(self) -> bool:
        return self.name is not None

    def transition_to(self, target: Phase, reason: str | None = None, exit_code: int | None = None) -> PhaseTransition:
        """Move to *target*.

        Raises:
            InvalidTransitionError: If the state machine forbids it
        """
        with self._lock:
            current = self._phase
            validate_phase_transition(current, target)
            self._phase = target
        return PhaseTransition(previous=current, phase=target, reason=reason, exit_code=exit_code)

    def record_created(self, pod: dict[str, Any]) -> None:
        """Take identity from the server's response to the create call."""
        metadata = pod.get("metadata") or {}
        with self._lock:
            self.name = metadata.get("name")
            self.uid = metadata.get("uid")
            self.resource_version = metadata.get("resourceVersion")
            self.created_at = _parse_timestamp(metadata.get("creationTimestamp")) or utcnow()

    def apply_status(self, pod: dict[str, Any]) -> None:
        """Record the remote status fields of an observed Pod document."""
        metadata = pod.get("metadata") or {}
        with self._lock:
            if metadata.get("resourceVersion"):
                self.resource_version = metadata["resourceVersion"]
            self.pod_phase = (pod.get("status") or {}).get("phase")
            self.container_statuses = snapshots_from_pod(pod)

    def main_container_status(self) -> ContainerSnapshot | None:
        with self._lock:
            statuses = self.container_statuses
        for snapshot in statuses:
            if snapshot.name == self.main_container and not snapshot.init:
                return snapshot
        return None

    def snapshot(self) -> DeploymentSnapshot:
        with self._lock:
            return DeploymentSnapshot(
                namespace=self.namespace,
                name=self.name,
                generate_name=self.generate_name,
                uid=self.uid,
                resource_version=self.resource_version,
                phase=self._phase,
                pod_phase=self.pod_phase,
                main_container=self.main_container,
                container_statuses=self.container_statuses,
                created_at=self.created_at,
            )


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class DeleteOutcome(str, Enum):
    NOT_SUBMITTED = "not_submitted"  # nothing was created; no API call made
    DELETED = "deleted"
    ALREADY_GONE = "already_gone"  # 404
    FAILED = "failed"  # error attached, never raised


@dataclass(frozen=True)
class DeleteResult:
    outcome: DeleteOutcome
    pod: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not DeleteOutcome.FAILED


@dataclass(frozen=True)
class SessionResult:
    """Successful end of a session."""

    session_id: str
    namespace: str
    pod: str | None
    phase: Phase
    exit_code: int | None
    container_statuses: tuple[ContainerSnapshot, ...] = ()
    delete: DeleteResult | None = None
    watch_error: str | None = None  # watch failed after the stream ended cleanly
