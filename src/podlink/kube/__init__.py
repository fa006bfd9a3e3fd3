"""
Kubernetes session machinery.

Layers, leaves first:

- ``api``: blocking Pod API surface over the ``kubernetes`` client
- ``connection``: ConnectionManager and the throttled ClientHandle
- ``manifest``: Pod body construction
- ``lifecycle``: PodLifecycleController (submit, watch, delete)
- ``transport``: AttachedTransport and DuplexChannel
- ``session``: SessionCoordinator, the caller-facing entry point
- ``stub``: in-memory StubPodApi for tests
"""

from podlink.kube._types import (
    PHASE_VALID_TRANSITIONS,
    ContainerSnapshot,
    DeleteOutcome,
    DeleteResult,
    Deployment,
    InvalidTransitionError,
    Phase,
    PhaseTransition,
    SessionResult,
    Workload,
)
from podlink.kube.connection import ClientHandle, ConnectionManager, classify_connection_error
from podlink.kube.lifecycle import PodLifecycleController, derive_phase
from podlink.kube.manifest import build_pod_manifest
from podlink.kube.session import SessionCoordinator, run_session
from podlink.kube.transport import AttachedTransport, DuplexChannel

__all__ = [
    "PHASE_VALID_TRANSITIONS",
    "AttachedTransport",
    "ClientHandle",
    "ConnectionManager",
    "ContainerSnapshot",
    "DeleteOutcome",
    "DeleteResult",
    "Deployment",
    "DuplexChannel",
    "InvalidTransitionError",
    "Phase",
    "PhaseTransition",
    "PodLifecycleController",
    "SessionCoordinator",
    "SessionResult",
    "Workload",
    "build_pod_manifest",
    "classify_connection_error",
    "derive_phase",
    "run_session",
]
