"""
Pod Lifecycle Controller: submit, watch, deadline enforcement, delete.

Manifesto:
    The Pod's state is owned by the API server and only ever observed.
    The controller turns those observations into an ordered stream of
    ``PhaseTransition`` values and is the only writer of
    ``Deployment.phase``. Everything else (the session coordinator, the
    transport) reads the phase and reacts to transitions.

Architecture:
    ::

        submit(pod_config, workload)
            build_pod_manifest ─▶ create_pod ─▶ Deployment (CREATED ─▶ PENDING)

        watch(deadline)                       ┌──────────────────────────┐
            ┌─▶ open relay (from last rv) ───▶│ WatchRelay (thread)       │
            │   queue.get() ◀─────────────────│ items: event/ended/error  │
            │     event   ─▶ derive_phase ─▶ transition ─▶ yield          │
            │     ended   ─▶ reopen                                       │
            │     410     ─▶ read_pod, reopen                             │
            │     error   ─▶ backoff, reopen (bounded) ─▶ WatchError       │
            │   deadline  ─▶ TIMED_OUT (before RUNNING only)              │
            └── cancel    ─▶ CANCELLED                                   │
                                                                          │
        delete()  ─▶ delete_pod (bounded by delete_grace) ─▶ DeleteResult

Features:
    - **Coalesced observations:** skipping forward is legal, moving back is
      ignored
    - **Restartable watch:** server-side expiry and disconnects resume from
      the last resource version
    - **Cancellation-safe submit:** a create call interrupted by
      cancellation is still recorded, so ``delete()`` can find the Pod
    - **Idempotent delete:** 404 is success; failures are returned, not
      raised

Tags:
    podlink, kubernetes, lifecycle, state-machine, watch

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Any

from podlink.config.models import PodConfig, Timeouts
from podlink.config.settings import PodlinkSettings, get_settings
from podlink.core.errors import (
    DeleteError,
    ErrorContext,
    SubmitError,
    SubmitErrorKind,
    WatchError,
    WatchErrorKind,
)
from podlink.execution.retry import ExponentialBackoff
from podlink.execution.timeout import DeadlineContext, run_with_timeout_async
from podlink.kube._types import (
    DeleteOutcome,
    DeleteResult,
    Deployment,
    Phase,
    PhaseTransition,
    Workload,
    is_valid_transition,
    snapshots_from_pod,
)
from podlink.kube.api import WatchEvent, api_status
from podlink.kube.connection import ClientHandle, WatchRelay
from podlink.kube.manifest import build_pod_manifest
from podlink.logging import bind_context, get_logger

logger = get_logger(__name__)

_CANCEL = object()
_EXTERNAL_DELETE_REASON = "pod deleted externally"


# ── Phase derivation ─────────────────────────────────────────────────


def derive_phase(pod: dict[str, Any], main_container: str) -> Phase:
    """Map an observed Pod document onto a local phase.

    Never returns TIMED_OUT, CANCELLED or DELETED; those come from local
    events, not from the Pod status.
    """
    status = pod.get("status") or {}
    pod_phase = status.get("phase")
    snapshots = snapshots_from_pod(pod)

    if pod_phase == "Failed" or any(s.is_terminated and s.exit_code not in (None, 0) for s in snapshots):
        return Phase.FAILED

    main = next((s for s in snapshots if s.name == main_container and not s.init), None)
    if pod_phase == "Succeeded" or (main is not None and main.is_terminated and main.exit_code == 0):
        return Phase.SUCCEEDED
    if main is not None and main.is_running:
        return Phase.RUNNING
    if any(s.is_running or s.is_terminated or s.started for s in snapshots):
        return Phase.STARTING
    return Phase.PENDING


def classify_submit_error(exc: BaseException) -> SubmitError:
    status = api_status(exc)
    context = ErrorContext(http_status=status)
    if status == 409:
        return SubmitError(f"pod name already taken: {exc}", kind=SubmitErrorKind.CONFLICT, context=context, cause=exc)
    if status is not None and 400 <= status < 500:
        return SubmitError(f"pod rejected by the API server: {exc}", kind=SubmitErrorKind.INVALID, context=context, cause=exc)
    return SubmitError(f"could not submit pod: {exc}", kind=SubmitErrorKind.UNREACHABLE, context=context, cause=exc)


# ── Controller ───────────────────────────────────────────────────────


class PodLifecycleController:
    """Owns the remote lifecycle of one session's Pod.

    Args:
        handle: Shared, throttled client handle
        timeouts: Startup deadline and delete grace
        settings: Watch reconnect budget, backoff and window
    """

    def __init__(
        self,
        handle: ClientHandle,
        timeouts: Timeouts,
        *,
        settings: PodlinkSettings | None = None,
    ):
        self.handle = handle
        self.timeouts = timeouts
        self.settings = settings or get_settings()
        self.deployment: Deployment | None = None
        self.last_transition: PhaseTransition | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._cancel_requested = False
        self._cancel_event = asyncio.Event()
        self._generation = 0
        self._relay: WatchRelay | None = None

    # --- submit ---

    async def submit(self, pod_config: PodConfig, workload: Workload) -> Deployment:
        """Create the Pod and return its Deployment in PENDING.

        Raises:
            SubmitError: CONFLICT, INVALID or UNREACHABLE
        """
        if self.deployment is not None:
            raise RuntimeError("this controller already submitted a pod")

        body = build_pod_manifest(pod_config, workload)
        deployment = Deployment(
            namespace=pod_config.metadata.namespace,
            main_container=pod_config.spec.plugin_container.name,
            generate_name=body["metadata"].get("generateName"),
        )
        self.deployment = deployment

        # A generated name can collide; the server picks a fresh one on retry.
        attempts = 2 if deployment.generate_name else 1
        for attempt in range(1, attempts + 1):
            try:
                await self._create(deployment, body)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_submit_error(exc)
                if error.kind is SubmitErrorKind.CONFLICT and attempt < attempts:
                    logger.warning(
                        "pod.submit_conflict",
                        generate_name=deployment.generate_name,
                        attempt=attempt,
                    )
                    continue
                raise error.with_context(namespace=deployment.namespace, phase=deployment.phase.value) from exc
            break

        deployment.deadline = DeadlineContext.after(self.timeouts.startup, "pod startup")
        bind_context(pod=deployment.name)
        self._advance(Phase.PENDING, reason="submitted")
        logger.info("pod.submitted", pod=deployment.name, uid=deployment.uid)
        return deployment

    async def _create(self, deployment: Deployment, body: dict[str, Any]) -> None:
        future = asyncio.ensure_future(self.handle.create_pod(deployment.namespace, body))
        try:
            pod = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The server may already have the Pod; record it so delete() finds it.
            done, _ = await asyncio.wait({future}, timeout=self.timeouts.http)
            if future in done and not future.cancelled() and future.exception() is None:
                deployment.record_created(future.result())
                logger.info("pod.submitted_during_cancel", pod=deployment.name)
            raise
        deployment.record_created(pod)

    # --- watch ---

    def request_cancel(self) -> None:
        """Ask the watch to move to CANCELLED. Safe to call at any time."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        self._cancel_event.set()
        self._queue.put_nowait(_CANCEL)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def watch(self, deadline: DeadlineContext | None = None) -> AsyncIterator[PhaseTransition]:
        """Yield phase transitions until a terminal phase.

        Before RUNNING every wait is bounded by *deadline* (the startup
        deadline computed at submit by default); when it elapses the
        Deployment moves to TIMED_OUT, which is yielded last.

        Raises:
            WatchError: the watch could not be re-established within
                ``watch_reconnect_attempts`` consecutive tries
        """
        deployment = self._require_submitted()
        deadline = deadline or deployment.deadline
        budget = self.settings.watch_reconnect_attempts
        backoff = ExponentialBackoff(
            max_attempts=budget + 1,
            base_delay=self.settings.watch_backoff_seconds,
            max_delay=max(self.settings.watch_backoff_seconds * 8, 1.0),
        )
        failures = 0

        try:
            while True:
                if self._cancel_requested:
                    transition = self._advance(Phase.CANCELLED, reason="cancelled")
                    if transition is not None:
                        yield transition
                    return
                phase = deployment.phase
                if phase.is_terminal:
                    return

                timeout = None
                if phase is not Phase.RUNNING and deadline is not None:
                    timeout = deadline.remaining()
                    if timeout <= 0:
                        transition = self._advance(
                            Phase.TIMED_OUT,
                            reason=f"pod did not reach running within {deadline.timeout_seconds}s",
                        )
                        if transition is not None:
                            yield transition
                        return

                if self._relay is None:
                    self._open_relay(deployment)
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout)
                except TimeoutError:
                    continue

                if item is _CANCEL or item.generation != self._generation:
                    continue

                if item.event is not None:
                    failures = 0
                    transition = self._observe(item.event)
                    if transition is not None:
                        yield transition
                    continue

                self._relay = None
                if item.ended:
                    failures = 0
                    logger.debug("pod.watch_window_closed", resource_version=deployment.resource_version)
                    continue

                error = item.error
                if api_status(error) == 410:
                    logger.info("pod.watch_expired", resource_version=deployment.resource_version)
                    pod, error = await self._read_current(deployment)
                    if pod is not None:
                        failures = 0
                        transition = self._observe(WatchEvent(type="MODIFIED", pod=pod))
                        if transition is not None:
                            yield transition
                        continue
                    if api_status(error) == 404:
                        transition = self._advance(Phase.FAILED, reason=_EXTERNAL_DELETE_REASON)
                        if transition is not None:
                            yield transition
                        continue

                failures += 1
                if failures > budget:
                    raise WatchError(
                        f"watch on pod {deployment.name} lost after {failures} attempts: {error}",
                        kind=WatchErrorKind.UNREACHABLE,
                        context=self.diagnostics(),
                        cause=error,
                    )
                delay = backoff.next_delay(failures - 1)
                logger.warning(
                    "pod.watch_reconnect",
                    attempt=failures,
                    delay_seconds=round(delay, 3),
                    error=str(error),
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._cancel_event.wait(), delay)
        finally:
            self._stop_relay()

    def _open_relay(self, deployment: Deployment) -> None:
        self._generation += 1
        self._relay = self.handle.open_watch(
            deployment.namespace,
            deployment.name,
            deployment.resource_version,
            self.settings.watch_window_seconds,
            self._generation,
            self._queue.put_nowait,
        )

    def _stop_relay(self) -> None:
        relay, self._relay = self._relay, None
        if relay is not None:
            relay.stop()
        # Anything still in flight from the old relay is stale now.
        self._generation += 1

    async def _read_current(self, deployment: Deployment) -> tuple[dict[str, Any] | None, BaseException | None]:
        try:
            return await self.handle.read_pod(deployment.namespace, deployment.name), None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return None, exc

    def _observe(self, event: WatchEvent) -> PhaseTransition | None:
        deployment = self._require_submitted()
        deployment.apply_status(event.pod)
        if event.type == "DELETED":
            return self._advance(Phase.FAILED, reason=_EXTERNAL_DELETE_REASON)
        return self._advance(derive_phase(event.pod, deployment.main_container))

    def _advance(self, target: Phase, reason: str | None = None) -> PhaseTransition | None:
        deployment = self._require_deployment()
        current = deployment.phase
        if target is current:
            return None
        if not is_valid_transition(current, target):
            logger.debug("pod.transition_ignored", current=current.value, observed=target.value)
            return None

        exit_code = None
        if target in (Phase.SUCCEEDED, Phase.FAILED):
            detail_reason, exit_code = self.outcome_detail(target)
            reason = reason or detail_reason
        transition = deployment.transition_to(target, reason=reason, exit_code=exit_code)
        self.last_transition = transition
        bind_context(phase=target.value)
        logger.info(
            "pod.phase",
            previous=transition.previous.value,
            phase=target.value,
            reason=reason,
            exit_code=exit_code,
        )
        return transition

    def outcome_detail(self, phase: Phase | None = None) -> tuple[str | None, int | None]:
        """Reason and exit code explaining a SUCCEEDED or FAILED outcome."""
        deployment = self._require_deployment()
        phase = phase or deployment.phase
        main = deployment.main_container_status()
        if phase is Phase.SUCCEEDED:
            return "completed", main.exit_code if main is not None and main.exit_code is not None else 0

        statuses = sorted(deployment.container_statuses, key=lambda s: s.name != deployment.main_container)
        for snapshot in statuses:
            if snapshot.is_terminated and snapshot.exit_code not in (None, 0):
                reason = snapshot.reason or "Error"
                return f"container {snapshot.name} exited with code {snapshot.exit_code} ({reason})", snapshot.exit_code
        if self.last_transition is not None and self.last_transition.phase is phase:
            return self.last_transition.reason, self.last_transition.exit_code
        if deployment.pod_phase:
            return f"pod phase {deployment.pod_phase}", None
        return None, None

    # --- delete ---

    async def delete(self) -> DeleteResult:
        """Delete the Pod. Never raises for API failures.

        404 counts as success. The call is bounded by ``delete_grace``;
        the Deployment ends in DELETED whatever the outcome.
        """
        deployment = self.deployment
        if deployment is None or not deployment.submitted:
            if deployment is not None:
                self._advance(Phase.DELETED, reason="not submitted")
            logger.debug("pod.delete_skipped")
            return DeleteResult(DeleteOutcome.NOT_SUBMITTED)

        try:
            await run_with_timeout_async(
                self.handle.delete_pod(deployment.namespace, deployment.name),
                self.timeouts.delete_grace,
                operation="pod delete",
            )
            result = DeleteResult(DeleteOutcome.DELETED, pod=deployment.name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if api_status(exc) == 404:
                result = DeleteResult(DeleteOutcome.ALREADY_GONE, pod=deployment.name)
            else:
                error = DeleteError(
                    f"failed to delete pod {deployment.name}: {exc}",
                    context=self.diagnostics(),
                    cause=exc,
                )
                result = DeleteResult(DeleteOutcome.FAILED, pod=deployment.name, error=error)

        self._advance(Phase.DELETED, reason=result.outcome.value)
        logger.info("pod.delete", pod=deployment.name, outcome=result.outcome.value)
        return result

    # --- helpers ---

    def diagnostics(self) -> ErrorContext:
        """Error context describing the Deployment right now."""
        if self.deployment is None:
            return ErrorContext()
        snapshot = self.deployment.snapshot()
        return ErrorContext(
            namespace=snapshot.namespace,
            pod=snapshot.name,
            phase=snapshot.phase.value,
            container=snapshot.main_container,
            container_statuses=[s.to_dict() for s in snapshot.container_statuses],
        )

    def _require_deployment(self) -> Deployment:
        if self.deployment is None:
            raise RuntimeError("no pod has been submitted")
        return self.deployment

    def _require_submitted(self) -> Deployment:
        deployment = self._require_deployment()
        if not deployment.submitted:
            raise RuntimeError("the pod was not accepted by the API server")
        return deployment


