"""
Session Coordinator: connect, deploy, attach, run, tear down.

Manifesto:
    A session owns exactly one remote Pod, and that Pod must not outlive
    the session. There is one release path (``_release``) and every exit
    goes through it: a failed step, a finished workload, a closed channel,
    ``cancel()``, or an ``asyncio.CancelledError`` from the caller. The
    release runs at most once and is shielded from cancellation, so the
    delete call is made exactly once whatever happens around it.

Architecture:
    ::

        run(workload)
          connect ─▶ submit ─▶ watch until RUNNING ─▶ attach ─▶ channel
             │          │             │                  │
             └──────────┴─── error / cancel ─────────────┴──▶ _release() ─▶ raise

        follower task (after attach)
          watch ─▶ terminal phase ─▶ channel.finish(drain_grace)

        wait()  ─▶ outcome (SUCCEEDED / FAILED / CANCELLED) ─▶ _release()
        close() ─▶ _release()
        cancel() ─▶ watch: CANCELLED; run(): SessionCancelled; channel closed

        _release()   (once, shielded)
          stop follower ─▶ close channel ─▶ stop watch ─▶ delete() ─▶ close handle

Examples:
    >>> async with SessionCoordinator(config) as session:
    ...     channel = await session.run(Workload(image="busybox", command=["echo", "ok"]))
    ...     print(await channel.read())
    ...     result = await session.wait()

    >>> async with run_session(config, workload) as (session, channel):
    ...     await channel.write(b"payload")
    ...     await channel.close_write()

Tags:
    podlink, session, lifecycle, cleanup, cancellation

Doc-Types:
    api-reference, architecture
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from podlink.config.models import Config
from podlink.config.settings import PodlinkSettings, get_settings
from podlink.core.errors import (
    AttachError,
    AttachErrorKind,
    PodFailed,
    PodTimedOut,
    SessionCancelled,
    SessionError,
    WatchError,
)
from podlink.kube._types import DeleteOutcome, DeleteResult, Deployment, Phase, PhaseTransition, SessionResult, Workload
from podlink.kube.connection import ClientHandle, ConnectionManager
from podlink.kube.lifecycle import PodLifecycleController
from podlink.kube.transport import AttachedTransport, DuplexChannel
from podlink.logging import bind_context, get_logger, log_step, new_session_id, push_context

logger = get_logger(__name__)

ControllerFactory = Callable[..., PodLifecycleController]
TransportFactory = Callable[..., AttachedTransport]

# Stages in which cancel() interrupts run() directly.
_INTERRUPTIBLE_STAGES = frozenset({"connect", "submit", "attach"})


class SessionCoordinator:
    """The single entry and exit point of a podlink session.

    Args:
        config: Validated session configuration
        connection_manager: Builds the client handle (a stub-backed one in
            tests)
        settings: Process settings; ``get_settings()`` by default
        controller_factory: ``(handle, timeouts, settings=...)`` returning a
            lifecycle controller
        transport_factory: ``(handle, settings=...)`` returning an attached
            transport
        session_id: Identifier attached to every log event of the session
    """

    def __init__(
        self,
        config: Config,
        *,
        connection_manager: ConnectionManager | None = None,
        settings: PodlinkSettings | None = None,
        controller_factory: ControllerFactory | None = None,
        transport_factory: TransportFactory | None = None,
        session_id: str | None = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.session_id = session_id or new_session_id()
        self._connections = connection_manager or ConnectionManager(settings=self.settings)
        self._controller_factory = controller_factory or PodLifecycleController
        self._transport_factory = transport_factory or AttachedTransport

        self.handle: ClientHandle | None = None
        self.controller: PodLifecycleController | None = None
        self.channel: DuplexChannel | None = None
        self.delete_result: DeleteResult | None = None

        self._stage = "idle"
        self._cancelled = False
        self._interrupted = False
        self._run_task: asyncio.Task | None = None
        self._watch: AsyncIterator[PhaseTransition] | None = None
        self._follower: asyncio.Task | None = None
        self._follow_error: BaseException | None = None
        self._release_task: asyncio.Future | None = None
        self._result: SessionResult | None = None
        self._outcome_phase: Phase | None = None

    @property
    def stage(self) -> str:
        return self._stage

    @property
    def deployment(self) -> Deployment | None:
        return self.controller.deployment if self.controller is not None else None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # ── run ──────────────────────────────────────────────────────────

    async def run(self, workload: Workload) -> DuplexChannel:
        """Start the workload and return a channel attached to it.

        Any failure, including cancellation, releases the Pod before the
        error propagates.

        Raises:
            ClusterConnectionError, SubmitError, WatchError, PodTimedOut,
            PodFailed, AttachError: the step that failed
            SessionCancelled: ``cancel()`` was called
        """
        if self._stage != "idle":
            raise RuntimeError(f"session already started (stage: {self._stage})")
        self._run_task = asyncio.current_task()
        token = push_context(session_id=self.session_id, namespace=self.config.pod.metadata.namespace)
        try:
            try:
                return await self._start(workload)
            except asyncio.CancelledError:
                if not self._interrupted:
                    await self._release()
                    raise
                # cancel() interrupted a step; report it as a session outcome
                self._run_task.uncancel()
                error = self._stamp(SessionCancelled(f"session cancelled during {self._stage}"))
                await self._release()
                raise error from None
            except SessionError as exc:
                self._stamp(exc)
                logger.error("session.failed", stage=self._stage, **exc.to_dict())
                await self._release()
                raise
            except BaseException:
                await self._release()
                raise
        finally:
            self._run_task = None
            token.restore()

    async def _start(self, workload: Workload) -> DuplexChannel:
        self._stage = "connect"
        self._check_cancelled()
        with log_step("session.connect", host=self.config.connection.host):
            self.handle = await self._connections.connect(self.config.connection, self.config.timeouts)

        self._stage = "submit"
        self.controller = self._controller_factory(self.handle, self.config.timeouts, settings=self.settings)
        self._check_cancelled()
        with log_step("pod.submit", image=workload.image) as timer:
            deployment = await self.controller.submit(self.config.pod, workload)
            timer.add_metric("pod", deployment.name)
        bind_context(pod=deployment.name)

        self._stage = "watch"
        if self._cancelled:
            self.controller.request_cancel()
        self._watch = self.controller.watch()
        await self._wait_until_running(deployment)

        self._stage = "attach"
        self._check_cancelled()
        transport = self._transport_factory(self.handle, settings=self.settings)
        with log_step("pod.attach", container=deployment.main_container):
            self.channel = await transport.attach(
                deployment, deployment.main_container, on_close=self._on_channel_close
            )
        bind_context(container=deployment.main_container)

        self._stage = "running"
        self._follower = asyncio.create_task(self._follow(), name=f"podlink-follow-{self.session_id}")
        return self.channel

    async def _wait_until_running(self, deployment: Deployment) -> None:
        async for transition in self._watch:
            if transition.phase is Phase.RUNNING:
                return
            if transition.phase.is_terminal:
                raise self._pre_attach_error(transition.phase, transition.reason)
        # The watch ended without yielding; the phase was already settled.
        phase = deployment.phase
        if phase is not Phase.RUNNING:
            raise self._pre_attach_error(phase, None)

    def _pre_attach_error(self, phase: Phase, reason: str | None) -> SessionError:
        if phase is Phase.TIMED_OUT:
            timeout = self.config.timeouts.startup
            return PodTimedOut(f"pod did not reach running within {timeout}s", timeout_seconds=timeout)
        if phase is Phase.FAILED:
            message, exit_code = self.controller.outcome_detail(Phase.FAILED)
            return PodFailed(f"pod failed before attach: {reason or message}", exit_code=exit_code, reason=reason or message)
        if phase is Phase.SUCCEEDED:
            return AttachError("workload finished before it could be attached", kind=AttachErrorKind.NOT_RUNNING)
        return SessionCancelled(f"session cancelled before the pod was running ({phase.value})")

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise SessionCancelled(f"session cancelled during {self._stage}")

    # ── follow / wait ────────────────────────────────────────────────

    async def _follow(self) -> None:
        """Consume the rest of the watch; drain the channel at the end."""
        try:
            async for transition in self._watch:
                logger.debug("session.transition", phase=transition.phase.value)
        except WatchError as exc:
            self._follow_error = exc
            logger.warning("pod.watch_lost", error=str(exc))
            return
        except Exception as exc:
            self._follow_error = exc
            logger.error("session.follow_failed", error=str(exc))
            return

        phase = self.controller.deployment.phase
        if phase.is_terminal and self.channel is not None:
            grace = 0.0 if phase is Phase.CANCELLED else self.settings.drain_grace_seconds
            await self.channel.finish(grace)

    async def wait(self) -> SessionResult:
        """Wait for the workload's outcome, then release the session.

        Returns:
            SessionResult when the main container exited 0

        Raises:
            PodFailed: non-zero exit or Pod failure
            SessionCancelled: cancelled, or the channel was closed before
                the workload finished
            WatchError: the watch was lost and the stream did not end cleanly
        """
        if self._result is not None:
            return self._result
        if self._follower is None:
            raise RuntimeError("run() has not returned a channel")

        try:
            result = await self._await_outcome()
        except asyncio.CancelledError:
            await self._release()
            raise
        except SessionError as exc:
            self._stamp(exc)
            await self._release()
            logger.info("session.finished", outcome=type(exc).__name__)
            raise
        except BaseException:
            await self._release()
            raise

        await self._release()
        self._result = dataclasses.replace(result, delete=self.delete_result)
        logger.info("session.finished", outcome="succeeded", exit_code=result.exit_code)
        return self._result

    async def _await_outcome(self) -> SessionResult:
        await asyncio.wait({self._follower})
        deployment = self.controller.deployment
        # A release triggered by closing the channel may have deleted the Pod already.
        phase = self._outcome_phase or deployment.phase

        if self._follow_error is not None and not phase.is_terminal:
            if not isinstance(self._follow_error, WatchError):
                raise self._follow_error
            # The stream may still finish the work without the watch.
            if self.channel is not None and not self.channel.closed:
                await self.channel.wait_eof()
            if self.channel is not None and self.channel.ended_cleanly and not self._cancelled:
                return self._success(deployment, phase, watch_error=str(self._follow_error))
            raise self._follow_error

        if phase is Phase.SUCCEEDED:
            return self._success(deployment, phase)
        if phase is Phase.FAILED:
            reason, exit_code = self.controller.outcome_detail(Phase.FAILED)
            raise PodFailed(f"workload failed: {reason}", exit_code=exit_code, reason=reason)
        if phase is Phase.CANCELLED or self._cancelled:
            raise SessionCancelled("session cancelled")
        raise SessionCancelled(f"session closed before the workload finished ({phase.value})")

    def _success(self, deployment: Deployment, phase: Phase, *, watch_error: str | None = None) -> SessionResult:
        snapshot = deployment.snapshot()
        main = deployment.main_container_status()
        return SessionResult(
            session_id=self.session_id,
            namespace=snapshot.namespace,
            pod=snapshot.name,
            phase=phase,
            exit_code=main.exit_code if main is not None else None,
            container_statuses=snapshot.container_statuses,
            watch_error=watch_error,
        )

    # ── cancel / release ─────────────────────────────────────────────

    def cancel(self) -> None:
        """Cancel the session from outside. Safe to call at any time."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("session.cancel_requested", session_id=self.session_id, stage=self._stage)
        if self.controller is not None:
            self.controller.request_cancel()

        task = self._run_task
        if task is not None and not task.done() and self._stage in _INTERRUPTIBLE_STAGES:
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                self._interrupted = True
                task.cancel()

        if self.channel is not None and not self.channel.closed:
            asyncio.ensure_future(self.channel.close())

    def _on_channel_close(self, channel: DuplexChannel) -> None:
        if self._release_task is None:
            logger.debug("session.channel_closed")
            self._release_task = asyncio.ensure_future(self._do_release())

    async def close(self) -> DeleteResult:
        """Release the session. Idempotent; returns the delete result."""
        await self._release()
        return self.delete_result

    async def _release(self) -> None:
        if self._release_task is None:
            self._release_task = asyncio.ensure_future(self._do_release())
        await asyncio.shield(self._release_task)

    async def _do_release(self) -> None:
        self._stage = "closing"
        try:
            follower = self._follower
            if follower is not None and not follower.done():
                follower.cancel()
                await asyncio.wait({follower})
            if self.channel is not None:
                await self.channel.close()
            if self._watch is not None:
                try:
                    await self._watch.aclose()
                except RuntimeError as exc:
                    logger.debug("pod.watch_close_failed", error=str(exc))

            if self.controller is not None:
                if self.controller.deployment is not None:
                    self._outcome_phase = self.controller.deployment.phase
                result = await self.controller.delete()
            else:
                result = DeleteResult(DeleteOutcome.NOT_SUBMITTED)
            self.delete_result = result
            if result.error is not None:
                logger.warning("pod.delete_failed", pod=result.pod, **result.error.to_dict())
        finally:
            if self.handle is not None:
                self.handle.close()
            self._stage = "closed"

    def _stamp(self, error: SessionError) -> SessionError:
        context: dict[str, Any] = {"session_id": self.session_id}
        if self.controller is not None:
            diagnostics = self.controller.diagnostics()
            context.update(
                namespace=diagnostics.namespace,
                pod=diagnostics.pod,
                phase=diagnostics.phase,
                container_statuses=diagnostics.container_statuses,
            )
        else:
            context["namespace"] = self.config.pod.metadata.namespace
        return error.with_context(**context)

    async def __aenter__(self) -> SessionCoordinator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


@asynccontextmanager
async def run_session(
    config: Config, workload: Workload, **kwargs: Any
) -> AsyncIterator[tuple[SessionCoordinator, DuplexChannel]]:
    """Run a session and release it when the block exits.

    Keyword arguments are passed to :class:`SessionCoordinator`.
    """
    coordinator = SessionCoordinator(config, **kwargs)
    async with coordinator:
        channel = await coordinator.run(workload)
        yield coordinator, channel
