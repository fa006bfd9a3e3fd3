"""Tests for the Pod lifecycle controller."""

import asyncio

import pytest

from podlink.core.errors import DeleteError, SubmitError, SubmitErrorKind, WatchError
from podlink.execution.timeout import DeadlineContext, TimeoutExpired
from podlink.kube import DeleteOutcome, Phase, PodLifecycleController, Workload, derive_phase
from podlink.kube.stub import api_error, creating, exited, pending, pod_failed, running, vanished

WORKLOAD = Workload(image="busybox", command=["echo", "ok"])


def status_pod(phase="Pending", containers=(), init=()):
    return {
        "metadata": {"name": "runner-1"},
        "status": {
            "phase": phase,
            "containerStatuses": [{"name": n, "state": s} for n, s in containers],
            "initContainerStatuses": [{"name": n, "state": s} for n, s in init],
        },
    }


async def collect(watch):
    return [transition async for transition in watch]


class TestDerivePhase:
    """Observed Pod documents map onto local phases."""

    def test_unscheduled_is_pending(self):
        """Test no container statuses means PENDING."""
        assert derive_phase({"status": {"phase": "Pending"}}, "main") is Phase.PENDING
        assert derive_phase({}, "main") is Phase.PENDING

    def test_waiting_main_is_pending(self):
        """Test a main container still being created is PENDING."""
        pod = status_pod(containers=[("main", {"waiting": {"reason": "ContainerCreating"}})])
        assert derive_phase(pod, "main") is Phase.PENDING

    def test_init_container_progress_is_starting(self):
        """Test a finished init container means STARTING."""
        pod = status_pod(
            containers=[("main", {"waiting": {"reason": "PodInitializing"}})],
            init=[("setup", {"terminated": {"exitCode": 0}})],
        )
        assert derive_phase(pod, "main") is Phase.STARTING

    def test_sidecar_running_is_starting(self):
        """Test a running sidecar alone is not RUNNING."""
        pod = status_pod(
            containers=[("main", {"waiting": {}}), ("proxy", {"running": {}})],
        )
        assert derive_phase(pod, "main") is Phase.STARTING

    def test_main_running(self):
        """Test the main container running means RUNNING."""
        pod = status_pod("Running", containers=[("main", {"running": {}})])
        assert derive_phase(pod, "main") is Phase.RUNNING

    def test_main_exit_zero_succeeds(self):
        """Test exit code 0 of the main container is SUCCEEDED, even with a sidecar still up."""
        pod = status_pod(
            "Running",
            containers=[("main", {"terminated": {"exitCode": 0}}), ("proxy", {"running": {}})],
        )
        assert derive_phase(pod, "main") is Phase.SUCCEEDED

    def test_non_zero_exit_fails(self):
        """Test a non-zero exit anywhere is FAILED."""
        pod = status_pod("Running", containers=[("main", {"terminated": {"exitCode": 1}})])
        assert derive_phase(pod, "main") is Phase.FAILED

    def test_failed_init_container(self):
        """Test a failing init container fails the Pod."""
        pod = status_pod(
            containers=[("main", {"waiting": {}})],
            init=[("setup", {"terminated": {"exitCode": 2}})],
        )
        assert derive_phase(pod, "main") is Phase.FAILED

    def test_pod_phase_failed(self):
        """Test an evicted Pod without container statuses is FAILED."""
        assert derive_phase({"status": {"phase": "Failed", "reason": "Evicted"}}, "main") is Phase.FAILED


class TestSubmit:
    """Tests for PodLifecycleController.submit."""

    @pytest.mark.asyncio
    async def test_submit(self, controller, config, stub_api):
        """Test the Pod is created and the Deployment is PENDING."""
        deployment = await controller.submit(config.pod, WORKLOAD)

        assert deployment.phase is Phase.PENDING
        assert deployment.name.startswith("podlink-test-")
        assert deployment.uid
        assert deployment.deadline is not None
        assert stub_api.pod_exists("default", deployment.name)
        assert controller.last_transition.phase is Phase.PENDING

        body = stub_api.get_pod("default", deployment.name)
        assert body["spec"]["containers"][0]["command"] == ["echo", "ok"]
        await controller.delete()

    @pytest.mark.asyncio
    async def test_generated_name_conflict_retried_once(self, controller, config, stub_api):
        """Test a 409 on a generated name is retried with a fresh name."""
        stub_api.conflicts = 1

        deployment = await controller.submit(config.pod, WORKLOAD)

        assert stub_api.create_count == 2
        assert deployment.phase is Phase.PENDING
        await controller.delete()

    @pytest.mark.asyncio
    async def test_generated_name_conflict_twice_fails(self, controller, config, stub_api):
        """Test the conflict retry happens only once."""
        stub_api.conflicts = 2

        with pytest.raises(SubmitError) as exc_info:
            await controller.submit(config.pod, WORKLOAD)

        assert exc_info.value.kind is SubmitErrorKind.CONFLICT
        assert stub_api.create_count == 2

    @pytest.mark.asyncio
    async def test_explicit_name_conflict_is_fatal(self, handle, make_config, settings, stub_api):
        """Test a fixed name that is taken fails without a retry."""
        config = make_config(pod={"metadata": {"name": "fixed"}})
        controller = PodLifecycleController(handle, config.timeouts, settings=settings)
        stub_api.conflicts = 1

        with pytest.raises(SubmitError) as exc_info:
            await controller.submit(config.pod, WORKLOAD)

        assert exc_info.value.kind is SubmitErrorKind.CONFLICT
        assert exc_info.value.context.http_status == 409
        assert stub_api.create_count == 1
        assert controller.deployment.phase is Phase.CREATED

    @pytest.mark.asyncio
    async def test_invalid_manifest(self, controller, config, stub_api):
        """Test 4xx other than 409 is INVALID."""
        stub_api.create_error = api_error(422, "Unprocessable Entity")

        with pytest.raises(SubmitError) as exc_info:
            await controller.submit(config.pod, WORKLOAD)

        assert exc_info.value.kind is SubmitErrorKind.INVALID
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_unreachable(self, controller, config, stub_api):
        """Test transport failures are UNREACHABLE."""
        stub_api.create_error = ConnectionResetError("reset")

        with pytest.raises(SubmitError) as exc_info:
            await controller.submit(config.pod, WORKLOAD)

        assert exc_info.value.kind is SubmitErrorKind.UNREACHABLE

    @pytest.mark.asyncio
    async def test_submit_twice_rejected(self, controller, config):
        """Test one controller manages one Pod."""
        await controller.submit(config.pod, WORKLOAD)
        with pytest.raises(RuntimeError):
            await controller.submit(config.pod, WORKLOAD)
        await controller.delete()

    @pytest.mark.asyncio
    async def test_cancelled_create_is_still_recorded(self, controller, config, stub_api):
        """Test a Pod created while the caller was cancelled can still be deleted."""
        stub_api.create_delay = 0.2

        task = asyncio.create_task(controller.submit(config.pod, WORKLOAD))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        name = controller.deployment.name
        assert name is not None
        assert stub_api.pod_exists("default", name)

        result = await controller.delete()
        assert result.outcome is DeleteOutcome.DELETED
        assert not stub_api.pod_exists("default", name)


class TestWatch:
    """Tests for PodLifecycleController.watch."""

    @pytest.mark.asyncio
    async def test_phases_in_order(self, controller, config, stub_api):
        """Test the default scenario yields RUNNING then SUCCEEDED."""
        stub_api.scenario = (creating(), running(), exited(0))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert [t.phase for t in transitions] == [Phase.RUNNING, Phase.SUCCEEDED]
        assert transitions[-1].exit_code == 0
        assert transitions[-1].previous is Phase.RUNNING

    @pytest.mark.asyncio
    async def test_failed_exit_code(self, controller, config, stub_api):
        """Test a non-zero exit yields FAILED with the exit code."""
        stub_api.scenario = (running(), exited(3))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert transitions[-1].phase is Phase.FAILED
        assert transitions[-1].exit_code == 3
        assert "exited with code 3" in transitions[-1].reason

    @pytest.mark.asyncio
    async def test_pod_failed_reason(self, controller, config, stub_api):
        """Test a Pod-level failure without statuses is reported."""
        stub_api.scenario = (pod_failed("Evicted"),)
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert transitions[-1].phase is Phase.FAILED
        assert transitions[-1].reason == "pod phase Failed"

    @pytest.mark.asyncio
    async def test_watch_window_expiry_reopens(self, controller, config, stub_api):
        """Test a server-closed watch is reopened from the last resource version."""
        stub_api.watch_window = 0.05
        stub_api.scenario = (running(delay=0.2), exited(0, delay=0.2))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert [t.phase for t in transitions] == [Phase.RUNNING, Phase.SUCCEEDED]
        assert len(stub_api.watch_calls) >= 3
        assert stub_api.watch_calls[0] == "1"

    @pytest.mark.asyncio
    async def test_dropped_watch_reconnects(self, controller, config, stub_api):
        """Test broken watches resume without losing transitions."""
        stub_api.watch_drops = 2
        stub_api.scenario = (creating(), running(), exited(0))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert [t.phase for t in transitions] == [Phase.RUNNING, Phase.SUCCEEDED]
        assert len(stub_api.watch_calls) >= 3

    @pytest.mark.asyncio
    async def test_reconnect_budget_exhausted(self, handle, config, settings, stub_api):
        """Test WatchError after watch_reconnect_attempts consecutive failures."""
        settings = settings.model_copy(update={"watch_reconnect_attempts": 2})
        controller = PodLifecycleController(handle, config.timeouts, settings=settings)
        stub_api.scenario = (pending(),)
        stub_api.watch_failures = 10
        await controller.submit(config.pod, WORKLOAD)

        with pytest.raises(WatchError) as exc_info:
            await collect(controller.watch())

        assert len(stub_api.watch_calls) == 3
        assert exc_info.value.context.pod == controller.deployment.name
        await controller.delete()

    @pytest.mark.asyncio
    async def test_expired_resource_version_recovers(self, controller, config, stub_api):
        """Test 410 Gone re-reads the Pod and continues."""
        stub_api.gone_on_watch = 1
        stub_api.scenario = (running(delay=0.1), exited(0))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert stub_api.read_calls >= 1
        assert transitions[-1].phase is Phase.SUCCEEDED

    @pytest.mark.asyncio
    async def test_external_delete(self, controller, config, stub_api):
        """Test a Pod deleted behind our back is FAILED."""
        stub_api.scenario = (running(), vanished())
        deployment = await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch())

        assert [t.phase for t in transitions] == [Phase.RUNNING, Phase.FAILED]
        assert transitions[-1].reason == "pod deleted externally"
        result = await controller.delete()
        assert result.outcome is DeleteOutcome.ALREADY_GONE
        assert deployment.phase is Phase.DELETED

    @pytest.mark.asyncio
    async def test_startup_deadline(self, controller, config, stub_api):
        """Test a Pod stuck in Pending times out."""
        stub_api.scenario = (pending(),)
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch(DeadlineContext.after(0.2, "pod startup")))

        assert transitions[-1].phase is Phase.TIMED_OUT
        assert "did not reach running" in transitions[-1].reason

    @pytest.mark.asyncio
    async def test_deadline_ignored_once_running(self, controller, config, stub_api):
        """Test the startup deadline does not apply after RUNNING."""
        stub_api.scenario = (running(), exited(0, delay=0.4))
        await controller.submit(config.pod, WORKLOAD)

        transitions = await collect(controller.watch(DeadlineContext.after(0.2, "pod startup")))

        assert [t.phase for t in transitions] == [Phase.RUNNING, Phase.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_cancel(self, controller, config, stub_api):
        """Test request_cancel moves the watch to CANCELLED."""
        stub_api.scenario = (pending(),)
        await controller.submit(config.pod, WORKLOAD)

        task = asyncio.create_task(collect(controller.watch()))
        await asyncio.sleep(0.1)
        controller.request_cancel()
        transitions = await asyncio.wait_for(task, 2)

        assert transitions[-1].phase is Phase.CANCELLED
        assert controller.cancel_requested

    @pytest.mark.asyncio
    async def test_watch_requires_submit(self, controller):
        """Test watching before submit is a usage error."""
        with pytest.raises(RuntimeError):
            await collect(controller.watch())


class TestDelete:
    """Tests for PodLifecycleController.delete."""

    @pytest.mark.asyncio
    async def test_not_submitted(self, controller, stub_api):
        """Test nothing to delete means no API call."""
        result = await controller.delete()

        assert result.outcome is DeleteOutcome.NOT_SUBMITTED
        assert result.ok
        assert stub_api.delete_calls == []

    @pytest.mark.asyncio
    async def test_delete_twice(self, controller, config, stub_api):
        """Test the second delete is ALREADY_GONE, not an error."""
        deployment = await controller.submit(config.pod, WORKLOAD)

        first = await controller.delete()
        second = await controller.delete()

        assert first.outcome is DeleteOutcome.DELETED
        assert second.outcome is DeleteOutcome.ALREADY_GONE
        assert deployment.phase is Phase.DELETED
        assert len(stub_api.delete_calls) == 2

    @pytest.mark.asyncio
    async def test_delete_failure_is_returned(self, controller, config, stub_api):
        """Test API failures are reported in the result, never raised."""
        deployment = await controller.submit(config.pod, WORKLOAD)
        stub_api.delete_error = api_error(500, "Internal Server Error")

        result = await controller.delete()

        assert result.outcome is DeleteOutcome.FAILED
        assert not result.ok
        assert isinstance(result.error, DeleteError)
        assert result.error.context.pod == deployment.name
        assert deployment.phase is Phase.DELETED

    @pytest.mark.asyncio
    async def test_delete_bounded_by_grace(self, handle, make_config, settings, stub_api):
        """Test a hanging delete gives up after deleteGrace."""
        config = make_config(timeouts={"deleteGrace": 0.1})
        controller = PodLifecycleController(handle, config.timeouts, settings=settings)
        await controller.submit(config.pod, WORKLOAD)
        stub_api.delete_delay = 0.5

        loop = asyncio.get_running_loop()
        start = loop.time()
        result = await controller.delete()

        assert loop.time() - start < 0.4
        assert result.outcome is DeleteOutcome.FAILED
        assert isinstance(result.error.cause, TimeoutExpired)
