"""Tests for the connection manager and client handle."""

import asyncio
import ssl

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, NewConnectionError, ProtocolError
from urllib3.exceptions import SSLError as Urllib3SSLError

from podlink.core.errors import ClusterConnectionError, ConnectionErrorKind
from podlink.execution.timeout import TimeoutExpired
from podlink.kube import ConnectionManager, classify_connection_error
from podlink.kube.stub import StubPodApi, api_error


class TestClassifyConnectionError:
    """Connection failures map onto AUTH, TLS or UNREACHABLE."""

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejected_credentials(self, status):
        """Test 401/403 are AUTH and carry the status."""
        error = classify_connection_error(api_error(status, "Unauthorized"), host="cluster.local")
        assert error.kind is ConnectionErrorKind.AUTH
        assert error.retryable is False
        assert error.context.http_status == status
        assert error.context.metadata == {"host": "cluster.local"}

    def test_ssl_error(self):
        """Test certificate failures are TLS."""
        error = classify_connection_error(ssl.SSLError("CERTIFICATE_VERIFY_FAILED"))
        assert error.kind is ConnectionErrorKind.TLS
        assert error.retryable is False

    def test_ssl_error_wrapped_by_urllib3(self):
        """Test TLS failures are found behind urllib3's retry wrapper."""
        wrapped = MaxRetryError(None, "/api", reason=Urllib3SSLError("certificate verify failed"))
        assert classify_connection_error(wrapped).kind is ConnectionErrorKind.TLS

    def test_ssl_error_in_cause_chain(self):
        """Test a TLS error raised as the cause of another error."""
        try:
            try:
                raise ssl.SSLCertVerificationError("hostname mismatch")
            except ssl.SSLError as exc:
                raise RuntimeError("request failed") from exc
        except RuntimeError as outer:
            error = classify_connection_error(outer)
        assert error.kind is ConnectionErrorKind.TLS

    @pytest.mark.parametrize(
        "exc",
        [
            ConnectionRefusedError(111, "Connection refused"),
            ProtocolError("Connection aborted"),
            MaxRetryError(None, "/api", reason=NewConnectionError(None, "Name or service not known")),
            TimeoutError("timed out"),
        ],
    )
    def test_transport_failures_are_unreachable(self, exc):
        """Test network-level failures are UNREACHABLE and retryable."""
        error = classify_connection_error(exc)
        assert error.kind is ConnectionErrorKind.UNREACHABLE
        assert error.retryable is True
        assert error.cause is exc

    def test_server_error_is_unreachable(self):
        """Test 5xx from the probe is treated as transient."""
        error = classify_connection_error(api_error(503, "Service Unavailable"))
        assert error.kind is ConnectionErrorKind.UNREACHABLE
        assert error.context.http_status == 503


class TestConnectionManager:
    """Tests for ConnectionManager.connect."""

    @pytest.mark.asyncio
    async def test_connect(self, stub_api, manager, config):
        """Test a successful connect probes once and keeps the throttle settings."""
        handle = await manager.connect(config.connection, config.timeouts)

        assert stub_api.probe_calls == 1
        assert stub_api.connections == [config.connection]
        assert handle.api is stub_api
        assert handle.limiter.rate == config.connection.qps
        assert handle.limiter.capacity == config.connection.burst
        assert handle.host == "cluster.local:6443"
        handle.close()

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, stub_api, manager, config):
        """Test UNREACHABLE probes are retried within the budget."""
        stub_api.probe_errors = [ConnectionRefusedError(), ProtocolError("reset")]

        handle = await manager.connect(config.connection, config.timeouts)

        assert stub_api.probe_calls == 3
        # Each failed attempt released its handle
        assert stub_api.close_calls == 2
        handle.close()

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, stub_api, manager, config):
        """Test the last UNREACHABLE error surfaces after connect_attempts."""
        stub_api.probe_errors = [ConnectionRefusedError() for _ in range(5)]

        with pytest.raises(ClusterConnectionError) as exc_info:
            await manager.connect(config.connection, config.timeouts)

        assert exc_info.value.kind is ConnectionErrorKind.UNREACHABLE
        assert stub_api.probe_calls == 3
        assert stub_api.close_calls == 3
        metadata = exc_info.value.context.metadata
        assert metadata["attempts"] == 3
        assert len(metadata["errors"]) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (api_error(401, "Unauthorized"), ConnectionErrorKind.AUTH),
            (ssl.SSLError("CERTIFICATE_VERIFY_FAILED"), ConnectionErrorKind.TLS),
        ],
    )
    async def test_fatal_errors_not_retried(self, stub_api, manager, config, exc, kind):
        """Test AUTH and TLS fail on the first attempt."""
        stub_api.probe_errors = [exc, exc, exc]

        with pytest.raises(ClusterConnectionError) as exc_info:
            await manager.connect(config.connection, config.timeouts)

        assert exc_info.value.kind is kind
        assert stub_api.probe_calls == 1

    @pytest.mark.asyncio
    async def test_factory_failure_is_classified(self, settings, config):
        """Test errors building the client are classified too."""

        def broken_factory(connection, timeouts):
            raise ssl.SSLError("bad CA bundle")

        manager = ConnectionManager(api_factory=broken_factory, settings=settings)
        with pytest.raises(ClusterConnectionError) as exc_info:
            await manager.connect(config.connection, config.timeouts)
        assert exc_info.value.kind is ConnectionErrorKind.TLS

    @pytest.mark.asyncio
    async def test_cancelled_connect_closes_handle(self, settings, config):
        """Test a connect interrupted mid-probe does not leak the client."""
        stub_api = StubPodApi(probe_delay=0.3)
        manager = ConnectionManager(api_factory=stub_api.factory, settings=settings)

        task = asyncio.create_task(manager.connect(config.connection, config.timeouts))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert stub_api.close_calls == 1


class TestClientHandle:
    """Tests for ClientHandle."""

    @pytest.mark.asyncio
    async def test_calls_consume_tokens(self, handle, stub_api):
        """Test every control-plane call goes through the limiter."""
        granted = handle.limiter.granted
        with pytest.raises(ApiException):
            await handle.read_pod("default", "missing")
        assert handle.limiter.granted == granted + 1
        assert stub_api.read_calls == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, handle, stub_api):
        """Test close releases the client once."""
        handle.close()
        handle.close()
        assert handle.closed
        assert stub_api.close_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.slow
    @pytest.mark.timeout(10)
    async def test_aggregate_rate_is_bounded(self, settings, make_config):
        """Test qps=1, burst=1: after the probe, each call waits a full second."""
        config = make_config(connection={"host": "cluster.local", "qps": 1, "burst": 1})
        stub_api = StubPodApi()
        manager = ConnectionManager(api_factory=stub_api.factory, settings=settings)
        handle = await manager.connect(config.connection, config.timeouts)  # probe takes the only token

        loop = asyncio.get_running_loop()
        start = loop.time()
        for _ in range(3):
            with pytest.raises(ApiException):
                await handle.read_pod("default", "missing")
        elapsed = loop.time() - start
        handle.close()

        assert stub_api.read_calls == 3
        assert 2.5 <= elapsed < 4.0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_attach_bounded_by_http_timeout(self, settings, make_config):
        """Test a slow attach handshake gives up after timeouts.http and the late stream is closed."""
        config = make_config(timeouts={"http": 0.2, "startup": 5, "deleteGrace": 1})
        stub_api = StubPodApi()
        manager = ConnectionManager(api_factory=stub_api.factory, settings=settings)
        handle = await manager.connect(config.connection, config.timeouts)
        assert handle.http_timeout == 0.2
        body = {"metadata": {"name": "runner-a"}, "spec": {"containers": [{"name": "main", "image": "busybox"}]}}
        await handle.create_pod("default", body)
        stub_api.attach_delay = 1.0

        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(TimeoutExpired) as exc_info:
            await handle.attach("default", "runner-a", "main")

        assert loop.time() - start < 0.9
        assert exc_info.value.operation == "pod attach"

        # The handshake completes in the background; its stream must not leak
        for _ in range(100):
            if stub_api.streams and stub_api.streams[0].closed:
                break
            await asyncio.sleep(0.05)
        assert len(stub_api.streams) == 1
        assert stub_api.streams[0].closed
        handle.close()
