"""
Shared pytest fixtures and configuration for podlink tests.

This module provides:
- Fast process settings (no real backoff, short drain grace)
- A validated session config pointing at an in-memory cluster
- ``StubPodApi`` and a ``ConnectionManager`` wired to it
- Helpers to drive a Pod to RUNNING

Usage:
    Fixtures are auto-discovered by pytest.

    @pytest.mark.asyncio
    async def test_something(config, stub_api, manager, settings):
        session = SessionCoordinator(config, connection_manager=manager, settings=settings)
        ...
"""

import sys
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Ensure podlink package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from podlink.config import Config, PodlinkSettings, get_settings, parse_config
from podlink.kube import ConnectionManager, Phase, PodLifecycleController
from podlink.kube.stub import StubPodApi


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        # Mark all tests without explicit markers as unit tests
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Every test sees the environment as it is now."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> PodlinkSettings:
    """Settings tuned for fast tests."""
    return PodlinkSettings(
        connect_attempts=3,
        connect_backoff_seconds=0,
        watch_reconnect_attempts=3,
        watch_backoff_seconds=0.01,
        drain_grace_seconds=0.5,
        read_poll_seconds=0.02,
    )


# =============================================================================
# Session config
# =============================================================================


def config_document(**overrides: Any) -> dict[str, Any]:
    """A minimal valid session document; top-level sections can be replaced."""
    document: dict[str, Any] = {
        "connection": {
            "host": "cluster.local:6443",
            "bearerToken": "t0ken",
            "qps": 20,
            "burst": 20,
        },
        "pod": {
            "metadata": {"namespace": "default", "generateName": "podlink-test-"},
            "spec": {"pluginContainer": {"name": "main"}},
        },
        "timeouts": {"http": 2, "startup": 5, "deleteGrace": 1},
    }
    document.update(overrides)
    return document


@pytest.fixture
def make_document():
    """Factory for raw session documents, as written to a file."""
    return config_document


@pytest.fixture
def make_config():
    """Factory: ``make_config(timeouts={...})`` returns a validated Config."""

    def _make(**overrides: Any) -> Config:
        return parse_config(config_document(**overrides))

    return _make


@pytest.fixture
def config(make_config) -> Config:
    return make_config()


# =============================================================================
# In-memory cluster
# =============================================================================


@pytest.fixture
def stub_api() -> StubPodApi:
    return StubPodApi()


@pytest.fixture
def manager(stub_api, settings) -> ConnectionManager:
    return ConnectionManager(api_factory=stub_api.factory, settings=settings)


@pytest_asyncio.fixture
async def handle(manager, config):
    """A connected client handle, closed after the test."""
    client_handle = await manager.connect(config.connection, config.timeouts)
    yield client_handle
    client_handle.close()


@pytest.fixture
def controller(handle, config, settings) -> PodLifecycleController:
    return PodLifecycleController(handle, config.timeouts, settings=settings)


@pytest.fixture
def watch_until():
    """Consume a controller's watch until a phase; returns the still open watch."""

    async def _watch_until(controller: PodLifecycleController, phase: Phase):
        watch = controller.watch()
        async for transition in watch:
            if transition.phase is phase:
                return watch
        raise AssertionError(f"watch ended in {controller.deployment.phase.value}, expected {phase.value}")

    return _watch_until
