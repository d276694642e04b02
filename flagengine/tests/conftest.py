"""
Shared pytest fixtures for flag engine tests.

This module provides common fixtures for:
- Settings with a known feature document
- In-memory and failing storage backends
- Feature flag service instances (cleaned up after each test)
- httpx clients backed by a mock remote flag endpoint
- FastAPI test client running the app lifespan
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from flagengine.config import Settings, get_settings
from flagengine.features import FeatureFlagService, FlagStore, MemoryStorage, create_feature_service

REMOTE_BASE_URL = "http://flags.test"


# ============================================================================
# Settings Fixtures
# ============================================================================

def build_settings(**overrides) -> Settings:
    """Settings mirroring a typical mobile app config document."""
    values = dict(
        environment="development",
        features={"biometricAuth": True, "socialLogin": False},
        experimental={"venueRecommendations": False, "arFeatures": True},
        api_base_url=REMOTE_BASE_URL,
        api_version="v1",
    )
    values.update(overrides)
    return get_settings(**values)


@pytest.fixture
def test_settings() -> Settings:
    return build_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return build_settings


# ============================================================================
# Storage Fixtures
# ============================================================================

class BrokenStorage:
    """Storage whose every operation fails."""

    def __init__(self):
        self.calls: List[str] = []

    async def get(self, key: str) -> Optional[str]:
        self.calls.append("get")
        raise OSError("disk unavailable")

    async def set(self, key: str, value: str) -> None:
        self.calls.append("set")
        raise OSError("disk full")

    async def remove(self, key: str) -> None:
        self.calls.append("remove")
        raise OSError("read-only filesystem")


class CountingStorage(MemoryStorage):
    """MemoryStorage that counts reads."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        super().__init__(initial)
        self.reads = 0

    async def get(self, key: str) -> Optional[str]:
        self.reads += 1
        return await super().get(key)


@pytest.fixture
def storage() -> CountingStorage:
    return CountingStorage()


@pytest.fixture
def broken_storage() -> BrokenStorage:
    return BrokenStorage()


def persisted_document(flags: Dict[str, bool], last_updated: str = "2024-03-01T12:00:00+00:00") -> str:
    """Serialized local flag document as written by save_local_flags."""
    return json.dumps(
        {
            name: {"enabled": enabled, "source": "manual", "lastUpdated": last_updated}
            for name, enabled in flags.items()
        }
    )


@pytest.fixture
def persisted() -> Callable[..., str]:
    """Builder for serialized local flag documents."""
    return persisted_document


# ============================================================================
# Remote Endpoint Fixtures
# ============================================================================

class RemoteEndpoint:
    """
    Mock remote flag endpoint for httpx.MockTransport.

    Set status_code / payload / body / error before the request is made;
    every received request is recorded.
    """

    def __init__(self):
        self.status_code = 200
        self.payload: Any = {}
        self.body: Optional[bytes] = None
        self.error: Optional[Exception] = None
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.body is not None:
            return httpx.Response(self.status_code, content=self.body, request=request)
        return httpx.Response(self.status_code, json=self.payload, request=request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def remote() -> RemoteEndpoint:
    return RemoteEndpoint()


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def make_service(storage):
    """
    Factory for FeatureFlagService instances.

    Every service created is cleaned up after the test so no revert or
    refresh job leaks between cases.
    """
    services: List[FeatureFlagService] = []

    def _make(
        http_client: Optional[httpx.AsyncClient] = None,
        storage_backend=None,
        **setting_overrides,
    ) -> FeatureFlagService:
        service = create_feature_service(
            build_settings(**setting_overrides),
            storage_backend if storage_backend is not None else storage,
            http_client=http_client,
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        service.cleanup()


@pytest.fixture
def service(make_service) -> FeatureFlagService:
    return make_service()


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def store(clock) -> FlagStore:
    return FlagStore(clock=clock)


@pytest.fixture
def wait_until() -> Callable:
    """Poll a condition on the running event loop until it holds or times out."""

    async def _wait(condition: Callable[[], bool], timeout: float = 3.0, interval: float = 0.02) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if condition():
                return True
            await asyncio.sleep(interval)
        return condition()

    return _wait


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def app(storage):
    """Application wired to in-memory storage and the test settings."""
    from flagengine.main import create_app

    return create_app(settings=build_settings(), storage=storage)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client; entering it runs the lifespan, which initializes the engine."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
