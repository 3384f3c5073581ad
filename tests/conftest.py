"""
Pytest configuration and fixtures for the HarperDB client tests.

Provides:
- An in-memory transport that records requests and replays scripted responses
- A manual clock for cache expiry tests
- Config, executor and client fixtures that never touch the network
"""

from collections import deque
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from vertector_harperdb.client import HarperDB
from vertector_harperdb.config import CacheConfig, HarperDBConfig, RetryConfig
from vertector_harperdb.executor import RequestExecutor
from vertector_harperdb.retry import RetryPolicy
from vertector_harperdb.transport import TransportResponse

# Load environment variables for integration tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a running HarperDB)"
    )


# ============================================================================
# Test Doubles
# ============================================================================

class FakeTransport:
    """
    Transport double.

    Each send() records the request body, then answers with the next queued
    item (an exception is raised, anything else becomes the response body).
    A handler, when set, answers instead of the queue.
    """

    def __init__(self, default: Any = None):
        self.calls: list[dict[str, Any]] = []
        self.timeouts: list[float | None] = []
        self.responses: deque = deque()
        self.handler: Callable[[dict[str, Any]], Any] | None = None
        self.default = [] if default is None else default
        self.closed = False

    def queue(self, *items: Any) -> "FakeTransport":
        self.responses.extend(items)
        return self

    @property
    def operations(self) -> list[str]:
        return [call["operation"] for call in self.calls]

    async def send(self, method, path, body, timeout):
        self.calls.append(dict(body))
        self.timeouts.append(timeout)
        if self.handler is not None:
            item = self.handler(dict(body))
        elif self.responses:
            item = self.responses.popleft()
        else:
            item = self.default
        if isinstance(item, BaseException):
            raise item
        return TransportResponse(status=200, body=item)

    async def aclose(self):
        self.closed = True


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def config():
    """Client config with caching disabled."""
    return HarperDBConfig(
        url="http://localhost:9925",
        username="HDB_ADMIN",
        password="password",
        schema="dev",
        retry=RetryConfig(max_retries=2, retry_delay=0.5),
    )


@pytest.fixture
def cached_config():
    """Client config with caching enabled."""
    return HarperDBConfig(
        url="http://localhost:9925",
        username="HDB_ADMIN",
        password="password",
        schema="dev",
        retry=RetryConfig(max_retries=2, retry_delay=0.5),
        cache=CacheConfig(enabled=True, ttl=5.0, max_size=100),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fast_sleep():
    """Sleep replacement that records requested delays without waiting."""
    return AsyncMock()


def _executor(config, transport, fast_sleep):
    retry = RetryPolicy.from_config(config.retry, sleep=fast_sleep)
    return RequestExecutor(config, transport, retry=retry)


@pytest_asyncio.fixture
async def executor(config, transport, fast_sleep):
    executor = _executor(config, transport, fast_sleep)
    yield executor
    await executor.aclose()


@pytest_asyncio.fixture
async def cached_executor(cached_config, transport, fast_sleep):
    executor = _executor(cached_config, transport, fast_sleep)
    yield executor
    await executor.aclose()


@pytest_asyncio.fixture
async def db(config, executor):
    """Client without caching over the fake transport."""
    return HarperDB(config, executor=executor)


@pytest_asyncio.fixture
async def cached_db(cached_config, cached_executor):
    """Client with caching enabled over the fake transport."""
    return HarperDB(cached_config, executor=cached_executor)
