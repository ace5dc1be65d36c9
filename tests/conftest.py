"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from crmhooks.logging import clear_context
from crmhooks.models import WebhookSubscription
from crmhooks.storage import InMemoryWebhookStore

# Add tests directory to path so conftest helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))


class FakeClock:
    """Controllable time source for the in-memory store.

    Starts one second ahead of real time so rows created during a test
    (stamped with the real clock) are already due.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC) + timedelta(seconds=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        self.now += timedelta(seconds=seconds)


class RecordingEndpoint:
    """httpx handler that records requests and replies from a script.

    Each entry in ``responses`` is either an int status code, an
    ``httpx.Response`` or an exception instance to raise. The last entry
    repeats once the script is exhausted.
    """

    def __init__(self, *responses: int | httpx.Response | Exception) -> None:
        self.responses = list(responses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        reply = self.responses[index]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return httpx.Response(reply.status_code, headers=reply.headers, content=reply.content)
        return httpx.Response(reply, text="ok" if reply < 300 else "error")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def body(self, index: int = -1) -> bytes:
        """Raw bytes of a recorded request body."""
        return self.requests[index].content

    def json(self, index: int = -1) -> object:
        return json.loads(self.requests[index].content)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting now."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryWebhookStore:
    """Create an in-memory store driven by the fake clock."""
    return InMemoryWebhookStore(
        retry_max_delay_seconds=3600,
        failure_auto_disable_threshold=10,
        clock=clock,
    )


@pytest.fixture
def make_subscription() -> Callable[..., WebhookSubscription]:
    """Factory for subscriptions with test-friendly defaults."""

    def _make(**overrides: object) -> WebhookSubscription:
        values: dict[str, object] = {
            "tenant_id": "tnt_1",
            "url": "https://hooks.example.com/crm",
            "secret": "whsec_test_secret",
            "events": ["deal.created", "deal.updated", "deal.won"],
            "max_retries": 3,
            "retry_delay_seconds": 60,
        }
        values.update(overrides)
        return WebhookSubscription(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def subscription(make_subscription: Callable[..., WebhookSubscription]) -> WebhookSubscription:
    """Create a default deal subscription."""
    return make_subscription(id="whk_test123")


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    """Undo handler and level changes made by configure_logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    clear_context()
