"""
Pytest configuration for the paywizard tests.

Backends are chosen by environment variable at import time, so they are
pinned here before any paywizard module is imported.
"""
import os

os.environ["RUNSTORE_BACKEND"] = "memory"
os.environ["GATEWAY_BACKEND"] = "mock"
os.environ["MOCK_STEP_DELAY"] = "0"
os.environ["SUBMIT_MIN_INTERVAL_MS"] = "60000"

import pytest  # noqa: E402

from paywizard.gateway import MockGateway  # noqa: E402
from paywizard.infra.ratelimit import RateLimiter  # noqa: E402
from paywizard.model.draft import Scenario  # noqa: E402
from paywizard.model.runs import RunData, SavedRun  # noqa: E402
from paywizard.model.runstore import MemoryRunStore  # noqa: E402
from paywizard.wizard import Wizard  # noqa: E402


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(min_interval=5000, clock=clock)


@pytest.fixture
def store() -> MemoryRunStore:
    return MemoryRunStore()


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(step_delay=0)


@pytest.fixture
def wizard(limiter, gateway, store) -> Wizard:
    w = Wizard(limiter=limiter, gateway=gateway, store=store)
    w.open()
    return w


APPLICATION = {
    "applicationName": "QA_APP",
    "applicationPassword": "secret",
    "secureCode": "123",
}

PAYMENT = {"amount": 25, "msisdn": "5551112233"}


def fill_to_ready(w: Wizard, *scenarios: Scenario, **extra) -> None:
    """Walk a fresh wizard through every visible step."""
    for s in scenarios:
        w.toggle(s)
    w.next()
    w.update({"env": "stb", "channelId": "CH01"})
    w.next()
    w.update({"application": APPLICATION})
    w.next()
    w.update({"payment": PAYMENT, **extra})
    w.next()
    if w.data.needs_candidate:
        w.update({"cancelRefund": {
            "selectedCandidate": {"paymentId": "pay_42"},
        }})
        w.next()


@pytest.fixture
def saved_run_factory():
    def create_run(
        run_key: str = "run_1",
        status: str = "completed",
        saved_at: str = "2026-10-19T10:00:00+00:00",
    ) -> SavedRun:
        return SavedRun(
            runKey=run_key,
            savedAt=saved_at,
            data=RunData(
                status=status,
                startTime="2026-10-19T09:59:59+00:00",
                endTime="2026-10-19T10:00:00+00:00",
            ),
        )

    return create_run


@pytest.fixture
def fill():
    return fill_to_ready
