from __future__ import annotations

import pytest

from dashsync.core.config import get_settings
from dashsync.providers.backend.memory import InMemoryBackend
from dashsync.services.sync_context import SyncContext
from dashsync.services.telemetry import reset_telemetry
from dashsync.tests.utils.fakes import FakeClock, fast_policy


@pytest.fixture(autouse=True)
def isolate_process_state():
    # Settings and telemetry are process-wide; keep them from leaking across tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(
        {
            "entries": [
                {"id": 1, "title": "Morning run", "user_id": 7},
                {"id": 2, "title": "Reading", "user_id": 7},
                {"id": 3, "title": "Guitar", "user_id": 8},
            ],
            "categories": [
                {"id": 1, "name": "Health"},
                {"id": 2, "name": "Learning"},
            ],
        },
        unique={"categories": ["name"]},
    )


@pytest.fixture
async def context(backend: InMemoryBackend, clock: FakeClock):
    ctx = SyncContext(
        backend,
        fetch_policy=fast_policy(),
        mutation_policy=fast_policy(max_attempts=2),
        realtime_policy=fast_policy(max_attempts=3, timeout_ms=None),
        time_source=clock,
    )
    yield ctx
    await ctx.aclose()
