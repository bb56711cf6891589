import sys
from itertools import count
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

# Allow `import linkstash` without installing the package.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))


@pytest.fixture
def network_calls():
    return []


@pytest.fixture(autouse=True)
def _offline(monkeypatch, network_calls):
    """Tests must never reach real title/favicon sources.

    Any request through the real transport fails like an unreachable host
    and is recorded in network_calls. Tests that need responses pass an
    httpx.MockTransport client instead.
    """

    async def _unreachable(self, request):
        network_calls.append(str(request.url))
        raise httpx.ConnectError("network disabled in tests", request=request)

    monkeypatch.setattr(httpx.AsyncHTTPTransport, "handle_async_request", _unreachable)


@pytest.fixture
def clock():
    """Deterministic store clock: one second later on every call."""
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ticks = count()
    return lambda: start + timedelta(seconds=next(ticks))
