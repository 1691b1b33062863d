# tests/conftest.py
import httpx
import pytest
from fastapi.testclient import TestClient

from contentgate.api.main import app
from contentgate.api.deps import get_auth_verifier, get_rate_limiter
from contentgate.api.routes_ai import get_upstream_client
from contentgate.core.config import get_settings
from contentgate.services.rate_limiter import InMemoryBackend, RateLimiter

from tests.fakes import FakeClock, FakeVerifier, upstream_handler

@pytest.fixture()
def clock():
    return FakeClock()

@pytest.fixture()
def limiter(clock):
    return RateLimiter(fallback=InMemoryBackend(clock), clock=clock)

@pytest.fixture()
def upstream():
    # swap state["handler"] to change what the AI providers answer
    state = {"handler": upstream_handler, "requests": []}
    def _route(request):
        state["requests"].append(request)
        return state["handler"](request)
    return state, httpx.MockTransport(_route)

@pytest.fixture()
def client(monkeypatch, limiter, upstream):
    monkeypatch.setenv("GROK_API_KEY", "test-grok-key")
    monkeypatch.setenv("PERPLEXITY_API_KEY", "test-pplx-key")
    get_settings.cache_clear()

    _, transport = upstream

    async def _fake_upstream():
        async with httpx.AsyncClient(transport=transport) as c:
            yield c

    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_auth_verifier] = lambda: FakeVerifier()
    app.dependency_overrides[get_upstream_client] = _fake_upstream

    yield TestClient(app)

    app.dependency_overrides.clear()
    get_settings.cache_clear()
