import json

import httpx

from contentgate.api.limit import RATE_LIMIT_MESSAGE
from contentgate.api.routes_ai import UNEXPECTED_ERROR, UPSTREAM_ERROR
from contentgate.core.config import get_settings
from contentgate.models.rate_limit import RateLimitKey

MESSAGES = {"messages": [{"role": "user", "content": "Write a hook for a bakery reel"}]}

def _user(uid="abc"):
    return {"Authorization": f"Bearer user-{uid}"}

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

def test_grok_proxies_and_reports_quota(client, limiter, clock, upstream):
    state, _ = upstream
    r = client.post("/api/ai/grok", json=MESSAGES, headers=_user())
    assert r.status_code == 200
    body = r.json()
    assert body == {"success": True, "content": "grok says hi", "usage": {"total_tokens": 7}}
    assert r.headers["X-RateLimit-Remaining"] == "29"
    assert r.headers["X-RateLimit-Reset"] == str(int((clock.now + 60) * 1000))

    sent = state["requests"][0]
    assert sent.headers["authorization"] == "Bearer test-grok-key"
    payload = json.loads(sent.content)
    assert payload["model"] == "grok-4-1-fast-reasoning"
    assert payload["temperature"] == 0.7
    assert limiter.fallback.get(RateLimitKey(route="grok", caller_key="abc")).count == 1

def test_perplexity_returns_citations(client, upstream):
    state, _ = upstream
    r = client.post("/api/ai/perplexity", json={**MESSAGES, "temperature": 0.5}, headers=_user())
    assert r.status_code == 200
    body = r.json()
    assert body["content"] == "perplexity says hi"
    assert body["citations"] == ["https://example.com/source"]
    assert r.headers["X-RateLimit-Remaining"] == "19"
    payload = json.loads(state["requests"][0].content)
    assert payload["model"] == "sonar"
    assert payload["temperature"] == 0.5

def test_rate_limit_blocks_after_quota(client, upstream):
    state, _ = upstream
    ok = [client.post("/api/ai/grok", json=MESSAGES, headers=_user("rate")).status_code for _ in range(30)]
    blocked = client.post("/api/ai/grok", json=MESSAGES, headers=_user("rate"))

    assert ok == [200] * 30
    assert blocked.status_code == 429
    assert blocked.json() == {"error": RATE_LIMIT_MESSAGE, "retryAfter": 60}
    assert blocked.headers["Retry-After"] == "60"
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    # the denied call never reached the provider
    assert len(state["requests"]) == 30

    # another caller still has a full window
    other = client.post("/api/ai/grok", json=MESSAGES, headers=_user("someone-else"))
    assert other.status_code == 200

def test_rate_limit_window_resets(client, clock):
    for _ in range(31):
        client.post("/api/ai/grok", json=MESSAGES, headers=_user("reset"))
    clock.advance(60)
    r = client.post("/api/ai/grok", json=MESSAGES, headers=_user("reset"))
    assert r.status_code == 200
    assert r.headers["X-RateLimit-Remaining"] == "29"

def test_caller_key_falls_back_to_forwarded_ip_then_anon(client, limiter):
    client.post("/api/ai/grok", json=MESSAGES, headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
    client.post("/api/ai/grok", json=MESSAGES, headers={"X-Real-IP": "198.51.100.7"})
    client.post("/api/ai/grok", json=MESSAGES, headers={"Authorization": "Bearer not-a-user"})
    assert limiter.fallback.get(RateLimitKey(route="grok", caller_key="203.0.113.5")).count == 1
    assert limiter.fallback.get(RateLimitKey(route="grok", caller_key="198.51.100.7")).count == 1
    assert limiter.fallback.get(RateLimitKey(route="grok", caller_key="anon")).count == 1

def test_messages_are_required(client):
    r = client.post("/api/ai/grok", json={"messages": "hello"}, headers=_user())
    assert r.status_code == 400
    assert r.json() == {"error": "Messages array is required"}

def test_missing_provider_key(client, limiter, monkeypatch):
    monkeypatch.delenv("GROK_API_KEY")
    get_settings.cache_clear()
    r = client.post("/api/ai/grok", json=MESSAGES, headers=_user())
    assert r.status_code == 500
    assert r.json() == {"error": "AI service not configured"}
    # a misconfigured provider never touches the caller's quota
    assert limiter.fallback.get(RateLimitKey(route="grok", caller_key="abc")) is None

def test_empty_messages_list_is_forwarded(client, upstream):
    state, _ = upstream
    r = client.post("/api/ai/grok", json={"messages": []}, headers=_user())
    assert r.status_code == 200
    assert json.loads(state["requests"][0].content)["messages"] == []

def test_upstream_error_status_is_passed_through(client, upstream):
    state, _ = upstream
    state["handler"] = lambda request: httpx.Response(503, text="overloaded")
    r = client.post("/api/ai/grok", json=MESSAGES, headers=_user())
    assert r.status_code == 503
    assert r.json() == {"error": UPSTREAM_ERROR}

def test_upstream_unreachable(client, upstream):
    state, _ = upstream
    def _down(request):
        raise httpx.ConnectError("down", request=request)
    state["handler"] = _down
    r = client.post("/api/ai/perplexity", json=MESSAGES, headers=_user())
    assert r.status_code == 500
    assert r.json() == {"error": UNEXPECTED_ERROR}

def test_run_serves_app_with_uvicorn(monkeypatch):
    import contentgate.api.main as main_mod
    calls = {}
    monkeypatch.setattr(main_mod.uvicorn, "run", lambda app, **kw: calls.update(app=app, **kw))
    main_mod.run()
    assert calls["app"] is main_mod.app
    assert calls["host"] == get_settings().HOST
    assert calls["port"] == get_settings().PORT
