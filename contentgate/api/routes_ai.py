from typing import Any, AsyncIterator, Callable, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from contentgate.api.limit import rate_limit
from contentgate.core.config import get_settings, settings
from contentgate.utils.logging import log_error

router = APIRouter(prefix="/api/ai", tags=["ai"])

UPSTREAM_ERROR = "AI service error. Please try again."
UNEXPECTED_ERROR = "An unexpected error occurred. Please try again."

class ChatRequest(BaseModel):
    messages: Any = None
    temperature: Optional[float] = None
    model: Optional[str] = None

async def get_upstream_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=get_settings().UPSTREAM_TIMEOUT) as client:
        yield client

def require_api_key(provider: str) -> Callable[[], str]:
    def _key() -> str:
        key = getattr(get_settings(), f"{provider.upper()}_API_KEY")
        if not key:
            log_error("ai.not_configured", {"provider": provider})
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="AI service not configured")
        return key
    return _key

# one callable per provider so the key check is resolved once per request, before the quota
grok_key = require_api_key("grok")
perplexity_key = require_api_key("perplexity")

async def _complete(
    client: httpx.AsyncClient, provider: str, url: str, api_key: str, body: ChatRequest,
    default_model: str, default_temperature: float,
) -> dict:
    if not isinstance(body.messages, list):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Messages array is required")

    payload = {
        "model": body.model or default_model,
        "messages": body.messages,
        "temperature": default_temperature if body.temperature is None else body.temperature,
    }
    try:
        resp = await client.post(url, json=payload, headers={"Authorization": f"Bearer {api_key}"})
    except httpx.HTTPError as exc:
        log_error("ai.upstream_unreachable", {"provider": provider, "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=UNEXPECTED_ERROR)

    if resp.is_error:
        log_error("ai.upstream_error", {"provider": provider, "status": resp.status_code, "body": resp.text[:500]})
        raise HTTPException(status_code=resp.status_code, detail=UPSTREAM_ERROR)

    try:
        data = resp.json()
    except ValueError:
        log_error("ai.upstream_invalid_json", {"provider": provider})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=UPSTREAM_ERROR)
    return data if isinstance(data, dict) else {}

def _content(data: dict) -> str:
    try:
        return data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        return ""

@router.post(
    "/grok",
    summary="Proxy a chat completion to xAI Grok",
    dependencies=[Depends(grok_key), Depends(rate_limit("grok", settings.GROK_RATE_LIMIT, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
async def grok(
    body: ChatRequest,
    api_key: str = Depends(grok_key),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    data = await _complete(
        client, "grok", get_settings().GROK_API_URL, api_key, body,
        default_model="grok-4-1-fast-reasoning", default_temperature=0.7,
    )
    return {"success": True, "content": _content(data), "usage": data.get("usage")}

@router.post(
    "/perplexity",
    summary="Proxy a chat completion to Perplexity",
    dependencies=[Depends(perplexity_key), Depends(rate_limit("perplexity", settings.PERPLEXITY_RATE_LIMIT, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
async def perplexity(
    body: ChatRequest,
    api_key: str = Depends(perplexity_key),
    client: httpx.AsyncClient = Depends(get_upstream_client),
):
    data = await _complete(
        client, "perplexity", get_settings().PERPLEXITY_API_URL, api_key, body,
        default_model="sonar", default_temperature=0.2,
    )
    return {
        "success": True,
        "content": _content(data),
        "citations": data.get("citations") or [],
        "usage": data.get("usage"),
    }
