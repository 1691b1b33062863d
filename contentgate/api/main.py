from contextlib import asynccontextmanager

import uvicorn

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from contentgate.api.cors import OriginGuard, OriginGuardMiddleware
from contentgate.api.deps import get_rate_limiter, get_supabase_client
from contentgate.api.routes_ai import router as ai_router
from contentgate.core.config import get_settings
from contentgate.services.rate_limiter import MongoBackend
from contentgate.utils.logging import configure_logging, log_info, log_warn

@asynccontextmanager
async def lifespan(app: FastAPI):
    limiter = get_rate_limiter()
    if isinstance(limiter.durable, MongoBackend):
        try:
            await limiter.durable.ensure_indexes()
        except Exception as exc:
            log_warn("rate_limit.index_failed", {"error": str(exc)})
    log_info("app.started", {"rate_limit_store": type(limiter.durable).__name__ if limiter.durable else "memory"})
    yield
    client = get_supabase_client()
    if client is not None:
        await client.aclose()

def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(s.LOG_LEVEL)

    app = FastAPI(
        title="contentgate",
        version="1.0.0",
        description="Gated proxy endpoints for the content app: origin allowlist + per-caller rate limits.",
        lifespan=lifespan,
    )
    # allowlist is built once here and never changes afterwards
    app.state.origin_guard = OriginGuard(s.allowed_origins)
    app.add_middleware(OriginGuardMiddleware, guard=app.state.origin_guard)

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)

    app.include_router(ai_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    return app

app = create_app()

def run() -> None:
    s = get_settings()
    uvicorn.run(app, host=s.HOST, port=s.PORT, log_level=s.LOG_LEVEL.lower())
