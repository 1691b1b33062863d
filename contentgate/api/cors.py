from typing import Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from contentgate.models.rate_limit import CorsDecision

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOW_HEADERS = ", ".join([
    "X-CSRF-Token",
    "X-Requested-With",
    "Accept",
    "Accept-Version",
    "Content-Length",
    "Content-MD5",
    "Content-Type",
    "Date",
    "X-Api-Version",
    "Authorization",
])
MAX_AGE_SECONDS = 86400

STANDARD_HEADERS = {
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Allow-Methods": ALLOW_METHODS,
    "Access-Control-Allow-Headers": ALLOW_HEADERS,
    "Access-Control-Max-Age": str(MAX_AGE_SECONDS),
}

class OriginGuard:
    def __init__(self, allowed_origins: Iterable[Optional[str]] = ()) -> None:
        self.allowed_origins: frozenset[str] = frozenset(
            o.strip() for o in allowed_origins if o and o.strip()
        )

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        # no Origin: same-origin, server-to-server or a non-browser client
        if not origin:
            return True
        return origin in self.allowed_origins

    def is_request_allowed(self, request: Request) -> bool:
        return self.is_origin_allowed(request.headers.get("origin"))

    def evaluate_origin(self, origin: Optional[str]) -> CorsDecision:
        headers = dict(STANDARD_HEADERS)
        if origin and origin in self.allowed_origins:
            # credentials are allowed, so echo the exact origin, never "*"
            headers["Access-Control-Allow-Origin"] = origin
        # unknown origins get no allow-origin; the browser blocks the read, status and body stay as-is
        return CorsDecision(origin_is_allowed=self.is_origin_allowed(origin), headers_to_set=headers)

    def apply_standard_headers(self, response: Response) -> None:
        for name, value in STANDARD_HEADERS.items():
            response.headers[name] = value

    def set_cors_headers(self, request: Request, response: Response) -> CorsDecision:
        decision = self.evaluate_origin(request.headers.get("origin"))
        for name, value in decision.headers_to_set.items():
            response.headers[name] = value
        if "Access-Control-Allow-Origin" in decision.headers_to_set:
            response.headers["Vary"] = "Origin"
        return decision

    def handle_preflight(self, request: Request, response: Response) -> bool:
        if request.method != "OPTIONS":
            return False
        self.set_cors_headers(request, response)
        response.status_code = 200
        response.body = b""
        response.headers["Content-Length"] = "0"
        return True

class OriginGuardMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, guard: OriginGuard) -> None:
        super().__init__(app)
        self.guard = guard

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        preflight = Response()
        if self.guard.handle_preflight(request, preflight):
            return preflight
        response = await call_next(request)
        self.guard.set_cors_headers(request, response)
        return response
