from fastapi import Depends, HTTPException, Response, status

from contentgate.api.deps import get_caller_key, get_rate_limiter
from contentgate.models.rate_limit import Quota, RateLimitDecision
from contentgate.services.rate_limiter import DEFAULT_WINDOW_SECONDS, RateLimiter

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait before making more requests."

def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    remaining = "unlimited" if decision.unlimited else str(int(decision.remaining))
    return {
        "X-RateLimit-Remaining": remaining,
        "X-RateLimit-Reset": str(decision.reset_at_ms),
    }

def rate_limit(route: str, max_requests: Quota, window_seconds: int = DEFAULT_WINDOW_SECONDS):
    """Dependency factory: one quota per (route, caller) for every request that hits it."""

    async def _check(
        response: Response,
        caller_key: str = Depends(get_caller_key),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        decision = await limiter.check_and_consume(caller_key, route, max_requests, window_seconds)
        headers = rate_limit_headers(decision)
        response.headers.update(headers)
        if not decision.allowed:
            retry_after = decision.retry_after(limiter.clock())
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": RATE_LIMIT_MESSAGE, "retryAfter": retry_after},
                headers={**headers, "Retry-After": str(retry_after)},
            )
        return decision

    return _check
