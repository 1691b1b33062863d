import math
from typing import Dict, Union

from pydantic import BaseModel, ConfigDict, Field

# count <= inf is always true, so an unmetered tier passes this as max_requests
UNLIMITED = math.inf

Quota = Union[int, float]

class RateLimitKey(BaseModel):
    route: str
    caller_key: str

    model_config = ConfigDict(frozen=True)

    @property
    def composite(self) -> str:
        return f"{self.route}:{self.caller_key or 'anon'}"

class RateLimitCounter(BaseModel):
    # quotas come from callers as-is; a zero quota just denies everything
    count: int = 0
    reset_at: float
    window_seconds: int
    max_requests: Quota

    @property
    def window_start(self) -> float:
        return self.reset_at - self.window_seconds

class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: Quota = Field(ge=0)
    reset_at: float  # epoch seconds

    @classmethod
    def from_count(cls, count: int, max_requests: Quota, reset_at: float) -> "RateLimitDecision":
        return cls(
            allowed=count <= max_requests,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
        )

    @property
    def reset_at_ms(self) -> int:
        return int(self.reset_at * 1000)

    @property
    def unlimited(self) -> bool:
        return math.isinf(self.remaining)

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))

class CorsDecision(BaseModel):
    origin_is_allowed: bool
    headers_to_set: Dict[str, str] = {}
