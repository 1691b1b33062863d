import asyncio
import math
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pymongo import ReturnDocument

from contentgate.core.config import Settings
from contentgate.db.supabase import SupabaseClient, SupabaseError
from contentgate.models.rate_limit import (
    Quota,
    RateLimitCounter,
    RateLimitDecision,
    RateLimitKey,
)
from contentgate.utils.logging import log_warn

DEFAULT_WINDOW_SECONDS = 60
PG_INT_MAX = 2**31 - 1

class RateLimitStoreError(Exception):
    """The durable store failed or returned nothing usable."""

class RateLimitBackend(ABC):
    @abstractmethod
    async def increment(
        self, key: RateLimitKey, max_requests: Quota, window_seconds: int
    ) -> RateLimitDecision:
        """Count one request against ``key`` and return the resulting decision."""

class InMemoryBackend(RateLimitBackend):
    """Process-local windows. One lock guards the whole map; entries are never purged."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, RateLimitCounter] = {}

    def consume(self, key: RateLimitKey, max_requests: Quota, window_seconds: int) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            counter = self._counters.get(key.composite)
            if counter is None:
                counter = RateLimitCounter(
                    count=0,
                    reset_at=now + window_seconds,
                    window_seconds=window_seconds,
                    max_requests=max_requests,
                )
            if now >= counter.reset_at:
                counter.count = 0
                counter.reset_at = now + window_seconds
            counter.count += 1
            counter.window_seconds = window_seconds
            counter.max_requests = max_requests
            self._counters[key.composite] = counter
            return RateLimitDecision.from_count(counter.count, max_requests, counter.reset_at)

    async def increment(
        self, key: RateLimitKey, max_requests: Quota, window_seconds: int
    ) -> RateLimitDecision:
        return self.consume(key, max_requests, window_seconds)

    def get(self, key: RateLimitKey) -> Optional[RateLimitCounter]:
        with self._lock:
            return self._counters.get(key.composite)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)

class MongoBackend(RateLimitBackend):
    """One document per key, reset-or-increment evaluated server-side in a single update."""

    def __init__(self, collection: Any, clock: Callable[[], float] = time.time) -> None:
        self.collection = collection
        self._clock = clock

    @staticmethod
    def _pipeline(now: datetime, window_seconds: int, max_requests: Quota) -> list[dict]:
        expired = {"$gte": [now, {"$ifNull": ["$reset_at", now]}]}
        return [
            {"$set": {"_expired": expired}},
            {
                "$set": {
                    "count": {"$cond": ["$_expired", 1, {"$add": [{"$ifNull": ["$count", 0]}, 1]}]},
                    "reset_at": {"$cond": ["$_expired", now + timedelta(seconds=window_seconds), "$reset_at"]},
                    "window_seconds": window_seconds,
                    "max_requests": max_requests,
                }
            },
            {"$unset": "_expired"},
        ]

    async def increment(
        self, key: RateLimitKey, max_requests: Quota, window_seconds: int
    ) -> RateLimitDecision:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        doc = await self.collection.find_one_and_update(
            {"_id": key.composite},
            self._pipeline(now, window_seconds, max_requests),
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if not doc or not isinstance(doc.get("count"), int) or not isinstance(doc.get("reset_at"), datetime):
            raise RateLimitStoreError(f"malformed counter document for {key.composite}")
        reset_at = doc["reset_at"]
        if reset_at.tzinfo is None:
            reset_at = reset_at.replace(tzinfo=timezone.utc)
        return RateLimitDecision.from_count(doc["count"], max_requests, reset_at.timestamp())

    async def ensure_indexes(self, grace_seconds: int = 3600) -> None:
        # windows past their reset are dead weight; let mongo drop them
        await self.collection.create_index("reset_at", expireAfterSeconds=grace_seconds)

class SupabaseRpcBackend(RateLimitBackend):
    """Delegates the atomic increment to the ``increment_api_rate_limit`` stored procedure."""

    function = "increment_api_rate_limit"

    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    async def increment(
        self, key: RateLimitKey, max_requests: Quota, window_seconds: int
    ) -> RateLimitDecision:
        cap = max_requests if math.isfinite(max_requests) else PG_INT_MAX
        try:
            data = await self.client.rpc(
                self.function,
                {
                    "p_user_key": key.caller_key,
                    "p_route": key.route,
                    "p_window_seconds": window_seconds,
                    "p_max_requests": int(cap),
                },
            )
        except SupabaseError as exc:
            raise RateLimitStoreError(str(exc)) from exc

        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise RateLimitStoreError("rate limit rpc returned no rows")
        row = data[0]
        try:
            reset_at = _parse_timestamp(row["reset_at"])
            remaining = max(0, int(row.get("remaining") or 0))
        except (KeyError, TypeError, ValueError) as exc:
            raise RateLimitStoreError(f"malformed rate limit row: {exc}") from exc
        if not math.isfinite(max_requests):
            remaining = max_requests
        return RateLimitDecision(allowed=bool(row.get("allowed")), remaining=remaining, reset_at=reset_at)

def _parse_timestamp(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # PostgREST may hand back epoch millis
        return value / 1000 if value > 1e11 else float(value)
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()

class RateLimiter:
    """Durable backend first, in-memory fallback second. Never raises."""

    def __init__(
        self,
        durable: Optional[RateLimitBackend] = None,
        fallback: Optional[InMemoryBackend] = None,
        timeout: float = 3.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.fallback = fallback or InMemoryBackend(clock)
        self.timeout = timeout
        self.clock = clock

    async def check_and_consume(
        self,
        caller_key: str,
        route: str,
        max_requests: Quota,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitDecision:
        key = RateLimitKey(route=route or "", caller_key=caller_key or "anon")
        if not caller_key or not route or self.durable is None:
            return self.fallback.consume(key, max_requests, window_seconds)

        meta = {"route": route, "caller_key": caller_key}
        try:
            return await asyncio.wait_for(
                self.durable.increment(key, max_requests, window_seconds),
                timeout=self.timeout,
            )
        except RateLimitStoreError as exc:
            log_warn("rate_limit.rpc_failed", {**meta, "error": str(exc)})
        except asyncio.TimeoutError:
            log_warn("rate_limit.store_timeout", {**meta, "error": f"no response within {self.timeout}s"})
        except Exception as exc:
            log_warn("rate_limit.unexpected_error", {**meta, "error": str(exc) or type(exc).__name__})
        return self.fallback.consume(key, max_requests, window_seconds)

def build_rate_limiter(settings: Settings, supabase: Optional[SupabaseClient] = None) -> RateLimiter:
    """Pick the durable backend from settings; ``memory`` (or nothing configured) means fallback only."""
    store = settings.RATE_LIMIT_STORE
    durable: Optional[RateLimitBackend] = None

    if store in ("auto", "supabase") and settings.supabase_configured:
        client = supabase or SupabaseClient(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
            timeout=settings.RATE_LIMIT_STORE_TIMEOUT,
        )
        durable = SupabaseRpcBackend(client)
    elif store in ("auto", "mongo") and settings.mongo_configured:
        from contentgate.db.mongo import get_db

        durable = MongoBackend(get_db()[settings.RATE_LIMIT_COLLECTION])

    return RateLimiter(durable=durable, timeout=settings.RATE_LIMIT_STORE_TIMEOUT)
