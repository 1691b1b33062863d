from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request

from contentgate.core.config import get_settings
from contentgate.db.supabase import SupabaseClient, SupabaseError
from contentgate.services.rate_limiter import RateLimiter, build_rate_limiter
from contentgate.utils.logging import log_warn

ANON = "anon"

class SupabaseAuthVerifier:
    """Turns a bearer token into a user id. Never raises: a bad token is just no user."""

    def __init__(self, client: Optional[SupabaseClient]):
        self.client = client

    async def get_user_id(self, token: Optional[str]) -> Optional[str]:
        if not token or self.client is None:
            return None
        try:
            user = await self.client.get_user(token)
        except SupabaseError:
            return None
        except Exception as exc:
            log_warn("auth.lookup_failed", {"error": str(exc) or type(exc).__name__})
            return None
        user_id = user.get("id")
        return str(user_id) if user_id else None

@lru_cache
def get_supabase_client() -> Optional[SupabaseClient]:
    s = get_settings()
    if not s.supabase_configured:
        return None
    return SupabaseClient(s.SUPABASE_URL, s.SUPABASE_SERVICE_ROLE_KEY, timeout=s.RATE_LIMIT_STORE_TIMEOUT)

@lru_cache
def get_rate_limiter() -> RateLimiter:
    return build_rate_limiter(get_settings(), supabase=get_supabase_client())

def get_auth_verifier() -> SupabaseAuthVerifier:
    return SupabaseAuthVerifier(get_supabase_client())

def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None

def client_address(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.headers.get("x-real-ip") or None

async def get_caller_key(
    request: Request,
    verifier: SupabaseAuthVerifier = Depends(get_auth_verifier),
) -> str:
    """Verified user id, else the forwarded client address, else ``anon``."""
    user_id = await verifier.get_user_id(bearer_token(request))
    return user_id or client_address(request) or ANON
