from typing import Any, Optional

import httpx

class SupabaseError(Exception):
    """Non-2xx or unusable response from Supabase."""

class SupabaseClient:
    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self._service_key = service_key
        self._http = httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            transport=transport,
            headers={"apikey": service_key},
        )

    async def rpc(self, function: str, params: dict[str, Any]) -> Any:
        resp = await self._http.post(
            f"/rest/v1/rpc/{function}",
            json=params,
            headers={"Authorization": f"Bearer {self._service_key}"},
        )
        if resp.status_code >= 400:
            raise SupabaseError(f"rpc {function} failed with HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise SupabaseError(f"rpc {function} returned invalid JSON") from exc

    async def get_user(self, access_token: str) -> dict[str, Any]:
        resp = await self._http.get(
            "/auth/v1/user",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if resp.status_code >= 400:
            raise SupabaseError(f"auth lookup failed with HTTP {resp.status_code}")
        try:
            user = resp.json()
        except ValueError as exc:
            raise SupabaseError("auth lookup returned invalid JSON") from exc
        if not isinstance(user, dict):
            raise SupabaseError("auth lookup returned no user")
        return user

    async def aclose(self) -> None:
        await self._http.aclose()
