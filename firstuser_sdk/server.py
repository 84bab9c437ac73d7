from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from .client import parse_response

logger = logging.getLogger(__name__)

INTEGRATION_PREFIX = "/api/integration/v1"


class FirstUserServerClient:
    """
    Partner backend to platform client

    Holds the integration API key; never ship it to a browser or mobile app.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._timeout = timeout

    async def __aenter__(self) -> "FirstUserServerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def hosted_join_url(self, public_app_id: str, return_to: Optional[str] = None) -> str:
        url = f"{self.base_url}/i/{quote(public_app_id, safe='')}/join"
        if return_to:
            url = f"{url}?{urlencode({'returnTo': return_to})}"
        return url

    async def start_waitlist(
        self,
        *,
        external_user_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._post(
            "/waitlist/start",
            {"externalUserId": external_user_id, "email": email, "phone": phone, "returnTo": return_to},
        )

    async def exchange_access_code(
        self, *, code: str, external_user_id: str, client_platform: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._post(
            "/access/exchange",
            {"code": code, "externalUserId": external_user_id, "clientPlatform": client_platform},
        )

    async def send_heartbeat(
        self, *, external_user_id: str, status: str = "live", client_platform: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._post(
            "/usage/heartbeat",
            {"externalUserId": external_user_id, "status": status, "clientPlatform": client_platform},
        )

    async def set_plan_tier(self, external_user_id: str, plan_tier: str) -> Dict[str, Any]:
        return await self._post(f"/users/{quote(external_user_id, safe='')}/plan", {"planTier": plan_tier})

    async def create_widget_token(self, external_user_id: str) -> Dict[str, Any]:
        return await self._post("/chat/widget-token", {"externalUserId": external_user_id})

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_http_client = True
        return self._http_client

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        full_path = f"{INTEGRATION_PREFIX}{path}"
        payload = {key: value for key, value in body.items() if value is not None}
        response = await self._client().post(
            f"{self.base_url}{full_path}",
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code >= 500:
            logger.warning("FirstUser API %s returned %s", full_path, response.status_code)
        return parse_response(response, full_path)

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
