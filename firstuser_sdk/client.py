from __future__ import annotations

import asyncio
import html
import inspect
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import quote, urlparse

import httpx
import logging

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 15.0
BACKEND_PREFIX = "/api/firstuser"
WIDGET_SANDBOX = "allow-scripts allow-same-origin allow-forms allow-popups"

StatusSink = Callable[[str], Union[None, Awaitable[None]]]


class FirstUserAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


@dataclass
class FirstUserConfig:
    base_url: str
    public_app_id: str
    backend_base_url: str
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    default_client_platform: str = "web"
    http_client: Optional[httpx.AsyncClient] = None


@dataclass
class PresenceOptions:
    """Makes the client POST heartbeats to the partner backend on every tick."""

    external_user_id: str
    client_platform: Optional[str] = None
    status_provider: Optional[Callable[[], str]] = None
    on_error: Optional[Callable[[Exception], Any]] = None


def _default_status() -> str:
    # No visibility signal outside a browser; report live until told otherwise
    return "live"


def parse_response(response: httpx.Response, path: str) -> Any:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if response.is_success:
        return payload
    message = None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        message = payload["message"]
    raise FirstUserAPIError(message or f"Request failed for {path}", response.status_code, payload)


class FirstUserClient:
    """
    Partner-side client

    Holds no server secret. Presence runs as one asyncio task per client;
    starting it again replaces the running task.
    """

    def __init__(self, config: Optional[FirstUserConfig] = None):
        self._config: Optional[FirstUserConfig] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._owns_http_client = False
        self._presence_task: Optional[asyncio.Task] = None
        if config is not None:
            self.init(config)

    def init(self, config: FirstUserConfig) -> None:
        if config.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        self._config = replace(
            config,
            base_url=config.base_url.rstrip("/"),
            backend_base_url=config.backend_base_url.rstrip("/"),
        )
        if config.http_client is not None:
            self._http_client = config.http_client
            self._owns_http_client = False

    @property
    def config(self) -> FirstUserConfig:
        if self._config is None:
            raise RuntimeError("FirstUserClient not initialized")
        return self._config

    @property
    def is_presence_running(self) -> bool:
        return self._presence_task is not None and not self._presence_task.done()

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------
    def start_presence(self, sink: Union[StatusSink, PresenceOptions]) -> asyncio.Task:
        """Start the heartbeat timer. Must be called from a running event loop."""
        interval = self.config.heartbeat_interval
        self.stop_presence()
        loop = asyncio.get_running_loop()
        self._presence_task = loop.create_task(self._presence_loop(sink, interval))
        return self._presence_task

    def stop_presence(self) -> None:
        task, self._presence_task = self._presence_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _presence_loop(self, sink: Union[StatusSink, PresenceOptions], interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._presence_tick(sink)

    async def _presence_tick(self, sink: Union[StatusSink, PresenceOptions]) -> None:
        on_error = sink.on_error if isinstance(sink, PresenceOptions) else None
        try:
            if isinstance(sink, PresenceOptions):
                status_provider = sink.status_provider or _default_status
                await self.send_heartbeat(
                    external_user_id=sink.external_user_id,
                    status=status_provider(),
                    client_platform=sink.client_platform,
                )
            else:
                result = sink(_default_status())
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            logger.warning("FirstUser presence tick failed: %s", exc)
            if on_error is not None:
                try:
                    on_error(exc)
                except Exception:
                    logger.exception("FirstUser presence on_error callback raised")

    # ------------------------------------------------------------------
    # Hosted widget
    # ------------------------------------------------------------------
    def mount_hosted_chat_widget(
        self,
        widget_url: str,
        *,
        title: str = "FirstUser chat",
        width: str = "100%",
        height: str = "600px",
    ) -> str:
        """Sandboxed iframe markup for a short-lived widget URL from get_hosted_chat_widget_token."""
        parsed = urlparse(widget_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("widget_url must be an absolute http(s) URL")
        style = f"border:0;width:{width};height:{height};"
        return (
            f'<iframe src="{html.escape(widget_url, quote=True)}" '
            f'title="{html.escape(title, quote=True)}" '
            f'sandbox="{WIDGET_SANDBOX}" '
            'referrerpolicy="no-referrer" loading="lazy" '
            f'style="{html.escape(style, quote=True)}"></iframe>'
        )

    # ------------------------------------------------------------------
    # Partner backend wrappers
    # ------------------------------------------------------------------
    async def start_embedded_waitlist(
        self,
        *,
        external_user_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._post_json(
            "/waitlist/start",
            {"externalUserId": external_user_id, "email": email, "phone": phone, "returnTo": return_to},
        )

    async def exchange_access_code(
        self, *, code: str, external_user_id: str, client_platform: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._post_json(
            "/access/exchange",
            {
                "code": code,
                "externalUserId": external_user_id,
                "clientPlatform": client_platform or self.config.default_client_platform,
            },
        )

    async def send_heartbeat(
        self, *, external_user_id: str, status: Optional[str] = None, client_platform: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._post_json(
            "/usage/heartbeat",
            {
                "externalUserId": external_user_id,
                "status": status or _default_status(),
                "clientPlatform": client_platform or self.config.default_client_platform,
            },
        )

    async def set_plan_tier(self, external_user_id: str, plan_tier: str) -> Dict[str, Any]:
        return await self._post_json(f"/users/{quote(external_user_id, safe='')}/plan", {"planTier": plan_tier})

    async def get_hosted_chat_widget_token(self, external_user_id: str) -> Dict[str, Any]:
        return await self._post_json("/chat/widget-token", {"externalUserId": external_user_id})

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
            self._owns_http_client = True
        return self._http_client

    async def _post_json(self, path: str, body: Dict[str, Any]) -> Any:
        full_path = f"{BACKEND_PREFIX}{path}"
        url = f"{self.config.backend_base_url}{full_path}"
        payload = {key: value for key, value in body.items() if value is not None}
        response = await self._client().post(url, json=payload)
        return parse_response(response, full_path)

    async def aclose(self) -> None:
        self.stop_presence()
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
