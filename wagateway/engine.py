"""Bridge to the whatsapp-web.js sidecar (``waweb``).

Each session owns one :class:`WawebClient`. The sidecar hosts the real
browser-backed client under ``clientId=<session name>`` and reports lifecycle
events back to ``/engine/events``; :meth:`WawebEngine.dispatch` hands them to the
client that registered for them.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Callable, Dict, Iterable, Optional, Protocol
from urllib.parse import quote

import httpx


LOGGER = logging.getLogger("wagateway.engine")

EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_READY = "ready"
EVENT_AUTH_FAILURE = "auth_failure"
EVENT_DISCONNECTED = "disconnected"

ENGINE_EVENTS = frozenset(
    {EVENT_QR, EVENT_AUTHENTICATED, EVENT_READY, EVENT_AUTH_FAILURE, EVENT_DISCONNECTED}
)


class EngineClient(Protocol):
    name: str

    def on(self, event: str, handler: Callable[..., None]) -> None:
        ...

    async def initialize(self) -> None:
        ...

    async def destroy(self) -> None:
        ...

    async def send_message(self, chat_id: str, body: str) -> Dict[str, Any]:
        ...


class EngineEventError(ValueError):
    """Raised when an event payload cannot be routed to a client."""


class WawebClient:
    """Handle for one whatsapp-web.js client living inside the sidecar."""

    def __init__(
        self,
        name: str,
        engine: "WawebEngine",
    ) -> None:
        self.name = name
        self.instance_id = secrets.token_urlsafe(16)
        self._engine = engine
        self._handlers: Dict[str, list[Callable[..., None]]] = {}
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def on(self, event: str, handler: Callable[..., None]) -> None:
        if event not in ENGINE_EVENTS:
            raise ValueError(f"unknown_event:{event}")
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> int:
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            handler(*args)
        return len(handlers)

    def _url(self, suffix: str = "") -> str:
        return f"{self._engine.base_url}/sessions/{quote(self.name, safe='')}{suffix}"

    async def initialize(self) -> None:
        payload = {
            "clientId": self.name,
            "instanceId": self.instance_id,
            "webhook": self._engine.webhook_url,
            "puppeteer": {
                "headless": True,
                "args": list(self._engine.headless_args),
            },
        }
        resp = await self._engine.http.post(
            f"{self._engine.base_url}/sessions",
            json=payload,
            headers=self._engine.headers(),
        )
        resp.raise_for_status()
        LOGGER.info(
            "stage=client_initialize session=%s instance=%s status=%s",
            self.name,
            self.instance_id,
            resp.status_code,
        )

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._handlers.clear()
        self._engine.forget(self)
        resp = await self._engine.http.delete(
            self._url(),
            params={"instanceId": self.instance_id},
            headers=self._engine.headers(),
        )
        if resp.status_code == 404:
            LOGGER.info("stage=client_destroy session=%s result=already_gone", self.name)
            return
        resp.raise_for_status()
        LOGGER.info("stage=client_destroy session=%s", self.name)

    async def send_message(self, chat_id: str, body: str) -> Dict[str, Any]:
        resp = await self._engine.http.post(
            self._url("/messages"),
            json={"chatId": chat_id, "body": body, "instanceId": self.instance_id},
            headers=self._engine.headers(),
        )
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class WawebEngine:
    """Factory and event router for :class:`WawebClient` handles."""

    def __init__(
        self,
        base_url: str,
        webhook_url: str,
        *,
        token: str | None = None,
        headless_args: Iterable[str] = (),
        http_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.webhook_url = webhook_url
        self.headless_args = tuple(headless_args)
        self._token = (token or "").strip() or None
        self.http = httpx.AsyncClient(timeout=http_timeout, transport=transport)
        self._clients: Dict[str, WawebClient] = {}

    def headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"X-Auth-Token": self._token}

    def create_client(self, name: str) -> WawebClient:
        client = WawebClient(name, self)
        self._clients[client.instance_id] = client
        return client

    def forget(self, client: WawebClient) -> None:
        if self._clients.get(client.instance_id) is client:
            del self._clients[client.instance_id]

    def dispatch(
        self,
        instance_id: str,
        client_id: str,
        event: str,
        data: Optional[str] = None,
    ) -> bool:
        if event not in ENGINE_EVENTS:
            raise EngineEventError(f"unknown_event:{event}")
        client = self._clients.get(instance_id)
        if client is None:
            LOGGER.info(
                "stage=event_dropped session=%s event=%s reason=unknown_instance",
                client_id,
                event,
            )
            return False
        if client.name != client_id:
            raise EngineEventError("client_mismatch")
        if event in (EVENT_AUTHENTICATED, EVENT_READY):
            client.emit(event)
        else:
            client.emit(event, data)
        return True

    async def aclose(self) -> None:
        self._clients.clear()
        await self.http.aclose()


__all__ = [
    "ENGINE_EVENTS",
    "EVENT_AUTHENTICATED",
    "EVENT_AUTH_FAILURE",
    "EVENT_DISCONNECTED",
    "EVENT_QR",
    "EVENT_READY",
    "EngineClient",
    "EngineEventError",
    "WawebClient",
    "WawebEngine",
]
