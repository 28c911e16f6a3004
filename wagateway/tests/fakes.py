from __future__ import annotations

import itertools
from typing import Any, Callable, Dict, Optional

from wagateway.engine import ENGINE_EVENTS, EVENT_AUTHENTICATED, EVENT_READY


class FakeClient:
    def __init__(self, name: str, engine: "FakeEngine", instance_id: str) -> None:
        self.name = name
        self.instance_id = instance_id
        self._engine = engine
        self._handlers: Dict[str, list[Callable[..., None]]] = {}
        self.initialized = False
        self.destroy_calls = 0
        self.sent: list[tuple[str, str]] = []

    def on(self, event: str, handler: Callable[..., None]) -> None:
        assert event in ENGINE_EVENTS
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    async def initialize(self) -> None:
        if self._engine.initialize_error is not None:
            raise self._engine.initialize_error
        self.initialized = True
        if self._engine.on_initialize is not None:
            self._engine.on_initialize(self)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self._engine.destroy_error is not None:
            raise self._engine.destroy_error

    async def send_message(self, chat_id: str, body: str) -> Dict[str, Any]:
        if self._engine.send_hook is not None:
            await self._engine.send_hook(self)
        if self._engine.send_error is not None:
            raise self._engine.send_error
        self.sent.append((chat_id, body))
        return {"id": f"msg-{len(self.sent)}"}


def emit_qr(payload: str) -> Callable[[FakeClient], None]:
    def _hook(client: FakeClient) -> None:
        client.emit("qr", payload)

    return _hook


class FakeEngine:
    """In-memory engine; tests fire lifecycle events through the clients."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.clients: Dict[str, list[FakeClient]] = {}
        self.by_instance: Dict[str, FakeClient] = {}
        self.on_initialize: Optional[Callable[[FakeClient], None]] = emit_qr("QR1")
        self.initialize_error: Optional[Exception] = None
        self.destroy_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.send_hook: Optional[Callable[[FakeClient], Any]] = None
        self.closed = False

    def create_client(self, name: str) -> FakeClient:
        client = FakeClient(name, self, f"inst-{next(self._ids)}")
        self.clients.setdefault(name, []).append(client)
        self.by_instance[client.instance_id] = client
        return client

    def client(self, name: str) -> FakeClient:
        return self.clients[name][-1]

    def dispatch(
        self, instance_id: str, client_id: str, event: str, data: Optional[str] = None
    ) -> bool:
        client = self.by_instance.get(instance_id)
        if client is None or client.name != client_id:
            return False
        if event in (EVENT_AUTHENTICATED, EVENT_READY):
            client.emit(event)
        else:
            client.emit(event, data)
        return True

    async def aclose(self) -> None:
        self.closed = True
