from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Callable, Dict, Optional

from .engine import (
    EVENT_AUTHENTICATED,
    EVENT_AUTH_FAILURE,
    EVENT_DISCONNECTED,
    EVENT_QR,
    EVENT_READY,
)
from .errors import (
    AlreadyExists,
    AuthenticationFailed,
    DeliveryError,
    GatewayError,
    InitializationError,
    InvalidRecipient,
    NotFound,
    NotReady,
    RenderError,
)
from .metrics import (
    EVENT_ERRORS,
    WA_QR_ISSUED_TOTAL,
    WA_SEND_TOTAL,
    WA_SESSIONS,
    WA_SESSION_CLOSED_TOTAL,
    WA_SESSION_START_TOTAL,
)
from .registry import (
    ACTIVE_STATUSES,
    AUTHENTICATED,
    AUTH_FAILED,
    AWAITING_SCAN,
    CONNECTED,
    DISCONNECTED,
    PENDING,
    TERMINATED,
    SessionRecord,
    SessionRegistry,
)
from .render import build_qr_data_url, build_qr_png


LOGGER = logging.getLogger("wagateway")

RENDER_BASE64 = "base64"
RENDER_PNG = "png"
_RENDERERS: Dict[str, Callable[..., Any]] = {
    RENDER_BASE64: build_qr_data_url,
    RENDER_PNG: build_qr_png,
}

_NON_DIGITS = re.compile(r"\D+")


def _consume_outcome(fut: asyncio.Future[Any]) -> None:
    # creation futures may fail after the caller stopped waiting
    if not fut.cancelled():
        fut.exception()


class SessionManager:
    """Own the session registry and drive every session through its lifecycle.

    The manager is the only writer of :class:`SessionRecord` state. Engine
    callbacks and HTTP handlers share one event loop; each handler re-checks
    that the registry still maps the session name to the record it captured
    before it mutates anything, because a session can be ended or disconnected
    while another coroutine is suspended on the engine.
    """

    def __init__(
        self,
        engine: Any,
        *,
        registry: Optional[SessionRegistry] = None,
        chat_suffix: str = "@c.us",
        start_timeout: float = 60.0,
        send_requires_connected: bool = True,
        qr_size: int = 250,
    ) -> None:
        self._engine = engine
        self._registry = registry if registry is not None else SessionRegistry()
        self._chat_suffix = chat_suffix
        self._start_timeout = start_timeout
        self._send_requires_connected = send_requires_connected
        self._qr_size = qr_size
        self._release_tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def _require(self, name: str) -> SessionRecord:
        record = self._registry.get(name)
        if record is None:
            raise NotFound(name)
        return record

    def _set_status(
        self,
        record: SessionRecord,
        status: str,
        *,
        reason: str | None = None,
    ) -> None:
        previous = record.status
        if previous != status:
            if reason:
                LOGGER.info(
                    "stage=state_transition session=%s from=%s to=%s reason=%s",
                    record.id,
                    previous,
                    status,
                    reason,
                )
            else:
                LOGGER.info(
                    "stage=state_transition session=%s from=%s to=%s",
                    record.id,
                    previous,
                    status,
                )
        record.status = status
        record.updated_at = time.time()

    # -- lifecycle -----------------------------------------------------

    async def start_session(self, name: str) -> str:
        try:
            record = self._registry.create(name, self._engine.create_client)
        except AlreadyExists:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("create_client").inc()
            LOGGER.exception("stage=client_build_failed session=%s", name)
            raise InitializationError(name, "client_build_failed") from exc
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        waiter.add_done_callback(_consume_outcome)
        record.first_challenge = waiter
        WA_SESSION_START_TOTAL.inc()
        LOGGER.info("stage=session_create session=%s", name)
        self._register_handlers(record)
        self._update_metrics()

        try:
            await record.client.initialize()
        except asyncio.CancelledError:
            self._abandon(record)
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("initialize").inc()
            LOGGER.exception("stage=initialize_failed session=%s", name)
            error = InitializationError(name, "engine_unavailable")
            if self._close(record, DISCONNECTED, reason="initialize_failed", error=error):
                await self._release(record)
                raise error from exc
            # an engine event already closed the record and decided the outcome
            if waiter.done() and not waiter.cancelled() and waiter.exception() is not None:
                raise waiter.exception() from exc
            raise error from exc

        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=self._start_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "stage=qr_timeout session=%s timeout=%ss", name, self._start_timeout
            )
            if self._close(record, TERMINATED, reason="start_timeout"):
                await self._release(record)
            raise InitializationError(name, "start_timeout") from None
        except asyncio.CancelledError:
            self._abandon(record)
            raise

    def _abandon(self, record: SessionRecord) -> None:
        waiter = record.first_challenge
        if waiter is not None and waiter.done():
            return
        LOGGER.warning("stage=creator_cancelled session=%s", record.id)
        if self._close(record, TERMINATED, reason="creator_cancelled"):
            self._schedule_release(record)

    async def end_session(self, name: str) -> None:
        record = self._require(name)
        self._close(
            record,
            TERMINATED,
            reason="ended",
            error=InitializationError(name, "session_ended"),
        )
        await self._release(record)
        LOGGER.info("stage=session_end session=%s", name)

    async def get_status(self, name: str) -> str:
        return self._require(name).status

    async def get_challenge(self, name: str) -> str:
        record = self._require(name)
        if not record.pending_challenge:
            raise RenderError(name, "qr_not_available")
        return record.pending_challenge

    async def render_challenge(self, name: str, fmt: str) -> Any:
        record = self._require(name)
        renderer = _RENDERERS.get(fmt)
        if renderer is None:
            raise RenderError(name, f"unsupported_format:{fmt}")
        payload = await self.get_challenge(name)
        try:
            rendered = await asyncio.to_thread(renderer, payload, size=self._qr_size)
        except Exception as exc:
            EVENT_ERRORS.labels("render").inc()
            LOGGER.exception("stage=qr_render_failed session=%s format=%s", name, fmt)
            raise RenderError(name, "qr_render_failed") from exc
        if self._registry.get(name) is not record:
            raise NotFound(name)
        return rendered

    def chat_id(self, number: str) -> str:
        raw = (number or "").strip()
        if "@" in raw:
            return raw
        digits = _NON_DIGITS.sub("", raw)
        if not digits:
            raise InvalidRecipient(detail="number_must_contain_digits")
        return f"{digits}{self._chat_suffix}"

    async def send_message(self, name: str, number: str, body: str) -> Dict[str, Any]:
        record = self._require(name)
        if self._send_requires_connected and record.status != CONNECTED:
            WA_SEND_TOTAL.labels("not_ready").inc()
            raise NotReady(name, f"status:{record.status}")
        try:
            chat_id = self.chat_id(number)
        except InvalidRecipient as exc:
            exc.session = name
            WA_SEND_TOTAL.labels("invalid_number").inc()
            raise

        # delegated sends are not cancelled by a caller going away or by end_session
        delivery = asyncio.ensure_future(record.client.send_message(chat_id, body))
        delivery.add_done_callback(
            lambda task: self._record_delivery(task, name, chat_id)
        )
        try:
            result = await asyncio.shield(delivery)
        except Exception as exc:
            raise DeliveryError(name, str(exc) or "send_failed") from exc

        if self._registry.get(name) is not record:
            LOGGER.info("stage=send_ok session=%s chat_id=%s note=session_closed", name, chat_id)
        else:
            LOGGER.info("stage=send_ok session=%s chat_id=%s", name, chat_id)
        return {"chat_id": chat_id, "result": result or {}}

    @staticmethod
    def _record_delivery(task: asyncio.Future[Any], name: str, chat_id: str) -> None:
        if task.cancelled():
            WA_SEND_TOTAL.labels("error").inc()
            LOGGER.warning("stage=send_cancelled session=%s chat_id=%s", name, chat_id)
            return
        exc = task.exception()
        if exc is None:
            WA_SEND_TOTAL.labels("ok").inc()
            return
        WA_SEND_TOTAL.labels("error").inc()
        LOGGER.error("stage=send_fail session=%s chat_id=%s error=%s", name, chat_id, exc)

    def dispatch_event(
        self,
        instance_id: str,
        client_id: str,
        event: str,
        data: Optional[str] = None,
    ) -> bool:
        return self._engine.dispatch(instance_id, client_id, event, data)

    # -- state machine -------------------------------------------------

    def _register_handlers(self, record: SessionRecord) -> None:
        handlers = {
            EVENT_QR: self._on_qr,
            EVENT_AUTHENTICATED: self._on_authenticated,
            EVENT_READY: self._on_ready,
            EVENT_AUTH_FAILURE: self._on_auth_failure,
            EVENT_DISCONNECTED: self._on_disconnected,
        }
        for event, handler in handlers.items():
            record.client.on(event, self._guarded(record, event, handler))

    def _guarded(
        self,
        record: SessionRecord,
        event: str,
        handler: Callable[..., None],
    ) -> Callable[..., None]:
        def _on_event(*args: Any) -> None:
            if self._registry.get(record.id) is not record or record.terminal:
                LOGGER.info(
                    "stage=event_dropped session=%s event=%s reason=stale_record",
                    record.id,
                    event,
                )
                return
            try:
                handler(record, *args)
            except Exception:
                EVENT_ERRORS.labels(event).inc()
                LOGGER.exception(
                    "stage=event_handler_error session=%s event=%s", record.id, event
                )

        return _on_event

    def _on_qr(self, record: SessionRecord, payload: Optional[str] = None) -> None:
        if not payload:
            LOGGER.warning("stage=qr_empty session=%s", record.id)
            return
        if record.status == PENDING:
            self._set_status(record, AWAITING_SCAN, reason="qr")
        elif record.status != AWAITING_SCAN:
            LOGGER.warning(
                "stage=event_ignored session=%s event=qr status=%s", record.id, record.status
            )
            return
        record.pending_challenge = payload
        record.challenge_count += 1
        WA_QR_ISSUED_TOTAL.inc()
        waiter = record.first_challenge
        if waiter is not None and not waiter.done():
            waiter.set_result(payload)
            LOGGER.info("event=qr_new session=%s", record.id)
        else:
            LOGGER.info(
                "event=qr_refresh session=%s count=%s", record.id, record.challenge_count
            )
        self._update_metrics()

    def _on_authenticated(self, record: SessionRecord) -> None:
        if record.status != AWAITING_SCAN:
            LOGGER.warning(
                "stage=event_ignored session=%s event=authenticated status=%s",
                record.id,
                record.status,
            )
            return
        self._set_status(record, AUTHENTICATED, reason="authenticated")
        record.pending_challenge = None
        self._update_metrics()

    def _on_ready(self, record: SessionRecord) -> None:
        if record.status != AUTHENTICATED:
            LOGGER.warning(
                "stage=event_ignored session=%s event=ready status=%s",
                record.id,
                record.status,
            )
            return
        self._set_status(record, CONNECTED, reason="ready")
        record.last_error = None
        self._update_metrics()

    def _on_auth_failure(self, record: SessionRecord, message: Optional[str] = None) -> None:
        reason = message or "auth_failure"
        LOGGER.error("stage=auth_failed session=%s message=%s", record.id, reason)
        if self._close(
            record,
            AUTH_FAILED,
            reason=reason,
            error=AuthenticationFailed(record.id),
        ):
            self._schedule_release(record)

    def _on_disconnected(self, record: SessionRecord, reason: Optional[str] = None) -> None:
        reason = reason or "unknown"
        if self._close(
            record,
            DISCONNECTED,
            reason=reason,
            error=InitializationError(record.id, f"disconnected:{reason}"),
        ):
            self._schedule_release(record)

    def _close(
        self,
        record: SessionRecord,
        status: str,
        *,
        reason: str,
        error: Optional[GatewayError] = None,
    ) -> bool:
        if record.terminal:
            return False
        self._registry.remove(record.id, record)
        self._set_status(record, status, reason=reason)
        record.pending_challenge = None
        if status != TERMINATED:
            record.last_error = reason
        waiter = record.first_challenge
        if waiter is not None and not waiter.done():
            if error is None:
                waiter.cancel()
            else:
                waiter.set_exception(error)
        WA_SESSION_CLOSED_TOTAL.labels(status).inc()
        self._update_metrics()
        return True

    def _schedule_release(self, record: SessionRecord) -> None:
        task = asyncio.get_running_loop().create_task(self._release(record))
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)

    async def _release(self, record: SessionRecord) -> None:
        if record.released:
            return
        record.released = True
        try:
            await record.client.destroy()
        except Exception as exc:
            EVENT_ERRORS.labels("destroy").inc()
            LOGGER.warning(
                "stage=client_destroy_failed session=%s error=%s", record.id, exc
            )

    # -- housekeeping --------------------------------------------------

    async def shutdown(self) -> None:
        records = self._registry.drain()
        for record in records:
            if record.terminal:
                continue
            self._set_status(record, TERMINATED, reason="shutdown")
            waiter = record.first_challenge
            if waiter is not None and not waiter.done():
                waiter.set_exception(InitializationError(record.id, "shutdown"))
        for record in records:
            await self._release(record)
        if self._release_tasks:
            await asyncio.gather(*list(self._release_tasks), return_exceptions=True)
        closer = getattr(self._engine, "aclose", None)
        if closer is not None:
            await closer()
        self._update_metrics()
        LOGGER.info("stage=shutdown sessions=%s", len(records))

    def sessions(self) -> list[dict[str, str]]:
        return [
            {"sessionName": name, "status": status}
            for name, status in self._registry.list()
        ]

    def stats_snapshot(self) -> Dict[str, int]:
        return self._registry.stats()

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        for status in ACTIVE_STATUSES:
            WA_SESSIONS.labels(status).set(snapshot.get(status, 0))


__all__ = ["RENDER_BASE64", "RENDER_PNG", "SessionManager"]
