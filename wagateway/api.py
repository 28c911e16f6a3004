from __future__ import annotations

import logging
import secrets
from typing import Annotated, Optional

from fastapi import FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from config import gateway_config

from .engine import (
    ENGINE_EVENTS,
    EVENT_AUTH_FAILURE,
    EVENT_DISCONNECTED,
    EVENT_QR,
    EngineEventError,
    WawebEngine,
)
from .errors import GatewayError
from .manager import RENDER_BASE64, RENDER_PNG, SessionManager


logger = logging.getLogger("wagateway.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

SessionName = Annotated[
    str, Query(alias="sessionName", min_length=1, description="Session name")
]


class QRCodeResponse(BaseModel):
    qrcode: str = Field(..., description="QR challenge payload or base64 PNG data URL")


class StatusResponse(BaseModel):
    status: str


class SendResponse(BaseModel):
    status: str = "sent"
    chat_id: str


class EngineEvent(BaseModel):
    clientId: str = Field(..., min_length=1)
    instanceId: str = Field(..., min_length=1)
    event: str
    qr: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    def data(self) -> Optional[str]:
        if self.event == EVENT_QR:
            return self.qr
        if self.event == EVENT_DISCONNECTED:
            return self.reason
        if self.event == EVENT_AUTH_FAILURE:
            return self.message or self.reason
        return None


def create_app() -> FastAPI:
    cfg = gateway_config()
    engine = WawebEngine(
        cfg.waweb_url,
        cfg.webhook_url,
        token=cfg.waweb_token,
        headless_args=cfg.headless_args,
        http_timeout=cfg.http_timeout,
    )
    manager = SessionManager(
        engine,
        chat_suffix=cfg.chat_suffix,
        start_timeout=cfg.start_timeout,
        send_requires_connected=cfg.send_requires_connected,
        qr_size=cfg.qr_size,
    )
    logger.info(
        "stage=engine_configured waweb_url=%s webhook_url=%s token_present=%s",
        cfg.waweb_url,
        cfg.webhook_url,
        "true" if cfg.waweb_token else "false",
    )

    app = FastAPI(
        title="WhatsApp API",
        description="Manage WhatsApp Web sessions and send messages",
        version="1.0.0",
        docs_url="/api-docs",
    )
    app.state.session_manager = manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "event=request_failed path=%s session=%s error=%s detail=%s",
                request.url.path,
                exc.session,
                exc.code,
                exc.detail,
            )
        return JSONResponse(
            exc.to_payload(), status_code=exc.status_code, headers=dict(NO_STORE_HEADERS)
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post(
        "/create-session",
        response_model=QRCodeResponse,
        summary="Create a new WhatsApp session",
        responses={
            400: {"description": "Session already exists"},
            500: {"description": "Failed to create session"},
        },
    )
    async def create_session(session_name: SessionName):
        qr = await manager.start_session(session_name)
        return JSONResponse({"qrcode": qr}, headers=dict(NO_STORE_HEADERS))

    @app.get(
        "/qrcode-base64",
        response_model=QRCodeResponse,
        summary="Return the QR code as a base64 PNG data URL",
        responses={404: {"description": "Session not found"}},
    )
    async def qrcode_base64(session_name: SessionName):
        data_url = await manager.render_challenge(session_name, RENDER_BASE64)
        return JSONResponse({"qrcode": data_url}, headers=dict(NO_STORE_HEADERS))

    @app.get(
        "/qrcode-png",
        summary="Return the QR code as a PNG image",
        responses={
            200: {"content": {"image/png": {}}, "description": "QR code image"},
            404: {"description": "Session not found"},
        },
    )
    async def qrcode_png(session_name: SessionName):
        blob = await manager.render_challenge(session_name, RENDER_PNG)
        return Response(content=blob, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.get(
        "/status-session",
        response_model=StatusResponse,
        summary="Check the status of an existing session",
        responses={404: {"description": "Session not found"}},
    )
    async def status_session(session_name: SessionName):
        return {"status": await manager.get_status(session_name)}

    @app.post(
        "/end-session",
        response_model=StatusResponse,
        summary="End a WhatsApp session",
        responses={404: {"description": "Session not found"}},
    )
    async def end_session(session_name: SessionName):
        await manager.end_session(session_name)
        return {"status": "ended"}

    @app.post(
        "/send-message",
        response_model=SendResponse,
        summary="Send a message through an existing session",
        responses={
            404: {"description": "Session not found"},
            409: {"description": "Session is not connected"},
            500: {"description": "Failed to send the message"},
        },
    )
    async def send_message(
        session_name: SessionName,
        number: str = Query(
            ...,
            min_length=1,
            description="Phone number in international format (e.g., 5511999998888)",
        ),
        message: str = Query(..., min_length=1),
    ):
        result = await manager.send_message(session_name, number, message)
        return {"status": "sent", "chat_id": result["chat_id"]}

    @app.get("/sessions", summary="List registered sessions")
    async def list_sessions():
        return {"sessions": manager.sessions()}

    @app.post("/engine/events", include_in_schema=False)
    async def engine_events(
        payload: EngineEvent,
        x_engine_token: str = Header("", alias="X-Engine-Token"),
    ):
        if cfg.webhook_token and not secrets.compare_digest(
            x_engine_token.strip().encode(), cfg.webhook_token.encode()
        ):
            logger.warning("event=engine_token_invalid session=%s", payload.clientId)
            return JSONResponse({"error": "not_authorized"}, status_code=401)
        if payload.event not in ENGINE_EVENTS:
            return JSONResponse({"error": "unknown_event"}, status_code=422)
        try:
            delivered = manager.dispatch_event(
                payload.instanceId, payload.clientId, payload.event, payload.data()
            )
        except EngineEventError as exc:
            logger.warning(
                "event=engine_event_rejected session=%s error=%s", payload.clientId, exc
            )
            return JSONResponse({"error": str(exc)}, status_code=422)
        return {"ok": True, "delivered": delivered}

    @app.get("/health")
    async def health():
        stats = manager.stats_snapshot()
        payload = {"ok": True, "sessions": sum(stats.values())}
        for status, count in stats.items():
            payload[f"{status.lower()}_count"] = count
        return payload

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
