"""Lightweight configuration helpers for the WhatsApp session gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


DEFAULT_PORT = 3031
DEFAULT_WA_WEB_URL = "http://waweb:9001"
DEFAULT_CHAT_SUFFIX = "@c.us"
DEFAULT_HEADLESS_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-gpu",
)


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _coerce_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    if cleaned in _TRUE_VALUES:
        return True
    if cleaned in _FALSE_VALUES:
        return False
    return default


def _normalize_wa_url(raw: str | None) -> str:
    if not raw:
        return DEFAULT_WA_WEB_URL
    cleaned = raw.strip()
    if not cleaned:
        return DEFAULT_WA_WEB_URL
    return cleaned.rstrip("/") or DEFAULT_WA_WEB_URL


def _normalize_webhook_url(raw: str | None, port: int) -> str:
    fallback = f"http://localhost:{port}/engine/events"
    if not raw:
        return fallback
    cleaned = raw.strip()
    if not cleaned:
        return fallback
    return cleaned.rstrip("/") or fallback


@lru_cache(maxsize=None)
def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _split_csv(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if raw is None:
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    port: int
    waweb_url: str
    waweb_token: str | None
    webhook_url: str
    webhook_token: str | None
    chat_suffix: str
    start_timeout: float
    send_requires_connected: bool
    qr_size: int
    headless_args: tuple[str, ...]
    cors_origins: tuple[str, ...]
    http_timeout: float = 15.0


def gateway_config() -> GatewayConfig:
    port = _coerce_int(os.getenv("PORT"), DEFAULT_PORT) or DEFAULT_PORT
    waweb_url = _normalize_wa_url(os.getenv("WAWEB_URL"))
    waweb_token = (os.getenv("WAWEB_TOKEN") or "").strip() or None
    webhook_url = _normalize_webhook_url(os.getenv("ENGINE_WEBHOOK_URL"), port)
    webhook_token = (os.getenv("ENGINE_WEBHOOK_TOKEN") or "").strip() or None

    chat_suffix = (os.getenv("WA_CHAT_SUFFIX") or "").strip() or DEFAULT_CHAT_SUFFIX
    start_timeout = _parse_duration(os.getenv("WA_START_TIMEOUT"), default=60.0)
    send_requires_connected = _coerce_bool(
        os.getenv("WA_SEND_REQUIRE_CONNECTED"), default=True
    )
    qr_size = _coerce_int(os.getenv("WA_QR_SIZE"), 250)
    if qr_size <= 0:
        qr_size = 250

    return GatewayConfig(
        port=port,
        waweb_url=waweb_url,
        waweb_token=waweb_token,
        webhook_url=webhook_url,
        webhook_token=webhook_token,
        chat_suffix=chat_suffix,
        start_timeout=start_timeout,
        send_requires_connected=send_requires_connected,
        qr_size=qr_size,
        headless_args=_split_csv(os.getenv("WA_HEADLESS_ARGS"), DEFAULT_HEADLESS_ARGS),
        cors_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS"), ("*",)),
        http_timeout=_parse_duration(os.getenv("WAWEB_HTTP_TIMEOUT"), default=15.0),
    )


__all__ = [
    "DEFAULT_CHAT_SUFFIX",
    "DEFAULT_HEADLESS_ARGS",
    "DEFAULT_PORT",
    "DEFAULT_WA_WEB_URL",
    "GatewayConfig",
    "gateway_config",
]
