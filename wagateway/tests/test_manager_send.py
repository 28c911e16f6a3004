from __future__ import annotations

import asyncio
import base64
import logging
import threading

import pytest
from prometheus_client import REGISTRY

from wagateway.errors import DeliveryError, InvalidRecipient, NotFound, NotReady, RenderError
from wagateway import manager as manager_module
from wagateway.manager import SessionManager
from wagateway.render import PNG_DATA_URL_PREFIX
from wagateway.tests.fakes import FakeClient, FakeEngine


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _send_total(result: str) -> float:
    return REGISTRY.get_sample_value("wagateway_send_total", {"result": result}) or 0.0


async def _connected(manager: SessionManager, engine: FakeEngine, name: str) -> FakeClient:
    await manager.start_session(name)
    client = engine.client(name)
    client.emit("authenticated")
    client.emit("ready")
    return client


@pytest.mark.anyio
async def test_send_before_connected_is_not_ready(manager: SessionManager, engine: FakeEngine):
    await manager.start_session("alice")

    with pytest.raises(NotReady):
        await manager.send_message("alice", "5511999998888", "hi")
    assert engine.client("alice").sent == []


@pytest.mark.anyio
async def test_lenient_mode_delegates_before_connected(engine: FakeEngine):
    manager = SessionManager(engine, send_requires_connected=False)
    await manager.start_session("alice")

    await manager.send_message("alice", "5511999998888", "hi")

    assert engine.client("alice").sent == [("5511999998888@c.us", "hi")]


@pytest.mark.anyio
async def test_adapter_failure_becomes_delivery_error(manager: SessionManager, engine: FakeEngine):
    await _connected(manager, engine, "alice")
    engine.send_error = RuntimeError("Evaluation failed")

    with pytest.raises(DeliveryError) as exc_info:
        await manager.send_message("alice", "5511999998888", "hi")

    assert exc_info.value.detail == "Evaluation failed"
    assert "alice" in manager.registry


@pytest.mark.anyio
async def test_in_flight_send_survives_end_session(manager: SessionManager, engine: FakeEngine):
    client = await _connected(manager, engine, "alice")
    gate = asyncio.Event()

    async def _wait_for_gate(_client: FakeClient) -> None:
        await gate.wait()

    engine.send_hook = _wait_for_gate
    sending = asyncio.create_task(manager.send_message("alice", "5511999998888", "hi"))
    await asyncio.sleep(0)

    await manager.end_session("alice")
    assert client.destroy_calls == 1
    gate.set()

    result = await sending
    assert result["chat_id"] == "5511999998888@c.us"
    assert client.sent == [("5511999998888@c.us", "hi")]


@pytest.mark.anyio
async def test_failed_send_is_recorded_after_caller_leaves(
    manager: SessionManager, engine: FakeEngine, caplog: pytest.LogCaptureFixture
):
    await _connected(manager, engine, "alice")
    gate = asyncio.Event()

    async def _wait_for_gate(_client: FakeClient) -> None:
        await gate.wait()

    engine.send_hook = _wait_for_gate
    engine.send_error = RuntimeError("Evaluation failed")
    before = _send_total("error")
    sending = asyncio.create_task(manager.send_message("alice", "5511999998888", "hi"))
    await asyncio.sleep(0)

    sending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sending

    with caplog.at_level(logging.ERROR, logger="wagateway"):
        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)

    assert _send_total("error") == before + 1
    assert "stage=send_fail session=alice" in caplog.text


@pytest.mark.parametrize(
    ("number", "expected"),
    [
        ("5511999998888", "5511999998888@c.us"),
        ("+55 (11) 99999-8888", "5511999998888@c.us"),
        ("120363025@g.us", "120363025@g.us"),
    ],
)
def test_chat_id_normalization(engine: FakeEngine, number: str, expected: str):
    manager = SessionManager(engine)
    assert manager.chat_id(number) == expected


def test_chat_id_suffix_is_configurable(engine: FakeEngine):
    manager = SessionManager(engine, chat_suffix="@s.whatsapp.net")
    assert manager.chat_id("5511999998888") == "5511999998888@s.whatsapp.net"


@pytest.mark.anyio
async def test_invalid_number_is_rejected(manager: SessionManager, engine: FakeEngine):
    await _connected(manager, engine, "alice")

    with pytest.raises(InvalidRecipient):
        await manager.send_message("alice", "not-a-number", "hi")


@pytest.mark.anyio
async def test_render_challenge_formats(manager: SessionManager):
    await manager.start_session("alice")

    png = await manager.render_challenge("alice", "png")
    data_url = await manager.render_challenge("alice", "base64")

    assert png.startswith(PNG_SIGNATURE)
    assert data_url.startswith(PNG_DATA_URL_PREFIX)
    decoded = base64.b64decode(data_url[len(PNG_DATA_URL_PREFIX):])
    assert decoded.startswith(PNG_SIGNATURE)


@pytest.mark.anyio
async def test_render_unknown_format(manager: SessionManager):
    await manager.start_session("alice")

    with pytest.raises(RenderError):
        await manager.render_challenge("alice", "svg")


@pytest.mark.anyio
async def test_render_failure_is_wrapped(manager: SessionManager, monkeypatch: pytest.MonkeyPatch):
    await manager.start_session("alice")

    def _broken(payload: str, *, size: int) -> bytes:
        raise ValueError("boom")

    monkeypatch.setitem(manager_module._RENDERERS, "png", _broken)

    with pytest.raises(RenderError) as exc_info:
        await manager.render_challenge("alice", "png")
    assert exc_info.value.detail == "qr_render_failed"


@pytest.mark.anyio
async def test_render_rechecks_session_after_rendering(
    manager: SessionManager, monkeypatch: pytest.MonkeyPatch
):
    await manager.start_session("alice")
    entered = threading.Event()
    proceed = threading.Event()

    def _slow(payload: str, *, size: int) -> bytes:
        entered.set()
        proceed.wait(timeout=5)
        return PNG_SIGNATURE

    monkeypatch.setitem(manager_module._RENDERERS, "png", _slow)
    rendering = asyncio.create_task(manager.render_challenge("alice", "png"))
    while not entered.is_set():
        await asyncio.sleep(0.01)

    await manager.end_session("alice")
    proceed.set()

    with pytest.raises(NotFound):
        await rendering
