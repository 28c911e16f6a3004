from __future__ import annotations

import pytest

from wagateway.manager import SessionManager
from wagateway.tests.fakes import FakeEngine


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def manager(engine: FakeEngine) -> SessionManager:
    return SessionManager(engine, start_timeout=1.0, qr_size=120)
