import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from seatag.decoder import decode
from seatag.main import create_app
from seatag.settings import Settings
from seatag.store import MemoryEventStore


class FakeSocket:
    """Stands in for a WebSocket: records what it was sent."""

    def __init__(self, fail: bool = False, gate: asyncio.Event | None = None) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.gate = gate
        self.accepted = False

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def make_record(raw: str, seconds: int = 0):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return decode(raw).model_copy(update={"received_at": base + timedelta(seconds=seconds)})


def make_settings(**overrides) -> Settings:
    values = dict(event_store="memory", cors_origins=["*"], payload_layout="multi",
                  accept_minimal_status=False, persisted_modes=["EMERGENCY", "NORMAL"],
                  mqtt_enabled=False)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def memory_store():
    return MemoryEventStore()


@pytest.fixture
def client(memory_store):
    app = create_app(make_settings(), store=memory_store)
    with TestClient(app) as c:
        yield c
