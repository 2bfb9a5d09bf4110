import time

import pytest

from seatag.decoder import LEGACY, MULTI_DEVICE
from seatag.ingest import IngestError, IngestionService, MalformedSubmission
from seatag.schemas import AlertSubmission
from seatag.state import DeviceStateTable
from seatag.store import MemoryEventStore
from seatag.ws_manager import ConnectionManager

from conftest import FakeSocket, make_settings

SCENARIO_A = "DEV1|EMERGENCY|14.6|120.9|0km/h|7sat|120,-80,9.5"
SCENARIO_B = "DEV1|STATUS|14.6|120.9|0km/h|7sat|120,-80,9.5"


class FailingStore(MemoryEventStore):
    def append(self, record):
        raise ConnectionError("boom")


class SlowStore(MemoryEventStore):
    def append(self, record):
        time.sleep(0.3)
        return super().append(record)


async def _service(store=None, **kwargs):
    manager = ConnectionManager()
    viewer = FakeSocket()
    await manager.register(viewer)
    kwargs.setdefault("layout", MULTI_DEVICE)
    service = IngestionService(DeviceStateTable(), store or MemoryEventStore(), manager, **kwargs)
    return service, viewer


@pytest.mark.asyncio
async def test_emergency_is_saved_and_broadcast():
    service, viewer = await _service()

    ack = await service.ingest(AlertSubmission(status="EMERGENCY", payload=SCENARIO_A))
    await service.manager.flush()

    assert ack.persisted is True
    assert ack.event_id is not None
    assert ack.message == "Alert received and saved"
    assert len(service.store.list_all()) == 1
    assert len(viewer.sent) == 1
    message = viewer.sent[0]
    assert message["kind"] == "state"
    assert message["deviceId"] == "DEV1"
    assert message["status"] == "EMERGENCY"
    assert message["latitude"] == 14.6
    assert message["rssi"] == "-80"
    assert message["rawPayload"] == SCENARIO_A
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_status_updates_state_without_saving():
    service, viewer = await _service()

    ack = await service.ingest(AlertSubmission(status="STATUS", payload=SCENARIO_B))
    await service.ingest(AlertSubmission(status="STATUS", payload=SCENARIO_B))
    await service.manager.flush()

    assert ack.persisted is False
    assert ack.warning is None
    assert ack.message == "Alert received"
    assert service.store.list_all() == []
    assert service.state.get("DEV1").mode == "STATUS"
    assert len(viewer.sent) == 2
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_every_saved_mode_ingestion_adds_one_event():
    service, _ = await _service()

    for i, mode in enumerate(["NORMAL", "EMERGENCY", "NORMAL"], start=1):
        await service.ingest(AlertSubmission(payload=f"DEV1|{mode}|1|2|0km/h|7sat|{i}"))
        assert len(service.store.list_all()) == i
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_latest_state_follows_newest_message_of_any_mode():
    service, _ = await _service()

    await service.ingest(AlertSubmission(payload=SCENARIO_A))
    await service.ingest(AlertSubmission(payload="DEV1|STATUS|10|20|0km/h|7sat|130"))
    await service.ingest(AlertSubmission(payload="DEV2|NORMAL|1|1|0km/h|7sat|5"))

    latest = service.state.get("DEV1")
    assert latest.mode == "STATUS"
    assert latest.latitude == 10.0
    assert latest.received_at is not None
    assert latest.raw_payload == "DEV1|STATUS|10|20|0km/h|7sat|130"
    assert service.state.get("DEV2").mode == "NORMAL"
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_unknown_mode_is_broadcast_only():
    service, viewer = await _service()

    ack = await service.ingest(AlertSubmission(payload="DEV1|TEST|1|2|0km/h|7sat|1"))
    await service.manager.flush()

    assert ack.persisted is False
    assert service.store.list_all() == []
    assert len(viewer.sent) == 1
    await service.manager.close_all()


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [None, "", "  "])
async def test_missing_payload_is_malformed(payload):
    service, viewer = await _service()

    with pytest.raises(MalformedSubmission):
        await service.ingest(AlertSubmission(status="EMERGENCY", payload=payload))
    await service.manager.flush()

    assert viewer.sent == []
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_decode_failure_rejects_without_side_effects():
    service, viewer = await _service()

    with pytest.raises(IngestError) as exc:
        await service.ingest(AlertSubmission(status="STATUS", payload="DEV1|STATUS"))
    await service.manager.flush()

    assert exc.value.reason == "insufficient_fields"
    assert len(service.state) == 0
    assert viewer.sent == []
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_minimal_status_ping_when_enabled():
    service, viewer = await _service(accept_minimal_status=True)

    ack = await service.ingest(AlertSubmission(payload="DEV1|STATUS"))
    await service.manager.flush()

    assert ack.persisted is False
    assert service.state.get("DEV1").latitude is None
    assert viewer.sent[0]["latitude"] is None
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_store_failure_still_acknowledges_and_broadcasts():
    service, viewer = await _service(store=FailingStore())

    ack = await service.ingest(AlertSubmission(payload=SCENARIO_A))
    await service.manager.flush()

    assert ack.persisted is False
    assert "boom" in ack.warning
    assert ack.message == "Alert received but not saved"
    assert service.state.get("DEV1").mode == "EMERGENCY"
    assert len(viewer.sent) == 1
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_store_timeout_is_a_soft_failure():
    service, viewer = await _service(store=SlowStore(), store_timeout=0.05)

    ack = await service.ingest(AlertSubmission(payload=SCENARIO_A))
    await service.manager.flush()

    assert ack.persisted is False
    assert ack.warning == "event store timed out"
    assert len(viewer.sent) == 1
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_persisted_modes_are_configurable():
    service, _ = await _service(persisted_modes=["EMERGENCY", "NORMAL", "STATUS"])

    ack = await service.ingest(AlertSubmission(payload=SCENARIO_B))

    assert ack.persisted is True
    assert len(service.store.list_all()) == 1
    await service.manager.close_all()


@pytest.mark.asyncio
async def test_legacy_layout_takes_mode_from_body():
    service, _ = await _service(layout=LEGACY, default_device_id="tracker")

    ack = await service.ingest(
        AlertSubmission(status="EMERGENCY", payload="EMERGENCY|14.6|120.9|0km/h|7sat|120,-80,9.5")
    )

    assert ack.persisted is True
    assert ack.record.device_id == "tracker"
    assert service.state.get("tracker").snr == "9.5"
    await service.manager.close_all()


def test_from_settings():
    service = IngestionService.from_settings(
        make_settings(payload_layout="legacy", persisted_modes=["STATUS"], store_timeout_seconds=1.5),
        DeviceStateTable(),
        MemoryEventStore(),
        ConnectionManager(),
    )

    assert service.layout is LEGACY
    assert service.should_persist("STATUS") is True
    assert service.should_persist("EMERGENCY") is False
    assert service.store_timeout == 1.5
    assert "layout=legacy" in service.describe()
