"""Latest known telemetry per device, held in memory."""

from __future__ import annotations

import logging
from threading import Lock

from .schemas import TelemetryRecord

log = logging.getLogger("state")


class DeviceStateTable:
    """Last-write-wins map of device id -> newest record.

    Records are immutable, so a single locked assignment keeps each entry
    whole. Readers get snapshots and never see the live dict.
    """

    def __init__(self) -> None:
        self._latest: dict[str, TelemetryRecord] = {}
        self._lock = Lock()

    def upsert(self, device_id: str, record: TelemetryRecord) -> None:
        with self._lock:
            self._latest[device_id] = record

    def get(self, device_id: str) -> TelemetryRecord | None:
        with self._lock:
            return self._latest.get(device_id)

    def all(self) -> list[tuple[str, TelemetryRecord]]:
        with self._lock:
            return list(self._latest.items())

    def records(self) -> list[TelemetryRecord]:
        return [record for _, record in self.all()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._latest)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._latest

    def seed_from(self, store) -> int:
        """Load each known device's newest persisted event.

        Best effort: store failures are logged and the table keeps whatever it
        managed to load. Entries already present are not overwritten, since
        live ingestion may have beaten the seeding.
        """
        try:
            device_ids = store.device_ids()
        except Exception:
            log.exception("Could not list devices for state seeding")
            return 0

        loaded = 0
        for device_id in device_ids:
            try:
                event = store.latest_for_device(device_id)
            except Exception:
                log.exception("Could not load latest event for %s", device_id)
                continue
            if event is None:
                continue
            record = TelemetryRecord(**event.model_dump(exclude={"id"}))
            with self._lock:
                if device_id not in self._latest:
                    self._latest[device_id] = record
                    loaded += 1
        log.info("Loaded latest status for %d device(s) from the event store", loaded)
        return loaded
