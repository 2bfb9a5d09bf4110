"""
Telemetry ingestion: decode, update latest state, persist when the mode
calls for it, broadcast.

Only decode/validation problems reject a submission. A failing or slow event
store downgrades the result to "received but not saved"; the state update and
the broadcast have already happened by then.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from .decoder import DecodeError, WireLayout, decode, layout_for
from .schemas import AlertSubmission, TelemetryRecord
from .settings import Settings
from .state import DeviceStateTable
from .store import EventStore
from .ws_manager import ConnectionManager

log = logging.getLogger("ingest")


class IngestError(Exception):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class MalformedSubmission(IngestError):
    def __init__(self, message: str = "Invalid payload") -> None:
        super().__init__("malformed_request", message)


@dataclass(frozen=True)
class IngestAck:
    record: TelemetryRecord
    persisted: bool
    event_id: int | None = None
    warning: str | None = None

    @property
    def message(self) -> str:
        if self.persisted:
            return "Alert received and saved"
        if self.warning:
            return "Alert received but not saved"
        return "Alert received"


class IngestionService:
    def __init__(
        self,
        state: DeviceStateTable,
        store: EventStore,
        manager: ConnectionManager,
        *,
        layout: WireLayout,
        persisted_modes: Iterable[str] = ("EMERGENCY", "NORMAL"),
        default_device_id: str = "default",
        accept_minimal_status: bool = False,
        store_timeout: float | None = 5.0,
    ) -> None:
        self.state = state
        self.store = store
        self.manager = manager
        self.layout = layout
        self.persisted_modes = frozenset(persisted_modes)
        self.default_device_id = default_device_id
        self.accept_minimal_status = accept_minimal_status
        self.store_timeout = store_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        state: DeviceStateTable,
        store: EventStore,
        manager: ConnectionManager,
    ) -> "IngestionService":
        return cls(
            state,
            store,
            manager,
            layout=layout_for(settings.payload_layout),
            persisted_modes=settings.persisted_modes,
            default_device_id=settings.default_device_id,
            accept_minimal_status=settings.accept_minimal_status,
            store_timeout=settings.store_timeout_seconds,
        )

    def describe(self) -> str:
        return (
            f"layout={self.layout.name} min_fields={self.layout.min_fields} "
            f"minimal_status={'on' if self.accept_minimal_status else 'off'} "
            f"persisted_modes={sorted(self.persisted_modes)}"
        )

    def should_persist(self, mode: str) -> bool:
        return mode in self.persisted_modes

    def decode(self, submission: AlertSubmission) -> TelemetryRecord:
        payload = submission.payload
        if not payload or not payload.strip():
            raise MalformedSubmission()
        try:
            return decode(
                payload,
                self.layout,
                # the mode only travels beside the payload in the legacy layout
                mode=None if self.layout.has_device_id else submission.status,
                default_device_id=self.default_device_id,
                accept_minimal_status=self.accept_minimal_status,
            )
        except DecodeError as e:
            raise IngestError(e.reason.value, e.message) from e

    async def ingest(self, submission: AlertSubmission) -> IngestAck:
        try:
            record = self.decode(submission)
        except IngestError as e:
            log.warning("Rejected submission (%s): %r", e.reason, submission.payload)
            raise

        record = record.model_copy(update={"received_at": datetime.now(timezone.utc)})
        log.info("Received %s from %s: %r", record.mode, record.device_id, record.raw_payload)

        self.state.upsert(record.device_id, record)
        await self.manager.broadcast_json(record.to_message())

        if not self.should_persist(record.mode):
            log.debug("%s is broadcast-only, not saved", record.mode)
            return IngestAck(record=record, persisted=False)
        return await self._persist(record)

    async def _persist(self, record: TelemetryRecord) -> IngestAck:
        try:
            event = await asyncio.wait_for(
                asyncio.to_thread(self.store.append, record), self.store_timeout
            )
        except asyncio.TimeoutError:
            log.error("Event store timed out after %ss saving %r", self.store_timeout, record.raw_payload)
            return IngestAck(record=record, persisted=False, warning="event store timed out")
        except Exception as e:
            log.exception("Error saving to event store: %r", record.raw_payload)
            return IngestAck(record=record, persisted=False, warning=f"event store error: {e}")
        log.info("Saved event %s for %s", event.id, record.device_id)
        return IngestAck(record=record, persisted=True, event_id=event.id)
