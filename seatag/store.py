"""
Event log persistence.

The ingestion core only talks to the EventStore protocol; durability is a
property of the implementation picked at startup (SQL or in-process memory).
All methods are synchronous and return events newest first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlmodel import select

from .db import get_session, init_db, make_engine
from .models import AlertEvent
from .schemas import PersistedEvent, TelemetryRecord
from .settings import Settings

log = logging.getLogger("store")


class EventStore(Protocol):
    def append(self, record: TelemetryRecord) -> PersistedEvent: ...

    def list_all(self) -> list[PersistedEvent]: ...

    def list_by_device(self, device_id: str) -> list[PersistedEvent]: ...

    def delete(self, event_id: int) -> bool: ...

    def delete_all(self) -> int: ...

    def latest_for_device(self, device_id: str) -> PersistedEvent | None: ...

    def device_ids(self) -> list[str]: ...


def _utc(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    # SQLite hands datetimes back naive
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _newest_first(events: list[PersistedEvent]) -> list[PersistedEvent]:
    return sorted(events, key=lambda e: (e.received_at, e.id), reverse=True)


class SqlEventStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def init(self) -> None:
        init_db(self.engine)

    @staticmethod
    def _to_event(row: AlertEvent) -> PersistedEvent:
        return PersistedEvent(
            id=row.id,
            device_id=row.device_id,
            device_name=row.device_name,
            mode=row.status,
            latitude=row.latitude,
            longitude=row.longitude,
            speed=row.speed,
            satellites=row.satellites,
            uptime=row.uptime,
            rssi=row.rssi,
            snr=row.snr,
            raw_payload=row.raw_payload,
            received_at=_utc(row.timestamp),
        )

    def _ordered(self):
        return select(AlertEvent).order_by(AlertEvent.timestamp.desc(), AlertEvent.id.desc())

    def append(self, record: TelemetryRecord) -> PersistedEvent:
        row = AlertEvent(
            device_id=record.device_id,
            device_name=record.device_name,
            status=record.mode,
            latitude=record.latitude,
            longitude=record.longitude,
            speed=record.speed,
            satellites=record.satellites,
            uptime=record.uptime,
            rssi=record.rssi,
            snr=record.snr,
            raw_payload=record.raw_payload,
            timestamp=_utc(record.received_at),
        )
        with get_session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_event(row)

    def list_all(self) -> list[PersistedEvent]:
        with get_session(self.engine) as session:
            return [self._to_event(r) for r in session.exec(self._ordered()).all()]

    def list_by_device(self, device_id: str) -> list[PersistedEvent]:
        with get_session(self.engine) as session:
            stmt = self._ordered().where(AlertEvent.device_id == device_id)
            return [self._to_event(r) for r in session.exec(stmt).all()]

    def delete(self, event_id: int) -> bool:
        with get_session(self.engine) as session:
            row = session.get(AlertEvent, event_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def delete_all(self) -> int:
        with get_session(self.engine) as session:
            rows = session.exec(select(AlertEvent)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    def latest_for_device(self, device_id: str) -> PersistedEvent | None:
        with get_session(self.engine) as session:
            stmt = self._ordered().where(AlertEvent.device_id == device_id).limit(1)
            row = session.exec(stmt).first()
            return self._to_event(row) if row else None

    def device_ids(self) -> list[str]:
        with get_session(self.engine) as session:
            stmt = select(AlertEvent.device_id).distinct().order_by(AlertEvent.device_id)
            return list(session.exec(stmt).all())


class MemoryEventStore:
    """Process-local event log. Everything is lost on restart."""

    def __init__(self) -> None:
        self._events: list[PersistedEvent] = []
        self._next_id = 1
        self._lock = Lock()

    def append(self, record: TelemetryRecord) -> PersistedEvent:
        with self._lock:
            event = PersistedEvent(
                **record.model_dump(exclude={"received_at"}),
                received_at=_utc(record.received_at),
                id=self._next_id,
            )
            self._next_id += 1
            self._events.append(event)
            return event

    def list_all(self) -> list[PersistedEvent]:
        with self._lock:
            return _newest_first(self._events)

    def list_by_device(self, device_id: str) -> list[PersistedEvent]:
        with self._lock:
            return _newest_first([e for e in self._events if e.device_id == device_id])

    def delete(self, event_id: int) -> bool:
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.id != event_id]
            return len(self._events) < before

    def delete_all(self) -> int:
        with self._lock:
            n = len(self._events)
            self._events = []
            return n

    def latest_for_device(self, device_id: str) -> PersistedEvent | None:
        events = self.list_by_device(device_id)
        return events[0] if events else None

    def device_ids(self) -> list[str]:
        with self._lock:
            return sorted({e.device_id for e in self._events})


def build_store(settings: Settings) -> EventStore:
    if settings.event_store == "memory":
        log.warning("Using IN-MEMORY event store: history is lost when the process restarts")
        return MemoryEventStore()
    if settings.event_store != "sql":
        raise ValueError(f"unknown EVENT_STORE {settings.event_store!r} (expected sql|memory)")
    store = SqlEventStore(make_engine(settings.database_url))
    store.init()
    log.info("Using SQL event store at %s", store.engine.url.render_as_string(hide_password=True))
    return store
