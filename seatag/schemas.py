from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class Mode(str, Enum):
    EMERGENCY = "EMERGENCY"
    NORMAL = "NORMAL"
    STATUS = "STATUS"


class TelemetryRecord(BaseModel):
    """One decoded telemetry message.

    ``mode`` is carried verbatim, so values outside :class:`Mode` survive.
    Absent coordinates and link metrics are ``None``, never NaN or "".
    ``received_at`` is stamped by the ingestion service, not the sender.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    device_id: str = Field(alias="deviceId")
    device_name: str | None = Field(default=None, alias="deviceName")
    mode: str = Field(alias="status")
    latitude: float | None = None
    longitude: float | None = None
    speed: str | None = None
    satellites: str | None = None
    uptime: str = "0"
    rssi: str | None = None
    snr: str | None = None
    raw_payload: str = Field(alias="rawPayload")
    received_at: datetime | None = Field(default=None, alias="timestamp")

    def to_message(self) -> dict:
        return {"kind": "state", **self.model_dump(mode="json", by_alias=True)}


class PersistedEvent(TelemetryRecord):
    id: int


class AlertSubmission(BaseModel):
    status: str | None = None
    payload: str | None = None


class AlertResponse(BaseModel):
    success: bool
    message: str
    persisted: bool = False
    warning: str | None = None


class MessageResponse(BaseModel):
    success: bool
    message: str


class EventList(BaseModel):
    locations: list[PersistedEvent]
    count: int


class DeviceStatusList(BaseModel):
    devices: list[TelemetryRecord]
    count: int


class DeviceSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    latest_status: TelemetryRecord | None = Field(default=None, alias="latestStatus")


class DeviceList(BaseModel):
    devices: list[DeviceSummary]
    count: int


class AcknowledgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    command: str = "acknowledge"


class AcknowledgeResponse(BaseModel):
    success: bool
    message: str
    commandId: str
    delivered: int
