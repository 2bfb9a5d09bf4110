from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field

class AlertEvent(SQLModel, table=True):
    __tablename__ = "alerts"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    device_name: Optional[str] = None
    status: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: Optional[str] = None
    satellites: Optional[str] = None
    uptime: str = "0"
    rssi: Optional[str] = None
    snr: Optional[str] = None
    raw_payload: str
    timestamp: datetime = Field(index=True)
