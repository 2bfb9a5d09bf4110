"""
Pipe-delimited telemetry payload decoding.

Two wire generations are understood:

  multi   deviceId|mode|lat|lng|speed|satellites|uptime,rssi,snr   (7 fields required)
  legacy  mode|lat|lng|speed|satellites|uptime,rssi,snr            (3 fields required)

The legacy generation has no device id; every record is keyed by a single
implicit device. When minimal STATUS pings are accepted, a STATUS message only
needs its identifying fields (deviceId|STATUS, or STATUS alone for legacy).

decode() is pure: same input, same record. It never stamps a receive time.
"""

import math
from dataclasses import dataclass
from enum import Enum

from .schemas import Mode, TelemetryRecord


class DecodeFailure(str, Enum):
    EMPTY_PAYLOAD = "empty_payload"
    MISSING_DEVICE_ID = "missing_device_id"
    INSUFFICIENT_FIELDS = "insufficient_fields"


class DecodeError(ValueError):
    def __init__(self, reason: DecodeFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


@dataclass(frozen=True)
class WireLayout:
    name: str
    has_device_id: bool
    min_fields: int
    min_status_fields: int

    @property
    def offset(self) -> int:
        return 1 if self.has_device_id else 0


MULTI_DEVICE = WireLayout("multi", has_device_id=True, min_fields=7, min_status_fields=2)
LEGACY = WireLayout("legacy", has_device_id=False, min_fields=3, min_status_fields=1)

LAYOUTS = {l.name: l for l in (MULTI_DEVICE, LEGACY)}


def layout_for(name: str) -> WireLayout:
    try:
        return LAYOUTS[name]
    except KeyError:
        raise ValueError(f"unknown payload layout {name!r} (expected one of {sorted(LAYOUTS)})")


def _coord(value: str) -> float | None:
    try:
        f = float(value)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


def _link_group(value: str) -> tuple[str, str | None, str | None]:
    # "uptime,rssi,snr"; any part may be missing
    sub = value.split(",")
    uptime = sub[0].strip() or "0"
    rssi = sub[1].strip() if len(sub) > 1 else ""
    snr = sub[2].strip() if len(sub) > 2 else ""
    return uptime, rssi or None, snr or None


def decode(
    raw: str | None,
    layout: WireLayout = MULTI_DEVICE,
    *,
    mode: str | None = None,
    default_device_id: str = "default",
    accept_minimal_status: bool = False,
) -> TelemetryRecord:
    """Decode one payload into a :class:`TelemetryRecord`.

    ``mode`` overrides the payload's own mode field; only the legacy layout
    uses it, where the mode historically travelled beside the payload.
    Raises :class:`DecodeError` when the payload cannot be decoded.
    """
    if raw is None or not raw.strip():
        raise DecodeError(DecodeFailure.EMPTY_PAYLOAD, "Invalid payload - empty")

    parts = raw.split("|")

    if layout.has_device_id:
        if len(parts) < 2 or not parts[0].strip():
            raise DecodeError(
                DecodeFailure.MISSING_DEVICE_ID,
                "Invalid payload format - missing device ID",
            )
        device_id = parts[0].strip()
        actual_mode = parts[1].strip()
    else:
        device_id = default_device_id
        actual_mode = (mode or parts[0]).strip()

    required = layout.min_fields
    if accept_minimal_status and actual_mode == Mode.STATUS.value:
        required = layout.min_status_fields
    if len(parts) < required:
        raise DecodeError(
            DecodeFailure.INSUFFICIENT_FIELDS,
            f"Invalid payload format - insufficient data ({len(parts)} of {required} fields)",
        )

    def field(i: int) -> str:
        idx = layout.offset + i
        return parts[idx].strip() if idx < len(parts) else ""

    uptime, rssi, snr = _link_group(field(5))

    return TelemetryRecord(
        device_id=device_id,
        device_name=device_id,
        mode=actual_mode,
        latitude=_coord(field(1)),
        longitude=_coord(field(2)),
        speed=field(3) or None,
        satellites=field(4) or None,
        uptime=uptime,
        rssi=rssi,
        snr=snr,
        raw_payload=raw,
    )
