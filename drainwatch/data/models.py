"""
Data models for the drainage monitoring core.

Defines the mass samples coming off the scale, the alert events raised
during a treatment, and the records sent to the backend on start/stop.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import time


class AlertKind(Enum):
    """Operator alert categories."""
    REMINDER = "reminder"                   # Prepare to clamp the catheter
    COMPLETION = "completion"               # Drainage finished
    WARNING = "warning"                     # Degraded operation (sync, readings)
    CONNECTIVITY_LOSS = "connectivity_loss"  # Scale went offline

    @property
    def sampling_derived(self) -> bool:
        """Whether the alert is computed from weight samples."""
        return self in (AlertKind.REMINDER, AlertKind.COMPLETION)


class SyncAction(Enum):
    """Backend session-status actions."""
    START = "start"
    STOP = "stop"


@dataclass
class Sample:
    """
    Single validated mass reading from the scale.

    Mass in kilograms, timestamp in milliseconds since the epoch.
    """
    mass_kg: float
    timestamp_ms: int


@dataclass
class FilteredSample:
    """
    Sample plus the sliding-window statistics computed at ingest time.
    """
    sample: Sample
    rolling_average_kg: float
    is_stable: bool
    window_size: int

    @property
    def mass_kg(self) -> float:
        return self.sample.mass_kg

    @property
    def timestamp_ms(self) -> int:
        return self.sample.timestamp_ms


@dataclass
class AlertEvent:
    """Alert raised for the operator. Superseded events are discarded."""
    kind: AlertKind
    message: str
    issued_at: float = field(default_factory=time.time)  # Unix timestamp (seconds)


@dataclass
class DeviceStatus:
    """Reply of the device-status endpoint."""
    connected: bool
    last_seen_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "DeviceStatus":
        """Parse ``{"connected": bool, "last_seen": iso|null}``."""
        last_seen = payload.get("last_seen") or payload.get("lastSeenAt")
        last_seen_at = None
        if last_seen:
            try:
                last_seen_at = datetime.fromisoformat(str(last_seen).replace("Z", "+00:00"))
            except ValueError:
                last_seen_at = None
        return cls(connected=bool(payload.get("connected", False)), last_seen_at=last_seen_at)

    def describe(self) -> str:
        """Human readable connectivity line for the banner."""
        if self.connected:
            return "IoT scale connected"
        if self.last_seen_at is None:
            return "IoT scale not connected. Device never connected"
        return f"IoT scale not connected. Last seen {self.last_seen_at.strftime('%H:%M:%S')}"


@dataclass
class SyncRecord:
    """
    Payload recorded with the backend when monitoring starts or stops.

    Written once per transition. ``duration_seconds`` is the wall time of the
    whole session, ``drain_duration_seconds`` the treatment timer value.
    """
    action: SyncAction
    device_id: str
    timestamp: datetime
    mass_kg: Optional[float] = None
    drained_grams: Optional[float] = None
    duration_seconds: Optional[int] = None
    drain_duration_seconds: Optional[int] = None

    def to_payload(self) -> dict:
        """Serialize to the session-status endpoint contract."""
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)

        payload = {
            "action": self.action.value,
            "status": "active" if self.action == SyncAction.START else "inactive",
            "device_id": self.device_id,
            "timestamp": ts.isoformat(),
        }

        if self.action == SyncAction.START:
            payload["initial_weight"] = self.mass_kg
        else:
            payload["final_weight"] = self.mass_kg
            if self.duration_seconds is not None:
                payload["duration"] = round(self.duration_seconds / 60)
            payload["drain_duration"] = self.drain_duration_seconds or 0
            payload["drained_volume"] = (
                round(self.drained_grams) if self.drained_grams is not None else 0
            )

        return payload


@dataclass
class SyncAck:
    """Successful backend acknowledgement."""
    action: SyncAction
    message: str = ""
    payload: dict = field(default_factory=dict)
