"""Data models and sample collection layer."""

from .models import (
    AlertKind,
    SyncAction,
    Sample,
    FilteredSample,
    AlertEvent,
    DeviceStatus,
    SyncRecord,
    SyncAck,
)

__all__ = [
    "AlertKind",
    "SyncAction",
    "Sample",
    "FilteredSample",
    "AlertEvent",
    "DeviceStatus",
    "SyncRecord",
    "SyncAck",
]
