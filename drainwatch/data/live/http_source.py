"""
Weighing-device service over HTTP.

The scale itself is bridged by a device service that exposes the latest
reading and its connectivity as JSON endpoints:

    GET  /iot/device-status  -> {"connected": bool, "last_seen": iso|null}
    GET  /iot/weight         -> {"weight": number}   (kg)
    POST /iot/connect        -> {"success": bool, "message": str}
"""

import logging
import time
from typing import Optional

from ... import config
from ...errors import DeviceUnreachableError, InvalidReadingError
from ..models import DeviceStatus, Sample
from ..source import DeviceProbe, SampleSource, validate_mass
from .http_client import HttpJsonError, auth_headers, get_json, post_json

logger = logging.getLogger(__name__)


class HttpSampleSource(SampleSource):
    """Polls the weight-reading endpoint."""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        token: Optional[str] = None,
        timeout_s: float = config.HTTP_TIMEOUT_S,
    ):
        self.url = f"{base_url.rstrip('/')}/iot/weight"
        self.headers = auth_headers(token)
        self.timeout_s = timeout_s

    def poll(self) -> Sample:
        try:
            payload = get_json(self.url, timeout_s=self.timeout_s, headers=self.headers)
        except HttpJsonError as e:
            if e.status_code is not None and e.status_code // 100 == 2:
                # service answered, but not with a reading
                raise InvalidReadingError(f"Invalid response from server: {e.message}", e.response_text) from e
            raise DeviceUnreachableError(f"Failed to get weight reading: {e}") from e

        if "weight" not in payload:
            raise InvalidReadingError("Invalid response from server: missing 'weight'", payload)

        mass = validate_mass(payload["weight"])
        return Sample(mass_kg=mass, timestamp_ms=int(time.time() * 1000))


class HttpDeviceProbe(DeviceProbe):
    """Checks and requests scale connectivity through the device service."""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        token: Optional[str] = None,
        timeout_s: float = config.HTTP_TIMEOUT_S,
    ):
        base = base_url.rstrip('/')
        self.status_url = f"{base}/iot/device-status"
        self.connect_url = f"{base}/iot/connect"
        self.headers = auth_headers(token)
        self.timeout_s = timeout_s

    def status(self) -> DeviceStatus:
        try:
            payload = get_json(self.status_url, timeout_s=self.timeout_s, headers=self.headers)
        except HttpJsonError as e:
            raise DeviceUnreachableError(f"Failed to check device status: {e}") from e
        return DeviceStatus.from_payload(payload)

    def connect(self) -> bool:
        try:
            payload = post_json(
                self.connect_url, {"force": True}, timeout_s=self.timeout_s, headers=self.headers
            )
        except HttpJsonError as e:
            logger.warning(f"Connection attempt failed: {e}")
            return False

        if not payload.get("success"):
            logger.warning(f"Connection attempt failed: {payload.get('message') or 'Connection failed'}")
            return False
        return True
