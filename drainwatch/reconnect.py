"""
Scale connectivity tracking.

Probes the device service on a fixed cadence, notifies listeners when the
scale drops off or comes back, and exposes an operator-triggered reconnect.
Manual and automatic probes go through the same check; results younger than
MIN_PROBE_SPACING_S are reused so repeated clicks never storm the device.
"""

import logging
import time
from typing import Callable, List, Optional

from . import config
from .data.models import DeviceStatus
from .data.source import DeviceProbe
from .errors import DeviceUnreachableError

logger = logging.getLogger(__name__)


class ReconnectionManager:
    """
    Connectivity state machine: connected ⇄ disconnected.

    Listeners:
        on_disconnect(message): connected → disconnected
        on_reconnect(message):  disconnected → connected
    """

    def __init__(
        self,
        device: DeviceProbe,
        clock: Callable[[], float] = time.monotonic,
        min_spacing_s: float = config.MIN_PROBE_SPACING_S,
        assume_connected: bool = True,
    ):
        self.device = device
        self.clock = clock
        self.min_spacing_s = min_spacing_s

        self.connected = assume_connected
        self.last_status: Optional[DeviceStatus] = None
        self.last_error: Optional[str] = None

        self.on_disconnect: List[Callable[[str], None]] = []
        self.on_reconnect: List[Callable[[str], None]] = []

        self._last_check: Optional[float] = None
        self._connecting = False
        self.check_count = 0

    def probe(self) -> bool:
        """Scheduled connectivity probe. Returns the current connectivity."""
        if self._recently_checked():
            return self.connected
        return self._check()

    def manual_reconnect(self) -> bool:
        """
        Operator-triggered retry outside the automatic cadence.

        Checks status first; if the scale is still offline, asks the device
        service to connect it.
        """
        connected = self.connected if self._recently_checked() else self._check()
        if connected:
            return True
        if self._connecting:
            return False

        logger.info("Attempting to connect to scale...")
        self._connecting = True
        try:
            ok = self.device.connect()
        finally:
            self._connecting = False

        self._last_check = self.clock()
        if ok:
            self._set(True, "IoT scale connected successfully")
            return True

        self.last_error = "Failed to connect to scale. Please check the device."
        logger.warning(self.last_error)
        return False

    def _recently_checked(self) -> bool:
        return (
            self._last_check is not None
            and self.clock() - self._last_check < self.min_spacing_s
        )

    def _check(self) -> bool:
        self._last_check = self.clock()
        self.check_count += 1
        try:
            status = self.device.status()
        except DeviceUnreachableError as e:
            self.last_status = None
            self._set(False, str(e))
            return False

        self.last_status = status
        self._set(status.connected, status.describe())
        return status.connected

    def _set(self, connected: bool, message: str) -> None:
        self.last_error = None if connected else message
        if connected == self.connected:
            return

        self.connected = connected
        if connected:
            logger.info(message)
            for listener in self.on_reconnect:
                listener(message)
        else:
            logger.warning(message)
            for listener in self.on_disconnect:
                listener(message)
