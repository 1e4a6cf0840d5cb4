"""Exception taxonomy for the drainage monitoring core."""

from typing import Optional


class DrainwatchError(Exception):
    """Base class for all monitoring errors."""


class DeviceError(DrainwatchError):
    """The weighing device could not provide a usable sample."""


class DeviceUnreachableError(DeviceError):
    """Polling failed to reach the device service. Retried next cycle."""


class InvalidReadingError(DeviceError):
    """A reading outside physically plausible bounds. Discarded."""

    def __init__(self, message: str, raw_value=None):
        super().__init__(message)
        self.raw_value = raw_value


class SyncError(DrainwatchError):
    """
    The backend rejected or failed to record a start/stop event.

    ``retryable`` is False for validation (4xx) rejections and True for
    server errors and network failures.
    """

    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        code = self.status_code if self.status_code is not None else "network"
        return f"Sync failed ({code}): {self.args[0]}"


class ValidationError(DrainwatchError):
    """An operator action violated a precondition. No state was changed."""
