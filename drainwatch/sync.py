"""
Backend session synchronization.

Records "monitoring started" and "monitoring stopped" with the
session-status endpoint. A failed sync never undoes a physical transition:
the caller reports it to the operator and the record stays in ``pending``
for manual reconciliation or a caller-driven retry.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from . import config
from .data.live.http_client import HttpJsonError, auth_headers, post_json
from .data.models import SyncAck, SyncAction, SyncRecord
from .errors import SyncError

logger = logging.getLogger(__name__)


class SessionSync:
    """Client for ``POST /iot/status``."""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        device_id: str = config.DEVICE_ID,
        token: Optional[str] = None,
        timeout_s: float = config.HTTP_TIMEOUT_S,
        post: Callable[..., dict] = post_json,
    ):
        """
        Args:
            base_url: Backend API root
            device_id: Scale identifier sent with every record
            token: Bearer token (defaults to DRAINWATCH_API_TOKEN)
            timeout_s: HTTP timeout
            post: JSON POST function, replaceable for tests
        """
        self.url = f"{base_url.rstrip('/')}/iot/status"
        self.device_id = device_id
        self.headers = auth_headers(token)
        self.timeout_s = timeout_s
        self._post = post

        self.pending: List[Tuple[SyncRecord, SyncError]] = []
        self.sent: List[SyncRecord] = []

    def record_start(self, mass_kg: Optional[float] = None, timestamp: Optional[datetime] = None) -> SyncAck:
        record = SyncRecord(
            action=SyncAction.START,
            device_id=self.device_id,
            timestamp=timestamp or datetime.now(timezone.utc),
            mass_kg=mass_kg,
        )
        return self.send(record)

    def record_stop(
        self,
        mass_kg: Optional[float] = None,
        drained_grams: Optional[float] = None,
        duration_seconds: Optional[int] = None,
        drain_duration_seconds: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> SyncAck:
        record = SyncRecord(
            action=SyncAction.STOP,
            device_id=self.device_id,
            timestamp=timestamp or datetime.now(timezone.utc),
            mass_kg=mass_kg,
            drained_grams=drained_grams,
            duration_seconds=duration_seconds,
            drain_duration_seconds=drain_duration_seconds,
        )
        return self.send(record)

    def send(self, record: SyncRecord) -> SyncAck:
        """
        Post one record.

        Raises:
            SyncError: the backend rejected (non-retryable) or could not
                record (retryable) the event. The record is queued in
                ``pending``.
        """
        body = record.to_payload()
        logger.info(f"POST {self.url} action={record.action.value} keys={list(body.keys())}")

        try:
            payload = self._post(self.url, body, timeout_s=self.timeout_s, headers=self.headers)
        except HttpJsonError as e:
            error = SyncError(e.message, retryable=not e.is_client_error, status_code=e.status_code)
            raise self._fail(record, error) from e

        if not isinstance(payload, dict):
            raise self._fail(record, SyncError("Unexpected reply from server", retryable=False))
        if not payload.get("success"):
            message = payload.get("message") or f"Failed to {record.action.value} monitoring"
            raise self._fail(record, SyncError(message, retryable=False))

        self.sent.append(record)
        return SyncAck(action=record.action, message=str(payload.get("message", "")), payload=payload)

    def retry_pending(self) -> List[SyncAck]:
        """Re-send queued records whose failure was transient."""
        acks = []
        queued, self.pending = self.pending, []
        for record, error in queued:
            if not error.retryable:
                self.pending.append((record, error))
                continue
            try:
                acks.append(self.send(record))
            except SyncError:
                pass  # send() re-queued it
        return acks

    def _fail(self, record: SyncRecord, error: SyncError) -> SyncError:
        logger.warning(f"Session {record.action.value} not recorded: {error}")
        self.pending.append((record, error))
        return error
