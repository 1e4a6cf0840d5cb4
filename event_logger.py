"""
Event Logging Module
Local treatment record for drainage monitoring sessions

Every session event is kept on disk as JSON, so a treatment is always
recorded locally even when the backend sync fails.
"""

import glob
import json
import logging
import os
from collections import deque
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from drainwatch import config
from drainwatch.data.models import AlertEvent, SyncRecord
from drainwatch.errors import SyncError
from state_machines import DrainagePhase, Transition

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event type classifications"""
    SESSION_STARTED = "session_started"
    INITIAL_WEIGHT_CAPTURED = "initial_weight_captured"
    DRAINAGE_DETECTED = "drainage_detected"
    REMINDER_ISSUED = "reminder_issued"
    TREATMENT_COMPLETED = "treatment_completed"
    TREATMENT_CANCELLED = "treatment_cancelled"
    SYNC_FAILED = "sync_failed"
    CONNECTIVITY_LOST = "connectivity_lost"
    CONNECTIVITY_RESTORED = "connectivity_restored"
    SYSTEM_ALERT = "system_alert"
    SESSION_SUMMARY = "session_summary"


DAILY_PREFIX = "daily_metrics_"

PHASE_EVENTS = {
    DrainagePhase.AWAITING_INITIAL_WEIGHT: EventType.INITIAL_WEIGHT_CAPTURED,
    DrainagePhase.DRAINING: EventType.DRAINAGE_DETECTED,
    DrainagePhase.REMINDER_ISSUED: EventType.REMINDER_ISSUED,
    DrainagePhase.COMPLETED: EventType.TREATMENT_COMPLETED,
    DrainagePhase.CANCELLED: EventType.TREATMENT_CANCELLED,
}


def _empty_daily_metrics() -> Dict:
    return {
        'date': date.today().isoformat(),
        'sessions': {
            'started': 0,
            'completed': 0,
            'cancelled': 0
        },
        'drainage': {
            'avg_drained_grams': 0.0,
            'max_drained_grams': 0.0,
            'avg_drain_seconds': 0.0,
            'reminders': 0,
            'drained_list': [],
            'durations_list': []
        },
        'sync': {
            'failures': 0,
            'retryable': 0
        },
        'connectivity': {
            'losses': 0
        },
        'system_alerts': {
            'count': 0,
            'types': {}
        }
    }


class EventLogger:
    """
    Manages treatment event logging with JSON output and aggregation

    Features:
    - Per-event JSON records
    - Daily aggregation
    - In-memory event buffer
    - Disk persistence
    """

    def __init__(self, log_directory: str = config.EVENT_LOG_DIR,
                 buffer_size: int = config.EVENT_BUFFER_SIZE):
        """
        Initialize event logger

        Args:
            log_directory: Directory for JSON log files
            buffer_size: Number of recent events to keep in memory
        """
        self.log_directory = log_directory
        self.buffer_size = buffer_size

        os.makedirs(log_directory, exist_ok=True)

        # In-memory event buffer (for console display)
        self.event_buffer = deque(maxlen=buffer_size)
        self.daily_metrics = _empty_daily_metrics()

        self.event_counter = 0
        self.current_date = date.today()

    def log_session_started(self, timestamp: float, device_id: str,
                            mass_kg: Optional[float] = None) -> Dict:
        """Log the operator starting a monitoring session"""
        event = self._build(EventType.SESSION_STARTED, timestamp, {
            'device_id': device_id,
            'mass_kg': round(mass_kg, 3) if mass_kg is not None else None
        })
        self._add_event(event)
        self.daily_metrics['sessions']['started'] += 1
        return event

    def log_transition(self, transition: Transition, elapsed_seconds: int = 0) -> Dict:
        """
        Log a drainage phase change

        Args:
            transition: Transition emitted by the state machine
            elapsed_seconds: Treatment timer value at the transition

        Returns:
            Event record dictionary
        """
        event_type = PHASE_EVENTS.get(transition.to_phase, EventType.SYSTEM_ALERT)
        event = self._build(event_type, transition.timestamp_ms / 1000.0, {
            'from_phase': transition.from_phase.value,
            'to_phase': transition.to_phase.value,
            'reason': transition.reason,
            'mass_kg': round(transition.mass_kg, 3) if transition.mass_kg is not None else None,
            'drained_grams': round(transition.drained_grams, 1),
            'elapsed_seconds': elapsed_seconds,
            'completion_reason': (
                transition.completion_reason.value if transition.completion_reason else None
            )
        })
        self._add_event(event)

        if event_type == EventType.REMINDER_ISSUED:
            self.daily_metrics['drainage']['reminders'] += 1
        elif event_type == EventType.TREATMENT_COMPLETED:
            self.daily_metrics['sessions']['completed'] += 1
            self.daily_metrics['drainage']['drained_list'].append(transition.drained_grams)
            self.daily_metrics['drainage']['durations_list'].append(elapsed_seconds)
        elif event_type == EventType.TREATMENT_CANCELLED:
            self.daily_metrics['sessions']['cancelled'] += 1

        return event

    def log_sync_failure(self, record: SyncRecord, error: SyncError) -> Dict:
        """Keep the unsent backend record so it can be reconciled later"""
        event = self._build(EventType.SYNC_FAILED, record.timestamp.timestamp(), {
            'action': record.action.value,
            'error': str(error),
            'retryable': error.retryable,
            'status_code': error.status_code,
            'payload': record.to_payload()
        })
        self._add_event(event)
        self.daily_metrics['sync']['failures'] += 1
        if error.retryable:
            self.daily_metrics['sync']['retryable'] += 1
        return event

    def log_connectivity(self, connected: bool, message: str, timestamp: float) -> Dict:
        event_type = EventType.CONNECTIVITY_RESTORED if connected else EventType.CONNECTIVITY_LOST
        event = self._build(event_type, timestamp, {'message': message})
        self._add_event(event)
        if not connected:
            self.daily_metrics['connectivity']['losses'] += 1
        return event

    def log_alert(self, alert: AlertEvent, severity: str) -> Dict:
        """Log an operator alert"""
        event = self._build(EventType.SYSTEM_ALERT, alert.issued_at, {
            'type': alert.kind.value,
            'severity': severity,
            'message': alert.message
        })
        self._add_event(event)

        types = self.daily_metrics['system_alerts']['types']
        self.daily_metrics['system_alerts']['count'] += 1
        types[alert.kind.value] = types.get(alert.kind.value, 0) + 1
        return event

    def log_session_summary(self, summary: Dict, timestamp: float) -> Dict:
        """Log the locally computed record of a finished session"""
        event = self._build(EventType.SESSION_SUMMARY, timestamp, dict(summary))
        self._add_event(event)
        return event

    def log_event(self, event_type: EventType, timestamp: float, **kwargs) -> Dict:
        """Log a generic event by type"""
        event = self._build(event_type, timestamp, kwargs)
        self._add_event(event)
        return event

    def _build(self, event_type: EventType, timestamp: float, data: Dict) -> Dict:
        return {
            'event_id': self._get_next_id(),
            'event_type': event_type.value,
            'timestamp': timestamp,
            'datetime': datetime.fromtimestamp(timestamp).isoformat(),
            'data': data
        }

    def _add_event(self, event: Dict) -> None:
        """Add event to buffer and save to disk"""
        self._check_daily_reset()
        self.event_buffer.append(event)
        self._save_event_to_disk(event)

    def _save_event_to_disk(self, event: Dict) -> None:
        stamp = datetime.fromtimestamp(event['timestamp']).strftime('%Y%m%d_%H%M%S')
        self._write_json(f"{stamp}_{event['event_id']:05d}_{event['event_type']}.json", event)

    def _write_json(self, filename: str, payload: Dict) -> None:
        path = os.path.join(self.log_directory, filename)
        try:
            with open(path, 'w') as f:
                json.dump(payload, f, indent=2)
        except OSError as e:
            logger.error(f"Could not write {path}: {e}")

    def _get_next_id(self) -> int:
        self.event_counter += 1
        return self.event_counter

    def _check_daily_reset(self) -> None:
        today = date.today()

        if today != self.current_date:
            self._save_daily_metrics()
            self.daily_metrics = _empty_daily_metrics()
            self.current_date = today

    def _summarize_metrics(self) -> Dict:
        metrics = json.loads(json.dumps(self.daily_metrics))
        drainage = metrics['drainage']

        if drainage['drained_list']:
            drainage['avg_drained_grams'] = float(np.mean(drainage['drained_list']))
            drainage['max_drained_grams'] = float(np.max(drainage['drained_list']))
        if drainage['durations_list']:
            drainage['avg_drain_seconds'] = float(np.mean(drainage['durations_list']))

        return metrics

    def _save_daily_metrics(self) -> None:
        metrics = self._summarize_metrics()
        for key in ('drained_list', 'durations_list'):
            metrics['drainage'].pop(key)
        self._write_json(f"{DAILY_PREFIX}{metrics['date']}.json", metrics)

    def get_recent_events(self, n: int = 10, event_type: Optional[EventType] = None) -> List[Dict]:
        """
        Get recent events from buffer

        Args:
            n: Number of events to return
            event_type: Filter by event type (optional)
        """
        events = list(self.event_buffer)
        if event_type:
            events = [e for e in events if e['event_type'] == event_type.value]
        return events[-n:]

    def get_daily_metrics(self) -> Dict:
        """Current daily metrics with real-time averages"""
        return self._summarize_metrics()

    def pending_sync_events(self) -> List[Dict]:
        """Sync failures in the buffer that still need manual reconciliation"""
        return self.get_recent_events(n=self.buffer_size, event_type=EventType.SYNC_FAILED)

    def clear_buffer(self) -> None:
        self.event_buffer.clear()

    def load_events_from_disk(self, max_events: Optional[int] = None) -> int:
        """
        Load the most recent events from JSON files in log_directory into the buffer.

        Args:
            max_events: Maximum number of events to load (up to buffer_size)

        Returns:
            Number of events loaded
        """
        json_files = glob.glob(os.path.join(self.log_directory, "*.json"))
        event_files = [f for f in json_files if not os.path.basename(f).startswith(DAILY_PREFIX)]

        temp_events = []
        for filepath in event_files:
            try:
                with open(filepath, 'r') as f:
                    event = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable event file {filepath}: {e}")
                continue

            if 'timestamp' not in event or 'event_type' not in event:
                continue
            temp_events.append(event)
            self.event_counter = max(self.event_counter, int(event.get('event_id', 0)))

        # Newest first, keep the most recent, then back to chronological order
        temp_events.sort(key=lambda e: e['timestamp'], reverse=True)
        if max_events:
            temp_events = temp_events[:max_events]
        temp_events.sort(key=lambda e: e['timestamp'])

        self.event_buffer = deque(temp_events, maxlen=self.buffer_size)
        return len(self.event_buffer)
