"""
Main drainage monitoring orchestrator.

Coordinates all system components:
- Connectivity probing (gates sampling)
- Sample collection and filtering
- Drainage state machine evaluation
- Treatment timer
- Operator alerts
- Backend session sync and local event log

Within one sample cycle the order is always filter → evaluate → apply
(timer, alerts, sync, log).
"""

import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from alert_control import AlertDispatcher, NotificationSink
from event_logger import EventLogger
from sample_filter import SampleFilter
from state_machines import (
    DrainagePhase,
    DrainageStateMachine,
    SessionState,
    TERMINAL_PHASES,
    Transition,
    TreatmentTimer,
)

from . import config
from .data.models import AlertEvent, AlertKind, Sample
from .data.source import DeviceProbe, SampleSource
from .errors import DeviceUnreachableError, InvalidReadingError, SyncError, ValidationError
from .reconnect import ReconnectionManager
from .scheduler import ScheduledTask, Scheduler
from .sync import SessionSync

logger = logging.getLogger(__name__)


class DrainageMonitor:
    """
    CAPD drainage monitor.

    Runs three cooperative periodic tasks on one scheduler: the 2 s sample
    poll, the 1 s timer tick and the 5 s connectivity probe, plus the
    one-shot completion grace and reminder auto-dismiss callbacks.
    """

    def __init__(
        self,
        sample_source: SampleSource,
        device_probe: DeviceProbe,
        session_sync: Optional[SessionSync] = None,
        notification_sink: Optional[NotificationSink] = None,
        event_logger: Optional[EventLogger] = None,
        scheduler: Optional[Scheduler] = None,
        device_id: str = config.DEVICE_ID,
    ):
        """
        Initialize drainage monitor.

        Args:
            sample_source: Scale sample source (mock or live)
            device_probe: Connectivity probe for the same device service
            session_sync: Backend sync client (None to run offline)
            notification_sink: Alert presentation (None for log output)
            event_logger: Local treatment record (None to disable)
            scheduler: Cooperative scheduler (None for a wall-clock one)
            device_id: Scale identifier for the local record
        """
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.device_id = device_id
        self.running = False

        # Data layer
        self.sample_source = sample_source
        self.sample_filter = SampleFilter()
        self.mass_history = deque(maxlen=config.MASS_HISTORY_SIZE)

        # Connectivity
        self.reconnection = ReconnectionManager(device_probe, clock=self.scheduler.clock)
        self.reconnection.on_disconnect.append(self._on_disconnect)
        self.reconnection.on_reconnect.append(self._on_reconnect)

        # Alerts, sync, logging
        self.alerts = AlertDispatcher(notification_sink, self.scheduler)
        self.sync = session_sync
        self.event_logger = event_logger

        # Session (created by start_session)
        self.session: Optional[SessionState] = None
        self.machine: Optional[DrainageStateMachine] = None
        self.timer: Optional[TreatmentTimer] = None
        self.sync_warning: Optional[str] = None
        self.last_summary: Optional[Dict] = None

        # Callbacks for external integration
        self.on_transition: Optional[Callable[[Transition], None]] = None
        self.on_finished: Optional[Callable[[int], None]] = None
        self.on_alert: Optional[Callable[[AlertEvent], None]] = None

        self._probe_task: Optional[ScheduledTask] = None
        self._session_tasks: List[ScheduledTask] = []
        self._finish_task: Optional[ScheduledTask] = None
        self._deferred_alerts: List[AlertEvent] = []
        self._start_recorded = False
        self._session_started: Optional[float] = None
        self._consecutive_failures = 0
        self._unreachable_warned = False
        self._sample_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start connectivity probing."""
        if self.running:
            return
        self.running = True
        self._probe_task = self.scheduler.every(
            config.PROBE_INTERVAL_S, self._probe, name="connectivity_probe", run_immediately=True
        )
        logger.info("Drainage monitor started")

    def stop(self) -> None:
        """Stop all tasks and release the sample source."""
        self._teardown_session()
        self.scheduler.cancel(self._probe_task)
        self._probe_task = None
        self.running = False
        self.sample_source.close()
        logger.info("Drainage monitor stopped")

    def run(self, duration_s: Optional[float] = None) -> None:
        """
        Run the scheduler loop.

        Args:
            duration_s: Maximum run time in seconds (None for infinite)
        """
        self.start()
        deadline = self.scheduler.clock() + duration_s if duration_s is not None else float("inf")
        try:
            self.scheduler.run_until(deadline)
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.stop()

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def start_session(
        self,
        reminder_threshold_grams: float = config.REMINDER_THRESHOLD_G,
        completion_threshold_grams: float = config.COMPLETION_THRESHOLD_G,
    ) -> SessionState:
        """Begin a treatment session and start sampling."""
        if self.session is not None:
            if not self.session.is_terminal:
                raise ValidationError("A treatment session is already in progress")
            self._teardown_session()
        if not 0 < reminder_threshold_grams < completion_threshold_grams:
            raise ValidationError("Reminder threshold must be positive and below the completion threshold")

        self.start()

        self.session = SessionState(
            reminder_threshold_grams=reminder_threshold_grams,
            completion_threshold_grams=completion_threshold_grams,
        )
        self.machine = DrainageStateMachine(self.session)
        self.timer = TreatmentTimer(self.session, clock=self.scheduler.clock)
        self.machine.set_device_connected(self.reconnection.connected)
        self.alerts.suppressed = not self.reconnection.connected

        self.sample_filter.reset()
        self.mass_history.clear()
        self.sync_warning = None
        self._start_recorded = False
        self._session_started = self.scheduler.clock()
        self._consecutive_failures = 0
        self._unreachable_warned = False

        self._session_tasks = [
            self.scheduler.every(config.POLL_INTERVAL_S, self._poll, name="sample_poll"),
            self.scheduler.every(config.TIMER_TICK_S, self._tick, name="timer_tick"),
        ]

        if self.event_logger:
            self.event_logger.log_session_started(time.time(), self.device_id)
        logger.info("Treatment session started")
        return self.session

    def manual_set_initial_weight(self, mass_kg: float) -> List[Transition]:
        """Operator-entered initial bag weight."""
        machine = self._require_session()
        transitions = machine.set_initial_weight(mass_kg)
        for transition in transitions:
            self._apply(transition)
        return transitions

    def manual_stop(self) -> Transition:
        """Operator stop: cancels the timer and ends the session immediately."""
        machine = self._require_session()
        transition = machine.cancel()
        self._apply(transition)
        return transition

    def manual_reconnect(self) -> bool:
        return self.reconnection.manual_reconnect()

    def dismiss_alert(self) -> bool:
        return self.alerts.dismiss()

    def finish_session(self) -> Dict:
        """
        Submit the finished session.

        Returns:
            Locally computed session record

        Raises:
            ValidationError: no session, or treatment still running
        """
        if self.session is None:
            raise ValidationError("No treatment session to finish")
        if not self.session.is_terminal:
            raise ValidationError("Treatment is still in progress; stop it before submitting")

        summary = self._summary()
        if self.event_logger:
            self.event_logger.log_session_summary(summary, time.time())
        self.last_summary = summary
        self._teardown_session()
        return summary

    # ------------------------------------------------------------------
    # Sample cycle
    # ------------------------------------------------------------------

    def process_sample(self, sample: Sample) -> List[Transition]:
        """Filter, evaluate and apply one sample."""
        if self.machine is None or self.session.is_terminal:
            return []

        filtered = self.sample_filter.ingest(sample)
        self.mass_history.append((sample.timestamp_ms, sample.mass_kg))
        self._sample_count += 1

        transitions = self.machine.evaluate(filtered)
        for transition in transitions:
            self._apply(transition)
        return transitions

    def _poll(self) -> None:
        if self.session is None or self.session.is_terminal:
            return
        if not self.session.device_connected:
            return

        try:
            sample = self.sample_source.poll()
        except InvalidReadingError as e:
            logger.warning(f"Discarding invalid reading: {e}")
            return
        except DeviceUnreachableError as e:
            self._consecutive_failures += 1
            logger.warning(f"Weight poll failed ({self._consecutive_failures}x): {e}")
            if (
                self._consecutive_failures >= config.UNREACHABLE_WARNING_AFTER
                and not self._unreachable_warned
            ):
                self._unreachable_warned = True
                self._alert(AlertKind.WARNING,
                            "Failed to get weight reading. Please check the device connection.")
            return

        self._consecutive_failures = 0
        self._unreachable_warned = False
        self.process_sample(sample)

    def _tick(self) -> None:
        if self.timer is not None:
            self.timer.tick()

    def _probe(self) -> None:
        self.reconnection.probe()

    # ------------------------------------------------------------------
    # Transition side effects
    # ------------------------------------------------------------------

    def _apply(self, transition: Transition) -> None:
        logger.info(
            f"{transition.from_phase.value} -> {transition.to_phase.value}: {transition.reason}"
        )
        phase = transition.to_phase

        # Timer
        if phase == DrainagePhase.DRAINING:
            self.timer.start()
        elif phase in TERMINAL_PHASES:
            self.timer.stop()

        if self.event_logger:
            self.event_logger.log_transition(transition, self.session.elapsed_seconds)

        # Alerts
        if phase == DrainagePhase.REMINDER_ISSUED:
            self._alert(AlertKind.REMINDER, transition.reason)
        elif phase == DrainagePhase.COMPLETED:
            self._alert(AlertKind.COMPLETION, transition.reason)
            self._finish_task = self.scheduler.call_later(
                config.COMPLETION_GRACE_S, self._finished, name="completion_grace"
            )

        # Backend sync
        if phase == DrainagePhase.AWAITING_INITIAL_WEIGHT:
            self._sync_start(transition)
        elif phase in TERMINAL_PHASES:
            self._sync_stop(transition)

        if self.on_transition:
            self.on_transition(transition)

    def _finished(self) -> None:
        self._finish_task = None
        for event in self._deferred_alerts:
            self._dispatch(event)
        self._deferred_alerts.clear()
        if self.on_finished and self.session is not None:
            self.on_finished(self.session.elapsed_seconds)

    def _alert(self, kind: AlertKind, message: str) -> None:
        self._dispatch(AlertEvent(kind=kind, message=message))

    def _dispatch(self, event: AlertEvent) -> None:
        cue = self.alerts.dispatch(event)
        if cue is None:
            return
        if self.event_logger:
            self.event_logger.log_alert(event, cue.severity.value)
        if self.on_alert:
            self.on_alert(event)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _sync_start(self, transition: Transition) -> None:
        if self.sync is None or self._start_recorded:
            return
        self._start_recorded = True
        try:
            self.sync.record_start(mass_kg=transition.mass_kg, timestamp=_as_datetime(transition.timestamp_ms))
        except SyncError as e:
            self._sync_failed(e)

    def _sync_stop(self, transition: Transition) -> None:
        if self.sync is None or not self._start_recorded:
            return
        s = self.session
        try:
            self.sync.record_stop(
                mass_kg=transition.mass_kg,
                drained_grams=s.drained_grams if s.initial_mass_kg is not None else None,
                duration_seconds=int(self.scheduler.clock() - self._session_started),
                drain_duration_seconds=s.elapsed_seconds,
                timestamp=_as_datetime(transition.timestamp_ms),
            )
        except SyncError as e:
            self._sync_failed(e)

    def _sync_failed(self, error: SyncError) -> None:
        """Non-fatal: the physical transition stands, the record stays local."""
        self.sync_warning = f"Treatment recorded locally; sync failed. {error}"
        if self.event_logger and self.sync.pending:
            record, _ = self.sync.pending[-1]
            self.event_logger.log_sync_failure(record, error)

        event = AlertEvent(kind=AlertKind.WARNING, message=self.sync_warning)
        if self._finish_task is not None:
            # keep the completion cue up through the grace period
            self._deferred_alerts.append(event)
        else:
            self._dispatch(event)

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def _on_disconnect(self, message: str) -> None:
        if self.event_logger:
            self.event_logger.log_connectivity(False, message, time.time())
        if self.machine is None or self.session.is_terminal:
            return
        self.machine.set_device_connected(False)
        self._alert(AlertKind.CONNECTIVITY_LOSS, message)

    def _on_reconnect(self, message: str) -> None:
        if self.event_logger:
            self.event_logger.log_connectivity(True, message, time.time())
        self.alerts.connectivity_restored()
        if self.machine is None:
            return
        self.machine.set_device_connected(True)
        self.sample_filter.reset()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> DrainageStateMachine:
        if self.machine is None:
            raise ValidationError("No treatment session is in progress")
        return self.machine

    def _teardown_session(self) -> None:
        for task in self._session_tasks:
            self.scheduler.cancel(task)
        self._session_tasks = []
        self.scheduler.cancel(self._finish_task)
        self._finish_task = None
        self._deferred_alerts.clear()
        self.alerts.teardown()
        if self.timer is not None:
            self.timer.stop()
        self.session = None
        self.machine = None
        self.timer = None
        self.sample_filter.reset()

    def _summary(self) -> Dict:
        s = self.session
        return {
            "device_id": self.device_id,
            "phase": s.phase.value,
            "initial_mass_kg": s.initial_mass_kg,
            "final_mass_kg": s.current_mass_kg if s.initial_mass_kg is not None else None,
            "drained_grams": round(s.drained_grams) if s.initial_mass_kg is not None else None,
            "drain_duration_seconds": s.elapsed_seconds,
            "completion_reason": s.completion_reason.value if s.completion_reason else None,
            "reminder_issued": s.reminder_issued,
            "started_at": datetime.fromtimestamp(s.started_at, tz=timezone.utc).isoformat(),
            "ended_at": _as_datetime(s.ended_ms).isoformat() if s.ended_ms is not None else None,
            "sync_pending": bool(self.sync and self.sync.pending),
        }

    def get_status(self) -> Dict:
        """Get current system status."""
        status = {
            "running": self.running,
            "device_connected": self.reconnection.connected,
            "connection_error": self.reconnection.last_error,
            "samples_processed": self._sample_count,
            "active_alert": (
                {
                    "kind": self.alerts.active.kind.value,
                    "severity": self.alerts.active.severity.value,
                    "message": self.alerts.active.event.message,
                }
                if self.alerts.active else None
            ),
            "sync_warning": self.sync_warning,
            "session": self.session.to_dict() if self.session else None,
        }
        if self.sync is not None:
            status["sync_pending"] = len(self.sync.pending)
        return status


def _as_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)


def create_mock_monitor(
    log_dir: Optional[str] = None,
    scheduler: Optional[Scheduler] = None,
    notification_sink: Optional[NotificationSink] = None,
    **mock_kwargs,
) -> DrainageMonitor:
    """
    Create a monitor backed by the simulated scale.

    Convenience function for development and demos. Runs offline (no
    backend sync).

    Args:
        log_dir: Directory for treatment event logs (None to disable)
        scheduler: Scheduler to run on (None for wall clock)
        notification_sink: Alert presentation
        **mock_kwargs: Passed to MockSampleSource
    """
    from .data.source import MockDeviceProbe, MockSampleSource

    return DrainageMonitor(
        sample_source=MockSampleSource(**mock_kwargs),
        device_probe=MockDeviceProbe(),
        notification_sink=notification_sink,
        event_logger=EventLogger(log_dir) if log_dir else None,
        scheduler=scheduler,
    )


def create_live_monitor(
    base_url: str = config.API_BASE_URL,
    token: Optional[str] = None,
    log_dir: Optional[str] = config.EVENT_LOG_DIR,
    notification_sink: Optional[NotificationSink] = None,
    device_id: str = config.DEVICE_ID,
) -> DrainageMonitor:
    """
    Create a monitor against the HTTP device service and backend.

    Args:
        base_url: Backend API root
        token: Bearer token (defaults to DRAINWATCH_API_TOKEN)
        log_dir: Directory for treatment event logs
        notification_sink: Alert presentation
        device_id: Scale identifier
    """
    from .data.live import HttpDeviceProbe, HttpSampleSource

    return DrainageMonitor(
        sample_source=HttpSampleSource(base_url, token),
        device_probe=HttpDeviceProbe(base_url, token),
        session_sync=SessionSync(base_url, device_id=device_id, token=token),
        notification_sink=notification_sink,
        event_logger=EventLogger(log_dir) if log_dir else None,
        device_id=device_id,
    )


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    monitor = create_mock_monitor(seed=42, drain_rate_kg_per_s=0.02)
    monitor.on_finished = lambda elapsed: print(f"Drainage finished after {elapsed}s")
    monitor.start_session()
    monitor.run(duration_s=150)
    print(monitor.get_status())
