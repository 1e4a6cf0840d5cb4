"""Integration tests for the drainage monitor orchestrator."""

import pytest

from alert_control import MockNotificationSink
from drainwatch.data.live.http_client import HttpJsonError
from drainwatch.data.models import AlertKind
from drainwatch.data.source import MockDeviceProbe, ScriptedSampleSource
from drainwatch.errors import DeviceUnreachableError, InvalidReadingError, ValidationError
from drainwatch.monitor import DrainageMonitor, create_mock_monitor
from drainwatch.scheduler import ManualClock, Scheduler
from drainwatch.sync import SessionSync
from event_logger import EventLogger
from state_machines import CompletionReason, DrainagePhase
from tests.conftest import FakePost

FULL_DRAIN = [2.0, 2.0, 1.75, 1.5, 1.0, 0.5]


class Rig:
    """Monitor wired to scripted devices on a manual clock."""

    def __init__(self, script, probe=None, responses=None, event_logger=None):
        self.clock = ManualClock()
        self.scheduler = Scheduler(clock=self.clock, sleep=self.clock.sleep)
        self.source = ScriptedSampleSource(script)
        self.probe = probe or MockDeviceProbe()
        self.sink = MockNotificationSink()
        self.post = None
        sync = None
        if responses is not None:
            self.post = FakePost(responses)
            sync = SessionSync("http://api.test/api", token="", post=self.post)
        self.monitor = DrainageMonitor(
            sample_source=self.source,
            device_probe=self.probe,
            session_sync=sync,
            notification_sink=self.sink,
            event_logger=event_logger,
            scheduler=self.scheduler,
        )

    def run(self, seconds):
        self.scheduler.run_for(seconds)

    @property
    def session(self):
        return self.monitor.session


def test_full_drainage_session():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()

    # polls at t=2..12; drainage detected at t=6, completed at t=12
    rig.run(12)

    assert rig.session.phase == DrainagePhase.COMPLETED
    assert rig.session.completion_reason == CompletionReason.THRESHOLD
    assert rig.session.elapsed_seconds == 6
    assert rig.sink.kinds() == [AlertKind.REMINDER, AlertKind.COMPLETION]
    assert len(rig.monitor.mass_history) == 6


def test_finished_callback_after_grace_period():
    rig = Rig(FULL_DRAIN)
    finished = []
    rig.monitor.on_finished = finished.append
    rig.monitor.start_session()
    rig.run(12)

    rig.run(1)
    assert finished == []

    rig.run(1)
    assert finished == [6]


def test_transition_callback_sees_every_phase():
    rig = Rig(FULL_DRAIN)
    seen = []
    rig.monitor.on_transition = lambda t: seen.append(t.to_phase)
    rig.monitor.start_session()

    rig.run(12)

    assert seen == [
        DrainagePhase.AWAITING_INITIAL_WEIGHT,
        DrainagePhase.DRAINING,
        DrainagePhase.REMINDER_ISSUED,
        DrainagePhase.COMPLETED,
    ]


def test_timer_stops_at_completion():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()
    rig.run(12)

    rig.run(30)

    assert rig.session.elapsed_seconds == 6
    assert not rig.monitor.timer.running


def test_finish_session_returns_summary_and_resets():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()
    rig.run(14)

    summary = rig.monitor.finish_session()

    assert summary["phase"] == "COMPLETED"
    assert summary["initial_mass_kg"] == 2.0
    assert summary["final_mass_kg"] == 0.5
    assert summary["drained_grams"] == 1500
    assert summary["drain_duration_seconds"] == 6
    assert summary["completion_reason"] == "threshold"
    assert rig.monitor.session is None
    assert rig.monitor.alerts.active is None
    # only the connectivity probe keeps running between sessions
    assert rig.scheduler.pending == 1


def test_timer_keeps_running_while_scale_offline():
    rig = Rig([2.0, 1.75])
    rig.monitor.start_session()
    rig.run(6)
    assert rig.session.phase == DrainagePhase.DRAINING
    before = rig.session.elapsed_seconds

    rig.probe.connected = False
    rig.run(10)

    assert rig.session.phase == DrainagePhase.DRAINING
    assert not rig.session.device_connected
    assert rig.session.elapsed_seconds == before + 10
    assert AlertKind.CONNECTIVITY_LOSS in rig.sink.kinds()

    polls = rig.source.poll_count
    rig.run(4)
    assert rig.source.poll_count == polls


def test_sampling_resumes_after_reconnect():
    rig = Rig([2.0, 1.75])
    rig.monitor.start_session()
    rig.run(6)
    rig.probe.connected = False
    rig.run(5)
    polls = rig.source.poll_count

    rig.probe.connected = True
    rig.run(10)

    assert rig.session.device_connected
    assert not rig.monitor.alerts.suppressed
    assert rig.source.poll_count > polls


def test_manual_reconnect_from_operator():
    probe = MockDeviceProbe(connected=False)
    rig = Rig([2.0], probe=probe)
    rig.monitor.start_session()
    rig.run(1)
    assert not rig.session.device_connected

    assert rig.monitor.manual_reconnect()

    assert rig.session.device_connected
    assert probe.connect_calls == 1


def test_manual_stop_cancels_without_completion_alert():
    rig = Rig([2.0], responses=[{"success": True}, {"success": True}])
    rig.monitor.start_session()
    rig.run(2)

    transition = rig.monitor.manual_stop()

    assert transition.to_phase == DrainagePhase.CANCELLED
    assert rig.session.phase == DrainagePhase.CANCELLED
    assert rig.session.elapsed_seconds == 0
    assert not rig.monitor.timer.running
    assert rig.sink.kinds() == []
    assert [body["action"] for body in rig.post.bodies] == ["start", "stop"]


def test_manual_stop_while_draining_freezes_timer():
    rig = Rig([2.0, 1.75])
    rig.monitor.start_session()
    # drainage detected on the second poll at t=4
    rig.run(10)

    rig.monitor.manual_stop()
    assert rig.session.elapsed_seconds == 6

    rig.run(10)
    assert rig.session.elapsed_seconds == 6


def test_sync_records_start_and_stop():
    rig = Rig(FULL_DRAIN, responses=[])
    rig.monitor.start_session()

    rig.run(12)

    start, stop = rig.post.bodies
    assert start["action"] == "start"
    assert start["initial_weight"] == 2.0
    assert stop["action"] == "stop"
    assert stop["final_weight"] == 0.5
    assert stop["drained_volume"] == 1500
    assert stop["drain_duration"] == 6


def test_start_sync_failure_is_non_fatal(tmp_path):
    outage = HttpJsonError(url="u", status_code=500, message="Internal Server Error")
    logger = EventLogger(str(tmp_path))
    rig = Rig(FULL_DRAIN, responses=[outage], event_logger=logger)
    rig.monitor.start_session()

    rig.run(2)

    assert rig.session.phase == DrainagePhase.AWAITING_INITIAL_WEIGHT
    assert rig.sink.kinds() == [AlertKind.WARNING]
    assert "sync failed" in rig.monitor.sync_warning
    assert len(logger.pending_sync_events()) == 1

    rig.run(10)
    assert rig.session.phase == DrainagePhase.COMPLETED


def test_stop_sync_failure_waits_for_completion_cue():
    outage = HttpJsonError(url="u", status_code=503, message="Service unavailable")
    rig = Rig([2.0, 1.75, 0.0], responses=[{"success": True}, outage])
    rig.monitor.start_session()

    rig.run(6)
    assert rig.sink.kinds() == [AlertKind.COMPLETION]

    rig.run(2)
    assert rig.sink.kinds() == [AlertKind.COMPLETION, AlertKind.WARNING]
    assert rig.monitor.finish_session()["sync_pending"] is True


def test_invalid_readings_are_discarded():
    rig = Rig([InvalidReadingError("Negative weight value", -1.0), 2.0])
    rig.monitor.start_session()

    rig.run(2)
    assert rig.session.phase == DrainagePhase.IDLE
    assert len(rig.monitor.mass_history) == 0

    rig.run(2)
    assert rig.session.phase == DrainagePhase.AWAITING_INITIAL_WEIGHT


def test_repeated_poll_failures_warn_once():
    unreachable = [DeviceUnreachableError("timeout") for _ in range(4)]
    rig = Rig(unreachable + [2.0])
    rig.monitor.start_session()

    rig.run(4)
    assert rig.sink.kinds() == []

    rig.run(4)
    assert rig.sink.kinds() == [AlertKind.WARNING]

    rig.run(2)
    assert rig.session.phase == DrainagePhase.AWAITING_INITIAL_WEIGHT


def test_operator_initial_weight():
    rig = Rig([0.0])
    rig.monitor.start_session()

    rig.monitor.manual_set_initial_weight(2.5)

    assert rig.session.phase == DrainagePhase.AWAITING_INITIAL_WEIGHT
    assert rig.session.initial_mass_kg == 2.5


def test_dismiss_alert():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()
    rig.run(10)

    assert rig.monitor.dismiss_alert()
    assert rig.monitor.alerts.active is None


def test_reminder_auto_dismisses_after_ten_seconds():
    rig = Rig([2.0, 2.0, 1.75, 1.5, 1.0])
    rig.monitor.start_session()
    rig.run(10)
    assert rig.monitor.alerts.active.kind == AlertKind.REMINDER

    rig.run(10)

    assert rig.monitor.alerts.active is None


def test_command_preconditions():
    rig = Rig(FULL_DRAIN)

    with pytest.raises(ValidationError):
        rig.monitor.manual_stop()
    with pytest.raises(ValidationError):
        rig.monitor.manual_set_initial_weight(2.0)
    with pytest.raises(ValidationError):
        rig.monitor.finish_session()

    rig.monitor.start_session()
    with pytest.raises(ValidationError):
        rig.monitor.start_session()
    with pytest.raises(ValidationError):
        rig.monitor.finish_session()


def test_rejects_inverted_thresholds():
    rig = Rig(FULL_DRAIN)

    with pytest.raises(ValidationError):
        rig.monitor.start_session(reminder_threshold_grams=1500, completion_threshold_grams=1000)
    assert rig.monitor.session is None


def test_new_session_after_terminal_one():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()
    rig.run(12)

    session = rig.monitor.start_session()

    assert session.phase == DrainagePhase.IDLE
    assert len(rig.monitor.mass_history) == 0


def test_event_log_records_session(tmp_path):
    logger = EventLogger(str(tmp_path))
    rig = Rig(FULL_DRAIN, event_logger=logger)
    rig.monitor.start_session()
    rig.run(14)
    rig.monitor.finish_session()

    types = [e["event_type"] for e in logger.get_recent_events(n=50)]

    for expected in ("session_started", "initial_weight_captured", "drainage_detected",
                     "reminder_issued", "treatment_completed", "session_summary"):
        assert expected in types


def test_status_snapshot():
    rig = Rig(FULL_DRAIN)
    rig.monitor.start_session()
    rig.run(10)

    status = rig.monitor.get_status()

    assert status["running"]
    assert status["device_connected"]
    assert status["samples_processed"] == 5
    assert status["active_alert"]["kind"] == "reminder"
    assert status["session"]["phase"] == "REMINDER_ISSUED"


def test_mock_monitor_runs_to_completion():
    clock = ManualClock()
    scheduler = Scheduler(clock=clock, sleep=clock.sleep)
    sink = MockNotificationSink()
    monitor = create_mock_monitor(
        scheduler=scheduler, notification_sink=sink, noise_kg=0.0, drain_rate_kg_per_s=0.05
    )
    monitor.start_session()

    scheduler.run_for(60)

    assert monitor.session.phase == DrainagePhase.COMPLETED
    assert monitor.session.reminder_issued
    assert sink.kinds()[-1] == AlertKind.COMPLETION


def test_run_stops_and_closes_source():
    rig = Rig(FULL_DRAIN)

    rig.monitor.run(duration_s=5)

    assert not rig.monitor.running
    assert rig.scheduler.pending == 0


def test_unexpected_stop_reply_keeps_cancellation():
    rig = Rig([2.0], responses=[{"success": True}, True])
    seen = []
    rig.monitor.on_transition = lambda t: seen.append(t.to_phase)
    rig.monitor.start_session()
    rig.run(2)

    transition = rig.monitor.manual_stop()

    assert transition.to_phase == DrainagePhase.CANCELLED
    assert seen[-1] == DrainagePhase.CANCELLED
    assert "sync failed" in rig.monitor.sync_warning
    assert rig.sink.kinds() == [AlertKind.WARNING]


def test_stop_record_duration_follows_scheduler_clock():
    rig = Rig([2.0], responses=[])
    rig.monitor.start_session()
    rig.run(600)

    rig.monitor.manual_stop()

    stop = rig.post.bodies[-1]
    assert stop["action"] == "stop"
    assert stop["duration"] == 10
    assert stop["drain_duration"] == 0


def test_run_with_zero_duration_returns():
    rig = Rig(FULL_DRAIN)

    rig.monitor.run(duration_s=0)

    assert not rig.monitor.running
