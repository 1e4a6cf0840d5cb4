"""Unit tests for operator alert dispatch."""

from alert_control import (
    AUDIO_PATTERNS,
    VISUAL_SEVERITY,
    AlertDispatcher,
    LoggingNotificationSink,
    Severity,
)
from drainwatch.data.models import AlertEvent, AlertKind


def event(kind, message="test"):
    return AlertEvent(kind=kind, message=message)


def test_each_kind_has_distinct_presentation():
    assert len(set(AUDIO_PATTERNS.values())) == len(AlertKind)
    assert len(set(VISUAL_SEVERITY.values())) == len(AlertKind)


def test_dispatch_shows_cue(sink):
    dispatcher = AlertDispatcher(sink)

    cue = dispatcher.dispatch(event(AlertKind.REMINDER, "Prepare to clamp"))

    assert cue.severity == Severity.INFO
    assert cue.pattern == AUDIO_PATTERNS[AlertKind.REMINDER]
    assert cue.pattern_duration_ms == 1100
    assert dispatcher.active is cue
    assert sink.shown == [cue]


def test_new_alert_cancels_active_cue(sink):
    dispatcher = AlertDispatcher(sink)
    first = dispatcher.dispatch(event(AlertKind.REMINDER))

    second = dispatcher.dispatch(event(AlertKind.COMPLETION))

    assert sink.cancelled == [first]
    assert dispatcher.active is second
    assert second.severity == Severity.SUCCESS


def test_connectivity_loss_suppresses_sampling_alerts(sink):
    dispatcher = AlertDispatcher(sink)
    loss = dispatcher.dispatch(event(AlertKind.CONNECTIVITY_LOSS))

    assert loss.severity == Severity.ERROR
    assert dispatcher.dispatch(event(AlertKind.REMINDER)) is None
    assert dispatcher.dispatch(event(AlertKind.COMPLETION)) is None
    assert dispatcher.active is loss


def test_warnings_still_shown_while_disconnected(sink):
    dispatcher = AlertDispatcher(sink)
    dispatcher.dispatch(event(AlertKind.CONNECTIVITY_LOSS))

    cue = dispatcher.dispatch(event(AlertKind.WARNING))

    assert cue is not None
    assert cue.severity == Severity.WARNING


def test_connectivity_restored_lifts_suppression(sink):
    dispatcher = AlertDispatcher(sink)
    dispatcher.dispatch(event(AlertKind.CONNECTIVITY_LOSS))

    dispatcher.connectivity_restored()

    assert dispatcher.active is None
    assert dispatcher.dispatch(event(AlertKind.REMINDER)) is not None


def test_reminder_auto_dismisses(clock, scheduler, sink):
    dispatcher = AlertDispatcher(sink, scheduler, reminder_dismiss_s=10)
    dispatcher.dispatch(event(AlertKind.REMINDER))

    clock.advance(9)
    scheduler.run_pending()
    assert dispatcher.active is not None

    clock.advance(1)
    scheduler.run_pending()
    assert dispatcher.active is None


def test_replaced_reminder_does_not_dismiss_new_cue(clock, scheduler, sink):
    dispatcher = AlertDispatcher(sink, scheduler, reminder_dismiss_s=10)
    dispatcher.dispatch(event(AlertKind.REMINDER))
    completion = dispatcher.dispatch(event(AlertKind.COMPLETION))

    clock.advance(15)
    scheduler.run_pending()

    assert dispatcher.active is completion


def test_operator_dismiss(sink):
    dispatcher = AlertDispatcher(sink)
    dispatcher.dispatch(event(AlertKind.WARNING))

    assert dispatcher.dismiss()
    assert not dispatcher.dismiss()
    assert len(sink.cancelled) == 1


def test_teardown_clears_everything(clock, scheduler, sink):
    dispatcher = AlertDispatcher(sink, scheduler)
    dispatcher.dispatch(event(AlertKind.CONNECTIVITY_LOSS))

    dispatcher.teardown()

    assert dispatcher.active is None
    assert not dispatcher.suppressed
    assert scheduler.pending == 0


def test_listeners_receive_cues(sink):
    dispatcher = AlertDispatcher(sink)
    received = []
    dispatcher.listeners.append(received.append)

    cue = dispatcher.dispatch(event(AlertKind.WARNING))

    assert received == [cue]
    assert list(dispatcher.history) == [cue]


def test_logging_sink_writes_to_log(caplog):
    dispatcher = AlertDispatcher(LoggingNotificationSink())

    with caplog.at_level("INFO", logger="alert_control"):
        dispatcher.dispatch(event(AlertKind.COMPLETION, "Treatment completed"))

    assert "Treatment completed" in caplog.text
