"""
Alert Control Module
Dispatches operator cues (audio pattern + visual severity) for drainage events

At most one cue is active: a new alert cancels the in-flight cue first.
While the scale is disconnected, alerts derived from weight samples are
suppressed until connectivity returns.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from drainwatch import config
from drainwatch.data.models import AlertEvent, AlertKind
from drainwatch.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Visual severity of an alert banner"""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ToneStep:
    """One tone of an audio pattern"""
    frequency_hz: float
    duration_ms: int
    offset_ms: int = 0          # start time relative to the pattern start
    waveform: str = "sine"


# Each kind gets a pattern an operator can tell apart without reading text
AUDIO_PATTERNS: Dict[AlertKind, Tuple[ToneStep, ...]] = {
    # alternating two-tone chime, "clamp soon"
    AlertKind.REMINDER: (
        ToneStep(659, 200, 0),
        ToneStep(523, 200, 300),
        ToneStep(659, 200, 600),
        ToneStep(523, 200, 900),
    ),
    # rising major arpeggio, "treatment complete"
    AlertKind.COMPLETION: (
        ToneStep(784, 200, 0),
        ToneStep(1046, 200, 300),
        ToneStep(1318, 300, 600),
    ),
    # single low buzz
    AlertKind.WARNING: (
        ToneStep(392, 800, 0, "square"),
    ),
    # falling double buzz
    AlertKind.CONNECTIVITY_LOSS: (
        ToneStep(440, 400, 0, "square"),
        ToneStep(294, 600, 500, "square"),
    ),
}

VISUAL_SEVERITY: Dict[AlertKind, Severity] = {
    AlertKind.REMINDER: Severity.INFO,
    AlertKind.COMPLETION: Severity.SUCCESS,
    AlertKind.WARNING: Severity.WARNING,
    AlertKind.CONNECTIVITY_LOSS: Severity.ERROR,
}


@dataclass
class AlertCue:
    """A dispatched alert: the event plus how it is presented"""
    cue_id: int
    event: AlertEvent
    severity: Severity
    pattern: Tuple[ToneStep, ...]

    @property
    def kind(self) -> AlertKind:
        return self.event.kind

    @property
    def pattern_duration_ms(self) -> int:
        return max(step.offset_ms + step.duration_ms for step in self.pattern)


# ---------------------------------------------------------------------
# NOTIFICATION SINKS
# ---------------------------------------------------------------------

class NotificationSink(ABC):
    """Abstract "show alert" capability (banner + audio cue)"""

    @abstractmethod
    def show(self, cue: AlertCue) -> None:
        pass

    @abstractmethod
    def cancel(self, cue: AlertCue) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes cues to the log. Default sink for headless runs."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.SUCCESS: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
    }

    def show(self, cue: AlertCue) -> None:
        logger.log(
            self._LEVELS[cue.severity],
            f"[{cue.severity.value.upper()}] {cue.event.message} "
            f"({len(cue.pattern)} tones, {cue.pattern_duration_ms}ms)",
        )

    def cancel(self, cue: AlertCue) -> None:
        logger.debug(f"Alert {cue.cue_id} ({cue.kind.value}) cleared")


class MockNotificationSink(NotificationSink):
    """Records shown/cancelled cues (tests, console preview)"""

    def __init__(self):
        self.shown: List[AlertCue] = []
        self.cancelled: List[AlertCue] = []

    def show(self, cue: AlertCue) -> None:
        self.shown.append(cue)

    def cancel(self, cue: AlertCue) -> None:
        self.cancelled.append(cue)

    def kinds(self) -> List[AlertKind]:
        return [cue.kind for cue in self.shown]


# ---------------------------------------------------------------------
# DISPATCHER
# ---------------------------------------------------------------------

class AlertDispatcher:
    """
    Presents alert events through a sink, one at a time.

    - New alert cancels the active cue first
    - Reminder banners auto-dismiss after REMINDER_DISMISS_S
    - Connectivity loss suppresses sample-derived alerts until restored
    """

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        scheduler: Optional[Scheduler] = None,
        reminder_dismiss_s: float = config.REMINDER_DISMISS_S,
    ):
        self.sink = sink if sink is not None else LoggingNotificationSink()
        self.scheduler = scheduler
        self.reminder_dismiss_s = reminder_dismiss_s

        self.active: Optional[AlertCue] = None
        self.suppressed = False
        self.history = deque(maxlen=100)
        self.listeners: List[Callable[[AlertCue], None]] = []

        self._ids = itertools.count(1)
        self._dismiss_task: Optional[ScheduledTask] = None

    def dispatch(self, event: AlertEvent) -> Optional[AlertCue]:
        """
        Show an alert, replacing any active one.

        Returns:
            The cue shown, or None if the event was suppressed
        """
        if self.suppressed and event.kind.sampling_derived:
            logger.info(f"Suppressed {event.kind.value} alert while scale is disconnected")
            return None

        if event.kind == AlertKind.CONNECTIVITY_LOSS:
            self.suppressed = True

        self._clear_active()

        cue = AlertCue(
            cue_id=next(self._ids),
            event=event,
            severity=VISUAL_SEVERITY[event.kind],
            pattern=AUDIO_PATTERNS[event.kind],
        )
        self.active = cue
        self.history.append(cue)
        self.sink.show(cue)

        if event.kind == AlertKind.REMINDER and self.scheduler is not None:
            self._dismiss_task = self.scheduler.call_later(
                self.reminder_dismiss_s, self._auto_dismiss, name="reminder_dismiss"
            )

        for listener in self.listeners:
            listener(cue)
        return cue

    def dismiss(self) -> bool:
        """Operator acknowledgement of the active cue"""
        if self.active is None:
            return False
        self._clear_active()
        return True

    def connectivity_restored(self) -> None:
        self.suppressed = False
        if self.active is not None and self.active.kind == AlertKind.CONNECTIVITY_LOSS:
            self._clear_active()

    def teardown(self) -> None:
        """Clear the active cue and any pending dismiss callback"""
        self._clear_active()
        self.suppressed = False

    def _auto_dismiss(self) -> None:
        self._dismiss_task = None
        if self.active is not None and self.active.kind == AlertKind.REMINDER:
            self._clear_active()

    def _clear_active(self) -> None:
        if self._dismiss_task is not None:
            self._dismiss_task.cancel()
            self._dismiss_task = None
        if self.active is not None:
            self.sink.cancel(self.active)
            self.active = None
