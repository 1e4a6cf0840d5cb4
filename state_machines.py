"""
Drainage State Machine Module (Threshold Detection + Noise Rejection)

Implements the CAPD drainage monitoring state machine and its treatment timer:
1. Drainage phase tracking driven by scale mass
2. Reminder / completion thresholds relative to the captured initial mass
3. Elapsed-time timer started and stopped by physical events

All mutation of the session goes through DrainageStateMachine.evaluate()
(plus the explicit operator entry points) and TreatmentTimer.tick().
The module does no I/O: transitions are returned to the caller, which
applies timer, alert and sync side effects.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional
import time

from drainwatch import config
from drainwatch.data.models import FilteredSample
from drainwatch.errors import ValidationError


# ---------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------

class DrainagePhase(Enum):
    IDLE = "IDLE"
    AWAITING_INITIAL_WEIGHT = "AWAITING_INITIAL_WEIGHT"
    DRAINING = "DRAINING"
    REMINDER_ISSUED = "REMINDER_ISSUED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class CompletionReason(Enum):
    THRESHOLD = "threshold"      # cumulative drop reached the completion threshold
    ZERO_MASS = "zero_mass"      # scale returned to (near) zero


TERMINAL_PHASES = frozenset({DrainagePhase.COMPLETED, DrainagePhase.CANCELLED})
TIMED_PHASES = frozenset({DrainagePhase.DRAINING, DrainagePhase.REMINDER_ISSUED})


# ---------------------------------------------------------------------
# SESSION STATE
# ---------------------------------------------------------------------

@dataclass
class SessionState:
    """
    Aggregate state of one treatment session.

    Created when the operator starts a session, reset when it is finished
    or cancelled.
    """
    phase: DrainagePhase = DrainagePhase.IDLE
    initial_mass_kg: Optional[float] = None
    current_mass_kg: float = 0.0
    drained_grams: float = 0.0
    elapsed_seconds: int = 0
    reminder_threshold_grams: float = config.REMINDER_THRESHOLD_G
    completion_threshold_grams: float = config.COMPLETION_THRESHOLD_G
    device_connected: bool = True

    # high-water mark used as the baseline for the next genuine decrease
    last_significant_kg: float = 0.0
    reminder_issued: bool = False
    rolling_average_kg: Optional[float] = None
    flow_stable: bool = False
    status_message: str = "Waiting for treatment to begin"

    started_at: float = field(default_factory=time.time)
    drain_started_ms: Optional[int] = None
    ended_ms: Optional[int] = None
    completion_reason: Optional[CompletionReason] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_timed(self) -> bool:
        return self.phase in TIMED_PHASES

    def to_dict(self) -> Dict:
        return {
            "phase": self.phase.value,
            "initial_mass_kg": self.initial_mass_kg,
            "current_mass_kg": self.current_mass_kg,
            "drained_grams": round(self.drained_grams, 1),
            "elapsed_seconds": self.elapsed_seconds,
            "reminder_threshold_grams": self.reminder_threshold_grams,
            "completion_threshold_grams": self.completion_threshold_grams,
            "device_connected": self.device_connected,
            "reminder_issued": self.reminder_issued,
            "flow_stable": self.flow_stable,
            "status_message": self.status_message,
            "completion_reason": self.completion_reason.value if self.completion_reason else None,
        }


@dataclass
class Transition:
    """A single phase change emitted by the state machine."""
    from_phase: DrainagePhase
    to_phase: DrainagePhase
    reason: str
    timestamp_ms: int
    mass_kg: Optional[float]
    drained_grams: float
    completion_reason: Optional[CompletionReason] = None


# ---------------------------------------------------------------------
# DRAINAGE STATE MACHINE
# ---------------------------------------------------------------------

class DrainageStateMachine:
    """
    Detects drainage start and completion from filtered scale samples.

    IDLE → AWAITING_INITIAL_WEIGHT → DRAINING → REMINDER_ISSUED → COMPLETED
    (any non-terminal phase) → CANCELLED on operator stop

    Noise rejection:
    - Drainage only starts on a decrease larger than STABLE_THRESHOLD_KG
      below the high-water mark
    - The high-water mark follows increases (bag topped up) so the next
      decrease is measured against the latest peak
    - Reminder and completion each fire at most once per session
    """

    def __init__(
        self,
        session: Optional[SessionState] = None,
        stable_threshold_kg: float = config.STABLE_THRESHOLD_KG,
        zero_threshold_kg: float = config.ZERO_THRESHOLD_KG,
    ):
        self.session = session if session is not None else SessionState()
        self.stable_threshold_kg = stable_threshold_kg
        self.zero_threshold_kg = zero_threshold_kg
        self.history = deque(maxlen=100)

    @property
    def phase(self) -> DrainagePhase:
        return self.session.phase

    def evaluate(self, filtered: FilteredSample) -> List[Transition]:
        """Apply one filtered sample. Returns the transitions it caused (may be empty)."""
        s = self.session
        if s.is_terminal:
            return []

        mass = filtered.mass_kg
        ts = filtered.timestamp_ms
        transitions: List[Transition] = []

        s.current_mass_kg = mass
        s.rolling_average_kg = filtered.rolling_average_kg
        s.flow_stable = filtered.is_stable
        self._update_drained()

        # -----------------------------
        # IDLE → AWAITING_INITIAL_WEIGHT
        # -----------------------------
        if s.phase == DrainagePhase.IDLE:
            if mass > 0:
                self._capture_initial(mass)
                transitions.append(self._transition(
                    DrainagePhase.AWAITING_INITIAL_WEIGHT,
                    f"Initial weight recorded: {mass:.3f}kg", ts,
                ))
            return transitions

        # -----------------------------
        # AWAITING_INITIAL_WEIGHT → DRAINING
        # -----------------------------
        if s.phase == DrainagePhase.AWAITING_INITIAL_WEIGHT:
            if mass < s.last_significant_kg - self.stable_threshold_kg:
                s.last_significant_kg = mass
                s.drain_started_ms = ts
                transitions.append(self._transition(
                    DrainagePhase.DRAINING,
                    f"Drainage detected ({mass:.3f}kg) - timer started", ts,
                ))

        if mass > s.last_significant_kg:
            s.last_significant_kg = mass

        # -----------------------------
        # DRAINING | REMINDER_ISSUED → COMPLETED
        # DRAINING → REMINDER_ISSUED
        # -----------------------------
        if s.is_timed:
            drop = s.drained_grams
            at_zero = mass <= self.zero_threshold_kg

            if at_zero or drop >= s.completion_threshold_grams:
                reason = CompletionReason.ZERO_MASS if at_zero else CompletionReason.THRESHOLD
                s.completion_reason = reason
                s.ended_ms = ts
                if reason == CompletionReason.ZERO_MASS:
                    message = "Treatment completed - weight returned to zero"
                else:
                    message = f"Treatment completed! {drop:.0f}g drained - clamp catheter now"
                transitions.append(self._transition(
                    DrainagePhase.COMPLETED, message, ts, completion_reason=reason,
                ))

            elif (
                s.phase == DrainagePhase.DRAINING
                and not s.reminder_issued
                and drop >= s.reminder_threshold_grams
            ):
                s.reminder_issued = True
                transitions.append(self._transition(
                    DrainagePhase.REMINDER_ISSUED,
                    f"Approaching completion ({drop:.0f}g drained) - prepare to clamp catheter", ts,
                ))

            elif not transitions and filtered.is_stable and filtered.window_size >= config.HISTORY_SIZE:
                avg = filtered.rolling_average_kg
                if s.initial_mass_kg is not None and avg < s.initial_mass_kg - self.stable_threshold_kg:
                    s.status_message = f"Weight stable at {avg:.3f}kg - treatment in progress"

        return transitions

    # -----------------------------
    # Operator entry points
    # -----------------------------

    def set_initial_weight(self, mass_kg: float, timestamp_ms: Optional[int] = None) -> List[Transition]:
        """Operator-entered initial mass; only before drainage starts."""
        s = self.session
        if s.phase not in (DrainagePhase.IDLE, DrainagePhase.AWAITING_INITIAL_WEIGHT):
            raise ValidationError("Initial weight can only be set before drainage starts")
        try:
            mass = float(mass_kg)
        except (TypeError, ValueError):
            raise ValidationError(f"Initial weight must be a number, got {mass_kg!r}") from None
        if not (0 < mass <= config.MAX_PLAUSIBLE_MASS_KG):
            raise ValidationError(
                f"Initial weight must be between 0 and {config.MAX_PLAUSIBLE_MASS_KG:.1f}kg"
            )

        ts = timestamp_ms if timestamp_ms is not None else _now_ms()
        was_idle = s.phase == DrainagePhase.IDLE
        self._capture_initial(mass)
        if s.current_mass_kg <= 0:
            s.current_mass_kg = mass
        self._update_drained()

        if was_idle:
            return [self._transition(
                DrainagePhase.AWAITING_INITIAL_WEIGHT,
                f"Initial weight entered: {mass:.3f}kg", ts,
            )]
        s.status_message = f"Initial weight updated: {mass:.3f}kg"
        return []

    def cancel(self, timestamp_ms: Optional[int] = None, reason: str = "Stopped by operator") -> Transition:
        """Operator stop from any non-terminal phase."""
        s = self.session
        if s.is_terminal:
            raise ValidationError(f"Treatment already ended ({s.phase.value})")
        ts = timestamp_ms if timestamp_ms is not None else _now_ms()
        s.ended_ms = ts
        return self._transition(DrainagePhase.CANCELLED, reason, ts)

    def set_device_connected(self, connected: bool) -> bool:
        """Record scale connectivity. Returns True if it changed."""
        s = self.session
        if s.device_connected == connected:
            return False
        s.device_connected = connected
        if not s.is_terminal:
            s.status_message = (
                "Scale reconnected - monitoring resumed" if connected
                else "Scale disconnected - monitoring paused"
            )
        return True

    # -----------------------------
    # Internals
    # -----------------------------

    def _capture_initial(self, mass: float) -> None:
        self.session.initial_mass_kg = mass
        self.session.last_significant_kg = mass

    def _update_drained(self) -> None:
        s = self.session
        if s.initial_mass_kg is not None:
            s.drained_grams = (s.initial_mass_kg - s.current_mass_kg) * 1000.0

    def _transition(
        self,
        new_phase: DrainagePhase,
        reason: str,
        timestamp_ms: int,
        completion_reason: Optional[CompletionReason] = None,
    ) -> Transition:
        s = self.session
        transition = Transition(
            from_phase=s.phase,
            to_phase=new_phase,
            reason=reason,
            timestamp_ms=timestamp_ms,
            mass_kg=s.current_mass_kg if s.initial_mass_kg is not None else None,
            drained_grams=s.drained_grams,
            completion_reason=completion_reason,
        )
        self.history.append({
            "time": timestamp_ms,
            "from": s.phase.value,
            "to": new_phase.value,
            "reason": reason,
        })
        s.phase = new_phase
        s.status_message = reason
        return transition

    def get_status(self) -> Dict:
        return self.session.to_dict()


# ---------------------------------------------------------------------
# TREATMENT TIMER
# ---------------------------------------------------------------------

class TreatmentTimer:
    """
    Elapsed drainage time, ticked on its own 1 s cadence.

    Elapsed time is measured on a monotonic clock, so a late or skipped
    tick never loses time, and sample polling never stalls the timer.
    It only runs while the session is DRAINING or REMINDER_ISSUED.
    """

    def __init__(self, session: SessionState, clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.clock = clock
        self._accumulated = 0.0
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self) -> bool:
        if self.running or not self.session.is_timed:
            return False
        self._started_at = self.clock()
        return True

    def stop(self) -> bool:
        if not self.running:
            return False
        self._accumulated += self.clock() - self._started_at
        self._started_at = None
        self.session.elapsed_seconds = self.elapsed_seconds()
        return True

    def elapsed_seconds(self) -> int:
        total = self._accumulated
        if self._started_at is not None:
            total += self.clock() - self._started_at
        return int(total)

    def tick(self) -> int:
        """Refresh the session's elapsed time."""
        if self.running and not self.session.is_timed:
            self.stop()
        if self.running:
            self.session.elapsed_seconds = self.elapsed_seconds()
        return self.session.elapsed_seconds

    def reset(self) -> None:
        self._accumulated = 0.0
        self._started_at = None
        self.session.elapsed_seconds = 0


def _now_ms() -> int:
    return int(time.time() * 1000)
