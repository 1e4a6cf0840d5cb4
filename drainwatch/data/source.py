"""
Sample source abstraction and mock implementations.

Defines the interface for weighing-device sample sources and connectivity
probes, and provides mock implementations for testing and development.
Live implementations live in ``drainwatch.data.live``.
"""

from abc import ABC, abstractmethod
from collections import deque
import math
import time
from typing import Iterable, Optional, Union

import numpy as np

from .. import config
from ..errors import DeviceUnreachableError, InvalidReadingError
from .models import DeviceStatus, Sample


def validate_mass(raw) -> float:
    """
    Convert a raw device payload value into a plausible mass in kg.

    Raises:
        InvalidReadingError: for missing, non-numeric, NaN, infinite,
            negative or implausibly large values.
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidReadingError(f"Invalid weight value received: {raw!r}", raw)
    try:
        mass = float(raw)
    except (TypeError, ValueError):
        raise InvalidReadingError(f"Invalid weight value received: {raw!r}", raw) from None

    if math.isnan(mass) or math.isinf(mass):
        raise InvalidReadingError(f"Non-finite weight value: {raw!r}", raw)
    if mass < 0:
        raise InvalidReadingError(f"Negative weight value: {mass:.3f}kg", raw)
    if mass > config.MAX_PLAUSIBLE_MASS_KG:
        raise InvalidReadingError(
            f"Weight {mass:.3f}kg exceeds plausible maximum "
            f"({config.MAX_PLAUSIBLE_MASS_KG:.1f}kg)",
            raw,
        )
    return mass


class SampleSource(ABC):
    """
    Abstract base class for mass sample sources.

    All sources (mock or live) should inherit from this class and implement
    poll(). Sources never touch the session state.
    """

    @abstractmethod
    def poll(self) -> Sample:
        """
        Read the latest mass sample.

        Raises:
            DeviceUnreachableError: the device service could not be reached.
            InvalidReadingError: the reading failed validation.
        """
        pass

    def close(self) -> None:
        """Clean up resources (close sessions, etc.)."""
        pass


class DeviceProbe(ABC):
    """Abstract connectivity check against the device service."""

    @abstractmethod
    def status(self) -> DeviceStatus:
        """
        Query the device status.

        Raises:
            DeviceUnreachableError: the status endpoint itself failed.
        """
        pass

    @abstractmethod
    def connect(self) -> bool:
        """Ask the device service to (re)connect the scale."""
        pass


class MockSampleSource(SampleSource):
    """
    Mock scale for testing and development.

    Simulates a drainage bag on the scale:
    - empty scale until the bag is placed
    - full bag resting for ``start_delay_s``
    - linear drain at ``drain_rate_kg_per_s`` with Gaussian noise
    - floor at zero
    """

    def __init__(
        self,
        initial_mass_kg: float = 2.0,
        place_after_s: float = 2.0,
        start_delay_s: float = 8.0,
        drain_rate_kg_per_s: float = 0.01,
        noise_kg: float = 0.004,
        sample_interval_s: float = config.POLL_INTERVAL_S,
        seed: Optional[int] = None,
    ):
        """
        Initialize mock scale.

        Args:
            initial_mass_kg: Mass of the bag when placed (kg)
            place_after_s: Seconds of empty scale before the bag is placed
            start_delay_s: Seconds the full bag rests before draining
            drain_rate_kg_per_s: Drain flow (kg/s)
            noise_kg: Standard deviation of sensor noise (kg)
            sample_interval_s: Simulated time between polls
            seed: Random seed for reproducible traces
        """
        self.initial_mass_kg = initial_mass_kg
        self.place_after_s = place_after_s
        self.start_delay_s = start_delay_s
        self.drain_rate_kg_per_s = drain_rate_kg_per_s
        self.noise_kg = noise_kg
        self.sample_interval_s = sample_interval_s

        self._rng = np.random.default_rng(seed)
        self._time = 0.0
        self._start_ms = int(time.time() * 1000)

    def poll(self) -> Sample:
        """Generate the next simulated mass reading."""
        self._time += self.sample_interval_s

        if self._time < self.place_after_s:
            mass = 0.0
        else:
            drain_time = max(0.0, self._time - self.place_after_s - self.start_delay_s)
            mass = self.initial_mass_kg - self.drain_rate_kg_per_s * drain_time
            if mass > 0:
                mass += float(self._rng.normal(0, self.noise_kg))
            mass = max(0.0, mass)

        return Sample(mass_kg=round(mass, 3), timestamp_ms=self._start_ms + int(self._time * 1000))


class ScriptedSampleSource(SampleSource):
    """
    Replays a fixed script of masses (or exceptions) one per poll.

    Exceptions in the script are raised instead of returning a sample. When
    the script is exhausted the last mass is repeated, or
    DeviceUnreachableError is raised if ``repeat_last`` is False.
    """

    def __init__(
        self,
        script: Iterable[Union[float, Exception]],
        start_ms: int = 0,
        interval_ms: int = int(config.POLL_INTERVAL_S * 1000),
        repeat_last: bool = True,
    ):
        self._script = deque(script)
        self._next_ms = start_ms
        self.interval_ms = interval_ms
        self.repeat_last = repeat_last
        self._last_mass: Optional[float] = None
        self.poll_count = 0

    def poll(self) -> Sample:
        self.poll_count += 1
        timestamp_ms = self._next_ms
        self._next_ms += self.interval_ms

        if self._script:
            item = self._script.popleft()
        elif self.repeat_last and self._last_mass is not None:
            item = self._last_mass
        else:
            raise DeviceUnreachableError("No more scripted readings")

        if isinstance(item, Exception):
            raise item

        mass = validate_mass(item)
        self._last_mass = mass
        return Sample(mass_kg=mass, timestamp_ms=timestamp_ms)


class MockDeviceProbe(DeviceProbe):
    """
    Mock connectivity probe.

    ``connected`` can be toggled by tests or demos; ``connect()`` succeeds
    only when ``reconnectable`` is True.
    """

    def __init__(self, connected: bool = True, reconnectable: bool = True):
        self.connected = connected
        self.reconnectable = reconnectable
        self.last_seen_at = None
        self.status_calls = 0
        self.connect_calls = 0

    def status(self) -> DeviceStatus:
        self.status_calls += 1
        return DeviceStatus(connected=self.connected, last_seen_at=self.last_seen_at)

    def connect(self) -> bool:
        self.connect_calls += 1
        if self.reconnectable:
            self.connected = True
        return self.connected
