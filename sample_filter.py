"""
Sample Filter
Sliding-window smoothing and flow-stability detection for scale readings

- Fixed-capacity ring buffer of the most recent samples (oldest evicted)
- Rolling average over the window
- Stability: every consecutive delta below STABLE_THRESHOLD_KG, so a bag
  swinging on the hook is not mistaken for a steady drain
"""

from collections import deque

import numpy as np

from drainwatch import config
from drainwatch.data.models import FilteredSample, Sample


class SampleWindow:
    """
    Ring buffer of recent samples.
    Length never exceeds capacity; used only for the average and deltas.
    """

    def __init__(self, capacity: int = config.HISTORY_SIZE):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._samples = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def is_full(self) -> bool:
        return len(self._samples) >= self.capacity

    def append(self, sample: Sample) -> None:
        self._samples.append(sample)

    def masses(self) -> np.ndarray:
        return np.array([s.mass_kg for s in self._samples], dtype=float)

    def clear(self) -> None:
        self._samples.clear()


def is_stable(masses, threshold_kg: float = config.STABLE_THRESHOLD_KG) -> bool:
    """True iff every consecutive absolute delta is below threshold_kg."""
    values = np.asarray(masses, dtype=float)
    if values.size < 2:
        return True
    return bool(np.all(np.abs(np.diff(values)) < threshold_kg))


class SampleFilter:
    """Feeds each sample through the window and reports its statistics."""

    def __init__(
        self,
        capacity: int = config.HISTORY_SIZE,
        stable_threshold_kg: float = config.STABLE_THRESHOLD_KG,
    ):
        self.window = SampleWindow(capacity)
        self.stable_threshold_kg = stable_threshold_kg

    def ingest(self, sample: Sample) -> FilteredSample:
        self.window.append(sample)
        masses = self.window.masses()

        return FilteredSample(
            sample=sample,
            rolling_average_kg=float(np.mean(masses)),
            is_stable=is_stable(masses, self.stable_threshold_kg),
            window_size=len(self.window),
        )

    def reset(self) -> None:
        self.window.clear()
