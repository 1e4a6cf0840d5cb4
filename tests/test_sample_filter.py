"""Unit tests for the sliding-window sample filter."""

import numpy as np
import pytest

from drainwatch.data.models import Sample
from sample_filter import SampleFilter, SampleWindow, is_stable


def sample(mass, ts=0):
    return Sample(mass_kg=mass, timestamp_ms=ts)


def test_window_evicts_oldest_beyond_capacity():
    window = SampleWindow(capacity=5)
    for i in range(7):
        window.append(sample(float(i), i))

    assert len(window) == 5
    assert window.is_full
    np.testing.assert_array_equal(window.masses(), [2.0, 3.0, 4.0, 5.0, 6.0])


def test_window_rejects_zero_capacity():
    with pytest.raises(ValueError):
        SampleWindow(capacity=0)


def test_small_deltas_are_stable():
    assert is_stable([2.0, 1.98, 1.96, 1.94])


def test_any_large_delta_is_unstable():
    assert not is_stable([2.0, 1.98, 1.75, 1.74])


def test_single_reading_is_stable():
    assert is_stable([2.0])


def test_filter_reports_rolling_average_and_window_size():
    sample_filter = SampleFilter()
    sample_filter.ingest(sample(2.0))
    result = sample_filter.ingest(sample(1.0, 2000))

    assert result.rolling_average_kg == pytest.approx(1.5)
    assert result.window_size == 2
    assert result.mass_kg == 1.0
    assert result.timestamp_ms == 2000
    assert not result.is_stable


def test_filter_average_covers_only_the_window():
    sample_filter = SampleFilter(capacity=2)
    for mass in (4.0, 2.0, 1.0):
        result = sample_filter.ingest(sample(mass))

    assert result.rolling_average_kg == pytest.approx(1.5)


def test_reset_empties_window():
    sample_filter = SampleFilter()
    sample_filter.ingest(sample(2.0))
    sample_filter.reset()

    assert len(sample_filter.window) == 0
    assert sample_filter.ingest(sample(1.0)).window_size == 1
