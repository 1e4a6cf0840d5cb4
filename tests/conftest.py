import pytest

from alert_control import MockNotificationSink
from drainwatch.data.models import Sample
from drainwatch.scheduler import ManualClock, Scheduler
from sample_filter import SampleFilter


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock=clock, sleep=clock.sleep)


@pytest.fixture
def sink():
    return MockNotificationSink()


def feed(machine, masses, start_ms=0, step_ms=2000):
    """Run masses through a fresh filter into the machine; returns all transitions."""
    sample_filter = SampleFilter()
    transitions = []
    for i, mass in enumerate(masses):
        sample = Sample(mass_kg=mass, timestamp_ms=start_ms + i * step_ms)
        transitions.extend(machine.evaluate(sample_filter.ingest(sample)))
    return transitions


class FakePost:
    """Stands in for post_json: replays responses, raising exceptions."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, body, *, timeout_s, headers):
        self.calls.append((url, body, headers))
        response = self.responses.pop(0) if self.responses else {"success": True}
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def bodies(self):
        return [body for _, body, _ in self.calls]


class FakeResponse:
    """Minimal requests.Response: ``payload=None`` means an undecodable body."""

    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload
