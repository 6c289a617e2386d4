"""
Shared fixtures for the health monitor test suite.
"""

import threading

import pytest
from loguru import logger

from display_health.core import (
    ConfigManager,
    DeviceHealthRecord,
    EventDispatcher,
    HealthStateStore,
    MonitorConfig,
    ProbeResult,
    RawSample,
    RecoveryController,
    RestartResult,
    StateClassifier,
)


class FakeClock:
    def __init__(self, start_ms=1_000_000.0):
        self.now = float(start_ms)

    def __call__(self):
        return self.now

    def advance(self, delta_ms):
        self.now += delta_ms
        return self.now


class ScriptedProbe:
    """Probe returning queued results; repeats the last one when the queue is empty."""

    def __init__(self, *results):
        self._lock = threading.Lock()
        self._results = list(results)
        self._last = ProbeResult(success=True, response_time_ms=100.0)
        self.calls = []

    def push(self, *results):
        with self._lock:
            self._results.extend(results)

    def probe(self, device_id, timeout_ms):
        with self._lock:
            self.calls.append((device_id, timeout_ms))
            if self._results:
                self._last = self._results.pop(0)
            result = self._last
        if isinstance(result, Exception):
            raise result
        return result


class RecordingRecoveryPort:
    def __init__(self, result=None):
        self.result = result if result is not None else RestartResult(accepted=True)
        self.calls = []

    def restart(self, device_id):
        self.calls.append(device_id)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self):
        return [event.kind.value for event in self.events]


def ok(ms):
    return ProbeResult(success=True, response_time_ms=ms)


def fail(error="unreachable"):
    return ProbeResult(success=False, error=error)


def sample(device_id, clock, response_time_ms=None, *, success=True):
    if response_time_ms is None and success:
        response_time_ms = 100.0
    return RawSample(
        device_id=device_id,
        timestamp=clock(),
        success=success,
        response_time_ms=response_time_ms if success else None,
        error=None if success else "unreachable",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def config_manager():
    return ConfigManager(MonitorConfig())


@pytest.fixture
def store(clock, config_manager):
    def factory(device_id):
        cfg = config_manager.resolve(device_id)
        return DeviceHealthRecord.initial(device_id, now_ms=clock(), initial_backoff_ms=cfg.backoff_schedule_ms[0])

    return HealthStateStore(record_factory=factory, clock=clock)


@pytest.fixture
def dispatcher(sink):
    events = EventDispatcher()
    events.subscribe(sink)
    return events


@pytest.fixture
def classifier(store, config_manager, dispatcher):
    return StateClassifier(store, config_manager.resolve, dispatcher)


@pytest.fixture
def recovery_port():
    return RecordingRecoveryPort()


@pytest.fixture
def controller(store, config_manager, recovery_port, dispatcher, clock):
    return RecoveryController(store, config_manager.resolve, recovery_port, dispatcher, clock=clock)


@pytest.fixture
def log_messages():
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)
