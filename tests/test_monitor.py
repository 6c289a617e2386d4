"""
End-to-end tests for the device health monitor facade.
"""

import json
import threading
import time

import pytest

from display_health.core import (
    ConfigurationError,
    DeviceHealthMonitor,
    DeviceNotMonitoredError,
    HealthState,
    MonitorConfig,
    PersistenceError,
    RecoveryPhase,
)

from conftest import RecordingRecoveryPort, RecordingSink, ScriptedProbe, fail, ok, sample

HOUR_MS = 3_600_000


@pytest.fixture
def probe():
    return ScriptedProbe()


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "health_state.json"


@pytest.fixture
def monitor(probe, recovery_port, clock, sink, state_file):
    instance = DeviceHealthMonitor(
        probe,
        recovery_port,
        config=MonitorConfig(check_interval_ms=HOUR_MS),
        state_file=state_file,
        persist_interval_ms=HOUR_MS,
        clock=clock,
        event_sinks=[sink],
    )
    instance.start()
    yield instance
    instance.stop()


class TestDeviceLifecycle:

    def test_add_device_starts_schedule(self, monitor):
        record = monitor.add_device("D1")
        assert record.committed_state == HealthState.RESPONSIVE
        status = monitor.get_status("D1")
        assert status["monitoring"] is True
        assert status["interval_ms"] == HOUR_MS
        assert status["stale"] is True

    def test_invalid_overrides_are_rejected(self, monitor):
        with pytest.raises(ConfigurationError):
            monitor.add_device("D1", {"hysteresisCount": 0})
        assert monitor.get_record("D1") is None

    def test_remove_device_archives_record(self, monitor):
        monitor.add_device("D1", {"checkIntervalMs": HOUR_MS * 2})
        archived = monitor.remove_device("D1")

        assert archived.device_id == "D1"
        assert monitor.get_record("D1") is None
        assert monitor.get_status("D1") == {}
        assert not monitor.sampler.is_monitoring("D1")
        assert monitor.config.device_overrides("D1") == {}
        assert monitor.remove_device("D1") is None

    def test_manual_override_of_unknown_device_raises(self, monitor):
        with pytest.raises(DeviceNotMonitoredError):
            monitor.manual_override("nope")


class TestEndToEnd:

    def test_repeated_failures_commit_offline_and_restart(self, monitor, probe, recovery_port, clock, sink, state_file):
        probe.push(fail(), fail())
        monitor.add_device("D2")

        monitor.sampler.tick("D2")
        clock.advance(10_000)
        assert monitor.get_record("D2").committed_state == HealthState.RESPONSIVE
        monitor.sampler.tick("D2")

        record = monitor.get_record("D2")
        assert record.committed_state == HealthState.OFFLINE
        assert record.recovery.phase == RecoveryPhase.COOLDOWN
        assert recovery_port.calls == ["D2"]
        assert sink.kinds() == ["state_changed", "recovery_attempted"]
        saved = json.loads(state_file.read_text(encoding="utf-8"))["devices"]["D2"]
        assert saved["committed_state"] == "offline"
        assert saved["recovery"]["phase"] == "cooldown"

    def test_probes_are_throttled_while_recovering(self, monitor, probe, clock):
        probe.push(fail(), fail(), fail())
        monitor.add_device("D2")
        monitor.sampler.tick("D2")
        monitor.sampler.tick("D2")
        calls = len(probe.calls)

        assert monitor.sampler.tick("D2") is None
        assert len(probe.calls) == calls
        clock.advance(30_000)
        assert monitor.sampler.tick("D2") is not None

    def test_stale_tracks_last_success(self, monitor, probe, clock):
        probe.push(ok(900))
        monitor.add_device("D1")
        monitor.sampler.tick("D1")
        assert monitor.is_stale("D1") is False

        clock.advance(61_000)
        assert monitor.is_stale("D1") is True
        assert monitor.is_stale("unknown") is True

    def test_failing_subscriber_does_not_block_others(self, monitor, probe, sink, log_messages):
        def broken(event):
            raise RuntimeError("subscriber crashed")

        monitor.subscribe(broken)
        probe.push(fail(), fail())
        monitor.add_device("D2")
        monitor.sampler.tick("D2")
        monitor.sampler.tick("D2")

        assert "state_changed" in sink.kinds()
        assert any("subscriber crashed" in message for message in log_messages)


class TestConfiguration:

    def test_apply_config_reschedules_devices(self, monitor):
        monitor.add_device("D1")
        ok_, _ = monitor.apply_config({"checkIntervalMs": HOUR_MS * 2})
        assert ok_
        assert monitor.sampler.interval_ms("D1") == HOUR_MS * 2

    def test_rejected_config_keeps_schedule(self, monitor):
        monitor.add_device("D1")
        ok_, message = monitor.apply_config(device_settings={"D1": {"checkIntervalMs": 1}})
        assert not ok_
        assert "check_interval_ms" in message
        assert monitor.sampler.interval_ms("D1") == HOUR_MS


class TestPersistence:

    def test_state_survives_restart(self, probe, clock, state_file):
        first = DeviceHealthMonitor(
            probe,
            RecordingRecoveryPort(),
            config=MonitorConfig(check_interval_ms=HOUR_MS),
            state_file=state_file,
            clock=clock,
        )
        probe.push(fail(), fail())
        first.add_device("D2")
        first.sampler.tick("D2")
        first.sampler.tick("D2")
        saved = first.get_record("D2")
        first.stop()

        second = DeviceHealthMonitor(
            ScriptedProbe(),
            RecordingRecoveryPort(),
            config=MonitorConfig(check_interval_ms=HOUR_MS),
            state_file=state_file,
            clock=clock,
            event_sinks=[RecordingSink()],
        )
        second.start()
        try:
            restored = second.get_record("D2")
            assert restored == saved
            assert restored.recovery.phase == RecoveryPhase.COOLDOWN
        finally:
            second.stop()

    def test_save_without_state_file_raises(self, probe):
        monitor = DeviceHealthMonitor(probe)
        with pytest.raises(PersistenceError):
            monitor.save_state()
        monitor.stop()

    def test_offline_record_restored_before_its_action_is_recovered(self, probe, clock, state_file):
        first = DeviceHealthMonitor(
            probe,
            RecordingRecoveryPort(),
            config=MonitorConfig(check_interval_ms=HOUR_MS),
            state_file=state_file,
            clock=clock,
        )
        first.store.ensure("D2")
        for _ in range(2):
            first.classifier.process(sample("D2", clock, success=False))
        first.save_state()
        first.stop()

        port = RecordingRecoveryPort()
        second = DeviceHealthMonitor(
            ScriptedProbe(fail()),
            port,
            config=MonitorConfig(check_interval_ms=HOUR_MS),
            state_file=state_file,
            clock=clock,
        )
        second.start()
        try:
            restored = second.get_record("D2")
            assert restored.committed_state == HealthState.OFFLINE
            assert restored.recovery.phase == RecoveryPhase.MONITORING

            second.sampler.tick("D2")
            assert port.calls == ["D2"]
            saved = json.loads(state_file.read_text(encoding="utf-8"))["devices"]["D2"]
            assert saved["recovery"]["phase"] == "cooldown"
        finally:
            second.stop()


class StallingProbe:
    """Devices named DARK* never answer until released; every other device answers fast."""

    def __init__(self):
        self.release = threading.Event()
        self._lock = threading.Lock()
        self.calls = []

    def probe(self, device_id, timeout_ms):
        with self._lock:
            self.calls.append(device_id)
        if device_id.startswith("DARK") or device_id == "SLOW":
            self.release.wait(5)
            return fail("no answer")
        return ok(50)


def _wait_for(predicate, timeout_sec=3.0):
    deadline = time.monotonic() + timeout_sec
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestThreadedSchedule:

    def test_failing_device_goes_offline_within_detection_bound(self):
        config = MonitorConfig(check_interval_ms=100, probe_timeout_ms=50, hysteresis_count=2)
        monitor = DeviceHealthMonitor(ScriptedProbe(fail()), RecordingRecoveryPort(), config=config)
        started = time.monotonic()
        monitor.add_device("D2")
        try:
            assert _wait_for(lambda: monitor.get_record("D2").committed_state == HealthState.OFFLINE, 2.0)
            assert (time.monotonic() - started) * 1000 <= 100 * 2 + 500
        finally:
            monitor.stop()

    def test_unreachable_devices_do_not_starve_healthy_one(self):
        probe = StallingProbe()
        port = RecordingRecoveryPort()
        config = MonitorConfig(check_interval_ms=100, probe_timeout_ms=200)
        monitor = DeviceHealthMonitor(probe, port, config=config)
        for index in range(16):
            monitor.add_device(f"DARK{index}")
        monitor.add_device("OK")
        try:
            assert _wait_for(lambda: monitor.get_record("OK").consecutive_successes >= 8, 3.0)
            record = monitor.get_record("OK")
            assert record.committed_state == HealthState.RESPONSIVE
            assert record.consecutive_failures == 0
            assert record.state_history == ()
            assert "OK" not in port.calls
        finally:
            probe.release.set()
            monitor.stop()

    def test_removed_device_is_not_revived_by_in_flight_probe(self):
        probe = StallingProbe()
        config = MonitorConfig(check_interval_ms=100, probe_timeout_ms=3000)
        monitor = DeviceHealthMonitor(probe, RecordingRecoveryPort(), config=config)
        monitor.add_device("SLOW")
        try:
            assert _wait_for(lambda: "SLOW" in probe.calls)
            started = time.monotonic()
            archived = monitor.remove_device("SLOW")
            assert time.monotonic() - started < 0.5
            assert archived is not None

            probe.release.set()
            time.sleep(0.2)
            assert monitor.get_record("SLOW") is None
            assert monitor.store.archived("SLOW") is archived
        finally:
            monitor.stop()
