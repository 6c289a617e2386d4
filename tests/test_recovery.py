"""
Tests for the cooldown / backoff recovery state machine.
"""

import threading
import time

from display_health.core import HealthState, MonitorConfig, RecoveryController, RecoveryPhase, RestartResult
from display_health.core.recovery import backoff_for_episode

from conftest import sample


def _go_offline(classifier, controller, clock, device_id="D2"):
    transition = None
    for _ in range(2):
        transition = classifier.process(sample(device_id, clock, success=False)) or transition
        clock.advance(10_000)
    assert transition is not None and transition.to_state == HealthState.OFFLINE
    controller.on_transition(transition)
    return transition


def _feed(classifier, controller, clock, device_id, *, success, value=1000):
    transition = classifier.process(sample(device_id, clock, value, success=success))
    if transition is not None:
        controller.on_transition(transition)
    return transition


class TestBackoffSchedule:

    def test_episode_indexes_schedule_and_last_value_repeats(self):
        config = MonitorConfig()
        assert backoff_for_episode(config, 1) == 60_000
        assert backoff_for_episode(config, 2) == 120_000
        assert backoff_for_episode(config, 7) == 86_400_000
        assert backoff_for_episode(config, 50) == 86_400_000


class TestRecoveryController:

    def test_offline_commit_triggers_single_restart_and_cooldown(
        self, classifier, controller, store, clock, recovery_port, sink
    ):
        _go_offline(classifier, controller, clock)
        _feed(classifier, controller, clock, "D2", success=False)

        assert recovery_port.calls == ["D2"]
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.COOLDOWN
        assert recovery.cooldown_expires_at == recovery.last_action_at + 120_000
        assert recovery.last_action_result == "accepted"
        assert sink.kinds() == ["state_changed", "recovery_attempted"]

    def test_still_offline_after_cooldown_escalates_backoff(self, classifier, controller, store, clock, recovery_port):
        _go_offline(classifier, controller, clock)

        clock.advance(120_000)
        controller.evaluate("D2")
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.BACKOFF
        assert recovery.consecutive_failure_episodes == 1
        assert recovery.current_backoff_ms == 60_000
        assert recovery.next_allowed_action_at == clock() + 60_000

        clock.advance(30_000)
        controller.evaluate("D2")
        assert recovery_port.calls == ["D2"]

        clock.advance(30_000)
        controller.evaluate("D2")
        assert recovery_port.calls == ["D2", "D2"]
        assert store.get("D2").recovery.phase == RecoveryPhase.COOLDOWN

        clock.advance(120_000)
        controller.evaluate("D2")
        recovery = store.get("D2").recovery
        assert recovery.consecutive_failure_episodes == 2
        assert recovery.current_backoff_ms == 120_000

    def test_backoff_is_monotonic_until_schedule_maximum(self, classifier, controller, store, clock, config_manager):
        config_manager.apply_global({"backoffSchedule": [1000, 2000, 4000], "restartCooldownMs": 500})
        _go_offline(classifier, controller, clock)

        backoffs = []
        for _ in range(6):
            clock.advance(500)
            controller.evaluate("D2")
            recovery = store.get("D2").recovery
            backoffs.append(recovery.current_backoff_ms)
            clock.advance(recovery.current_backoff_ms)
            controller.evaluate("D2")

        assert backoffs == [1000, 2000, 4000, 4000, 4000, 4000]

    def test_recovery_during_cooldown_resets_on_expiry(self, classifier, controller, store, clock):
        _go_offline(classifier, controller, clock)
        clock.advance(120_000)
        controller.evaluate("D2")
        clock.advance(60_000)
        controller.evaluate("D2")
        assert store.get("D2").recovery.phase == RecoveryPhase.COOLDOWN

        _feed(classifier, controller, clock, "D2", success=True, value=800)
        _feed(classifier, controller, clock, "D2", success=True, value=900)
        assert store.get("D2").committed_state == HealthState.RESPONSIVE
        assert store.get("D2").recovery.phase == RecoveryPhase.COOLDOWN

        clock.advance(120_000)
        controller.evaluate("D2")
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.MONITORING
        assert recovery.consecutive_failure_episodes == 0
        assert recovery.current_backoff_ms == 60_000

    def test_manual_override_in_backoff_permits_immediate_action(
        self, classifier, controller, store, clock, recovery_port, config_manager
    ):
        config_manager.apply_global({"backoffSchedule": [7_200_000]})
        _go_offline(classifier, controller, clock)
        clock.advance(120_000)
        controller.evaluate("D2")
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.BACKOFF
        assert recovery.next_allowed_action_at - clock() == 7_200_000

        record = controller.manual_override("D2")
        assert record.recovery.consecutive_failure_episodes == 0
        assert record.recovery.next_allowed_action_at == clock()

        clock.advance(10_000)
        controller.evaluate("D2")
        assert recovery_port.calls == ["D2", "D2"]
        assert store.get("D2").recovery.phase == RecoveryPhase.COOLDOWN

    def test_manual_override_on_healthy_device_returns_to_monitoring(self, controller, store):
        store.ensure("D1")
        record = controller.manual_override("D1")
        assert record.recovery.phase == RecoveryPhase.MONITORING

    def test_failed_restart_is_logged_and_backoff_still_advances(
        self, classifier, controller, store, clock, recovery_port, log_messages, sink
    ):
        recovery_port.result = ConnectionError("device unreachable")
        _go_offline(classifier, controller, clock)

        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.COOLDOWN
        assert recovery.last_action_result == "failed: device unreachable"
        assert any("Restart command for D2 failed" in message for message in log_messages)
        assert sink.events[-1].payload["accepted"] is False

        clock.advance(120_000)
        controller.evaluate("D2")
        assert store.get("D2").recovery.consecutive_failure_episodes == 1

    def test_rejected_restart_result_counts_as_failure(self, classifier, controller, store, clock, recovery_port):
        recovery_port.result = RestartResult(accepted=False, error="busy")
        _go_offline(classifier, controller, clock)
        assert store.get("D2").recovery.last_action_result == "failed: busy"

    def test_max_restart_attempts_exhausts_recovery(
        self, classifier, controller, store, clock, recovery_port, config_manager, sink
    ):
        config_manager.apply_global({"maxRestartAttempts": 2, "backoffSchedule": [1000]})
        _go_offline(classifier, controller, clock)
        for _ in range(3):
            clock.advance(120_000)
            controller.evaluate("D2")
            clock.advance(1000)
            controller.evaluate("D2")

        assert recovery_port.calls == ["D2", "D2"]
        assert store.get("D2").recovery.phase == RecoveryPhase.EXHAUSTED
        assert sink.kinds().count("recovery_exhausted") == 1

        _feed(classifier, controller, clock, "D2", success=True)
        _feed(classifier, controller, clock, "D2", success=True)
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.MONITORING
        assert recovery.restart_attempts == 0

    def test_notify_mode_never_calls_recovery_port(self, classifier, controller, store, clock, recovery_port, config_manager, sink):
        config_manager.apply_global({"recoveryAction": "notify"})
        _go_offline(classifier, controller, clock)

        assert recovery_port.calls == []
        assert store.get("D2").recovery.last_action_result == "notified"
        assert sink.events[-1].payload["action"] == "notify"

    def test_probes_are_throttled_during_cooldown(self, classifier, controller, clock):
        _go_offline(classifier, controller, clock)
        assert controller.should_probe("D2") is False
        clock.advance(30_000)
        assert controller.should_probe("D2") is True
        assert controller.should_probe("unknown") is True

    def test_offline_device_left_in_monitoring_is_acted_upon(self, classifier, controller, store, clock, recovery_port):
        for _ in range(2):
            classifier.process(sample("D2", clock, success=False))
            clock.advance(10_000)
        record = store.get("D2")
        assert record.committed_state == HealthState.OFFLINE
        assert record.recovery.phase == RecoveryPhase.MONITORING

        assert controller.evaluate("D2") is True
        assert recovery_port.calls == ["D2"]
        assert store.get("D2").recovery.phase == RecoveryPhase.COOLDOWN
        assert controller.evaluate("D2") is False

    def test_hanging_restart_times_out_and_backoff_advances(self, classifier, store, clock, config_manager, dispatcher):
        class HangingRecoveryPort:
            def __init__(self):
                self.release = threading.Event()
                self.calls = []

            def restart(self, device_id):
                self.calls.append(device_id)
                self.release.wait(5)
                return RestartResult(accepted=True)

        port = HangingRecoveryPort()
        controller = RecoveryController(store, config_manager.resolve, port, dispatcher, clock=clock)
        config_manager.apply_global({"restartTimeoutMs": 100})

        started = time.monotonic()
        _go_offline(classifier, controller, clock)
        assert time.monotonic() - started < 2
        assert port.calls == ["D2"]
        assert store.get("D2").recovery.last_action_result == "failed: restart timed out after 100 ms"

        clock.advance(120_000)
        controller.evaluate("D2")
        recovery = store.get("D2").recovery
        assert recovery.phase == RecoveryPhase.BACKOFF
        assert recovery.consecutive_failure_episodes == 1
        port.release.set()
