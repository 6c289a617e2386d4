from __future__ import annotations

"""
Rate-limited automated recovery of offline devices.

Per device the controller walks ``monitoring -> cooldown -> (monitoring |
backoff) -> cooldown ...``. Phase changes are committed through the state
store; the recovery port is called outside the store's write lock.
"""

from concurrent.futures import TimeoutError as FutureTimeoutError
import time
from typing import Callable, Optional

from loguru import logger

from .config import MonitorConfig
from .exceptions import DeviceNotMonitoredError
from .health_store import HealthStateStore
from .ports import EventSink, RecoveryPort
from .records import (
    DeviceHealthRecord,
    EventKind,
    HealthEvent,
    HealthState,
    RecoveryPhase,
    RestartResult,
    StateTransition,
)
from .workers import submit_daemon


def _now_ms() -> float:
    return time.time() * 1000.0


def backoff_for_episode(config: MonitorConfig, episodes: int) -> float:
    """
    Look up the backoff delay for a failure episode count.

    Episode 1 maps to the first schedule entry; the last entry repeats.

    Parameters
    ----------
    config : MonitorConfig
        Effective configuration.
    episodes : int
        Consecutive failed recovery episodes.

    Returns
    -------
    float
        Backoff delay in milliseconds.
    """
    schedule = config.backoff_schedule_ms
    # episodes - 1: the first failed episode must wait schedule[0], not schedule[1].
    index = min(max(episodes - 1, 0), len(schedule) - 1)
    return schedule[index]


def _reset_recovery(record: DeviceHealthRecord, config: MonitorConfig) -> DeviceHealthRecord:
    return record.with_recovery(
        phase=RecoveryPhase.MONITORING,
        consecutive_failure_episodes=0,
        current_backoff_ms=config.backoff_schedule_ms[0],
        next_allowed_action_at=None,
        cooldown_expires_at=None,
        restart_attempts=0,
    )


class RecoveryController:
    """
    Decides when a device that committed to ``offline`` is acted upon.

    Parameters
    ----------
    store : HealthStateStore
        Authoritative record store.
    config_provider : Callable[[str], MonitorConfig]
        Returns the effective configuration of a device.
    recovery_port : RecoveryPort | None, optional
        Executes restart actions. Without a port every action is notify-only.
    event_sink : EventSink | None, optional
        Receives ``recovery_attempted`` and ``recovery_exhausted`` events.
    clock : Callable[[], float] | None, optional
        Epoch-millisecond clock.
    """

    def __init__(
        self,
        store: HealthStateStore,
        config_provider: Callable[[str], MonitorConfig],
        recovery_port: Optional[RecoveryPort] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._config_provider = config_provider
        self._recovery_port = recovery_port
        self._event_sink = event_sink
        self._clock = clock or _now_ms

    def on_transition(self, transition: StateTransition) -> bool:
        """
        React to a committed state transition.

        An ``offline`` commit triggers one recovery action when the device is
        in ``monitoring``. A recovery commit while in ``backoff`` or
        ``exhausted`` is a confirmed recovery and resets the escalation.

        Returns
        -------
        bool
            True when the device's recovery state changed.
        """
        device_id = transition.device_id
        if transition.to_state == HealthState.OFFLINE:
            return self._attempt_recovery(device_id)

        config = self._config_provider(device_id)

        def confirm(record: DeviceHealthRecord) -> DeviceHealthRecord:
            if record.committed_state == HealthState.OFFLINE:
                return record
            if record.recovery.phase not in (RecoveryPhase.BACKOFF, RecoveryPhase.EXHAUSTED):
                return record
            return _reset_recovery(record, config)

        before, after = self._store.commit(device_id, confirm)
        if after is before:
            return False
        logger.info(
            "Device {} recovered while in {}; recovery escalation reset.",
            device_id,
            before.recovery.phase.value,
        )
        return True

    def evaluate(self, device_id: str) -> bool:
        """
        Advance expired cooldown and backoff timers of a device.

        Called on every sampler tick so waits resume on schedule without a
        blocking sleep. An offline device found in ``monitoring`` (for example
        after restoring a snapshot taken before its action was claimed) is
        acted upon here.

        Returns
        -------
        bool
            True when the device's recovery state changed.
        """
        record = self._store.get(device_id)
        if record is None or record.recovery.phase == RecoveryPhase.EXHAUSTED:
            return False
        if record.recovery.phase == RecoveryPhase.MONITORING:
            if record.committed_state != HealthState.OFFLINE:
                return False
            logger.warning("Device {} is offline with no recovery pending; scheduling an action.", device_id)
            return self._attempt_recovery(device_id)

        config = self._config_provider(device_id)
        now = self._clock()

        def advance(record: DeviceHealthRecord) -> DeviceHealthRecord:
            recovery = record.recovery
            if (
                recovery.phase == RecoveryPhase.COOLDOWN
                and recovery.cooldown_expires_at is not None
                and now >= recovery.cooldown_expires_at
            ):
                if record.committed_state != HealthState.OFFLINE:
                    return _reset_recovery(record, config)
                episodes = recovery.consecutive_failure_episodes + 1
                backoff = backoff_for_episode(config, episodes)
                return record.with_recovery(
                    phase=RecoveryPhase.BACKOFF,
                    consecutive_failure_episodes=episodes,
                    current_backoff_ms=backoff,
                    next_allowed_action_at=now + backoff,
                    cooldown_expires_at=None,
                )
            if recovery.phase == RecoveryPhase.BACKOFF and record.committed_state != HealthState.OFFLINE:
                return _reset_recovery(record, config)
            return record

        before, after = self._store.commit(device_id, advance)
        changed = after is not before
        if changed:
            if after.recovery.phase == RecoveryPhase.BACKOFF:
                logger.warning(
                    "Device {} still offline after cooldown; episode {}, next recovery in {} ms.",
                    device_id,
                    after.recovery.consecutive_failure_episodes,
                    after.recovery.current_backoff_ms,
                )
            else:
                logger.info("Device {} confirmed recovered; recovery escalation reset.", device_id)

        recovery = after.recovery
        if (
            recovery.phase == RecoveryPhase.BACKOFF
            and recovery.next_allowed_action_at is not None
            and now >= recovery.next_allowed_action_at
        ):
            changed = self._attempt_recovery(device_id) or changed
        return changed

    def should_probe(self, device_id: str) -> bool:
        """
        Decide whether this tick may probe the device.

        While a device is mid-recovery probes are throttled to one per
        ``recovery_probe_interval_ms``; the schedule itself keeps running.

        Returns
        -------
        bool
            True when the probe should execute.
        """
        record = self._store.get(device_id)
        if record is None:
            return True
        if record.recovery.phase not in (RecoveryPhase.COOLDOWN, RecoveryPhase.BACKOFF):
            return True
        if record.last_probe_at is None:
            return True
        config = self._config_provider(device_id)
        return self._clock() - record.last_probe_at >= config.recovery_probe_interval_ms

    def manual_override(self, device_id: str) -> DeviceHealthRecord:
        """
        Operator reset of cooldown and backoff.

        Clears the escalation; an offline device becomes eligible for its next
        recovery action on the very next tick.

        Parameters
        ----------
        device_id : str
            Device identifier.

        Returns
        -------
        DeviceHealthRecord
            Committed record after the reset.
        """
        config = self._config_provider(device_id)
        now = self._clock()

        def override(record: DeviceHealthRecord) -> DeviceHealthRecord:
            record = _reset_recovery(record, config)
            if record.committed_state == HealthState.OFFLINE:
                record = record.with_recovery(phase=RecoveryPhase.BACKOFF, next_allowed_action_at=now)
            return record

        _, after = self._store.commit(device_id, override)
        logger.info(
            "Manual recovery override for {}; phase is now {}.",
            device_id,
            after.recovery.phase.value,
        )
        return after

    def status(self, device_id: str) -> dict:
        record = self._store.get(device_id)
        if record is None:
            return {}
        payload = record.recovery.to_dict()
        payload["committed_state"] = record.committed_state.value
        return payload

    def _attempt_recovery(self, device_id: str) -> bool:
        config = self._config_provider(device_id)
        now = self._clock()

        def claim(record: DeviceHealthRecord) -> DeviceHealthRecord:
            recovery = record.recovery
            if record.committed_state != HealthState.OFFLINE:
                return record
            if recovery.phase in (RecoveryPhase.COOLDOWN, RecoveryPhase.EXHAUSTED):
                return record
            if recovery.phase == RecoveryPhase.BACKOFF and (
                recovery.next_allowed_action_at is not None and now < recovery.next_allowed_action_at
            ):
                return record
            if config.max_restart_attempts is not None and recovery.restart_attempts >= config.max_restart_attempts:
                return record.with_recovery(
                    phase=RecoveryPhase.EXHAUSTED,
                    next_allowed_action_at=None,
                    cooldown_expires_at=None,
                )
            return record.with_recovery(
                phase=RecoveryPhase.COOLDOWN,
                last_action_at=now,
                last_action_result="pending",
                cooldown_expires_at=now + config.restart_cooldown_ms,
                next_allowed_action_at=None,
                restart_attempts=recovery.restart_attempts + 1,
            )

        before, after = self._store.commit(device_id, claim)
        if after is before:
            return False
        if after.recovery.phase == RecoveryPhase.EXHAUSTED:
            logger.error(
                "Recovery exhausted for {} after {} attempts; automated action stopped.",
                device_id,
                after.recovery.restart_attempts,
            )
            self._emit(
                device_id,
                now,
                EventKind.RECOVERY_EXHAUSTED,
                {
                    "restart_attempts": after.recovery.restart_attempts,
                    "max_restart_attempts": config.max_restart_attempts,
                },
            )
            return True
        self._execute_action(device_id, after, config, now)
        return True

    def _execute_action(
        self,
        device_id: str,
        claimed: DeviceHealthRecord,
        config: MonitorConfig,
        now: float,
    ) -> None:
        action = config.recovery_action if self._recovery_port is not None else "notify"
        error: Optional[str] = None
        if action == "restart":
            result = self._call_restart(device_id, config)
            accepted = result.accepted
            error = result.error
            outcome = "accepted" if accepted else f"failed: {error or 'rejected'}"
            if accepted:
                logger.success("Restart command accepted by {} (attempt {}).", device_id, claimed.recovery.restart_attempts)
            else:
                logger.warning(
                    "Restart command for {} failed: {}; cooldown and backoff still apply.",
                    device_id,
                    error or "rejected",
                )
        else:
            accepted = False
            outcome = "notified"
            logger.warning("Device {} is offline (notify-only recovery mode).", device_id)

        def record_result(record: DeviceHealthRecord) -> DeviceHealthRecord:
            if record.recovery.last_action_at != now:
                return record
            return record.with_recovery(last_action_result=outcome)

        try:
            self._store.commit(device_id, record_result)
        except DeviceNotMonitoredError:
            logger.debug("Device {} was removed while its recovery action ran.", device_id)
        self._emit(
            device_id,
            now,
            EventKind.RECOVERY_ATTEMPTED,
            {
                "action": action,
                "accepted": accepted,
                "error": error,
                "attempt": claimed.recovery.restart_attempts,
                "consecutive_failure_episodes": claimed.recovery.consecutive_failure_episodes,
                "cooldown_expires_at": claimed.recovery.cooldown_expires_at,
            },
        )

    def _call_restart(self, device_id: str, config: MonitorConfig) -> RestartResult:
        timeout_ms = config.restart_timeout_ms
        try:
            future = submit_daemon(self._recovery_port.restart, device_id, name=f"health-restart-{device_id}")
            return RestartResult.coerce(future.result(timeout=timeout_ms / 1000.0))
        except FutureTimeoutError:
            return RestartResult(accepted=False, error=f"restart timed out after {timeout_ms} ms")
        except Exception as exc:
            return RestartResult(accepted=False, error=str(exc) or type(exc).__name__)

    def _emit(self, device_id: str, timestamp: float, kind: EventKind, payload: dict) -> None:
        if self._event_sink is not None:
            self._event_sink.emit(HealthEvent(device_id=device_id, timestamp=timestamp, kind=kind, payload=payload))
