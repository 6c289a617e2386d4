from __future__ import annotations

"""
Hysteresis-stabilised tri-state classification of probe samples.
"""

from dataclasses import replace
from typing import Callable, Optional

from loguru import logger
import numpy as np

from .config import MonitorConfig
from .health_store import HealthStateStore
from .ports import EventSink
from .records import (
    DeviceHealthRecord,
    EventKind,
    HealthEvent,
    HealthState,
    RawSample,
    StateTransition,
    TransitionReason,
)


def classify_response_time(response_time_ms: float, config: MonitorConfig) -> HealthState:
    """
    Map a response time onto a raw bucket.

    Intervals are closed-open, so a value equal to a threshold falls into the
    worse bucket.

    Parameters
    ----------
    response_time_ms : float
        Rolling average or single response time.
    config : MonitorConfig
        Thresholds to apply.

    Returns
    -------
    HealthState
        Raw bucket.
    """
    if response_time_ms < config.responsive_threshold_ms:
        return HealthState.RESPONSIVE
    if response_time_ms < config.offline_threshold_ms:
        return HealthState.DEGRADED
    return HealthState.OFFLINE


def _transition_reason(sample: RawSample, from_state: HealthState, to_state: HealthState) -> TransitionReason:
    if to_state.severity < from_state.severity:
        return TransitionReason.RECOVERED
    if not sample.success:
        return TransitionReason.PROBE_FAILED
    return TransitionReason.THRESHOLD_CROSSED


def apply_sample(record: DeviceHealthRecord, sample: RawSample, config: MonitorConfig) -> DeviceHealthRecord:
    """
    Fold one sample into a record.

    The raw bucket comes from the rolling average rather than the instantaneous
    value; a failed probe is always ``OFFLINE``, and so is a device with no
    response times yet. ``committed_state`` changes only once
    ``pending_streak`` reaches ``hysteresis_count``.

    Parameters
    ----------
    record : DeviceHealthRecord
        Current committed record.
    sample : RawSample
        New probe outcome.
    config : MonitorConfig
        Effective configuration of the device.

    Returns
    -------
    DeviceHealthRecord
        Next record (version is stamped by the store).
    """
    window = list(record.response_time_samples)
    if sample.success and sample.response_time_ms is not None:
        window.append(float(sample.response_time_ms))
    window = window[-config.rolling_window_size:]
    average = float(np.mean(window)) if window else None

    if not sample.success or average is None:
        raw = HealthState.OFFLINE
    else:
        raw = classify_response_time(average, config)

    if raw == record.pending_state:
        streak = record.pending_streak + 1
    else:
        streak = 1

    changes = dict(
        response_time_samples=tuple(window),
        average_response_time_ms=average,
        pending_state=raw,
        pending_streak=streak,
        last_probe_at=sample.timestamp,
    )
    if sample.success:
        changes.update(
            last_success_at=sample.timestamp,
            last_response_time_ms=sample.response_time_ms,
            consecutive_successes=record.consecutive_successes + 1,
            consecutive_failures=0,
            last_error=None,
        )
    else:
        changes.update(
            consecutive_failures=record.consecutive_failures + 1,
            consecutive_successes=0,
            last_error=sample.error or "Unknown error",
        )

    if streak >= config.hysteresis_count and raw != record.committed_state:
        transition = StateTransition(
            device_id=record.device_id,
            timestamp=sample.timestamp,
            from_state=record.committed_state,
            to_state=raw,
            triggering_response_time_ms=sample.response_time_ms,
            reason=_transition_reason(sample, record.committed_state, raw),
        )
        history = (record.state_history + (transition,))[-config.history_size:]
        changes.update(
            committed_state=raw,
            state_entered_at=sample.timestamp,
            state_history=history,
        )
    return replace(record, **changes)


class StateClassifier:
    """
    Turns raw samples into committed transitions through the state store.

    Parameters
    ----------
    store : HealthStateStore
        Authoritative record store.
    config_provider : Callable[[str], MonitorConfig]
        Returns the effective configuration of a device.
    event_sink : EventSink | None, optional
        Receives a ``state_changed`` event per committed transition.
    """

    def __init__(
        self,
        store: HealthStateStore,
        config_provider: Callable[[str], MonitorConfig],
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._store = store
        self._config_provider = config_provider
        self._event_sink = event_sink

    def process(self, sample: RawSample) -> Optional[StateTransition]:
        """
        Commit one sample and report the resulting transition, if any.

        Parameters
        ----------
        sample : RawSample
            Probe outcome.

        Returns
        -------
        StateTransition | None
            Committed transition, or None when the committed state held.
        """
        config = self._config_provider(sample.device_id)
        before, after = self._store.commit(
            sample.device_id,
            lambda record: apply_sample(record, sample, config),
        )
        logger.debug(
            "Sample {}: success={} rt={} avg={} pending={}x{} committed={}",
            sample.device_id,
            sample.success,
            sample.response_time_ms,
            after.average_response_time_ms,
            after.pending_state.value,
            after.pending_streak,
            after.committed_state.value,
        )
        if after.committed_state == before.committed_state:
            return None

        transition = after.state_history[-1]
        logger.info(
            "Device {} is now {} (was {}, reason: {}, response time: {})",
            transition.device_id,
            transition.to_state.value,
            transition.from_state.value,
            transition.reason.value,
            transition.triggering_response_time_ms,
        )
        if self._event_sink is not None:
            payload = transition.to_dict()
            payload["version"] = after.version
            payload["average_response_time_ms"] = after.average_response_time_ms
            self._event_sink.emit(
                HealthEvent(
                    device_id=transition.device_id,
                    timestamp=transition.timestamp,
                    kind=EventKind.STATE_CHANGED,
                    payload=payload,
                )
            )
        return transition
