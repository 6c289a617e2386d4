from __future__ import annotations

"""
Immutable health records, samples and events.

``DeviceHealthRecord`` values are never mutated in place. Writers derive a new
value with ``dataclasses.replace`` inside ``HealthStateStore.commit`` so
readers always observe a fully committed record.
"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional


class HealthState(str, Enum):
    RESPONSIVE = "responsive"
    DEGRADED = "degraded"
    OFFLINE = "offline"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthState.RESPONSIVE: 0,
    HealthState.DEGRADED: 1,
    HealthState.OFFLINE: 2,
}


class RecoveryPhase(str, Enum):
    MONITORING = "monitoring"
    COOLDOWN = "cooldown"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"


class TransitionReason(str, Enum):
    THRESHOLD_CROSSED = "threshold_crossed"
    PROBE_FAILED = "probe_failed"
    RECOVERED = "recovered"


class EventKind(str, Enum):
    STATE_CHANGED = "state_changed"
    RECOVERY_ATTEMPTED = "recovery_attempted"
    RECOVERY_EXHAUSTED = "recovery_exhausted"


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number or null, got {value!r}")
    return float(value)


def _required_int(value: Any, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"expected an integer >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome reported by a probe port.

    Parameters
    ----------
    success : bool
        Whether the device answered.
    response_time_ms : float | None
        Measured response time, when known.
    error : str | None
        Failure detail.
    """

    success: bool
    response_time_ms: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "ProbeResult":
        """
        Accept a ``ProbeResult`` or a mapping using snake_case/camelCase keys.

        Raises
        ------
        TypeError
            If the value cannot be interpreted as a probe result.
        """
        if isinstance(value, ProbeResult):
            return value
        if isinstance(value, Mapping):
            response = value.get("response_time_ms", value.get("responseTimeMs"))
            return cls(
                success=bool(value.get("success", False)),
                response_time_ms=_optional_float(response),
                error=value.get("error"),
            )
        raise TypeError(f"probe returned unsupported result {value!r}")


@dataclass(frozen=True)
class RestartResult:
    accepted: bool
    error: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "RestartResult":
        if isinstance(value, RestartResult):
            return value
        if isinstance(value, Mapping):
            return cls(accepted=bool(value.get("accepted", False)), error=value.get("error"))
        if isinstance(value, bool):
            return cls(accepted=value)
        raise TypeError(f"recovery port returned unsupported result {value!r}")


@dataclass(frozen=True)
class RawSample:
    """
    One timestamped probe outcome for a device.

    Parameters
    ----------
    device_id : str
        Device identifier.
    timestamp : float
        Epoch milliseconds when the probe completed.
    success : bool
        Whether the probe succeeded.
    response_time_ms : float | None
        Response time; ``None`` for failures and timeouts.
    error : str | None
        Failure detail.
    """

    device_id: str
    timestamp: float
    success: bool
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StateTransition:
    device_id: str
    timestamp: float
    from_state: HealthState
    to_state: HealthState
    triggering_response_time_ms: Optional[float]
    reason: TransitionReason

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "from": self.from_state.value,
            "to": self.to_state.value,
            "triggering_response_time_ms": self.triggering_response_time_ms,
            "reason": self.reason.value,
        }

    @classmethod
    def from_dict(cls, device_id: str, payload: Mapping[str, Any]) -> "StateTransition":
        return cls(
            device_id=device_id,
            timestamp=float(_optional_float(payload["timestamp"])),
            from_state=HealthState(payload["from"]),
            to_state=HealthState(payload["to"]),
            triggering_response_time_ms=_optional_float(payload.get("triggering_response_time_ms")),
            reason=TransitionReason(payload["reason"]),
        )


@dataclass(frozen=True)
class RecoveryRecord:
    """
    Recovery state machine data for one device.

    Parameters
    ----------
    phase : RecoveryPhase
        Current recovery phase.
    consecutive_failure_episodes : int
        Cooldowns that expired with the device still offline.
    current_backoff_ms : float
        Active backoff delay from the escalation table.
    next_allowed_action_at : float | None
        Earliest time of the next recovery action while in backoff.
    cooldown_expires_at : float | None
        End of the current cooldown.
    last_action_at : float | None
        Time of the last recovery action.
    last_action_result : str | None
        ``"accepted"``, ``"notified"``, or a failure description.
    restart_attempts : int
        Automated actions since the last confirmed recovery or override.
    """

    phase: RecoveryPhase = RecoveryPhase.MONITORING
    consecutive_failure_episodes: int = 0
    current_backoff_ms: float = 0
    next_allowed_action_at: Optional[float] = None
    cooldown_expires_at: Optional[float] = None
    last_action_at: Optional[float] = None
    last_action_result: Optional[str] = None
    restart_attempts: int = 0

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecoveryRecord":
        result = payload.get("last_action_result")
        if result is not None and not isinstance(result, str):
            raise TypeError(f"last_action_result must be a string, got {result!r}")
        return cls(
            phase=RecoveryPhase(payload["phase"]),
            consecutive_failure_episodes=_required_int(payload["consecutive_failure_episodes"]),
            current_backoff_ms=float(_optional_float(payload["current_backoff_ms"])),
            next_allowed_action_at=_optional_float(payload.get("next_allowed_action_at")),
            cooldown_expires_at=_optional_float(payload.get("cooldown_expires_at")),
            last_action_at=_optional_float(payload.get("last_action_at")),
            last_action_result=result,
            restart_attempts=_required_int(payload.get("restart_attempts", 0)),
        )


@dataclass(frozen=True)
class DeviceHealthRecord:
    """
    Authoritative, versioned health record of one device.

    ``last_success_at`` is the only notion of "last seen alive"; it is written
    exclusively by the classifier.
    """

    device_id: str
    committed_state: HealthState = HealthState.RESPONSIVE
    pending_state: HealthState = HealthState.OFFLINE
    pending_streak: int = 0
    response_time_samples: tuple = ()
    average_response_time_ms: Optional[float] = None
    state_entered_at: Optional[float] = None
    last_probe_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_response_time_ms: Optional[float] = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_error: Optional[str] = None
    version: int = 0
    state_history: tuple = ()
    recovery: RecoveryRecord = field(default_factory=RecoveryRecord)

    @classmethod
    def initial(
        cls,
        device_id: str,
        *,
        now_ms: Optional[float] = None,
        initial_backoff_ms: float = 0,
    ) -> "DeviceHealthRecord":
        """
        Build the record of a newly observed device.

        Parameters
        ----------
        device_id : str
            Device identifier.
        now_ms : float | None, optional
            Creation time, stored as ``state_entered_at``.
        initial_backoff_ms : float, optional
            First value of the backoff schedule.

        Returns
        -------
        DeviceHealthRecord
            Fresh record at version 0.
        """
        return cls(
            device_id=device_id,
            state_entered_at=now_ms,
            recovery=RecoveryRecord(current_backoff_ms=initial_backoff_ms),
        )

    def with_recovery(self, **changes: Any) -> "DeviceHealthRecord":
        return replace(self, recovery=replace(self.recovery, **changes))

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "committed_state": self.committed_state.value,
            "pending_state": self.pending_state.value,
            "pending_streak": self.pending_streak,
            "response_time_samples": list(self.response_time_samples),
            "average_response_time_ms": self.average_response_time_ms,
            "state_entered_at": self.state_entered_at,
            "last_probe_at": self.last_probe_at,
            "last_success_at": self.last_success_at,
            "last_response_time_ms": self.last_response_time_ms,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_error": self.last_error,
            "version": self.version,
            "state_history": [item.to_dict() for item in self.state_history],
            "recovery": self.recovery.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DeviceHealthRecord":
        """
        Parse a persisted record.

        Raises
        ------
        KeyError, TypeError, ValueError
            If the payload is incomplete or corrupt.
        """
        if not isinstance(payload, Mapping):
            raise TypeError(f"record payload must be a mapping, got {type(payload).__name__}")
        device_id = payload["device_id"]
        if not isinstance(device_id, str) or not device_id:
            raise ValueError(f"invalid device_id {device_id!r}")
        samples = payload.get("response_time_samples", [])
        if not isinstance(samples, list):
            raise TypeError("response_time_samples must be a list")
        history = payload.get("state_history", [])
        if not isinstance(history, list):
            raise TypeError("state_history must be a list")
        last_error = payload.get("last_error")
        if last_error is not None and not isinstance(last_error, str):
            raise TypeError("last_error must be a string")
        return cls(
            device_id=device_id,
            committed_state=HealthState(payload["committed_state"]),
            pending_state=HealthState(payload["pending_state"]),
            pending_streak=_required_int(payload["pending_streak"]),
            response_time_samples=tuple(float(_optional_float(item)) for item in samples),
            average_response_time_ms=_optional_float(payload.get("average_response_time_ms")),
            state_entered_at=_optional_float(payload.get("state_entered_at")),
            last_probe_at=_optional_float(payload.get("last_probe_at")),
            last_success_at=_optional_float(payload.get("last_success_at")),
            last_response_time_ms=_optional_float(payload.get("last_response_time_ms")),
            consecutive_failures=_required_int(payload.get("consecutive_failures", 0)),
            consecutive_successes=_required_int(payload.get("consecutive_successes", 0)),
            last_error=last_error,
            version=_required_int(payload["version"]),
            state_history=tuple(StateTransition.from_dict(device_id, item) for item in history),
            recovery=RecoveryRecord.from_dict(payload["recovery"]),
        )


@dataclass(frozen=True)
class HealthEvent:
    device_id: str
    timestamp: float
    kind: EventKind
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "payload": dict(self.payload),
        }
