from __future__ import annotations

"""
Validated, hot-applicable monitor configuration.

A global ``MonitorConfig`` can be overridden per device. Updates are
validated as a whole; a rejected update leaves the last known good
configuration in place.
"""

from dataclasses import asdict, dataclass, fields, replace
import threading
from typing import Any, Mapping, Optional

from loguru import logger

from .exceptions import ConfigurationError

RECOVERY_ACTIONS = ("restart", "notify")

DEFAULT_BACKOFF_SCHEDULE_MS = (
    60_000,
    120_000,
    300_000,
    600_000,
    1_800_000,
    3_600_000,
    86_400_000,
)


@dataclass(frozen=True)
class MonitorConfig:
    """
    Effective monitoring and recovery settings for one device.

    Parameters
    ----------
    responsive_threshold_ms : float
        Rolling average below this value classifies as responsive.
    offline_threshold_ms : float
        Rolling average at or above this value classifies as offline.
    hysteresis_count : int
        Consecutive agreeing raw buckets required before a transition commits.
    rolling_window_size : int
        Number of response times kept for the rolling average.
    history_size : int
        Number of committed transitions kept per device.
    check_interval_ms : int
        Period between sampler ticks.
    probe_timeout_ms : int | None
        Explicit probe timeout. ``None`` derives it from the check interval.
    max_probe_timeout_ms : int
        Cap applied to the derived probe timeout.
    restart_cooldown_ms : int
        Pause after a recovery action before another may be issued.
    backoff_schedule_ms : tuple[int, ...]
        Ordered escalation table; the last value repeats indefinitely.
    max_restart_attempts : int | None
        Automated attempts allowed before giving up, ``None`` for unlimited.
    recovery_action : str
        ``"restart"`` to command the device, ``"notify"`` to only report.
    recovery_probe_interval_ms : int
        Minimum spacing between probes while a device is mid-recovery.
    restart_timeout_ms : int
        Longest wait for the recovery port to answer a restart command.
    """

    responsive_threshold_ms: float = 5000
    offline_threshold_ms: float = 30000
    hysteresis_count: int = 2
    rolling_window_size: int = 5
    history_size: int = 10
    check_interval_ms: int = 10000
    probe_timeout_ms: Optional[int] = None
    max_probe_timeout_ms: int = 10000
    restart_cooldown_ms: int = 120000
    backoff_schedule_ms: tuple = DEFAULT_BACKOFF_SCHEDULE_MS
    max_restart_attempts: Optional[int] = None
    recovery_action: str = "restart"
    recovery_probe_interval_ms: int = 30000
    restart_timeout_ms: int = 5000

    @property
    def effective_probe_timeout_ms(self) -> int:
        """
        Timeout handed to the probe port.

        Returns
        -------
        int
            Explicit timeout, or the check interval capped by
            ``max_probe_timeout_ms``.
        """
        if self.probe_timeout_ms is not None:
            return int(self.probe_timeout_ms)
        return int(min(self.check_interval_ms, self.max_probe_timeout_ms))

    def validate(self) -> "MonitorConfig":
        """
        Check every field against its bounds.

        Returns
        -------
        MonitorConfig
            ``self`` when valid.

        Raises
        ------
        ConfigurationError
            If any value is out of bounds.
        """
        errors: list[str] = []
        if not _is_number(self.responsive_threshold_ms) or self.responsive_threshold_ms <= 0:
            errors.append("responsive_threshold_ms must be a positive number")
        if not _is_number(self.offline_threshold_ms) or self.offline_threshold_ms <= 0:
            errors.append("offline_threshold_ms must be a positive number")
        if (
            not errors
            and self.responsive_threshold_ms >= self.offline_threshold_ms
        ):
            errors.append("responsive_threshold_ms must be lower than offline_threshold_ms")
        if not _is_int(self.hysteresis_count) or not 1 <= self.hysteresis_count <= 100:
            errors.append("hysteresis_count must be an integer in 1..100")
        if not _is_int(self.rolling_window_size) or not 1 <= self.rolling_window_size <= 1000:
            errors.append("rolling_window_size must be an integer in 1..1000")
        if not _is_int(self.history_size) or self.history_size < 1:
            errors.append("history_size must be a positive integer")
        if not _is_number(self.check_interval_ms) or self.check_interval_ms < 100:
            errors.append("check_interval_ms must be at least 100")
        if self.probe_timeout_ms is not None and (
            not _is_number(self.probe_timeout_ms) or self.probe_timeout_ms <= 0
        ):
            errors.append("probe_timeout_ms must be positive when set")
        if not _is_number(self.max_probe_timeout_ms) or self.max_probe_timeout_ms <= 0:
            errors.append("max_probe_timeout_ms must be positive")
        if not _is_number(self.restart_cooldown_ms) or self.restart_cooldown_ms < 0:
            errors.append("restart_cooldown_ms must not be negative")
        errors.extend(_schedule_errors(self.backoff_schedule_ms))
        if self.max_restart_attempts is not None and (
            not _is_int(self.max_restart_attempts) or self.max_restart_attempts < 1
        ):
            errors.append("max_restart_attempts must be a positive integer or None")
        if self.recovery_action not in RECOVERY_ACTIONS:
            errors.append(f"recovery_action must be one of {RECOVERY_ACTIONS}")
        if not _is_number(self.recovery_probe_interval_ms) or self.recovery_probe_interval_ms < 0:
            errors.append("recovery_probe_interval_ms must not be negative")
        if not _is_number(self.restart_timeout_ms) or self.restart_timeout_ms <= 0:
            errors.append("restart_timeout_ms must be positive")
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["backoff_schedule_ms"] = list(self.backoff_schedule_ms)
        return payload


_FIELD_NAMES = tuple(item.name for item in fields(MonitorConfig))

CONFIG_KEY_ALIASES = {
    "responsiveThresholdMs": "responsive_threshold_ms",
    "offlineThresholdMs": "offline_threshold_ms",
    "hysteresisCount": "hysteresis_count",
    "rollingWindowSize": "rolling_window_size",
    "historySize": "history_size",
    "checkIntervalMs": "check_interval_ms",
    "probeTimeoutMs": "probe_timeout_ms",
    "maxProbeTimeoutMs": "max_probe_timeout_ms",
    "restartCooldownMs": "restart_cooldown_ms",
    "backoffSchedule": "backoff_schedule_ms",
    "backoffScheduleMs": "backoff_schedule_ms",
    "maxRestartAttempts": "max_restart_attempts",
    "recoveryAction": "recovery_action",
    "recoveryProbeIntervalMs": "recovery_probe_interval_ms",
    "restartTimeoutMs": "restart_timeout_ms",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _schedule_errors(schedule: Any) -> list[str]:
    if not isinstance(schedule, (list, tuple)) or not schedule:
        return ["backoff_schedule_ms must be a non-empty sequence"]
    if not all(_is_number(item) and item > 0 for item in schedule):
        return ["backoff_schedule_ms values must be positive numbers"]
    for previous, current in zip(schedule, schedule[1:]):
        if current < previous:
            return ["backoff_schedule_ms must be non-decreasing"]
    return []


def normalize_settings(settings: Mapping[str, Any]) -> dict[str, Any]:
    """
    Translate user-facing setting keys into ``MonitorConfig`` field names.

    Parameters
    ----------
    settings : Mapping[str, Any]
        Raw settings using snake_case or camelCase keys.

    Returns
    -------
    dict[str, Any]
        Settings keyed by field name.

    Raises
    ------
    ConfigurationError
        If a key is unknown.
    """
    if not isinstance(settings, Mapping):
        raise ConfigurationError(f"settings must be a mapping, got {type(settings).__name__}")
    normalized: dict[str, Any] = {}
    for raw_key, value in settings.items():
        key = CONFIG_KEY_ALIASES.get(raw_key, raw_key)
        if key not in _FIELD_NAMES:
            raise ConfigurationError(f'Unknown configuration key "{raw_key}"')
        if key == "backoff_schedule_ms" and isinstance(value, list):
            value = tuple(value)
        normalized[key] = value
    return normalized


def build_config(base: MonitorConfig, settings: Mapping[str, Any]) -> MonitorConfig:
    """
    Apply settings on top of ``base`` and validate the result.

    Raises
    ------
    ConfigurationError
        If a key is unknown or a value is out of bounds.
    """
    return replace(base, **normalize_settings(settings)).validate()


class ConfigManager:
    """
    Thread-safe holder of the global config and per-device overrides.
    """

    def __init__(self, config: MonitorConfig | None = None) -> None:
        """
        Initialize with a validated global configuration.

        Parameters
        ----------
        config : MonitorConfig | None, optional
            Global configuration, by default ``MonitorConfig()``.

        Raises
        ------
        ConfigurationError
            If the initial configuration is invalid.
        """
        self._lock = threading.RLock()
        self._global = (config or MonitorConfig()).validate()
        self._overrides: dict[str, dict[str, Any]] = {}
        self._resolved: dict[str, MonitorConfig] = {}

    @property
    def global_config(self) -> MonitorConfig:
        with self._lock:
            return self._global

    def resolve(self, device_id: str) -> MonitorConfig:
        """
        Return the effective configuration for a device.

        Parameters
        ----------
        device_id : str
            Device identifier.

        Returns
        -------
        MonitorConfig
            Global configuration with the device's overrides applied.
        """
        with self._lock:
            cached = self._resolved.get(device_id)
            if cached is not None:
                return cached
            overrides = self._overrides.get(device_id)
            if not overrides:
                return self._global
            resolved = replace(self._global, **overrides)
            self._resolved[device_id] = resolved
            return resolved

    def apply_global(self, settings: Mapping[str, Any]) -> tuple[bool, str]:
        """
        Hot-apply global settings.

        The update is validated against the current global config and against
        every device override; on failure nothing changes.

        Parameters
        ----------
        settings : Mapping[str, Any]
            Settings to change.

        Returns
        -------
        tuple[bool, str]
            ``(success, message)`` result tuple.
        """
        with self._lock:
            try:
                candidate = build_config(self._global, settings)
                for device_id, overrides in self._overrides.items():
                    try:
                        replace(candidate, **overrides).validate()
                    except ConfigurationError as exc:
                        raise ConfigurationError(f"device {device_id}: {exc}") from exc
            except ConfigurationError as exc:
                logger.error("Rejected global configuration update, keeping last known good: {}", exc)
                return False, str(exc)
            self._global = candidate
            self._resolved.clear()
        logger.info("Global monitor configuration updated: {}", sorted(normalize_settings(settings)))
        return True, "Global configuration applied."

    def apply_device(self, device_id: str, settings: Mapping[str, Any]) -> tuple[bool, str]:
        """
        Hot-apply overrides for a single device.

        Parameters
        ----------
        device_id : str
            Device identifier.
        settings : Mapping[str, Any]
            Override values merged into the device's existing overrides.

        Returns
        -------
        tuple[bool, str]
            ``(success, message)`` result tuple.
        """
        with self._lock:
            try:
                merged = dict(self._overrides.get(device_id, {}))
                merged.update(normalize_settings(settings))
                replace(self._global, **merged).validate()
            except ConfigurationError as exc:
                logger.error(
                    "Rejected configuration for device {}, keeping last known good: {}",
                    device_id,
                    exc,
                )
                return False, str(exc)
            self._overrides[device_id] = merged
            self._resolved.pop(device_id, None)
        logger.info("Configuration overrides for device {} updated: {}", device_id, sorted(merged))
        return True, f"Configuration for {device_id} applied."

    def clear_device(self, device_id: str) -> None:
        with self._lock:
            self._overrides.pop(device_id, None)
            self._resolved.pop(device_id, None)

    def device_overrides(self, device_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._overrides.get(device_id, {}))
