from __future__ import annotations

"""
Device health monitor: wiring of sampler, classifier, recovery and store.

Data flow per device: sampler -> classifier -> store -> events -> recovery.
Nothing in here is driven by rendering or UI scheduling.
"""

from pathlib import Path
import threading
import time
from typing import Any, Callable, Iterable, Mapping, Optional

from loguru import logger

from .classifier import StateClassifier
from .config import ConfigManager, MonitorConfig
from .exceptions import (
    ConfigurationError,
    DeviceNotMonitoredError,
    PersistenceError,
    StaleWriteError,
)
from .health_store import HealthStateStore
from .logging import init_logger
from .ports import EventCallback, EventDispatcher, EventSink, ProbePort, RecoveryPort
from .records import DeviceHealthRecord, RawSample
from .recovery import RecoveryController
from .sampler import HealthSampler

DEFAULT_STALE_MS = 60_000


def _now_ms() -> float:
    return time.time() * 1000.0


class DeviceHealthMonitor:
    """
    Single source of truth for "is this device alive".

    Parameters
    ----------
    probe_port : ProbePort
        Liveness probe implementation.
    recovery_port : RecoveryPort | None, optional
        Restart implementation; without one, recovery is notify-only.
    config : MonitorConfig | None, optional
        Global configuration, by default ``MonitorConfig()``.
    state_file : str | Path | None, optional
        JSON file used to survive process restarts.
    persist_interval_ms : float, optional
        Period of background persistence, by default 60000.
    clock : Callable[[], float] | None, optional
        Epoch-millisecond clock shared by all components.
    event_sinks : Iterable[EventSink | Callable], optional
        Initial event subscribers.
    log_level : str | None, optional
        When set, configure process logging through ``init_logger``.
    log_file : str | Path | None, optional
        Audit log file passed to ``init_logger``.
    """

    def __init__(
        self,
        probe_port: ProbePort,
        recovery_port: Optional[RecoveryPort] = None,
        *,
        config: Optional[MonitorConfig] = None,
        state_file: str | Path | None = None,
        persist_interval_ms: float = 60_000,
        clock: Optional[Callable[[], float]] = None,
        event_sinks: Iterable[Any] = (),
        log_level: Optional[str] = None,
        log_file: str | Path | None = None,
    ) -> None:
        if log_level is not None:
            init_logger(log_level, log_file=log_file)
        self._clock = clock or _now_ms
        self._state_file = Path(state_file).expanduser() if state_file is not None else None
        self._persist_interval_ms = persist_interval_ms
        self._persist_stop = threading.Event()
        self._persist_thread: Optional[threading.Thread] = None
        self._persist_lock = threading.Lock()

        self.config = ConfigManager(config)
        self.events = EventDispatcher()
        for sink in event_sinks:
            self.events.subscribe(sink)
        self.store = HealthStateStore(record_factory=self._new_record, clock=self._clock)
        self.classifier = StateClassifier(self.store, self.config.resolve, self.events)
        self.recovery = RecoveryController(
            self.store,
            self.config.resolve,
            recovery_port,
            self.events,
            clock=self._clock,
        )
        self.sampler = HealthSampler(
            probe_port,
            config_provider=self.config.resolve,
            on_sample=self.handle_sample,
            before_tick=self._evaluate_recovery,
            should_probe=self.recovery.should_probe,
            clock=self._clock,
        )

    def start(self) -> None:
        """
        Restore persisted state and start background persistence.
        """
        if self._state_file is not None:
            self.load_state()
        if self._state_file is not None and self._persist_thread is None:
            self._persist_stop.clear()
            self._persist_thread = threading.Thread(
                target=self._persist_loop,
                daemon=True,
                name="health-state-persister",
            )
            self._persist_thread.start()

    def stop(self) -> None:
        """
        Stop every schedule and write a final snapshot.
        """
        self.sampler.shutdown()
        self._persist_stop.set()
        if self._persist_thread is not None:
            self._persist_thread.join(timeout=1.0)
            self._persist_thread = None
        self._persist_quietly()

    def add_device(self, device_id: str, overrides: Optional[Mapping[str, Any]] = None) -> DeviceHealthRecord:
        """
        Start monitoring a device; re-adding only refreshes its settings.

        Parameters
        ----------
        device_id : str
            Device identifier.
        overrides : Mapping[str, Any] | None, optional
            Per-device configuration overrides.

        Returns
        -------
        DeviceHealthRecord
            The device's current record.

        Raises
        ------
        ConfigurationError
            If the overrides are invalid.
        """
        if overrides:
            ok, message = self.config.apply_device(device_id, overrides)
            if not ok:
                raise ConfigurationError(message)
        record = self.store.ensure(device_id)
        self.sampler.start_monitoring(device_id, self.config.resolve(device_id).check_interval_ms)
        return record

    def remove_device(self, device_id: str) -> Optional[DeviceHealthRecord]:
        """
        Cancel a device's schedule, then archive its record.

        Returns
        -------
        DeviceHealthRecord | None
            Archived record, or None when the device was unknown.
        """
        self.sampler.stop_monitoring(device_id)
        self.config.clear_device(device_id)
        record = self.store.archive(device_id)
        if record is not None:
            logger.info("Device {} removed; health record archived at version {}.", device_id, record.version)
            self._persist_quietly()
        return record

    def apply_config(
        self,
        global_settings: Optional[Mapping[str, Any]] = None,
        device_settings: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> tuple[bool, str]:
        """
        Hot-apply configuration changes and reschedule affected devices.

        Parameters
        ----------
        global_settings : Mapping[str, Any] | None, optional
            Changes to the global configuration.
        device_settings : Mapping[str, Mapping[str, Any]] | None, optional
            Per-device override changes keyed by device id.

        Returns
        -------
        tuple[bool, str]
            ``(success, message)``; on failure the last known good
            configuration stays active for the rejected part.
        """
        messages: list[str] = []
        ok = True
        if global_settings:
            applied, message = self.config.apply_global(global_settings)
            ok = ok and applied
            messages.append(message)
        for device_id, settings in (device_settings or {}).items():
            applied, message = self.config.apply_device(device_id, settings)
            ok = ok and applied
            messages.append(message)
        for device_id in self.sampler.monitored_devices():
            self.sampler.start_monitoring(device_id, self.config.resolve(device_id).check_interval_ms)
        return ok, " ".join(messages) or "Nothing to apply."

    def manual_override(self, device_id: str) -> DeviceHealthRecord:
        """
        Operator signal that a device was fixed by hand.

        Raises
        ------
        DeviceNotMonitoredError
            If the device has no record.
        """
        if self.store.get(device_id) is None:
            raise DeviceNotMonitoredError(f"Device {device_id} is not monitored.")
        record = self.recovery.manual_override(device_id)
        self._persist_quietly()
        return record

    def handle_sample(self, sample: RawSample) -> None:
        """
        Feed one probe sample through classification and recovery.
        """
        try:
            transition = self.classifier.process(sample)
        except StaleWriteError as exc:
            logger.error("Dropped sample for {}: {}", sample.device_id, exc)
            return
        except DeviceNotMonitoredError:
            logger.debug("Dropped late sample for removed device {}.", sample.device_id)
            return
        if transition is None:
            return
        try:
            self.recovery.on_transition(transition)
        finally:
            self._persist_quietly()

    def subscribe(self, callback: EventCallback | EventSink) -> EventCallback:
        return self.events.subscribe(callback)

    def get_record(self, device_id: str) -> Optional[DeviceHealthRecord]:
        return self.store.get(device_id)

    def get_status(self, device_id: str) -> dict:
        """
        Diagnostic view of one device.

        Returns
        -------
        dict
            Committed record fields plus scheduling details; empty when the
            device is unknown.
        """
        record = self.store.get(device_id)
        if record is None:
            return {}
        payload = record.to_dict()
        payload["monitoring"] = self.sampler.is_monitoring(device_id)
        payload["interval_ms"] = self.sampler.interval_ms(device_id)
        payload["stale"] = self.is_stale(device_id)
        return payload

    def get_all_status(self) -> dict[str, dict]:
        return {device_id: self.get_status(device_id) for device_id in self.store.device_ids()}

    def is_stale(self, device_id: str, stale_ms: float = DEFAULT_STALE_MS) -> bool:
        """
        Whether the device has not been seen alive for ``stale_ms``.
        """
        record = self.store.get(device_id)
        if record is None or record.last_success_at is None:
            return True
        return self._clock() - record.last_success_at > stale_ms

    def save_state(self) -> None:
        """
        Write a snapshot to the state file.

        Raises
        ------
        PersistenceError
            If no state file is configured or the write fails.
        """
        if self._state_file is None:
            raise PersistenceError("No state file configured.")
        with self._persist_lock:
            self.store.save(self._state_file)

    def load_state(self) -> int:
        if self._state_file is None:
            raise PersistenceError("No state file configured.")
        return self.store.load(self._state_file)

    def _evaluate_recovery(self, device_id: str) -> None:
        if self.recovery.evaluate(device_id):
            self._persist_quietly()

    def _new_record(self, device_id: str) -> DeviceHealthRecord:
        config = self.config.resolve(device_id)
        return DeviceHealthRecord.initial(
            device_id,
            now_ms=self._clock(),
            initial_backoff_ms=config.backoff_schedule_ms[0],
        )

    def _persist_quietly(self) -> None:
        if self._state_file is None:
            return
        try:
            self.save_state()
        except PersistenceError as exc:
            logger.warning("Health state persistence failed: {}", exc)

    def _persist_loop(self) -> None:
        while not self._persist_stop.wait(self._persist_interval_ms / 1000.0):
            self._persist_quietly()
