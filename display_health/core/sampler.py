from __future__ import annotations

"""
Independent per-device probe scheduling.

Each monitored device owns one daemon thread that waits on a cancellable
event between ticks. Every probe runs on its own daemon thread and is bounded
by a timeout that starts when the probe starts, so a hung device never stalls
its own schedule or anyone else's.
"""

from concurrent.futures import Future
from dataclasses import dataclass, field
import threading
import time
from typing import Callable, Optional

from loguru import logger

from .config import MonitorConfig
from .ports import ProbePort
from .records import ProbeResult, RawSample
from .workers import submit_daemon


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class _DeviceSchedule:
    device_id: str
    interval_ms: float
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    in_flight: Optional[Future] = None
    wake: Optional[threading.Event] = None


class HealthSampler:
    """
    Runs liveness probes on one independent schedule per device.

    Parameters
    ----------
    probe_port : ProbePort
        Measures one device's liveness within a timeout.
    config_provider : Callable[[str], MonitorConfig]
        Returns the effective configuration of a device.
    on_sample : Callable[[RawSample], None]
        Receives exactly one sample per executed probe.
    before_tick : Callable[[str], None] | None, optional
        Runs at the start of every tick (recovery timer evaluation).
    should_probe : Callable[[str], bool] | None, optional
        Returns False to skip the probe of this tick.
    clock : Callable[[], float] | None, optional
        Epoch-millisecond clock.
    """

    def __init__(
        self,
        probe_port: ProbePort,
        *,
        config_provider: Callable[[str], MonitorConfig],
        on_sample: Callable[[RawSample], None],
        before_tick: Optional[Callable[[str], None]] = None,
        should_probe: Optional[Callable[[str], bool]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._probe_port = probe_port
        self._config_provider = config_provider
        self._on_sample = on_sample
        self._before_tick = before_tick
        self._should_probe = should_probe
        self._clock = clock or _now_ms
        self._lock = threading.RLock()
        self._schedules: dict[str, _DeviceSchedule] = {}

    def start_monitoring(self, device_id: str, interval_ms: Optional[float] = None) -> None:
        """
        Begin (or retune) the periodic cycle of a device.

        Calling again for a monitored device only updates the interval; the
        running schedule and the device's record are kept.

        Parameters
        ----------
        device_id : str
            Device identifier.
        interval_ms : float | None, optional
            Tick period; defaults to the device's ``check_interval_ms``.
        """
        if interval_ms is None:
            interval_ms = self._config_provider(device_id).check_interval_ms
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        with self._lock:
            schedule = self._schedules.get(device_id)
            if schedule is not None:
                if schedule.interval_ms != interval_ms:
                    logger.info(
                        "Probe interval for {} changed from {} ms to {} ms.",
                        device_id,
                        schedule.interval_ms,
                        interval_ms,
                    )
                schedule.interval_ms = interval_ms
                return
            schedule = _DeviceSchedule(device_id=device_id, interval_ms=interval_ms)
            schedule.thread = threading.Thread(
                target=self._run,
                args=(schedule,),
                daemon=True,
                name=f"health-sampler-{device_id}",
            )
            self._schedules[device_id] = schedule
            schedule.thread.start()
        logger.info("Started monitoring {} every {} ms.", device_id, interval_ms)

    def stop_monitoring(self, device_id: str, *, join_timeout_sec: float = 1.0) -> None:
        """
        Cancel a device's schedule and release any outstanding probe wait.

        A probe still running on the device is abandoned; its result is
        discarded. Idempotent.
        """
        with self._lock:
            schedule = self._schedules.pop(device_id, None)
        if schedule is None:
            return
        schedule.stop_event.set()
        if schedule.wake is not None:
            schedule.wake.set()
        if schedule.in_flight is not None:
            schedule.in_flight.cancel()
        if schedule.thread is not None and schedule.thread is not threading.current_thread():
            schedule.thread.join(timeout=join_timeout_sec)
        logger.info("Stopped monitoring {}.", device_id)

    def stop_all(self) -> None:
        for device_id in self.monitored_devices():
            self.stop_monitoring(device_id)

    def shutdown(self) -> None:
        self.stop_all()

    def is_monitoring(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._schedules

    def monitored_devices(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._schedules))

    def interval_ms(self, device_id: str) -> Optional[float]:
        with self._lock:
            schedule = self._schedules.get(device_id)
            return schedule.interval_ms if schedule is not None else None

    def tick(self, device_id: str) -> Optional[RawSample]:
        """
        Execute one scheduled cycle for a device.

        Returns
        -------
        RawSample | None
            Emitted sample, or None when the probe was suppressed or the
            device stopped being monitored while it ran.
        """
        with self._lock:
            schedule = self._schedules.get(device_id)
        return self._tick(device_id, schedule)

    def probe_once(self, device_id: str) -> Optional[RawSample]:
        """
        Probe a device once, never waiting longer than its probe timeout.

        The timeout counts from the moment the probe starts running. Timeouts
        and probe exceptions become failure samples.

        Returns
        -------
        RawSample | None
            Sample describing the outcome, or None when monitoring of the
            device was stopped while waiting.
        """
        with self._lock:
            schedule = self._schedules.get(device_id)
        return self._probe(device_id, schedule)

    def _tick(self, device_id: str, schedule: Optional[_DeviceSchedule]) -> Optional[RawSample]:
        if schedule is not None and schedule.stop_event.is_set():
            return None
        if self._before_tick is not None:
            self._before_tick(device_id)
        if self._should_probe is not None and not self._should_probe(device_id):
            logger.debug("Probe for {} suppressed while recovery is in progress.", device_id)
            return None
        sample = self._probe(device_id, schedule)
        if sample is None or (schedule is not None and schedule.stop_event.is_set()):
            logger.debug("Discarded probe result for {}: monitoring stopped.", device_id)
            return None
        self._on_sample(sample)
        return sample

    def _probe(self, device_id: str, schedule: Optional[_DeviceSchedule]) -> Optional[RawSample]:
        config = self._config_provider(device_id)
        timeout_ms = config.effective_probe_timeout_ms
        timeout_sec = timeout_ms / 1000.0

        if schedule is not None and schedule.in_flight is not None and not schedule.in_flight.done():
            return self._failure(device_id, "previous probe still in flight")
        stop_event = schedule.stop_event if schedule is not None else threading.Event()

        wake = threading.Event()
        started_at: list[float] = []

        def _call() -> object:
            started_at.append(time.monotonic())
            wake.set()
            return self._probe_port.probe(device_id, timeout_ms)

        try:
            future = submit_daemon(_call, name=f"health-probe-{device_id}")
        except RuntimeError as exc:
            return self._failure(device_id, f"probe thread unavailable: {exc}")
        future.add_done_callback(lambda _future: wake.set())
        if schedule is not None:
            schedule.in_flight = future
            schedule.wake = wake

        while True:
            wake.clear()
            if future.done():
                break
            if stop_event.is_set():
                future.cancel()
                return None
            if not started_at:
                wake.wait(timeout_sec)
                continue
            remaining = started_at[0] + timeout_sec - time.monotonic()
            if remaining <= 0:
                return self._failure(device_id, f"probe timed out after {timeout_ms} ms")
            wake.wait(remaining)

        try:
            result = ProbeResult.coerce(future.result())
        except Exception as exc:
            return self._failure(device_id, str(exc) or type(exc).__name__)

        if not result.success:
            return self._failure(device_id, result.error or "probe reported failure")
        response_time = result.response_time_ms
        if response_time is None:
            response_time = (time.monotonic() - started_at[0]) * 1000.0
        return RawSample(
            device_id=device_id,
            timestamp=self._clock(),
            success=True,
            response_time_ms=float(response_time),
        )

    def _failure(self, device_id: str, error: str) -> RawSample:
        logger.debug("Probe for {} failed: {}", device_id, error)
        return RawSample(device_id=device_id, timestamp=self._clock(), success=False, error=error)

    def _run(self, schedule: _DeviceSchedule) -> None:
        while not schedule.stop_event.wait(schedule.interval_ms / 1000.0):
            try:
                self._tick(schedule.device_id, schedule)
            except Exception as exc:
                logger.error("Health tick for {} failed: {}", schedule.device_id, exc)
