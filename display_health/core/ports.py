from __future__ import annotations

"""
Collaborator contracts consumed and exposed by the health core.

The probe and recovery ports are implemented by device drivers outside this
package. ``TcpConnectProbe`` is a minimal reachability probe for devices that
expose a TCP endpoint.
"""

import socket
import threading
import time
from typing import Any, Callable, Mapping, Protocol, Union

from loguru import logger

from .records import HealthEvent, ProbeResult, RestartResult


class ProbePort(Protocol):
    def probe(self, device_id: str, timeout_ms: float) -> Union[ProbeResult, Mapping[str, Any]]:
        """Measure liveness of one device within ``timeout_ms``."""
        ...


class RecoveryPort(Protocol):
    def restart(self, device_id: str) -> Union[RestartResult, Mapping[str, Any], bool]:
        """Command a device restart. Fire-and-forget from the core's perspective."""
        ...


class EventSink(Protocol):
    def emit(self, event: HealthEvent) -> None:
        ...


EventCallback = Callable[[HealthEvent], None]


class EventDispatcher:
    """
    Thread-safe fan-out of health events to subscribers.

    Subscribers may be plain callables or objects with an ``emit`` method.
    A failing subscriber is logged and never affects the others.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: list[EventCallback] = []

    def subscribe(self, subscriber: Union[EventCallback, EventSink]) -> EventCallback:
        """
        Register a subscriber.

        Parameters
        ----------
        subscriber : Callable[[HealthEvent], None] | EventSink
            Callback or sink receiving every event.

        Returns
        -------
        Callable[[HealthEvent], None]
            Registered callback, usable with ``unsubscribe``.
        """
        callback = subscriber.emit if hasattr(subscriber, "emit") else subscriber
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: EventCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: HealthEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Health event subscriber failed for {} ({}): {}", event.device_id, event.kind.value, exc)


class TcpConnectProbe:
    """
    Probe that measures TCP connect time to a device endpoint.

    Parameters
    ----------
    endpoints : Mapping[str, tuple[str, int]]
        Device identifier to ``(host, port)`` mapping.
    """

    def __init__(self, endpoints: Mapping[str, tuple[str, int]]) -> None:
        self._endpoints = dict(endpoints)

    def probe(self, device_id: str, timeout_ms: float) -> ProbeResult:
        endpoint = self._endpoints.get(device_id)
        if endpoint is None:
            return ProbeResult(success=False, error=f"No endpoint configured for {device_id}")
        host, port = endpoint
        started = time.monotonic()
        try:
            with socket.create_connection((host, int(port)), timeout=max(0.001, timeout_ms / 1000.0)):
                pass
        except OSError as exc:
            return ProbeResult(success=False, error=str(exc) or type(exc).__name__)
        return ProbeResult(success=True, response_time_ms=(time.monotonic() - started) * 1000.0)
