"""
Core primitives of the display device health monitor.

Probe and recovery ports are supplied by the caller; everything else needed to
classify device health and drive recovery lives here.
"""

from .classifier import StateClassifier, classify_response_time
from .config import ConfigManager, MonitorConfig
from .exceptions import (
    ConfigurationError,
    DeviceNotMonitoredError,
    HealthMonitorError,
    PersistenceError,
    StaleWriteError,
)
from .health_store import HealthStateStore
from .logging import init_logger
from .monitor import DeviceHealthMonitor
from .ports import EventDispatcher, EventSink, ProbePort, RecoveryPort, TcpConnectProbe
from .records import (
    DeviceHealthRecord,
    EventKind,
    HealthEvent,
    HealthState,
    ProbeResult,
    RawSample,
    RecoveryPhase,
    RecoveryRecord,
    RestartResult,
    StateTransition,
    TransitionReason,
)
from .recovery import RecoveryController
from .sampler import HealthSampler

__all__ = [
    "ConfigManager",
    "ConfigurationError",
    "DeviceHealthMonitor",
    "DeviceHealthRecord",
    "DeviceNotMonitoredError",
    "EventDispatcher",
    "EventKind",
    "EventSink",
    "HealthEvent",
    "HealthMonitorError",
    "HealthSampler",
    "HealthState",
    "HealthStateStore",
    "MonitorConfig",
    "PersistenceError",
    "ProbePort",
    "ProbeResult",
    "RawSample",
    "RecoveryController",
    "RecoveryPhase",
    "RecoveryPort",
    "RecoveryRecord",
    "RestartResult",
    "StaleWriteError",
    "StateClassifier",
    "StateTransition",
    "TcpConnectProbe",
    "TransitionReason",
    "classify_response_time",
    "init_logger",
]
