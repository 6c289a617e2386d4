"""
Exception types for the health monitoring core.

Probe failures are data, not exceptions; these types cover the conditions
that callers may need to handle explicitly.
"""


class HealthMonitorError(Exception):
    pass


class ConfigurationError(HealthMonitorError):
    """Raised when a configuration value is out of bounds."""
    pass


class StaleWriteError(HealthMonitorError):
    """Raised when a record mutation cannot be committed against a fresh version."""
    pass


class PersistenceError(HealthMonitorError):
    pass


class DeviceNotMonitoredError(HealthMonitorError):
    pass


__all__ = [
    "HealthMonitorError",
    "ConfigurationError",
    "StaleWriteError",
    "PersistenceError",
    "DeviceNotMonitoredError",
]
