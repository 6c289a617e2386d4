"""
display_health package.

Health monitoring and rate-limited recovery for networked display devices.
"""

__all__ = [
    "core",
]
