"""Common utilities for the driver ride coordinator."""

__all__ = [
    "db",
    "kafka",
    "logging",
    "metrics",
    "settings",
    "telemetry",
]
