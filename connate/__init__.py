"""Service manager core: configuration, service state machine, session state and control client."""

__version__ = "2.0.0b1"

__all__ = [
    "cli",
    "config",
    "deps",
    "examples",
    "machine",
    "procfs",
    "queries",
    "requests",
    "scheduling",
    "session",
    "settle",
]