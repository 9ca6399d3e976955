"""kvm-machine-driver package."""

__all__ = [
    "cli",
    "config",
    "connection",
    "constants",
    "discovery",
    "domain",
    "driver",
    "exceptions",
    "models",
    "network",
    "storage",
    "utils",
]
