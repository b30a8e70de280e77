"""vpsctl package."""

__all__ = [
    "catalog",
    "cli",
    "config",
    "constants",
    "exceptions",
    "manager",
    "models",
    "probe",
    "provision",
    "qemu",
    "store",
    "supervisor",
    "utils",
    "watch",
]
