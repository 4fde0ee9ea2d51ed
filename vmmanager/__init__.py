"""vm-manager package."""

__all__ = [
    "actions",
    "bootstrap",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "exceptions",
    "images",
    "models",
    "qemu",
    "seed",
    "store",
    "utils",
    "vm",
]
