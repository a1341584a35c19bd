"""cloudvm package."""

__all__ = [
    "archives",
    "catalog",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "exceptions",
    "images",
    "models",
    "network",
    "packager",
    "utils",
    "vm",
]
