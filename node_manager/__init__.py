"""Harvester node manager: per-node ksmtuned controller."""

__version__ = "0.1.0"


def friendly_version() -> str:
    """Return the version string used in startup logs."""
    return f"v{__version__}"
