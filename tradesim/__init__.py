"""Trading-simulation dashboard: live broadcast service."""

__version__ = "0.1.0"
