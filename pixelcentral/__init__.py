"""Connection scheduling and firmware updates for Pixels dice."""

__version__ = "0.1.0"
