"""Directory snapshot synchronization and reconciliation."""

__version__ = "0.1.0"
