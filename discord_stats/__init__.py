"""Personal Discord message logger with a read-only statistics API."""

__version__ = "1.0.0"
