"""Git-backed issue tracking with dual identifiers and field-level sync."""

__version__ = "0.1.0"
