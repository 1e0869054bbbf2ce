"""SQLite storage, message marshaling, JSON result encoding and leader discovery for a replicated database."""

__version__ = "0.1.0"