"""Assessment-result ingestion: turns runtime execution events into persisted OSCAL records."""

__version__ = "0.1.0"
