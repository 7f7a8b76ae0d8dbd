"""Media ingest coordination core: dedup, content-addressed storage and operation tracking."""

__version__ = "0.1.0"
