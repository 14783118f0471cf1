"""trailer_sync - Incremental GitHub GraphQL mirror into a local JSON store."""

__version__ = "0.1.0"
