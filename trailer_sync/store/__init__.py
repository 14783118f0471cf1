"""Entity tables, relationship index and purge for the local mirror."""

from trailer_sync.store.database import EntityTable, Store
from trailer_sync.store.janitor import ClosureNotice, Janitor

__all__ = [
    "EntityTable",
    "Store",
    "ClosureNotice",
    "Janitor",
]
