"""Global parent -> field -> children index"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class RelationshipIndex:
    """
    Maps parent_id -> field -> ordered child ids without duplicates.
    Kept paired with the child side relationship buckets by the Store.
    """

    def __init__(self, data: dict[str, dict[str, list[str]]] | None = None):
        self._index: dict[str, dict[str, list[str]]] = {}
        for parent_id, fields in (data or {}).items():
            for field, child_ids in fields.items():
                for child_id in child_ids:
                    self.add(parent_id, field, child_id)

    def add(self, parent_id: str, field: str, child_id: str) -> None:
        bucket = self._index.setdefault(parent_id, {}).setdefault(field, [])
        if child_id not in bucket:
            bucket.append(child_id)

    def remove(self, parent_id: str, field: str, child_id: str) -> None:
        fields = self._index.get(parent_id)
        if not fields:
            return
        bucket = fields.get(field)
        if bucket and child_id in bucket:
            bucket.remove(child_id)
            if not bucket:
                del fields[field]
        if not fields:
            del self._index[parent_id]

    def remove_parent(self, parent_id: str) -> dict[str, list[str]]:
        """Drops every bucket owned by parent_id and returns what was there"""
        return self._index.pop(parent_id, {})

    def children(self, parent_id: str, field: str) -> list[str]:
        return list(self._index.get(parent_id, {}).get(field, ()))

    def __contains__(self, parent_id: object) -> bool:
        return parent_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    def to_dict(self) -> dict[str, dict[str, list[str]]]:
        return {
            parent_id: {field: list(ids) for field, ids in fields.items()}
            for parent_id, fields in self._index.items()
        }
