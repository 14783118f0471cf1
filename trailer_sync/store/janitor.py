"""Two phase mark-and-sweep over the entity store"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import ALL_KINDS, SyncMark

if TYPE_CHECKING:
    from .database import Store
    from .models import Entity

logger = logging.getLogger(__name__)


@dataclass
class ClosureNotice:
    """An item seen closed or merged this pass, removed from the store"""

    type_name: str
    id: str
    title: str
    url: str
    state: str

    @classmethod
    def for_entity(cls, entity: Entity) -> ClosureNotice:
        state = getattr(entity, "state", "")
        return cls(
            type_name=entity.TYPE_NAME,
            id=entity.id,
            title=getattr(entity, "title", ""),
            url=getattr(entity, "url", ""),
            state=getattr(state, "value", str(state)),
        )


class Janitor:
    """
    Phase 1 (purge_untouched) deletes entities the pass never touched and
    terminal items it saw in their final state. It only runs after a full,
    unfiltered pass.

    Phase 2 (purge_stale_relationships) always runs: links still at none or
    pointing at a vanished parent are dropped; surviving links are reset to
    none so the next pass can detect them going stale.
    """

    def __init__(self, store: Store):
        self._store = store

    def purge_untouched(self) -> dict:
        """Returns dict with removed_count, closed (ClosureNotice list) and per type counts"""
        removed_by_type: dict[str, int] = {}
        closed: list[ClosureNotice] = []

        for kind in ALL_KINDS:
            for entity in self._store.table(kind):
                terminal = entity.sync_mark == SyncMark.UPDATED and entity.is_terminal
                if entity.sync_mark != SyncMark.NONE and not terminal:
                    continue
                if terminal:
                    closed.append(ClosureNotice.for_entity(entity))
                self._store.remove(entity)
                removed_by_type[kind.TYPE_NAME] = removed_by_type.get(kind.TYPE_NAME, 0) + 1

        removed_count = sum(removed_by_type.values())
        logger.info(
            f"Janitor: Purged {removed_count} untouched entities ({len(closed)} closed)",
            extra={"removed_by_type": removed_by_type},
        )
        return {
            "removed_count": removed_count,
            "removed_by_type": removed_by_type,
            "closed": closed,
        }

    def purge_stale_relationships(self) -> dict:
        """Returns dict with dropped_count and kept_count"""
        dropped_count = 0
        kept_count = 0

        for kind in ALL_KINDS:
            for entity in self._store.table(kind):
                for key in list(entity.parents):
                    parent_type, field = key.split(":", 1)
                    kept = []
                    for relationship in entity.parents[key]:
                        stale = relationship.sync_mark == SyncMark.NONE
                        if stale or self._store.lookup_any(parent_type, relationship.parent_id) is None:
                            self._store.index.remove(relationship.parent_id, field, entity.id)
                            dropped_count += 1
                        else:
                            relationship.sync_mark = SyncMark.NONE
                            kept.append(relationship)
                    if kept:
                        entity.parents[key] = kept
                    else:
                        del entity.parents[key]
                    kept_count += len(kept)

        logger.info(f"Janitor: Dropped {dropped_count} stale relationships ({kept_count} kept)")
        return {
            "dropped_count": dropped_count,
            "kept_count": kept_count,
        }
