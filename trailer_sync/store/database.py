"""In-memory entity tables plus the relationship index, persisted as JSON files"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .janitor import Janitor
from .models import (
    ALL_KINDS,
    KIND_BY_GRAPHQL_TYPE,
    STRUCTURAL_TYPES,
    Entity,
    Parent,
    Relationship,
    RepoVisibility,
    SyncMark,
    User,
)
from .relationships import RelationshipIndex

if TYPE_CHECKING:
    from trailer_sync.core.config import Settings

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

RELATIONSHIPS_FILE = "relationships.json"
LATEST_SYNC_DATE_FILE = "latest-sync-date"


class EntityTable(Generic[E]):
    """Id keyed rows of one entity kind"""

    def __init__(self, kind: type[E]):
        self.kind = kind
        self._rows: dict[str, E] = {}

    def get(self, entity_id: str) -> E | None:
        return self._rows.get(entity_id)

    def put(self, entity: E) -> None:
        self._rows[entity.id] = entity

    def pop(self, entity_id: str) -> E | None:
        return self._rows.pop(entity_id, None)

    def ids(self) -> list[str]:
        return list(self._rows)

    def items(self, predicate: Callable[[E], bool] | None = None) -> list[E]:
        if predicate is None:
            return list(self._rows.values())
        return [entity for entity in self._rows.values() if predicate(entity)]

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._rows

    def __iter__(self) -> Iterator[E]:
        return iter(list(self._rows.values()))

    def __len__(self) -> int:
        return len(self._rows)


class Store:
    """
    Owns one EntityTable per kind and the RelationshipIndex.

    All mutation happens synchronously on the event loop between network
    awaits, so there is exactly one writer at a time.
    """

    def __init__(
        self,
        save_location: Path | None = None,
        default_repo_visibility: RepoVisibility = RepoVisibility.VISIBLE,
    ):
        self.save_location = save_location
        self.tables: dict[str, EntityTable] = {kind.TYPE_NAME: EntityTable(kind) for kind in ALL_KINDS}
        self.index = RelationshipIndex()
        self.me: User | None = None
        self._initial_fields: dict[str, dict[str, Any]] = {
            "Repo": {"visibility": default_repo_visibility},
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> Store:
        try:
            visibility = RepoVisibility(settings.default_repo_visibility)
        except ValueError:
            logger.warning(
                f"Unknown default repo visibility {settings.default_repo_visibility!r}, using visible"
            )
            visibility = RepoVisibility.VISIBLE
        return cls(save_location=settings.save_location, default_repo_visibility=visibility)

    def table(self, kind: type[E]) -> EntityTable[E]:
        return self.tables[kind.TYPE_NAME]

    def lookup(self, kind: type[E], entity_id: str) -> E | None:
        return self.table(kind).get(entity_id)

    def lookup_any(self, type_name: str, entity_id: str) -> Entity | None:
        """Resolves an id through a TYPE_NAME taken from a relationship key"""
        table = self.tables.get(type_name)
        if table is None:
            return None
        return table.get(entity_id)

    def counts(self) -> dict[str, int]:
        return {type_name: len(table) for type_name, table in self.tables.items()}

    def children(self, entity: Entity, field: str, kind: type[E]) -> list[E]:
        table = self.table(kind)
        found = []
        for child_id in self.index.children(entity.id, field):
            child = table.get(child_id)
            if child is not None:
                found.append(child)
        return found

    # Ingestion

    def ingest_node(self, parent: Parent | None, node: dict[str, Any], level: int = 0) -> Entity | None:
        """Routes a payload to its kind by __typename; wrappers and unknown types yield None"""
        typename = node.get("__typename")
        if not isinstance(typename, str) or typename in STRUCTURAL_TYPES:
            return None

        kind = KIND_BY_GRAPHQL_TYPE.get(typename)
        if kind is None:
            logger.debug(f"Skipping unhandled type {typename}", extra={"typename": typename})
            return None

        entity = self.upsert(kind, parent, typename, node, level)
        if isinstance(entity, User) and parent is None:
            entity.is_me = True
            self.me = entity
        return entity

    def upsert(
        self,
        kind: type[E],
        parent: Parent | None,
        element_type: str,
        node: dict[str, Any],
        level: int = 0,
    ) -> E | None:
        entity_id = node.get(kind.ID_FIELD)
        if not isinstance(entity_id, str):
            logger.debug(f"{element_type} payload without {kind.ID_FIELD}", extra={"level": level})
            return None

        table = self.table(kind)
        existing = table.get(entity_id)
        if existing is not None:
            if parent is not None:
                self.link_to_parent(existing, parent)
            if not existing.apply(node):
                logger.debug(
                    f"Placeholder payload for {kind.TYPE_NAME} {entity_id}, keeping stored fields",
                    extra={"level": level},
                )
            if existing.sync_mark != SyncMark.NEW:
                existing.sync_mark = SyncMark.UPDATED
            return existing

        entity = kind.create(entity_id, element_type, node, **self._initial_fields.get(kind.TYPE_NAME, {}))
        if entity is None:
            logger.debug(
                f"Placeholder payload for unknown {kind.TYPE_NAME} {entity_id}, not creating",
                extra={"level": level},
            )
            return None

        table.put(entity)
        if parent is not None:
            self.link_to_parent(entity, parent)
        return entity

    def link_to_parent(self, entity: Entity, parent: Parent) -> None:
        """Confirms the link for this pass, replacing a stale entry rather than duplicating it"""
        key = f"{parent.item.TYPE_NAME}:{parent.field}"
        bucket = entity.parents.setdefault(key, [])
        fresh = Relationship(parent_id=parent.item.id, sync_mark=SyncMark.NEW)
        for position, relationship in enumerate(bucket):
            if relationship.parent_id == parent.item.id:
                bucket[position] = fresh
                break
        else:
            bucket.append(fresh)
        self.index.add(parent.item.id, parent.field, entity.id)

    # Marks

    def set_sync_mark(
        self,
        kind: type[Entity],
        mark: SyncMark,
        also_children: bool = False,
        limit_to_ids: Iterable[str] | None = None,
    ) -> int:
        """Marks entities of kind and their relationships; returns how many were marked"""
        table = self.table(kind)
        ids = table.ids() if limit_to_ids is None else [i for i in limit_to_ids if i in table]
        seen: set[str] = set()
        for entity_id in ids:
            self._mark(table.get(entity_id), mark, also_children, seen)
        return len(ids)

    def _mark(self, entity: Entity, mark: SyncMark, also_children: bool, seen: set[str]) -> None:
        if entity.id in seen:
            return
        seen.add(entity.id)

        entity.sync_mark = mark
        for relationships in entity.parents.values():
            for relationship in relationships:
                relationship.sync_mark = mark

        if not also_children:
            return
        for field, child_type in entity.CHILD_FIELDS.items():
            for child_id in self.index.children(entity.id, field):
                child = self.lookup_any(child_type, child_id)
                if child is not None:
                    self._mark(child, mark, True, seen)

    # Removal

    def remove(self, entity: Entity) -> None:
        """Deletes from the table and from the index as both child and parent"""
        self.tables[entity.TYPE_NAME].pop(entity.id)
        for key, relationships in entity.parents.items():
            field = key.split(":", 1)[1]
            for relationship in relationships:
                self.index.remove(relationship.parent_id, field, entity.id)
        self.index.remove_parent(entity.id)
        if self.me is not None and self.me.id == entity.id:
            self.me = None

    def purge_untouched(self) -> dict:
        return Janitor(self).purge_untouched()

    def purge_stale_relationships(self) -> dict:
        return Janitor(self).purge_stale_relationships()

    # Persistence

    def load(self) -> None:
        """Reads every table in full; unreadable files count as empty"""
        if self.save_location is None:
            return

        for kind in ALL_KINDS:
            table = self.table(kind)
            path = self.save_location / f"{kind.TYPE_NAME}.json"
            if not path.exists():
                continue
            try:
                rows = json.loads(path.read_text(encoding="utf-8"))
                entities = [kind.model_validate(row) for row in rows.values()]
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Could not load data for {kind.TYPE_NAME}: {e}", extra={"path": str(path)})
                continue

            for entity in entities:
                _dedupe_relationships(entity)
                table.put(entity)
                if isinstance(entity, User) and entity.is_me:
                    self.me = entity

        path = self.save_location / RELATIONSHIPS_FILE
        if path.exists():
            try:
                self.index = RelationshipIndex(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Could not load data for relationships: {e}", extra={"path": str(path)})

        logger.debug("Loaded store", extra={"counts": self.counts()})

    def save(self, dry_run: bool = False) -> dict[str, int]:
        """
        Demotes new entities to baseline and writes every table.
        Returns created counts per type; the write is skipped in dry-run.
        """
        created: dict[str, int] = {}
        for type_name, table in self.tables.items():
            for entity in table:
                if entity.sync_mark == SyncMark.NEW:
                    entity.sync_mark = SyncMark.NONE
                    created[type_name] = created.get(type_name, 0) + 1

        if dry_run:
            logger.info("Dry run requested, updated data not saved")
            return created
        if self.save_location is None:
            return created

        self.save_location.mkdir(parents=True, exist_ok=True)
        for type_name, table in self.tables.items():
            rows = {entity.id: entity.model_dump(mode="json") for entity in table}
            _write_json(self.save_location / f"{type_name}.json", rows)
        _write_json(self.save_location / RELATIONSHIPS_FILE, self.index.to_dict())

        logger.info("Saved store", extra={"counts": self.counts(), "path": str(self.save_location)})
        return created

    def record_sync_date(self, when: datetime | None = None) -> None:
        if self.save_location is None:
            return
        when = when or datetime.now(timezone.utc)
        self.save_location.mkdir(parents=True, exist_ok=True)
        (self.save_location / LATEST_SYNC_DATE_FILE).write_text(when.isoformat(), encoding="utf-8")

    def latest_sync_date(self) -> datetime | None:
        if self.save_location is None:
            return None
        path = self.save_location / LATEST_SYNC_DATE_FILE
        try:
            return datetime.fromisoformat(path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None


def _dedupe_relationships(entity: Entity) -> None:
    for key, relationships in entity.parents.items():
        seen: set[str] = set()
        unique = []
        for relationship in relationships:
            if relationship.parent_id not in seen:
                seen.add(relationship.parent_id)
                unique.append(relationship)
        entity.parents[key] = unique


def _write_json(path: Path, payload: Any) -> None:
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_text(json.dumps(payload), encoding="utf-8")
    temp_path.replace(path)
