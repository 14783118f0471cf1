"""
Declarative GraphQL selection tree.

Every element renders its own query text and reports the named fragments it
reaches. Ingesting elements walk a response payload, upsert the entities
they find into the Store, and return continuation queries for whatever the
response did not cover (the next page of a connection, the next batch of ids).
Elements are immutable; a continuation carries a copy with new cursor or ids.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from trailer_sync.store.models import Parent

if TYPE_CHECKING:
    from trailer_sync.store.database import Store
    from trailer_sync.store.models import Entity

    from .query import Query

logger = logging.getLogger(__name__)

NodeCallback = Callable[[dict[str, Any]], None]
# Receives the connection owner and each node of every page, continuations included
EdgeCallback = Callable[[Parent | None, dict[str, Any]], None]

DEFAULT_PAGE_SIZE = 100


class PagingStyle(Enum):
    NONE = "none"
    ONLY_LAST = "only_last"
    LARGE_PAGE = "large_page"
    SMALL_PAGE = "small_page"


class Element:
    name: str

    @property
    def query_text(self) -> str:
        raise NotImplementedError

    @property
    def fragments(self) -> list[Fragment]:
        return []


class IngestingElement(Element):
    def ingest(
        self,
        query: Query,
        payload: Any,
        parent: Parent | None,
        store: Store,
        level: int = 0,
    ) -> list[Query]:
        raise NotImplementedError


@dataclass(frozen=True)
class Field(Element):
    name: str

    @property
    def query_text(self) -> str:
        return self.name


ID = Field("id")


@dataclass(frozen=True)
class Fragment(IngestingElement):
    name: str
    on: str
    elements: tuple[Element, ...]

    @property
    def query_text(self) -> str:
        return f"...{self.name}"

    @property
    def declaration(self) -> str:
        body = " ".join(element.query_text for element in self.elements)
        return f"fragment {self.name} on {self.on} {{ __typename {body} }}"

    @property
    def fragments(self) -> list[Fragment]:
        found = [self]
        for element in self.elements:
            found.extend(element.fragments)
        return found

    def with_fields(self, *extra: Element) -> Fragment:
        return replace(self, elements=self.elements + extra)

    def ingest(self, query, payload, parent, store, level=0):
        if not isinstance(payload, dict):
            return []
        logger.debug(f"Ingesting fragment {self.name}", extra={"level": level})

        item = parent.item if parent else None
        continuations: list[Query] = []
        for element in self.elements:
            if isinstance(element, Fragment):
                # Fragments add no nesting level in the response
                continuations.extend(element.ingest(query, payload, parent, store, level + 1))
            elif isinstance(element, IngestingElement) and element.name in payload:
                child_parent = Parent(item, element.name) if item is not None else None
                continuations.extend(
                    element.ingest(query, payload[element.name], child_parent, store, level + 1)
                )
        return continuations


@dataclass(frozen=True)
class Group(IngestingElement):
    """A nested object, a list of objects, or a paged connection"""

    name: str
    fields: tuple[Element, ...]
    paging: PagingStyle = PagingStyle.NONE
    extra_params: dict[str, str] = field(default_factory=dict, hash=False)
    cursor: str | None = None
    on_node: EdgeCallback | None = field(default=None, compare=False, repr=False)

    def with_cursor(self, cursor: str | None) -> Group:
        return replace(self, cursor=cursor)

    def renamed(self, name: str) -> Group:
        return replace(self, name=name)

    def with_callback(self, on_node: EdgeCallback | None) -> Group:
        return replace(self, on_node=on_node)

    @property
    def query_text(self) -> str:
        params = []
        if self.paging == PagingStyle.ONLY_LAST:
            params.append("last: 1")
        elif self.paging in (PagingStyle.LARGE_PAGE, PagingStyle.SMALL_PAGE):
            params.append("first: 100" if self.paging == PagingStyle.LARGE_PAGE else "first: 20")
            if self.cursor:
                params.append(f'after: "{self.cursor}"')
        for key, value in self.extra_params.items():
            params.append(f"{key}: {value}")

        text = self.name
        if params:
            text += "(" + ", ".join(params) + ")"

        fields_text = "__typename " + " ".join(element.query_text for element in self.fields)
        if self.paging == PagingStyle.NONE:
            return f"{text} {{ {fields_text} }}"
        return f"{text} {{ edges {{ node {{ {fields_text} }} cursor }} pageInfo {{ hasNextPage }} }}"

    @property
    def fragments(self) -> list[Fragment]:
        found: list[Fragment] = []
        for element in self.fields:
            found.extend(element.fragments)
        return found

    def ingest(self, query, payload, parent, store, level=0):
        from .query import Query

        continuations: list[Query] = []

        if isinstance(payload, dict):
            edges = payload.get("edges")
            if isinstance(edges, list):
                logger.debug(f"Ingesting paged group {self.name}", extra={"level": level})
                latest_cursor = None
                for edge in edges:
                    if not isinstance(edge, dict):
                        continue
                    node = edge.get("node")
                    if isinstance(node, dict):
                        continuations.extend(self._check_fields(query, node, parent, store, level + 1))
                    latest_cursor = edge.get("cursor")

                page_info = payload.get("pageInfo") or {}
                if latest_cursor and page_info.get("hasNextPage") is True:
                    continuations.append(
                        Query(
                            name=query.name,
                            root=self.with_cursor(latest_cursor),
                            parent=parent,
                            sub_query=True,
                        )
                    )
            else:
                logger.debug(f"Ingesting group {self.name}", extra={"level": level})
                continuations.extend(self._check_fields(query, payload, parent, store, level + 1))

        elif isinstance(payload, list):
            logger.debug(f"Ingesting list of groups {self.name}", extra={"level": level})
            for node in payload:
                if isinstance(node, dict):
                    continuations.extend(self._check_fields(query, node, parent, store, level + 1))

        if continuations:
            logger.debug(f"{self.name} will need further paging", extra={"level": level})
        return continuations

    def _check_fields(
        self,
        query: Query,
        node: dict[str, Any],
        parent: Parent | None,
        store: Store,
        level: int,
    ) -> list[Query]:
        this_object: Entity | None = store.ingest_node(parent, node, level)
        if self.on_node is not None:
            self.on_node(parent, node)
        if this_object is None and parent is not None:
            this_object = parent.item

        continuations: list[Query] = []
        for element in self.fields:
            if isinstance(element, Fragment):
                field_name = parent.field if parent else ""
                fragment_parent = Parent(this_object, field_name) if this_object is not None else None
                continuations.extend(element.ingest(query, node, fragment_parent, store, level + 1))
            elif isinstance(element, IngestingElement) and element.name in node:
                child_parent = Parent(this_object, element.name) if this_object is not None else None
                continuations.extend(element.ingest(query, node[element.name], child_parent, store, level + 1))
        return continuations


class BatchGroup(IngestingElement):
    """
    Fetches a fixed id list through nodes(ids: [...]).

    Each id gets a clone of the template named <template><n>; only the first
    page_size ids (sorted) go into one request and the remainder travels on
    in a single continuation. The optional callback sees every owned node.
    """

    name = "nodes"

    def __init__(
        self,
        template: Group,
        ids: list[str],
        starting_count: int = 0,
        callback: NodeCallback | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.template = template
        self.callback = callback
        self.page_size = page_size
        self.groups: dict[str, Group] = {}
        index = starting_count
        for entity_id in ids:
            if entity_id in self.groups:
                continue
            self.groups[entity_id] = template.renamed(f"{template.name}{index}")
            index += 1
        self.next_count = index

    @property
    def page_of_ids(self) -> list[str]:
        return sorted(self.groups)[: self.page_size]

    @property
    def query_text(self) -> str:
        if not self.groups:
            return ""
        ids = '","'.join(self.page_of_ids)
        fields_text = " ".join(element.query_text for element in self.template.fields)
        return f'nodes(ids: ["{ids}"]) {{ {fields_text} }}'

    @property
    def fragments(self) -> list[Fragment]:
        return self.template.fragments

    def ingest(self, query, payload, parent, store, level=0):
        from .query import Query

        logger.debug(f"Ingesting batch group {self.name}", extra={"level": level})
        if not isinstance(payload, list):
            return []

        continuations: list[Query] = []

        page = set(self.page_of_ids)
        remaining = [entity_id for entity_id in sorted(self.groups) if entity_id not in page]
        if remaining:
            next_batch = BatchGroup(
                self.template,
                remaining,
                starting_count=self.next_count,
                callback=self.callback,
                page_size=self.page_size,
            )
            continuations.append(Query(name=query.name, root=next_batch, parent=parent, sub_query=True))

        for node in payload:
            if not isinstance(node, dict):
                continue
            group = self.groups.get(node.get("id"))
            if group is None:
                continue
            continuations.extend(group.ingest(query, node, parent, store, level + 1))
            if self.callback is not None:
                self.callback(node)

        if continuations:
            logger.debug(f"{self.name} will need further paging", extra={"level": level})
        return continuations
