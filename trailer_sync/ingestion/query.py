"""One GraphQL round trip, and the runner that drains its continuations"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from trailer_sync.core.errors import (
    ApplicationError,
    DataShapeError,
    QueryAttemptError,
    QueryFailedError,
)

from .elements import DEFAULT_PAGE_SIZE, BatchGroup, Element, Group, IngestingElement, NodeCallback
from .rate_limiter import QueryCostTracker

if TYPE_CHECKING:
    from trailer_sync.store.database import Store
    from trailer_sync.store.models import Parent

    from .github_client import GraphQLClient

logger = logging.getLogger(__name__)

RATE_LIMIT_SELECTION = "rateLimit { limit cost remaining resetAt nodeCount }"


@dataclass
class Query:
    """
    Root element plus optional parent scope. A parent scoped query is sent
    as node(id: ...) on the parent's type, which is how continuation pages
    of nested connections are fetched.
    """

    name: str
    root: IngestingElement
    parent: Parent | None = None
    sub_query: bool = False

    @classmethod
    def batching(
        cls,
        name: str,
        fields: Sequence[Element],
        ids: Sequence[str],
        per_node: NodeCallback | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[Query]:
        """Splits ids into page_size segments; only the first query logs as top level"""
        template = Group("items", tuple(fields))
        queries = []
        for start in range(0, len(ids), page_size):
            segment = list(ids[start : start + page_size])
            batch = BatchGroup(template, segment, callback=per_node, page_size=page_size)
            queries.append(cls(name=name, root=batch, sub_query=bool(queries)))
        return queries

    @property
    def query_text(self) -> str:
        seen: set[str] = set()
        declarations = []
        for fragment in self.root.fragments:
            if fragment.name not in seen:
                seen.add(fragment.name)
                declarations.append(fragment.declaration)

        root_text = self.root.query_text
        if self.parent is not None:
            item = self.parent.item
            root_text = f'node(id: "{item.id}") {{ ... on {item.element_type} {{ {root_text} }} }}'
        return " ".join(declarations) + f" {{ {root_text} {RATE_LIMIT_SELECTION} }}"

    def extract_data(self, body: dict[str, Any]) -> dict[str, Any]:
        data = body.get("data")
        if isinstance(data, dict) and self.parent is not None:
            data = data.get("node")
        if isinstance(data, dict):
            return data

        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            message = first.get("message") or f"Unspecified server error: {body}"
            raise ApplicationError(f"Failed with error: '{message}'")
        if body.get("message"):
            raise ApplicationError(f"Failed with error: '{body['message']}'")
        raise DataShapeError(f"Failed with error: 'Unspecified server error: {body}'")


class QueryRunner:
    """
    Executes queries with retry, ingests into the Store and schedules every
    continuation until none remain. The first query that exhausts its retry
    budget cancels everything still pending and propagates.
    """

    DEFAULT_RETRY_COUNT: int = 3

    def __init__(
        self,
        client: GraphQLClient,
        store: Store,
        tracker: QueryCostTracker | None = None,
        retry_count: int = DEFAULT_RETRY_COUNT,
    ):
        self._client = client
        self._store = store
        self.tracker = tracker or QueryCostTracker()
        self._retry_count = max(1, retry_count)
        self.executed_count = 0

    async def run(self, queries: Iterable[Query]) -> None:
        pending: set[asyncio.Task] = set()

        def schedule(query: Query) -> None:
            pending.add(asyncio.create_task(self.execute(query), name=query.name))

        for query in queries:
            schedule(query)

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                failures = [task.exception() for task in done if task.exception() is not None]
                if failures:
                    raise failures[0]
                for task in done:
                    for continuation in task.result():
                        schedule(continuation)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def execute(self, query: Query) -> list[Query]:
        """One query with uniform retry and no backoff; returns its continuations"""
        if not query.sub_query:
            logger.info(f"[{query.name}] Fetching")

        last_error: QueryAttemptError | None = None
        for attempt in range(1, self._retry_count + 1):
            try:
                return await self._attempt(query)
            except QueryAttemptError as e:
                last_error = e
                logger.debug(
                    f"[{query.name}] {e.message}",
                    extra={"attempt": attempt, "failure_kind": e.kind},
                )
                if attempt < self._retry_count:
                    logger.debug(f"[{query.name}] Retrying")

        message = last_error.message if last_error else "Unknown failure"
        logger.error(f"[{query.name}] {message}", extra={"attempts": self._retry_count})
        raise QueryFailedError(query.name, message, self._retry_count)

    async def _attempt(self, query: Query) -> list[Query]:
        text = query.query_text
        logger.debug(f"[{query.name}] {text}")

        body = await self._client.post_query(text)
        self.executed_count += 1
        data = query.extract_data(body)

        info = self.tracker.record((body.get("data") or {}).get("rateLimit"))
        if info:
            logger.debug(
                f"[{query.name}] Processed page (Cost: {info.cost}, Remaining: {info.remaining} - Node Count: {info.node_count})"
            )
        else:
            logger.debug(f"[{query.name}] Processed page")

        root_name = query.root.name
        if root_name not in data:
            raise DataShapeError("No data in JSON")

        continuations = query.root.ingest(query, data[root_name], query.parent, self._store)
        if continuations:
            logger.debug(f"[{query.name}] Needs more page data", extra={"continuations": len(continuations)})
        return continuations
