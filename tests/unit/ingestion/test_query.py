"""Unit tests for Query serialization and the continuation runner"""

import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from trailer_sync.core.errors import (
    ApplicationError,
    DataShapeError,
    ProtocolError,
    QueryFailedError,
    TransportError,
)
from trailer_sync.ingestion import fragments
from trailer_sync.ingestion.elements import Group, PagingStyle
from trailer_sync.ingestion.query import Query, QueryRunner
from trailer_sync.store.models import Parent, PullRequest, Repo


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.post_query = AsyncMock()
    return client


class TestQueryText:

    def test_declares_each_fragment_once(self):
        root = Group(
            "viewer",
            (
                fragments.USER,
                Group("repositories", (fragments.REPO,), paging=PagingStyle.LARGE_PAGE),
                Group("watching", (fragments.REPO,), paging=PagingStyle.LARGE_PAGE),
            ),
        )
        text = Query(name="Repos", root=root).query_text

        assert text.count("fragment repoFields on Repository") == 1
        assert text.count("fragment userFields on User") == 1

    def test_appends_rate_limit_probe(self):
        text = Query(name="Test", root=Group("viewer", (fragments.USER,))).query_text
        assert text.endswith(
            "{ viewer { __typename ...userFields } rateLimit { limit cost remaining resetAt nodeCount } }"
        )

    def test_parent_scope_wraps_root_in_node_lookup(self, store, gh):
        repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
        group = Group("pullRequests", (fragments.PULL_REQUEST,), paging=PagingStyle.LARGE_PAGE)

        text = Query(name="PRs", root=group, parent=Parent(repo, "pullRequests")).query_text

        assert 'node(id: "R1") { ... on Repository { pullRequests(first: 100)' in text


class TestBatching:

    @pytest.mark.parametrize("count, page_size", [(1, 100), (5, 2), (6, 3), (250, 100)])
    def test_splits_ids_into_pages(self, count, page_size):
        ids = [f"ID{i:03d}" for i in range(count)]
        queries = Query.batching("PRs", [fragments.PULL_REQUEST], ids, page_size=page_size)

        assert len(queries) == math.ceil(count / page_size)
        seen = [i for q in queries for i in q.root.page_of_ids]
        assert sorted(seen) == ids

    def test_only_first_query_is_top_level(self):
        queries = Query.batching("PRs", [fragments.PULL_REQUEST], ["a", "b", "c"], page_size=1)
        assert [q.sub_query for q in queries] == [False, True, True]

    def test_per_node_callback_reaches_every_batch(self):
        callback = MagicMock()
        queries = Query.batching("PRs", [fragments.PULL_REQUEST], ["a", "b"], per_node=callback, page_size=1)
        assert [q.root.callback for q in queries] == [callback, callback]

    def test_no_ids_means_no_queries(self):
        assert Query.batching("PRs", [fragments.PULL_REQUEST], []) == []


class TestExtractData:

    def test_returns_data(self):
        query = Query(name="Test", root=Group("viewer", (fragments.USER,)))
        assert query.extract_data({"data": {"viewer": {}}}) == {"viewer": {}}

    def test_drills_into_node_for_parent_scope(self, store, gh):
        repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
        query = Query(name="PRs", root=Group("pullRequests", ()), parent=Parent(repo, "pullRequests"))
        assert query.extract_data({"data": {"node": {"pullRequests": []}}}) == {"pullRequests": []}

    def test_prefers_first_graphql_error_message(self):
        query = Query(name="Test", root=Group("viewer", ()))
        body = {"errors": [{"message": "Bad credentials"}, {"message": "other"}]}
        with pytest.raises(ApplicationError, match="Bad credentials"):
            query.extract_data(body)

    def test_falls_back_to_top_level_message(self):
        query = Query(name="Test", root=Group("viewer", ()))
        with pytest.raises(ApplicationError, match="Requires authentication"):
            query.extract_data({"message": "Requires authentication"})

    def test_missing_data_is_data_shape_failure(self):
        query = Query(name="Test", root=Group("viewer", ()))
        with pytest.raises(DataShapeError):
            query.extract_data({})


class TestQueryRunner:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, mock_client, store, gh):
        mock_client.post_query.side_effect = [
            TransportError("Network error: reset"),
            gh.response(viewer=gh.user("U1", "octocat")),
        ]
        runner = QueryRunner(mock_client, store)

        await runner.run([Query(name="Test", root=Group("viewer", (fragments.USER,)))])

        assert mock_client.post_query.await_count == 2
        assert store.me.login == "octocat"

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_message(self, mock_client, store):
        mock_client.post_query.side_effect = [
            TransportError("Network error: reset"),
            ProtocolError("No JSON in response"),
            {"errors": [{"message": "Something went wrong"}]},
        ]
        runner = QueryRunner(mock_client, store, retry_count=3)

        with pytest.raises(QueryFailedError) as exc_info:
            await runner.run([Query(name="Test", root=Group("viewer", (fragments.USER,)))])

        assert exc_info.value.query_name == "Test"
        assert "Something went wrong" in exc_info.value.message
        assert exc_info.value.attempts == 3
        assert mock_client.post_query.await_count == 3

    @pytest.mark.asyncio
    async def test_missing_root_key_is_retried(self, mock_client, store, gh):
        mock_client.post_query.side_effect = [
            gh.response(),
            gh.response(viewer=gh.user("U1", "octocat")),
        ]
        runner = QueryRunner(mock_client, store)

        await runner.run([Query(name="Test", root=Group("viewer", (fragments.USER,)))])

        assert mock_client.post_query.await_count == 2

    @pytest.mark.asyncio
    async def test_drains_pagination_continuations(self, mock_client, store, gh):
        mock_client.post_query.side_effect = [
            gh.response(repositories={
                "edges": [{"node": gh.repo("R1", "octo/r1"), "cursor": "abc"}],
                "pageInfo": {"hasNextPage": True},
            }),
            gh.response(repositories=gh.connection([gh.repo("R2", "octo/r2")])),
        ]
        runner = QueryRunner(mock_client, store)
        root = Group("repositories", (fragments.REPO,), paging=PagingStyle.LARGE_PAGE)

        await runner.run([Query(name="Repos", root=root)])

        second_text = mock_client.post_query.await_args_list[1].args[0]
        assert 'after: "abc"' in second_text
        assert store.lookup(Repo, "R1") is not None
        assert store.lookup(Repo, "R2") is not None

    @pytest.mark.asyncio
    async def test_batch_executions_match_page_count(self, mock_client, store, gh):
        ids = [f"P{i}" for i in range(5)]
        requested = []

        async def respond(text):
            page = [i for i in ids if f'"{i}"' in text]
            requested.extend(page)
            return gh.response(nodes=[gh.pull_request(i) for i in page])

        mock_client.post_query.side_effect = respond
        runner = QueryRunner(mock_client, store)

        await runner.run(Query.batching("PRs", [fragments.PULL_REQUEST], ids, page_size=2))

        assert mock_client.post_query.await_count == 3
        assert runner.executed_count == 3
        assert sorted(requested) == ids
        assert len(store.table(PullRequest)) == 5

    @pytest.mark.asyncio
    async def test_accumulates_cost_and_minimum_remaining(self, mock_client, store, gh):
        first = gh.response(viewer=gh.user("U1", "octocat"))
        first["data"]["rateLimit"].update(cost=3, remaining=4000)
        second = gh.response(viewer=gh.user("U1", "octocat"))
        second["data"]["rateLimit"].update(cost=2, remaining=4500)
        mock_client.post_query.side_effect = [first, second]
        runner = QueryRunner(mock_client, store)
        query = Query(name="Test", root=Group("viewer", (fragments.USER,)))

        await runner.run([query])
        await runner.run([query])

        assert runner.tracker.total_cost == 5
        assert runner.tracker.api_remaining == 4000

    @pytest.mark.asyncio
    async def test_first_failure_cancels_pending_queries(self, mock_client, store):
        mock_client.post_query.side_effect = TransportError("Network error: down")
        runner = QueryRunner(mock_client, store, retry_count=1)
        queries = Query.batching("PRs", [fragments.PULL_REQUEST], ["a", "b", "c"], page_size=1)

        with pytest.raises(QueryFailedError):
            await runner.run(queries)
