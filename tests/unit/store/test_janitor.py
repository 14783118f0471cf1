"""Unit tests for the two phase purge"""

import pytest

from trailer_sync.store.janitor import ClosureNotice, Janitor
from trailer_sync.store.models import Issue, Parent, PullRequest, Repo, SyncMark, User


@pytest.fixture
def seeded(store, gh):
    """Repo R1 with PRs P1 and P2 linked under pullRequests, everything at baseline"""
    repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
    for pr_id in ("P1", "P2"):
        store.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request(pr_id))
    store.set_sync_mark(Repo, SyncMark.NONE, also_children=True)
    return store


class TestPurgeUntouched:

    def test_removes_entities_left_at_none(self, seeded, gh):
        repo = seeded.ingest_node(None, gh.repo("R1", "octo/r1"))
        seeded.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request("P1"))

        result = Janitor(seeded).purge_untouched()

        assert result["removed_count"] == 1
        assert result["removed_by_type"] == {"PullRequest": 1}
        assert seeded.lookup(PullRequest, "P2") is None
        assert seeded.index.children("R1", "pullRequests") == ["P1"]

    def test_keeps_new_entities(self, store, gh):
        store.ingest_node(None, gh.pull_request("P1", state="CLOSED"))

        result = Janitor(store).purge_untouched()

        assert result["removed_count"] == 0
        assert store.lookup(PullRequest, "P1") is not None

    @pytest.mark.parametrize("state", ["CLOSED", "MERGED"])
    def test_updated_terminal_pull_request_becomes_closure_notice(self, seeded, gh, state):
        seeded.set_sync_mark(Repo, SyncMark.UPDATED, also_children=True)
        seeded.ingest_node(None, gh.pull_request("P1", number=12, state=state))

        result = Janitor(seeded).purge_untouched()

        assert seeded.lookup(PullRequest, "P1") is None
        assert seeded.lookup(PullRequest, "P2") is not None
        assert result["closed"] == [
            ClosureNotice(
                type_name="PullRequest",
                id="P1",
                title="PR 12",
                url="https://github.com/octo/r1/pull/12",
                state=state.lower(),
            )
        ]

    def test_updated_open_issue_survives(self, store, gh):
        store.ingest_node(None, gh.issue("I1"))
        store.set_sync_mark(Issue, SyncMark.UPDATED)

        assert Janitor(store).purge_untouched()["removed_count"] == 0

    def test_removed_me_is_cleared(self, store, gh):
        store.ingest_node(None, gh.user("U1", "octocat"))
        store.set_sync_mark(User, SyncMark.NONE)

        store.purge_untouched()

        assert store.me is None


class TestPurgeStaleRelationships:

    def test_drops_links_not_confirmed_this_pass(self, seeded, gh):
        repo = seeded.lookup(Repo, "R1")
        seeded.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request("P1"))

        result = Janitor(seeded).purge_stale_relationships()

        assert result["dropped_count"] == 1
        assert seeded.index.children("R1", "pullRequests") == ["P1"]
        assert seeded.lookup(PullRequest, "P2").parents == {}

    def test_survivors_are_reset_to_none(self, store, gh):
        repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
        pr = store.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request("P1"))

        result = Janitor(store).purge_stale_relationships()

        assert result == {"dropped_count": 0, "kept_count": 1}
        assert pr.parents["Repo:pullRequests"][0].sync_mark == SyncMark.NONE

    def test_drops_links_to_missing_parents(self, store, gh):
        repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
        pr = store.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request("P1"))
        store.table(Repo).pop("R1")

        Janitor(store).purge_stale_relationships()

        assert pr.parents == {}
        assert "R1" not in store.index

    def test_second_run_drops_what_first_run_kept(self, store, gh):
        repo = store.ingest_node(None, gh.repo("R1", "octo/r1"))
        store.upsert(PullRequest, Parent(repo, "pullRequests"), "PullRequest", gh.pull_request("P1"))
        janitor = Janitor(store)

        janitor.purge_stale_relationships()
        result = janitor.purge_stale_relationships()

        assert result["dropped_count"] == 1
        assert len(store.index) == 0
