"""
Update job: mirror the viewer's GitHub data into the local store.

Runs as a fixed sequence of waves, each of which may be skipped:
1. Repos: viewer, organizations, owned and watched repositories
2. Item IDs: open PR and issue ids per visible repository
3. PRs and 4. Issues: full objects for known plus discovered ids
5. PR Review Comments: comments of reviews that report having some
6. Reactions: reactions of items and comments that report having some

Whatever a skipped wave would have confirmed is pre-marked as updated so the
purge at the end only removes what this pass had a chance to see. A wave
that fails aborts the job before anything is written to disk.

refresh_item is the narrow variant: one stored PR or issue, saved without
a purge.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from trailer_sync.core.config import Settings, get_settings
from trailer_sync.core.errors import NothingToUpdateError, QueryFailedError, WaveFailedError
from trailer_sync.ingestion import fragments
from trailer_sync.ingestion.elements import Group, PagingStyle
from trailer_sync.ingestion.github_client import GraphQLClient
from trailer_sync.ingestion.query import Query, QueryRunner
from trailer_sync.store.announcements import Announcement, AnnouncementSelector, NotificationMode
from trailer_sync.store.database import Store
from trailer_sync.store.janitor import ClosureNotice
from trailer_sync.store.models import (
    Comment,
    Entity,
    Issue,
    Org,
    Parent,
    PullRequest,
    Reaction,
    Repo,
    RepoVisibility,
    Review,
    SyncMark,
)

if TYPE_CHECKING:
    from trailer_sync.ingestion.elements import Element

logger = logging.getLogger(__name__)


class UpdateType(str, Enum):
    REPOS = "repos"
    PRS = "prs"
    ISSUES = "issues"
    COMMENTS = "comments"
    REACTIONS = "reactions"

    @classmethod
    def parse(cls, text: str) -> frozenset[UpdateType]:
        """Accepts a comma separated list; 'all' and 'items' expand"""
        types: set[UpdateType] = set()
        for param in (part.strip().lower() for part in text.split(",")):
            if not param:
                continue
            if param == "all":
                types.update(ALL_UPDATE_TYPES)
            elif param == "items":
                types.update((cls.PRS, cls.ISSUES))
            else:
                try:
                    types.add(cls(param))
                except ValueError:
                    raise ValueError(f"Unknown update type: {param}") from None
        return frozenset(types)


ALL_UPDATE_TYPES: frozenset[UpdateType] = frozenset(UpdateType)

# Batched against ids of mixed kinds
REACTION_FRAGMENTS: list[Element] = [
    fragments.PULL_REQUEST_REVIEW_COMMENT_REACTIONS,
    fragments.ISSUE_COMMENT_REACTIONS,
    fragments.PULL_REQUEST_REACTIONS,
    fragments.ISSUE_REACTIONS,
]


@dataclass
class SyncFilters:
    """Predicates built by the command line layer to target known repos and items"""

    repo: Callable[[Repo], bool] | None = None
    item: Callable[[Entity], bool] | None = None

    @property
    def applied(self) -> bool:
        return self.repo is not None or self.item is not None


@dataclass
class UpdateRequest:
    types: frozenset[UpdateType] = ALL_UPDATE_TYPES
    limit_to_repo_names: str | None = None
    keep_only_new_items: bool = False
    notification_mode: NotificationMode = NotificationMode.STANDARD
    filters: SyncFilters = field(default_factory=SyncFilters)

    @classmethod
    def from_settings(cls, settings: Settings) -> UpdateRequest:
        return cls(
            types=UpdateType.parse(settings.update_types),
            limit_to_repo_names=settings.limit_to_repo_names or None,
            keep_only_new_items=settings.keep_only_new_items,
            notification_mode=NotificationMode(settings.notification_mode.lower()),
        )


@dataclass
class UpdateResult:
    total_cost: int
    api_remaining: int | None
    # New pull requests and issues only
    new_items: int
    new_by_type: dict[str, int]
    closed: list[ClosureNotice]
    announcements: list[Announcement] = field(default_factory=list)
    duration_s: float = 0.0


class SyncOrchestrator:
    def __init__(
        self,
        request: UpdateRequest,
        settings: Settings,
        store: Store,
        client: GraphQLClient,
    ):
        self._request = request
        self._settings = settings
        self._store = store
        self._runner = QueryRunner(client, store, retry_count=settings.query_retry_count)

        types = request.types
        self._limit = request.limit_to_repo_names
        self._filtered = request.filters.applied
        self._keep_only_new = request.keep_only_new_items

        self.wants_repos = UpdateType.REPOS in types and not self._filtered and self._limit is None
        self.wants_prs = UpdateType.PRS in types
        self.wants_issues = UpdateType.ISSUES in types
        self.wants_comments = UpdateType.COMMENTS in types
        self.wants_reactions = UpdateType.REACTIONS in types

        # item id -> owning repo id, for this pass
        self.pr_ids: dict[str, str] = {}
        self.issue_ids: dict[str, str] = {}
        # Repos asked for their open item ids; fixed before the Item IDs wave starts
        self._discovery_repo_ids: set[str] = set()

    @property
    def _narrowed(self) -> bool:
        return self._filtered or self._limit is not None

    @property
    def full_purge(self) -> bool:
        unfiltered_all = self._request.types >= ALL_UPDATE_TYPES and not self._narrowed
        return unfiltered_all or self._keep_only_new

    async def run(self) -> UpdateResult:
        job_start = time.monotonic()

        await self._repos_wave()
        self._collect_known_items()
        await self._item_ids_wave()
        self._premark_unfetched_items()
        await self._pull_requests_wave()
        await self._issues_wave()
        await self._review_comments_wave()
        self._premark_item_comments()
        await self._reactions_wave()

        result = self._finalize()
        result.duration_s = round(time.monotonic() - job_start, 1)

        logger.info(
            f"Update done in {result.duration_s:.1f}s - {result.new_items} new items",
            extra={
                "total_cost": result.total_cost,
                "api_remaining": result.api_remaining,
                "new_by_type": result.new_by_type,
                "closed_count": len(result.closed),
                "announcement_count": len(result.announcements),
            },
        )
        return result

    async def _wave(self, name: str, queries: list[Query]) -> None:
        if not queries:
            logger.info(f"[{name}] (Skipped)")
            return

        wave_start = time.monotonic()
        cost_before = self._runner.tracker.total_cost
        try:
            await self._runner.run(queries)
        except QueryFailedError as e:
            raise WaveFailedError(name, e.message) from e

        elapsed = time.monotonic() - wave_start
        logger.info(
            f"[{name}] complete in {elapsed:.1f}s",
            extra={
                "wave": name,
                "wave_cost": self._runner.tracker.total_cost - cost_before,
                "wave_duration_s": round(elapsed, 1),
            },
        )

    def _batching(self, name: str, fields: list[Element], ids: list[str]) -> list[Query]:
        return Query.batching(name, fields, ids, page_size=self._settings.page_size)

    def _repo_of(self, item: PullRequest | Issue) -> Repo | None:
        repo_id = item.repo_id
        return self._store.lookup(Repo, repo_id) if repo_id else None

    def _matches_limit(self, repo: Repo) -> bool:
        return self._limit is None or self._limit.lower() in repo.name_with_owner.lower()

    # Waves

    async def _repos_wave(self) -> None:
        if not self.wants_repos:
            logger.info("[Repos] (Skipped)")
            # Known precision gap: a repo deleted upstream survives until a full repos pass
            self._store.set_sync_mark(Org, SyncMark.UPDATED)
            self._store.set_sync_mark(Repo, SyncMark.UPDATED)
            return

        large = PagingStyle.LARGE_PAGE
        viewer = Group(
            "viewer",
            (
                fragments.USER,
                Group("organizations", (fragments.ORG_WITH_REPOS,), paging=large),
                Group("repositories", (fragments.REPO,), paging=large),
                Group("watching", (fragments.REPO,), paging=large),
            ),
        )
        await self._wave("Repos", [Query(name="Repos", root=viewer)])

        if self._store.me is not None:
            logger.info(f"API user is {self._store.me.login}")

    def _collect_known_items(self) -> None:
        """Seeds the fetch lists with stored items whose repo still syncs that kind"""
        repo_filter = self._request.filters.repo
        item_filter = self._request.filters.item
        repos = self._store.table(Repo).items(repo_filter)

        if self.wants_prs:
            for repo in repos:
                for pr in self._store.children(repo, "pullRequests", PullRequest):
                    if item_filter and not item_filter(pr):
                        continue
                    owner = self._repo_of(pr)
                    if owner is not None and owner.should_sync_prs and self._matches_limit(owner):
                        self.pr_ids[pr.id] = owner.id

        if self.wants_issues:
            for repo in repos:
                for issue in self._store.children(repo, "issues", Issue):
                    if item_filter and not item_filter(issue):
                        continue
                    owner = self._repo_of(issue)
                    if owner is not None and owner.should_sync_issues and self._matches_limit(owner):
                        self.issue_ids[issue.id] = owner.id

    def _register_item_id(self, parent: Parent | None, node: dict) -> None:
        """Called for every open item id, on the first page of a repo's connection and on later ones"""
        item_id = node.get("id")
        if parent is None or not isinstance(item_id, str):
            return
        repo = parent.item
        if not isinstance(repo, Repo) or repo.id not in self._discovery_repo_ids:
            return

        if parent.field == "pullRequests" and repo.visibility != RepoVisibility.ONLY_ISSUES:
            self.pr_ids[item_id] = repo.id
            logger.debug(f"Registered PR ID: {item_id}")
        elif parent.field == "issues" and repo.visibility != RepoVisibility.ONLY_PRS:
            self.issue_ids[item_id] = repo.id
            logger.debug(f"Registered Issue ID: {item_id}")

    async def _item_ids_wave(self) -> None:
        if not (self.wants_prs or self.wants_issues) or self._filtered:
            logger.info("[Item IDs] (Skipped)")
            return

        # Repos the Repos wave did not list are left at none and must stay untouched
        self._discovery_repo_ids = {
            repo.id
            for repo in self._store.table(Repo)
            if repo.sync_mark != SyncMark.NONE
            and repo.visibility != RepoVisibility.HIDDEN
            and self._matches_limit(repo)
        }
        id_fragment = fragments.repo_item_ids(
            prs=self.wants_prs,
            issues=self.wants_issues,
            on_item=self._register_item_id,
        )
        await self._wave("Item IDs", self._batching("Item IDs", [id_fragment], sorted(self._discovery_repo_ids)))

    def _premark_unfetched_items(self) -> None:
        if self._keep_only_new:
            return
        if not self.wants_prs or self._narrowed:
            unfetched = [i for i in self._store.table(PullRequest).ids() if i not in self.pr_ids]
            self._store.set_sync_mark(PullRequest, SyncMark.UPDATED, also_children=True, limit_to_ids=unfetched)
        if not self.wants_issues or self._narrowed:
            unfetched = [i for i in self._store.table(Issue).ids() if i not in self.issue_ids]
            self._store.set_sync_mark(Issue, SyncMark.UPDATED, also_children=True, limit_to_ids=unfetched)

    async def _pull_requests_wave(self) -> None:
        fragment = fragments.PULL_REQUEST_WITH_COMMENTS if self.wants_comments else fragments.PULL_REQUEST
        await self._wave("PRs", self._batching("PRs", [fragment], list(self.pr_ids)))
        if self.pr_ids:
            self._repair_repo_links(PullRequest, "pullRequests", self.pr_ids)

    async def _issues_wave(self) -> None:
        fragment = fragments.ISSUE_WITH_COMMENTS if self.wants_comments else fragments.ISSUE
        await self._wave("Issues", self._batching("Issues", [fragment], list(self.issue_ids)))
        if self.issue_ids:
            self._repair_repo_links(Issue, "issues", self.issue_ids)

    def _repair_repo_links(self, kind: type[PullRequest | Issue], field_name: str, discovered: dict[str, str]) -> None:
        """Items fetched through nodes() carry no repo link of their own"""
        table = self._store.table(kind)

        if not self.wants_repos:
            for item in table.items(lambda i: i.sync_mark == SyncMark.UPDATED):
                repo = self._repo_of(item)
                if repo is not None:
                    self._store.link_to_parent(item, Parent(repo, field_name))

        for item in table.items(lambda i: self._repo_of(i) is None):
            logger.debug(f"Detected missing parent for {kind.TYPE_NAME} ID '{item.id}'")
            repo_id = discovered.get(item.id)
            repo = self._store.lookup(Repo, repo_id) if repo_id else None
            if repo is not None:
                logger.debug(f"Determined parent should be Repo ID '{repo_id}'")
                self._store.link_to_parent(item, Parent(repo, field_name))

    async def _review_comments_wave(self) -> None:
        if self.wants_prs and self.wants_comments:
            review_ids = [
                review.id
                for review in self._store.table(Review)
                if review.sync_mark != SyncMark.NONE and review.sync_needs_comments
            ]
            await self._wave(
                "PR Review Comments",
                self._batching(
                    "PR Review Comments",
                    [fragments.REVIEW_COMMENTS, fragments.PULL_REQUEST_COMMENTS, fragments.ISSUE_COMMENTS],
                    review_ids,
                ),
            )
            return

        logger.info("[PR Review Comments] (Skipped)")
        if not self._keep_only_new:
            comment_ids = [
                comment.id
                for review in self._store.table(Review)
                for comment in self._store.children(review, "comments", Comment)
            ]
            self._store.set_sync_mark(Comment, SyncMark.UPDATED, also_children=True, limit_to_ids=comment_ids)

    def _premark_item_comments(self) -> None:
        if self._keep_only_new or self.wants_comments:
            return
        comment_ids = []
        for kind in (PullRequest, Issue):
            for item in self._store.table(kind).items(lambda i: i.sync_mark == SyncMark.UPDATED):
                comment_ids.extend(c.id for c in self._store.children(item, "comments", Comment))
        if comment_ids:
            self._store.set_sync_mark(Comment, SyncMark.UPDATED, also_children=True, limit_to_ids=comment_ids)

    async def _reactions_wave(self) -> None:
        if not self.wants_reactions:
            logger.info("[Reactions] (Skipped)")
            if not self._keep_only_new:
                self._store.set_sync_mark(Reaction, SyncMark.UPDATED, also_children=True)
            return

        def flagged(kind, requested: bool) -> list[str]:
            table = self._store.table(kind)
            if not requested:
                return table.ids()
            return [e.id for e in table if e.sync_mark != SyncMark.NONE and e.sync_needs_reactions]

        item_ids = (
            flagged(Comment, self.wants_comments)
            + flagged(PullRequest, self.wants_prs)
            + flagged(Issue, self.wants_issues)
        )
        await self._wave("Reactions", self._batching("Reactions", REACTION_FRAGMENTS, item_ids))

    def _finalize(self) -> UpdateResult:
        dry_run = self._settings.dry_run
        if not dry_run:
            self._store.record_sync_date()

        # Marks are read here; purge and save both change them
        announcements = AnnouncementSelector(self._store, self._request.notification_mode).select()

        closed: list[ClosureNotice] = []
        if self.full_purge:
            closed = self._store.purge_untouched()["closed"]
        self._store.purge_stale_relationships()

        new_by_type = self._store.save(dry_run=dry_run)
        tracker = self._runner.tracker
        if tracker.total_cost > 0:
            logger.info(f"Total update API cost: {tracker.total_cost}")
        if tracker.api_remaining is not None:
            logger.info(f"Remaining API limit: {tracker.api_remaining}")

        return UpdateResult(
            total_cost=tracker.total_cost,
            api_remaining=tracker.api_remaining,
            new_items=sum(new_by_type.get(kind.TYPE_NAME, 0) for kind in (PullRequest, Issue)),
            new_by_type=new_by_type,
            closed=closed,
            announcements=announcements,
        )


async def run_update(
    request: UpdateRequest,
    settings: Settings | None = None,
    store: Store | None = None,
    client: GraphQLClient | None = None,
) -> UpdateResult:
    """
    Runs one update pass. A store or client passed in is used as is;
    otherwise the store is loaded from settings.save_location and a client
    is opened for the duration of the pass.

    Raises NothingToUpdateError before any I/O when the request selects
    nothing, and WaveFailedError when a wave exhausts its retries.
    """
    settings = settings or get_settings()

    wants_repos = UpdateType.REPOS in request.types and not request.filters.applied and not request.limit_to_repo_names
    if not wants_repos and not (request.types - {UpdateType.REPOS}):
        raise NothingToUpdateError()

    if store is None:
        store = Store.from_settings(settings)
        store.load()

    last_sync = store.latest_sync_date()
    if last_sync is not None:
        logger.info(f"Last update was {last_sync.isoformat()}")

    logger.info(
        "Starting update",
        extra={
            "update_types": sorted(t.value for t in request.types),
            "limit_to_repo_names": request.limit_to_repo_names,
            "keep_only_new_items": request.keep_only_new_items,
            "filters_applied": request.filters.applied,
            "dry_run": settings.dry_run,
        },
    )

    if client is not None:
        return await SyncOrchestrator(request, settings, store, client).run()

    if not settings.github_token:
        raise ValueError("GITHUB_TOKEN environment variable is required")

    async with GraphQLClient.from_settings(settings) as opened:
        return await SyncOrchestrator(request, settings, store, opened).run()


async def refresh_item(
    item_id: str,
    with_comments: bool = False,
    settings: Settings | None = None,
    store: Store | None = None,
    client: GraphQLClient | None = None,
) -> PullRequest | Issue:
    """
    Refetches one stored pull request or issue and its reactions. With
    with_comments its comments, review comments and their reactions come
    along too. The store is saved without purging and nothing is announced.

    Raises KeyError when item_id is not a stored PR or issue, and
    QueryFailedError when a query exhausts its retries.
    """
    settings = settings or get_settings()
    if store is None:
        store = Store.from_settings(settings)
        store.load()

    item = store.lookup(PullRequest, item_id) or store.lookup(Issue, item_id)
    if item is None:
        raise KeyError(f"No stored pull request or issue with id {item_id}")

    def batching(name: str, fields: list[Element], ids: list[str]) -> list[Query]:
        return Query.batching(name, fields, ids, page_size=settings.page_size)

    async def refresh(active: GraphQLClient) -> None:
        runner = QueryRunner(active, store, retry_count=settings.query_retry_count)

        if isinstance(item, PullRequest):
            fragment = fragments.PULL_REQUEST_WITH_COMMENTS if with_comments else fragments.PULL_REQUEST
            await runner.run(batching("PR", [fragment], [item.id]))
        else:
            fragment = fragments.ISSUE_WITH_COMMENTS if with_comments else fragments.ISSUE
            await runner.run(batching("Issue", [fragment], [item.id]))

        reaction_ids = [item.id]
        if with_comments:
            reviews = store.children(item, "reviews", Review)
            review_ids = [r.id for r in reviews if r.sync_mark != SyncMark.NONE and r.sync_needs_comments]
            await runner.run(batching("PR Review Comments", [fragments.REVIEW_COMMENTS], review_ids))

            comments = store.children(item, "comments", Comment)
            for review in reviews:
                comments.extend(store.children(review, "comments", Comment))
            reaction_ids.extend(c.id for c in comments if c.sync_mark != SyncMark.NONE and c.sync_needs_reactions)

        await runner.run(batching("Reactions", REACTION_FRAGMENTS, reaction_ids))
        logger.info(
            f"Refreshed {item.TYPE_NAME} {item.id}",
            extra={"with_comments": with_comments, "total_cost": runner.tracker.total_cost},
        )

    if client is not None:
        await refresh(client)
    else:
        if not settings.github_token:
            raise ValueError("GITHUB_TOKEN environment variable is required")
        async with GraphQLClient.from_settings(settings) as opened:
            await refresh(opened)

    store.save(dry_run=settings.dry_run)
    return item


async def check_token(settings: Settings | None = None, client: GraphQLClient | None = None) -> str:
    """Fetches the viewer and returns the login the token belongs to"""
    settings = settings or get_settings()
    store = Store()
    query = Query(name="Test", root=Group("viewer", (fragments.USER,)))

    async def verify(active: GraphQLClient) -> str:
        runner = QueryRunner(active, store, retry_count=settings.query_retry_count)
        await runner.run([query])
        return store.me.login if store.me else ""

    if client is not None:
        login = await verify(client)
    else:
        if not settings.github_token:
            raise ValueError("GITHUB_TOKEN environment variable is required")
        async with GraphQLClient.from_settings(settings) as opened:
            login = await verify(opened)

    logger.info(f"Token for server {settings.graphql_url} is valid: Account is {login}")
    return login
