"""Picks what a pass should tell the user about, before marks are reset"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .models import Comment, Issue, PullRequest, Repo, Review, ReviewState, SyncMark

if TYPE_CHECKING:
    from .database import Store
    from .models import Entity

logger = logging.getLogger(__name__)


class NotificationMode(str, Enum):
    NONE = "none"
    STANDARD = "standard"
    COMMENTS_AND_REVIEWS = "comments_and_reviews"


class AnnouncementReason(str, Enum):
    NEW_REPO = "new_repo"
    NEW_ITEM = "new_item"
    NEW_COMMENTS = "new_comments"
    NEW_COMMENT = "new_comment"
    NEW_REVIEW = "new_review"


@dataclass
class Announcement:
    reason: AnnouncementReason
    type_name: str
    id: str
    title: str
    url: str
    # The PR or issue a comment or review belongs to
    item_id: str | None = None

    @classmethod
    def for_entity(cls, reason: AnnouncementReason, entity: Entity, about: Entity | None = None) -> Announcement:
        shown = about or entity
        title = getattr(shown, "title", "") or getattr(shown, "name_with_owner", "")
        return cls(
            reason=reason,
            type_name=entity.TYPE_NAME,
            id=entity.id,
            title=title,
            url=getattr(shown, "url", ""),
            item_id=about.id if about is not None else None,
        )


class AnnouncementSelector:
    """
    Reads sync marks as they stand at the end of a pass. Items only count
    inside repos that were already known, so the first sync of a repo
    announces the repo and nothing under it.
    """

    NOTEWORTHY_REVIEW_STATES = (ReviewState.APPROVED, ReviewState.CHANGES_REQUESTED)

    def __init__(self, store: Store, mode: NotificationMode = NotificationMode.STANDARD):
        self._store = store
        self._mode = mode

    def select(self) -> list[Announcement]:
        if self._mode == NotificationMode.NONE:
            return []

        found = self._repos() + self._items()
        if self._mode == NotificationMode.COMMENTS_AND_REVIEWS:
            found += self._comments() + self._reviews()

        if found:
            by_reason: dict[str, int] = {}
            for announcement in found:
                by_reason[announcement.reason.value] = by_reason.get(announcement.reason.value, 0) + 1
            logger.info(f"Selected {len(found)} announcements", extra={"by_reason": by_reason})
        return found

    def _repos(self) -> list[Announcement]:
        return [
            Announcement.for_entity(AnnouncementReason.NEW_REPO, repo)
            for repo in self._store.table(Repo)
            if repo.sync_mark == SyncMark.NEW
        ]

    def _items(self) -> list[Announcement]:
        found = []
        for kind in (PullRequest, Issue):
            for item in self._store.table(kind):
                repo = self._repo_of(item)
                if repo is None or repo.sync_mark != SyncMark.UPDATED:
                    continue
                if item.sync_mark == SyncMark.NEW:
                    found.append(Announcement.for_entity(AnnouncementReason.NEW_ITEM, item))
                elif item.sync_mark == SyncMark.UPDATED and self.has_new_comments(item):
                    found.append(Announcement.for_entity(AnnouncementReason.NEW_COMMENTS, item))
        return found

    def _comments(self) -> list[Announcement]:
        found = []
        for comment in self._store.table(Comment):
            if comment.sync_mark != SyncMark.NEW or comment.viewer_did_author:
                continue
            item = self._item_of_comment(comment)
            if item is None:
                continue
            repo = self._repo_of(item)
            if repo is not None and repo.sync_mark != SyncMark.NEW:
                found.append(Announcement.for_entity(AnnouncementReason.NEW_COMMENT, comment, about=item))
        return found

    def _reviews(self) -> list[Announcement]:
        found = []
        for review in self._store.table(Review):
            if review.sync_mark != SyncMark.NEW or not self._is_noteworthy(review):
                continue
            pr = self._store.lookup(PullRequest, review.pull_request_id) if review.pull_request_id else None
            if pr is None or pr.sync_mark == SyncMark.NEW:
                continue
            repo = self._repo_of(pr)
            if repo is not None and repo.sync_mark != SyncMark.NEW:
                found.append(Announcement.for_entity(AnnouncementReason.NEW_REVIEW, review, about=pr))
        return found

    def has_new_comments(self, item: PullRequest | Issue) -> bool:
        return any(
            comment.sync_mark == SyncMark.NEW and not comment.viewer_did_author
            for comment in self._store.children(item, "comments", Comment)
        )

    def _is_noteworthy(self, review: Review) -> bool:
        if review.state in self.NOTEWORTHY_REVIEW_STATES:
            return True
        return review.state == ReviewState.COMMENTED and bool(review.body)

    def _repo_of(self, item: PullRequest | Issue) -> Repo | None:
        return self._store.lookup(Repo, item.repo_id) if item.repo_id else None

    def _item_of_comment(self, comment: Comment) -> PullRequest | Issue | None:
        pr_id = comment.first_parent_id("PullRequest", "comments")
        if pr_id:
            return self._store.lookup(PullRequest, pr_id)
        issue_id = comment.first_parent_id("Issue", "comments")
        if issue_id:
            return self._store.lookup(Issue, issue_id)
        review_id = comment.first_parent_id("Review", "comments")
        review = self._store.lookup(Review, review_id) if review_id else None
        if review is not None and review.pull_request_id:
            return self._store.lookup(PullRequest, review.pull_request_id)
        return None
