"""Entity kinds mirrored from the GitHub GraphQL API"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

JSON = dict[str, Any]

# Kinds register themselves here on class creation
KIND_BY_GRAPHQL_TYPE: dict[str, type[Entity]] = {}

# Typenames that only wrap other objects and never become entities
STRUCTURAL_TYPES: frozenset[str] = frozenset(
    {
        "Bot",
        "CheckSuite",
        "Commit",
        "PullRequestCommit",
        "PullRequestReviewCommentConnection",
        "ReactionConnection",
        "Status",
    }
)


class SyncMark(str, Enum):
    NONE = "none"
    NEW = "new"
    UPDATED = "updated"


class ItemState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class MergeableState(str, Enum):
    MERGEABLE = "mergeable"
    CONFLICTING = "conflicting"
    UNKNOWN = "unknown"


class ReviewState(str, Enum):
    PENDING = "pending"
    COMMENTED = "commented"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    DISMISSED = "dismissed"


class StatusState(str, Enum):
    EXPECTED = "expected"
    ERROR = "error"
    FAILURE = "failure"
    PENDING = "pending"
    SUCCESS = "success"


class RepoVisibility(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"
    ONLY_PRS = "only_prs"
    ONLY_ISSUES = "only_issues"


def parse_github_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unexpected datetime format: {value!r}")
        return None


def parse_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    """GitHub sends enum values upper-cased; unknown values fall back to default"""
    if not isinstance(value, str):
        return default
    try:
        return enum_cls(value.lower())
    except ValueError:
        return default


def total_count(node: JSON, key: str) -> int:
    section = node.get(key)
    if isinstance(section, dict) and isinstance(section.get("totalCount"), int):
        return section["totalCount"]
    return 0


class Relationship(BaseModel):
    """Edge from the owning entity up to one parent; only parent_id is persisted"""

    parent_id: str
    sync_mark: SyncMark = Field(default=SyncMark.NONE, exclude=True)


class Entity(BaseModel):
    """
    One stored remote object.

    Payloads with PLACEHOLDER_MAX_KEYS keys or fewer are stubs (an id and a
    typename, say) and never overwrite fields or create a new entity.
    None means every payload is accepted.
    """

    TYPE_NAME: ClassVar[str] = ""
    GRAPHQL_TYPES: ClassVar[tuple[str, ...]] = ()
    ID_FIELD: ClassVar[str] = "id"
    PLACEHOLDER_MAX_KEYS: ClassVar[int | None] = 1
    # relationship field -> child TYPE_NAME, used to cascade mark changes
    CHILD_FIELDS: ClassVar[dict[str, str]] = {}

    model_config = ConfigDict(extra="ignore")

    id: str
    element_type: str
    parents: dict[str, list[Relationship]] = Field(default_factory=dict)
    sync_mark: SyncMark = Field(default=SyncMark.NONE, exclude=True)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        if "TYPE_NAME" in cls.__dict__ and cls.TYPE_NAME:
            for graphql_type in cls.GRAPHQL_TYPES:
                KIND_BY_GRAPHQL_TYPE[graphql_type] = cls

    @classmethod
    def is_placeholder(cls, node: JSON) -> bool:
        return cls.PLACEHOLDER_MAX_KEYS is not None and len(node) <= cls.PLACEHOLDER_MAX_KEYS

    @classmethod
    def create(cls, entity_id: str, element_type: str, node: JSON, **initial: Any):
        """Returns None when the payload is only a placeholder"""
        if cls.is_placeholder(node):
            return None
        entity = cls(id=entity_id, element_type=element_type, sync_mark=SyncMark.NEW, **initial)
        entity.apply(node)
        return entity

    def apply(self, node: JSON) -> bool:
        if self.is_placeholder(node):
            return False
        self.apply_fields(node)
        return True

    def apply_fields(self, node: JSON) -> None:
        pass

    @property
    def is_terminal(self) -> bool:
        """Closed or merged items are removed once seen in that state"""
        return False

    def parent_ids(self, parent_type: str, field: str) -> list[str]:
        return [r.parent_id for r in self.parents.get(f"{parent_type}:{field}", [])]

    def first_parent_id(self, parent_type: str, field: str) -> str | None:
        ids = self.parent_ids(parent_type, field)
        return ids[0] if ids else None


class Org(Entity):
    TYPE_NAME = "Org"
    GRAPHQL_TYPES = ("Organization",)
    CHILD_FIELDS = {"repositories": "Repo"}

    name: str = ""

    def apply_fields(self, node: JSON) -> None:
        self.name = node.get("name") or ""


class Repo(Entity):
    TYPE_NAME = "Repo"
    GRAPHQL_TYPES = ("Repository",)
    PLACEHOLDER_MAX_KEYS = 5
    CHILD_FIELDS = {"pullRequests": "PullRequest", "issues": "Issue"}

    name_with_owner: str = ""
    is_fork: bool = False
    url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    visibility: RepoVisibility = RepoVisibility.VISIBLE

    def apply_fields(self, node: JSON) -> None:
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.updated_at = parse_github_datetime(node.get("updatedAt"))
        self.is_fork = bool(node.get("isFork", False))
        self.url = node.get("url") or ""
        self.name_with_owner = node.get("nameWithOwner") or ""

    @property
    def should_sync_prs(self) -> bool:
        return (
            self.visibility in (RepoVisibility.ONLY_PRS, RepoVisibility.VISIBLE)
            and self.sync_mark != SyncMark.NONE
        )

    @property
    def should_sync_issues(self) -> bool:
        return (
            self.visibility in (RepoVisibility.ONLY_ISSUES, RepoVisibility.VISIBLE)
            and self.sync_mark != SyncMark.NONE
        )

    @property
    def org_id(self) -> str | None:
        return self.first_parent_id("Org", "repositories")


class PullRequest(Entity):
    TYPE_NAME = "PullRequest"
    GRAPHQL_TYPES = ("PullRequest",)
    PLACEHOLDER_MAX_KEYS = 9
    CHILD_FIELDS = {
        "reviews": "Review",
        "reviewRequests": "ReviewRequest",
        "contexts": "Status",
        "comments": "Comment",
        "reactions": "Reaction",
        "labels": "Label",
        "assignees": "User",
        "milestone": "Milestone",
        "author": "User",
    }

    mergeable: MergeableState = MergeableState.UNKNOWN
    body_text: str = ""
    state: ItemState = ItemState.CLOSED
    created_at: datetime | None = None
    updated_at: datetime | None = None
    merged_at: datetime | None = None
    number: int = 0
    title: str = ""
    head_ref_name: str = ""
    url: str = ""
    viewer_did_author: bool = False

    sync_needs_reactions: bool = Field(default=False, exclude=True)

    def apply_fields(self, node: JSON) -> None:
        self.sync_needs_reactions = total_count(node, "reactions") > 0
        self.mergeable = parse_enum(MergeableState, node.get("mergeable"), MergeableState.UNKNOWN)
        self.body_text = node.get("bodyText") or ""
        self.head_ref_name = node.get("headRefName") or ""
        self.state = parse_enum(ItemState, node.get("state"), ItemState.CLOSED)
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.updated_at = parse_github_datetime(node.get("updatedAt"))
        self.merged_at = parse_github_datetime(node.get("mergedAt"))
        self.number = node.get("number") or 0
        self.title = node.get("title") or ""
        self.url = node.get("url") or ""
        self.viewer_did_author = bool(node.get("viewerDidAuthor", False))

    @property
    def is_terminal(self) -> bool:
        return self.state in (ItemState.CLOSED, ItemState.MERGED)

    @property
    def repo_id(self) -> str | None:
        return self.first_parent_id("Repo", "pullRequests")


class Issue(Entity):
    TYPE_NAME = "Issue"
    GRAPHQL_TYPES = ("Issue",)
    PLACEHOLDER_MAX_KEYS = 8
    CHILD_FIELDS = {
        "comments": "Comment",
        "reactions": "Reaction",
        "labels": "Label",
        "assignees": "User",
        "milestone": "Milestone",
        "author": "User",
    }

    body_text: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    number: int = 0
    title: str = ""
    url: str = ""
    state: ItemState = ItemState.CLOSED
    viewer_did_author: bool = False

    sync_needs_reactions: bool = Field(default=False, exclude=True)
    sync_needs_comments: bool = Field(default=False, exclude=True)

    def apply_fields(self, node: JSON) -> None:
        self.sync_needs_reactions = total_count(node, "reactions") > 0
        self.sync_needs_comments = total_count(node, "comments") > 0
        self.body_text = node.get("bodyText") or ""
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.updated_at = parse_github_datetime(node.get("updatedAt"))
        self.number = node.get("number") or 0
        self.title = node.get("title") or ""
        self.url = node.get("url") or ""
        self.state = parse_enum(ItemState, node.get("state"), ItemState.CLOSED)
        self.viewer_did_author = bool(node.get("viewerDidAuthor", False))

    @property
    def is_terminal(self) -> bool:
        return self.state == ItemState.CLOSED

    @property
    def repo_id(self) -> str | None:
        return self.first_parent_id("Repo", "issues")


class Comment(Entity):
    TYPE_NAME = "Comment"
    GRAPHQL_TYPES = ("IssueComment", "PullRequestReviewComment")
    PLACEHOLDER_MAX_KEYS = 5
    CHILD_FIELDS = {"reactions": "Reaction", "author": "User"}

    body: str = ""
    viewer_did_author: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    sync_needs_reactions: bool = Field(default=False, exclude=True)

    def apply_fields(self, node: JSON) -> None:
        self.sync_needs_reactions = total_count(node, "reactions") > 0
        self.body = node.get("body") or ""
        self.viewer_did_author = bool(node.get("viewerDidAuthor", False))
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.updated_at = parse_github_datetime(node.get("updatedAt"))


class Review(Entity):
    TYPE_NAME = "Review"
    GRAPHQL_TYPES = ("PullRequestReview",)
    PLACEHOLDER_MAX_KEYS = 5
    CHILD_FIELDS = {"comments": "Comment", "author": "User"}

    state: ReviewState = ReviewState.PENDING
    body: str = ""
    viewer_did_author: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    sync_needs_comments: bool = Field(default=False, exclude=True)

    def apply_fields(self, node: JSON) -> None:
        self.sync_needs_comments = total_count(node, "comments") > 0
        self.state = parse_enum(ReviewState, node.get("state"), ReviewState.PENDING)
        self.body = node.get("body") or ""
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.updated_at = parse_github_datetime(node.get("updatedAt"))
        self.viewer_did_author = bool(node.get("viewerDidAuthor", False))

    @property
    def pull_request_id(self) -> str | None:
        return self.first_parent_id("PullRequest", "reviews")


class ReviewRequest(Entity):
    TYPE_NAME = "ReviewRequest"
    GRAPHQL_TYPES = ("ReviewRequest",)
    PLACEHOLDER_MAX_KEYS = None
    CHILD_FIELDS = {"requestedReviewer": "User"}


class Label(Entity):
    TYPE_NAME = "Label"
    GRAPHQL_TYPES = ("Label",)
    ID_FIELD = "name"

    color: str = ""

    def apply_fields(self, node: JSON) -> None:
        self.color = node.get("color") or ""


class Milestone(Entity):
    TYPE_NAME = "Milestone"
    GRAPHQL_TYPES = ("Milestone",)

    title: str = ""

    def apply_fields(self, node: JSON) -> None:
        self.title = node.get("title") or ""


class Status(Entity):
    TYPE_NAME = "Status"
    GRAPHQL_TYPES = ("StatusContext", "CheckRun")
    PLACEHOLDER_MAX_KEYS = 6

    context: str = ""
    description: str = ""
    state: StatusState = StatusState.EXPECTED
    target_url: str = ""
    created_at: datetime | None = None

    def apply_fields(self, node: JSON) -> None:
        self.context = node.get("context") or ""
        self.created_at = parse_github_datetime(node.get("createdAt"))
        self.description = node.get("description") or ""
        self.state = parse_enum(StatusState, node.get("state"), StatusState.EXPECTED)
        self.target_url = node.get("targetUrl") or ""


class Reaction(Entity):
    TYPE_NAME = "Reaction"
    GRAPHQL_TYPES = ("Reaction",)
    PLACEHOLDER_MAX_KEYS = 0
    CHILD_FIELDS = {"user": "User"}

    EMOJI: ClassVar[dict[str, str]] = {
        "THUMBS_UP": "\U0001f44d",
        "THUMBS_DOWN": "\U0001f44e",
        "LAUGH": "\U0001f604",
        "HOORAY": "\U0001f389",
        "CONFUSED": "\U0001f615",
        "HEART": "❤️",
    }

    content: str = ""

    def apply_fields(self, node: JSON) -> None:
        self.content = node.get("content") or ""

    @property
    def emoji(self) -> str:
        return self.EMOJI.get(self.content, "?")


class User(Entity):
    TYPE_NAME = "User"
    GRAPHQL_TYPES = ("User",)
    PLACEHOLDER_MAX_KEYS = 2

    login: str = ""
    avatar_url: str = ""
    is_me: bool = False

    def apply_fields(self, node: JSON) -> None:
        self.avatar_url = node.get("avatarUrl") or ""
        self.login = node.get("login") or ""


# Persistence and purge order
ALL_KINDS: tuple[type[Entity], ...] = (
    Org,
    Repo,
    Issue,
    PullRequest,
    Milestone,
    Status,
    ReviewRequest,
    Label,
    Comment,
    Review,
    Reaction,
    User,
)


@dataclass
class Parent:
    """The entity an ingested payload hangs under, and the field it came through"""

    item: Entity
    field: str
