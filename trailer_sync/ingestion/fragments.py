"""Named GraphQL fragments for every entity kind the sync understands"""

from .elements import ID, EdgeCallback, Field, Fragment, Group, PagingStyle

LARGE = PagingStyle.LARGE_PAGE
OPEN_ONLY = {"states": "OPEN"}

USER = Fragment("userFields", "User", (ID, Field("login"), Field("avatarUrl")))

LABEL = Fragment("labelFields", "Label", (Field("name"), Field("color")))

MILESTONE = Fragment("milestoneFields", "Milestone", (ID, Field("title")))

STATUS = Fragment(
    "statusFields",
    "StatusContext",
    (
        ID,
        Field("context"),
        Field("description"),
        Field("state"),
        Field("targetUrl"),
        Field("createdAt"),
    ),
)

REACTION = Fragment(
    "reactions",
    "Reaction",
    (ID, Field("content"), Group("user", (USER,))),
)

REVIEW_REQUEST = Fragment(
    "reviewRequestFields",
    "ReviewRequest",
    (ID, Group("requestedReviewer", (USER,))),
)

REPO = Fragment(
    "repoFields",
    "Repository",
    (
        ID,
        Field("nameWithOwner"),
        Field("isFork"),
        Field("url"),
        Field("createdAt"),
        Field("updatedAt"),
    ),
)

ORG_WITH_REPOS = Fragment(
    "orgFieldsAndRepos",
    "Organization",
    (ID, Field("name"), Group("repositories", (REPO,), paging=LARGE)),
)

# Id discovery; only open item ids per repo, no entity fields
_OPEN_PR_IDS = Group("pullRequests", (ID,), paging=LARGE, extra_params=OPEN_ONLY)
_OPEN_ISSUE_IDS = Group("issues", (ID,), paging=LARGE, extra_params=OPEN_ONLY)


def repo_item_ids(prs: bool = True, issues: bool = True, on_item: EdgeCallback | None = None) -> Fragment:
    """on_item sees every open item id on every page, with the owning repo as parent"""
    if prs and issues:
        name, groups = "repoItemIds", (_OPEN_PR_IDS, _OPEN_ISSUE_IDS)
    elif prs:
        name, groups = "repoPrIds", (_OPEN_PR_IDS,)
    elif issues:
        name, groups = "repoIssueIds", (_OPEN_ISSUE_IDS,)
    else:
        raise ValueError("Id discovery needs prs, issues or both")
    return Fragment(name, "Repository", (ID, *(group.with_callback(on_item) for group in groups)))


_COMMENT_FIELDS = (
    ID,
    Field("body"),
    Field("viewerDidAuthor"),
    Field("createdAt"),
    Field("updatedAt"),
    Group("reactions", (Field("totalCount"),)),
    Group("author", (USER,)),
)

COMMENT_FOR_ITEMS = Fragment("commentFieldsForItems", "IssueComment", _COMMENT_FIELDS)
COMMENT_FOR_REVIEWS = Fragment("commentFieldsForReviews", "PullRequestReviewComment", _COMMENT_FIELDS)

REVIEW = Fragment(
    "reviewFields",
    "PullRequestReview",
    (
        ID,
        Field("body"),
        Field("state"),
        Field("viewerDidAuthor"),
        Field("createdAt"),
        Field("updatedAt"),
        Group("author", (USER,)),
        Group("comments", (Field("totalCount"),)),
    ),
)

PULL_REQUEST = Fragment(
    "prFields",
    "PullRequest",
    (
        ID,
        Field("updatedAt"),
        Field("mergeable"),
        Field("mergedAt"),
        Field("bodyText"),
        Field("state"),
        Field("createdAt"),
        Field("number"),
        Field("title"),
        Field("url"),
        Field("headRefName"),
        Field("viewerDidAuthor"),
        Group("milestone", (MILESTONE,)),
        Group("author", (USER,)),
        Group("labels", (LABEL,), paging=LARGE),
        Group("assignees", (USER,), paging=LARGE),
        Group("reviews", (REVIEW,), paging=LARGE),
        Group("reviewRequests", (REVIEW_REQUEST,), paging=LARGE),
        Group("reactions", (Field("totalCount"),)),
        # Statuses of the head commit only
        Group(
            "commits",
            (Group("commit", (Group("status", (Group("contexts", (STATUS,)),)),)),),
            paging=PagingStyle.ONLY_LAST,
        ),
    ),
)

PULL_REQUEST_WITH_COMMENTS = PULL_REQUEST.with_fields(
    Group("comments", (COMMENT_FOR_ITEMS,), paging=LARGE),
)

ISSUE = Fragment(
    "issueFields",
    "Issue",
    (
        ID,
        Field("bodyText"),
        Field("createdAt"),
        Field("updatedAt"),
        Field("number"),
        Field("title"),
        Field("url"),
        Field("state"),
        Field("viewerDidAuthor"),
        Group("milestone", (MILESTONE,)),
        Group("author", (USER,)),
        Group("labels", (LABEL,), paging=LARGE),
        Group("assignees", (USER,), paging=LARGE),
        Group("reactions", (Field("totalCount"),)),
        Group("comments", (Field("totalCount"),)),
    ),
)

ISSUE_WITH_COMMENTS = ISSUE.with_fields(
    Group("comments", (COMMENT_FOR_ITEMS,), paging=LARGE),
)

# Used against ids of mixed kinds; only the matching fragment applies to each node
REVIEW_COMMENTS = Fragment(
    "ReviewCommentsFragment",
    "PullRequestReview",
    (ID, Group("comments", (COMMENT_FOR_REVIEWS,), paging=LARGE)),
)
PULL_REQUEST_COMMENTS = Fragment(
    "PullRequestCommentsFragment",
    "PullRequest",
    (ID, Group("comments", (COMMENT_FOR_ITEMS,), paging=LARGE)),
)
ISSUE_COMMENTS = Fragment(
    "IssueCommentsFragment",
    "Issue",
    (ID, Group("comments", (COMMENT_FOR_ITEMS,), paging=LARGE)),
)

PULL_REQUEST_REVIEW_COMMENT_REACTIONS = Fragment(
    "PullRequestReviewCommentReactionFragment",
    "PullRequestReviewComment",
    (ID, Group("reactions", (REACTION,), paging=LARGE)),
)
ISSUE_COMMENT_REACTIONS = Fragment(
    "IssueCommentReactionsFragment",
    "IssueComment",
    (ID, Group("reactions", (REACTION,), paging=LARGE)),
)
PULL_REQUEST_REACTIONS = Fragment(
    "PullRequestReactionFragment",
    "PullRequest",
    (ID, Group("reactions", (REACTION,), paging=LARGE)),
)
ISSUE_REACTIONS = Fragment(
    "IssueReactionFragment",
    "Issue",
    (ID, Group("reactions", (REACTION,), paging=LARGE)),
)
