"""Shared fixtures: GitHub shaped payloads and a scripted GraphQL endpoint"""

import re

import pytest

from trailer_sync.core.config import Settings
from trailer_sync.store.database import Store

RATE_LIMIT = {
    "limit": 5000,
    "cost": 1,
    "remaining": 4990,
    "resetAt": "2024-01-01T12:00:00Z",
    "nodeCount": 10,
}

_NODE_IDS = re.compile(r'nodes\(ids: \["(.*?)"\]\)')


class GitHubPayloads:
    """Node payloads with enough keys to pass each kind's placeholder threshold"""

    @staticmethod
    def user(user_id, login):
        return {
            "__typename": "User",
            "id": user_id,
            "login": login,
            "avatarUrl": f"https://avatars.example.com/{login}",
        }

    @staticmethod
    def repo(repo_id, name_with_owner):
        return {
            "__typename": "Repository",
            "id": repo_id,
            "nameWithOwner": name_with_owner,
            "isFork": False,
            "url": f"https://github.com/{name_with_owner}",
            "createdAt": "2023-01-01T00:00:00Z",
            "updatedAt": "2024-01-01T00:00:00Z",
        }

    @staticmethod
    def pull_request(pr_id, number=1, state="OPEN", **extra):
        payload = {
            "__typename": "PullRequest",
            "id": pr_id,
            "updatedAt": "2024-01-02T00:00:00Z",
            "mergeable": "MERGEABLE",
            "mergedAt": None,
            "bodyText": "Body",
            "state": state,
            "createdAt": "2024-01-01T00:00:00Z",
            "number": number,
            "title": f"PR {number}",
            "url": f"https://github.com/octo/r1/pull/{number}",
            "headRefName": "feature",
            "viewerDidAuthor": False,
            "reactions": {"totalCount": 0},
        }
        payload.update(extra)
        return payload

    @staticmethod
    def issue(issue_id, number=1, state="OPEN", **extra):
        payload = {
            "__typename": "Issue",
            "id": issue_id,
            "bodyText": "Body",
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": "2024-01-02T00:00:00Z",
            "number": number,
            "title": f"Issue {number}",
            "url": f"https://github.com/octo/r1/issues/{number}",
            "state": state,
            "viewerDidAuthor": False,
            "reactions": {"totalCount": 0},
            "comments": {"totalCount": 0},
        }
        payload.update(extra)
        return payload

    @staticmethod
    def review(review_id, state="COMMENTED", body="Looks good", comment_count=0, **extra):
        payload = {
            "__typename": "PullRequestReview",
            "id": review_id,
            "body": body,
            "state": state,
            "viewerDidAuthor": False,
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": "2024-01-02T00:00:00Z",
            "comments": {"totalCount": comment_count},
        }
        payload.update(extra)
        return payload

    @staticmethod
    def comment(comment_id, typename="IssueComment", reaction_count=0, **extra):
        payload = {
            "__typename": typename,
            "id": comment_id,
            "body": f"Comment {comment_id}",
            "viewerDidAuthor": False,
            "createdAt": "2024-01-01T00:00:00Z",
            "updatedAt": "2024-01-02T00:00:00Z",
            "reactions": {"totalCount": reaction_count},
        }
        payload.update(extra)
        return payload

    @staticmethod
    def reaction(reaction_id, user_id="U3", login="carol", content="HEART"):
        return {
            "__typename": "Reaction",
            "id": reaction_id,
            "content": content,
            "user": GitHubPayloads.user(user_id, login),
        }

    @staticmethod
    def connection(nodes, has_next_page=False, cursor_prefix="c"):
        return {
            "edges": [{"node": node, "cursor": f"{cursor_prefix}{i}"} for i, node in enumerate(nodes)],
            "pageInfo": {"hasNextPage": has_next_page},
        }

    @staticmethod
    def response(**data):
        return {"data": {**data, "rateLimit": dict(RATE_LIMIT)}}


class ScriptedGitHub:
    """
    Stands in for GraphQLClient. Each route pairs a marker found in the
    query text (usually a fragment name) with a canned body or a callable.
    """

    def __init__(self):
        self.routes = []
        self.texts = []

    def on(self, marker, responder):
        self.routes.append((marker, responder))
        return self

    def on_nodes(self, marker, nodes_by_id):
        """
        Answers nodes(ids: [...]) with whichever requested ids are known.
        nodes_by_id may be a callable, read again on every request.
        """

        def respond(text):
            known = nodes_by_id() if callable(nodes_by_id) else nodes_by_id
            return GitHubPayloads.response(nodes=[known[i] for i in requested_ids(text) if i in known])

        return self.on(marker, respond)

    async def post_query(self, text):
        self.texts.append(text)
        for marker, responder in self.routes:
            if marker in text:
                return responder(text) if callable(responder) else responder
        raise AssertionError(f"Unexpected query: {text}")

    def count(self, marker):
        return sum(1 for text in self.texts if marker in text)


def requested_ids(text):
    match = _NODE_IDS.search(text)
    return match.group(1).split('","') if match else []


@pytest.fixture
def gh():
    return GitHubPayloads


@pytest.fixture
def github():
    return ScriptedGitHub()


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        github_token="test_token",
        data_dir=tmp_path,
        page_size=100,
    )
