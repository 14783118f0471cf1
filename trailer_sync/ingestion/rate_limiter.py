"""Query cost accounting for GitHub GraphQL API"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class QueryCostInfo:
    cost: int
    remaining: int
    limit: int
    reset_at: int
    node_count: int


class QueryCostTracker:
    """
    Sums the cost of every query in one invocation and keeps the lowest
    remaining quota seen across all waves.
    """

    LOW_REMAINING_WARNING: int = 200

    def __init__(self):
        self.total_cost: int = 0
        self.api_remaining: int | None = None
        self.last: QueryCostInfo | None = None

    def record(self, rate_limit: Any) -> QueryCostInfo | None:
        """Returns None when the payload lacks integer cost, remaining or nodeCount"""
        if not isinstance(rate_limit, dict):
            return None

        cost = rate_limit.get("cost")
        remaining = rate_limit.get("remaining")
        node_count = rate_limit.get("nodeCount")
        if not all(isinstance(value, int) for value in (cost, remaining, node_count)):
            return None

        limit = rate_limit.get("limit")
        info = QueryCostInfo(
            cost=cost,
            remaining=remaining,
            limit=limit if isinstance(limit, int) else 0,
            reset_at=self._parse_reset_at(rate_limit.get("resetAt", "")),
            node_count=node_count,
        )

        self.last = info
        self.total_cost += cost
        self.api_remaining = remaining if self.api_remaining is None else min(self.api_remaining, remaining)

        if remaining < self.LOW_REMAINING_WARNING:
            logger.warning(
                f"GitHub rate limit critically low: {remaining}/{info.limit} remaining",
                extra={"remaining": remaining, "limit": info.limit, "reset_at": info.reset_at},
            )
        return info

    def _parse_reset_at(self, reset_at_str: Any) -> int:
        if not reset_at_str:
            return 0
        try:
            dt = datetime.fromisoformat(reset_at_str.replace("Z", "+00:00"))
            return int(dt.timestamp())
        except (ValueError, AttributeError, TypeError):
            logger.warning(f"Unexpected resetAt format: {reset_at_str!r}")
            return 0
