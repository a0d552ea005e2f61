"""Exact identifier search assembled into a chronological story."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from .compression import DEFAULT_BUDGET, Digest, StoryEvent, build_digest, sort_events_by_timestamp
from .query_token import encode_query_token
from .search import SearchService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StorySearchResult:
    events: List[StoryEvent]
    total: int
    query_token: str
    truncated: bool = False

    def digest(self, budget: int = DEFAULT_BUDGET) -> Digest:
        return build_digest(
            self.events,
            budget,
            query_token=self.query_token,
            truncated=self.truncated,
        )


class StorySearchService:
    """Collects every event for an identifier and hands back a replay token."""

    def __init__(self, search: SearchService) -> None:
        self._search = search

    def search(self, identifier: str, identifier_type: str) -> StorySearchResult:
        result = self._search.exact_search(identifier, identifier_type)
        events = sort_events_by_timestamp(StoryEvent.from_mapping(hit.summary()) for hit in result)
        token = encode_query_token(identifier, identifier_type)
        logger.info(
            "story.search.completed identifier_type=%s total=%s truncated=%s",
            identifier_type,
            len(events),
            result.truncated,
        )
        return StorySearchResult(
            events=events,
            total=len(events),
            query_token=token,
            truncated=result.truncated,
        )
