from __future__ import annotations

from eventlens.query_token import cache_key_for, decode_query_token
from eventlens.search import SearchService
from eventlens.story import StorySearchService


def _story_service(store, embedding, **kwargs) -> StorySearchService:
    search = SearchService(store, embedding, index_name="activity", partition_prefix="activity-", **kwargs)
    return StorySearchService(search)


def test_story_search_returns_chronological_events_and_token(store, embedding, indexer, event_factory) -> None:
    indexer.index_events_by_day(
        [
            event_factory(occurred_at="2024-05-02T08:00:00Z", metadata={"order_id": "ord_uvw789"}, message="Delivered"),
            event_factory(occurred_at="2024-05-01T08:00:00Z", metadata={"order_id": "ord_uvw789"}, message="Placed"),
        ]
    )

    result = _story_service(store, embedding).search("ord_uvw789", "orderId")

    assert result.total == 2
    assert [event.message for event in result.events] == ["Placed", "Delivered"]
    token = decode_query_token(result.query_token)
    assert (token.identifier, token.identifier_type) == ("ord_uvw789", "orderId")
    assert token.cache_key == cache_key_for("ord_uvw789", "orderId")
    assert result.truncated is False


def test_story_digest_compresses_long_timelines(store, embedding, indexer, event_factory) -> None:
    events = []
    for index in range(45):
        level = "failure" if index in (10, 20, 40) else "success"
        events.append(
            event_factory(
                occurred_at=f"2024-05-01T10:{index:02d}:00Z",
                outcome=level,
                metadata={"order_id": "ord_long"},
                message=f"Parcel scanned at hub {index}",
            )
        )
    indexer.index_events_by_day(events)

    digest = _story_service(store, embedding).search("ord_long", "orderId").digest(30)
    body = digest.to_dict()

    assert body["total"] == 45
    assert body["shown"] == 30
    assert body["summary"]["omitted"] == 15
    assert body["statistics"]["critical_count"] == 3
    assert sum(1 for event in body["events"] if event["level"] == "failure") == 3
    assert body["patterns"][0]["pattern"] == "Parcel scanned at hub <number>"


def test_story_search_without_hits(store, embedding) -> None:
    result = _story_service(store, embedding).search("ord_none", "orderId")

    assert result.total == 0
    assert result.events == []
    assert result.digest().to_dict()["events"] == []


def test_story_search_carries_truncation(store, embedding, indexer, event_factory) -> None:
    indexer.index_events_by_day([event_factory(metadata={"order_id": "ord_cap"}) for _ in range(4)])

    result = _story_service(store, embedding, max_results=3).search("ord_cap", "orderId")

    assert result.total == 3
    assert result.truncated is True
    assert result.digest(30).to_dict()["truncated"] is True
