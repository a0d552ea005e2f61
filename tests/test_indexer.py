from __future__ import annotations

from datetime import date

import pytest

from eventlens.document_store import BulkIndexError, IndexDimensionMismatchError, QdrantDocumentStore
from eventlens.events import LogChunk
from eventlens.indexer import (
    DocumentIndexer,
    PartitionedIndexError,
    build_metadata_fields,
    coerce_typed_value,
)
from eventlens.registry import (
    MetadataRegistryStore,
    MetadataType,
    RegistryEntry,
    RegistryValidationError,
    TenantRegistryCache,
)


def _registry(**types: str) -> dict[str, RegistryEntry]:
    targets = {
        "number": "meta_num",
        "date": "meta_date",
        "boolean": "meta_bool",
        "keyword": "meta_kw",
        "text": "meta_text",
    }
    return {
        key: RegistryEntry(tenant_id="t", key=key, type=kind, promote_to=targets[kind])
        for key, kind in types.items()
    }


@pytest.mark.parametrize(
    "metadata_type, value, expected",
    [
        (MetadataType.NUMBER, "250", 250),
        (MetadataType.NUMBER, "12.5", 12.5),
        (MetadataType.NUMBER, 7, 7),
        (MetadataType.BOOLEAN, "TRUE", True),
        (MetadataType.BOOLEAN, "no", False),
        (MetadataType.BOOLEAN, 1, True),
        (MetadataType.DATE, "2024-05-01T10:00:00Z", "2024-05-01T10:00:00Z"),
        (MetadataType.DATE, date(2024, 5, 1), "2024-05-01"),
        (MetadataType.KEYWORD, 42, "42"),
        (MetadataType.TEXT, True, "true"),
    ],
)
def test_coerce_typed_value(metadata_type: MetadataType, value, expected) -> None:
    assert coerce_typed_value(metadata_type, value) == expected


@pytest.mark.parametrize(
    "metadata_type, value",
    [
        (MetadataType.NUMBER, "fast"),
        (MetadataType.NUMBER, True),
        (MetadataType.NUMBER, "inf"),
        (MetadataType.BOOLEAN, "maybe"),
        (MetadataType.DATE, "yesterday"),
        (MetadataType.KEYWORD, None),
    ],
)
def test_coerce_typed_value_rejects_unparseable(metadata_type: MetadataType, value) -> None:
    with pytest.raises(ValueError):
        coerce_typed_value(metadata_type, value)


def test_build_metadata_fields_promotes_only_registered_keys() -> None:
    metadata = {
        "latency_ms": "250",
        "region": "eu-west",
        "paid": "maybe",
        "tags": ["a", "b"],
        "note": None,
    }

    fields = build_metadata_fields(metadata, _registry(latency_ms="number", paid="boolean"))

    assert fields["metadata"] == metadata
    assert fields["meta_kv"] == ["latency_ms=250", "region=eu-west", "paid=maybe"]
    assert fields["meta_num"] == {"latency_ms": 250}
    assert "meta_bool" not in fields
    assert "meta_kw" not in fields


def test_build_metadata_fields_without_registry() -> None:
    fields = build_metadata_fields({"order_id": "ord_1", "flag": True}, None)

    assert fields == {"metadata": {"order_id": "ord_1", "flag": True}, "meta_kv": ["order_id=ord_1", "flag=true"]}


def test_index_activity_events_promotes_registered_number(
    store: QdrantDocumentStore, embedding, event_factory, tenant_id, tmp_path
) -> None:
    registry_store = MetadataRegistryStore(tmp_path)
    registry_store.register_key(tenant_id, "latency_ms", "number")
    indexer = DocumentIndexer(
        store,
        embedding,
        index_name="activity",
        partition_prefix="activity-",
        registry_cache=TenantRegistryCache(registry_store),
    )
    event = event_factory(metadata={"latency_ms": "250", "region": "eu-west"})

    assert indexer.index_activity_events([event], "activity-2024-05-01") == 1

    payload = store.scan(["activity-2024-05-01"], None, limit=5)[0]
    assert payload["meta_num"] == {"latency_ms": 250}
    assert isinstance(payload["meta_num"]["latency_ms"], int)
    assert payload["metadata"]["latency_ms"] == "250"
    assert "region=eu-west" in payload["meta_kv"]
    assert "meta_kw" not in payload


def test_index_activity_events_writes_canonical_fields(
    store: QdrantDocumentStore, indexer: DocumentIndexer, event_factory
) -> None:
    event = event_factory(
        outcome="failure",
        source="payment-service",
        object={"orderId": "ord_abc123"},
        title="Payment declined",
    )

    indexer.index_activity_events([event], "activity")

    payload = store.scan(["activity"], None, limit=5)[0]
    assert payload["eventId"] == event.event_id
    assert payload["timestamp"] == payload["occurredAt"] == event.occurred_at
    assert payload["level"] == "failure"
    assert payload["service"] == "payment-service"
    assert payload["object"] == {"orderId": "ord_abc123"}
    assert payload["title"] == "Payment declined"
    assert "summary" not in payload


def test_reindexing_overwrites(store: QdrantDocumentStore, indexer: DocumentIndexer, event_factory) -> None:
    event = event_factory()
    indexer.index_activity_events([event], "activity")
    event.message = "Shipment created again"
    indexer.index_activity_events([event], "activity")

    assert store.count("activity") == 1
    assert store.scan(["activity"], None, limit=5)[0]["message"] == "Shipment created again"


def test_precomputed_embeddings_skip_the_embedding_backend(
    store: QdrantDocumentStore, indexer: DocumentIndexer, embedding, event_factory
) -> None:
    events = [event_factory(embedding=[0.0, 1.0, 0.0]), event_factory(message="Payment captured")]

    indexer.index_activity_events(events, "activity")

    assert embedding.calls == [["Payment captured\nshipment.created success"]]
    assert store.count("activity") == 2


def test_inconsistent_registry_entry_fails_before_writing(
    store: QdrantDocumentStore, embedding, event_factory
) -> None:
    class BrokenLookup:
        def get_registry_for_tenant(self, tenant_id: str):
            return {"latency_ms": {"type": "number", "promote_to": "meta_bool"}}

    indexer = DocumentIndexer(
        store,
        embedding,
        index_name="activity",
        partition_prefix="activity-",
        registry_cache=TenantRegistryCache(BrokenLookup()),
    )

    with pytest.raises(RegistryValidationError):
        indexer.index_activity_events([event_factory(metadata={"latency_ms": "250"})], "activity")

    assert store.count("activity") == 0


def test_bulk_partial_failure_surfaces(
    store: QdrantDocumentStore, indexer: DocumentIndexer, event_factory
) -> None:
    good = event_factory()
    bad = event_factory(embedding=[1.0])

    with pytest.raises(BulkIndexError) as excinfo:
        indexer.index_activity_events([good, bad], "activity")

    assert excinfo.value.succeeded == 1
    assert excinfo.value.failures[0].document_id == bad.event_id
    assert store.count("activity") == 1


def test_index_events_by_day_partitions_by_date(
    store: QdrantDocumentStore, indexer: DocumentIndexer, event_factory
) -> None:
    events = [
        event_factory(occurred_at="2024-05-01T08:00:00Z"),
        event_factory(occurred_at="2024-05-01T23:59:59Z"),
        event_factory(occurred_at="2024-05-02T00:00:01Z"),
    ]

    written = indexer.index_events_by_day(events)

    assert written == {"activity-2024-05-01": 2, "activity-2024-05-02": 1}
    assert store.count("activity-2024-05-02") == 1
    assert indexer.partition_for(events[2]) == "activity-2024-05-02"
    assert indexer.template_index == "activity-template"


def test_index_events_by_day_reports_every_failed_partition(
    store: QdrantDocumentStore, indexer: DocumentIndexer, event_factory
) -> None:
    events = [
        event_factory(occurred_at="2024-05-01T08:00:00Z"),
        event_factory(occurred_at="2024-05-02T08:00:00Z", embedding=[1.0]),
        event_factory(occurred_at="2024-05-03T08:00:00Z", embedding=[0.5]),
    ]

    with pytest.raises(PartitionedIndexError) as excinfo:
        indexer.index_events_by_day(events)

    error = excinfo.value
    assert set(error.errors) == {"activity-2024-05-02", "activity-2024-05-03"}
    assert all(isinstance(exc, BulkIndexError) for exc in error.errors.values())
    assert error.written == {"activity-2024-05-01": 1}
    assert store.count("activity-2024-05-01") == 1


def test_index_events_by_day_with_no_events(indexer: DocumentIndexer) -> None:
    assert indexer.index_events_by_day([]) == {}


def test_ensure_index_template_creates_and_validates(
    qdrant_client, embedding
) -> None:
    small_store = QdrantDocumentStore(qdrant_client, vector_size=768)
    DocumentIndexer(small_store, embedding, index_name="activity", partition_prefix="activity-").ensure_index_template()
    assert small_store.index_dimension("activity-template") == 768

    large_store = QdrantDocumentStore(qdrant_client, vector_size=3072)
    indexer = DocumentIndexer(large_store, embedding, index_name="activity", partition_prefix="activity-")

    with pytest.raises(IndexDimensionMismatchError) as excinfo:
        indexer.ensure_index_template()

    assert excinfo.value.expected == 3072
    assert excinfo.value.actual == 768
    assert "3072" in str(excinfo.value) and "768" in str(excinfo.value)


def test_ensure_index_template_is_repeatable(store: QdrantDocumentStore, indexer: DocumentIndexer) -> None:
    indexer.ensure_index_template()
    indexer.ensure_index_template()

    assert store.index_dimension("activity-template") == 3


def test_clear_index(store: QdrantDocumentStore, indexer: DocumentIndexer) -> None:
    indexer.ensure_index()
    assert store.index_exists("activity")

    indexer.clear_index()

    assert not store.index_exists("activity")


def test_index_chunks_writes_main_index(store: QdrantDocumentStore, indexer: DocumentIndexer) -> None:
    chunks = [
        LogChunk(
            id="chunk-1",
            timestamp="2024-05-01T10:00:00Z",
            level="error",
            service="billing",
            message="Payment gateway timeout",
            metadata={"order_id": "ord_abc123"},
        )
    ]

    assert indexer.index_chunks(chunks) == 1

    payload = store.scan(["activity"], None, limit=5)[0]
    assert payload["id"] == "chunk-1"
    assert payload["level"] == "error"
    assert payload["metadata"] == {"order_id": "ord_abc123"}
    assert indexer.index_chunks([]) == 0
