"""Seed Qdrant with a synthetic order lifecycle split into daily partitions."""

from __future__ import annotations

import argparse
import random
import uuid
from datetime import datetime, timedelta, timezone

from eventlens import EmbeddingService, MetadataRegistryStore, QdrantDocumentStore, Settings, TenantRegistryCache
from eventlens.events import ActivityEvent
from eventlens.indexer import DocumentIndexer

_TENANT_ID = "6a2f41a0-1c4e-4f6e-9d87-1b7a3c2d9e10"

_LIFECYCLE: tuple[tuple[str, str, str, str], ...] = (
    ("product", "checkout.started", "checkout-service", "Checkout started for order {order}"),
    ("finance", "payment.authorized", "payment-service", "Payment authorized for order {order} amount {amount}"),
    ("logistics", "shipment.created", "shipping-service", "Shipment {shipment} created for order {order}"),
    ("logistics", "shipment.scanned", "shipping-service", "Parcel scanned at hub {hub} for order {order}"),
    ("logistics", "shipment.delivered", "shipping-service", "Shipment {shipment} delivered for order {order}"),
)


def build_events(order_id: str, scans: int, start: datetime) -> list[ActivityEvent]:
    shipment = uuid.uuid4().hex
    events: list[ActivityEvent] = []
    moment = start
    steps = list(_LIFECYCLE[:3]) + [_LIFECYCLE[3]] * scans + [_LIFECYCLE[4]]
    for category, action, source, template in steps:
        moment += timedelta(minutes=random.randint(20, 240))
        outcome = "failure" if action == "shipment.scanned" and random.random() < 0.1 else "success"
        events.append(
            ActivityEvent(
                tenant_id=_TENANT_ID,
                event_id=str(uuid.uuid4()),
                occurred_at=moment.isoformat().replace("+00:00", "Z"),
                category=category,
                action=action,
                outcome=outcome,
                source=source,
                object={"orderId": order_id},
                message=template.format(
                    order=order_id,
                    shipment=shipment,
                    amount=random.randint(10, 500),
                    hub=random.randint(1, 40),
                ),
                metadata={"order_id": order_id, "latency_ms": str(random.randint(20, 900))},
            )
        )
    return events


def main(order_id: str, scans: int, recreate: bool) -> None:
    settings = Settings.from_env()
    print(f"[seed] Using embedding backend '{settings.embedding_model}'.")
    embedding = EmbeddingService(settings)
    print(f"[seed] Embedding dimension resolved to {embedding.dimension}.")

    store = QdrantDocumentStore.from_settings(settings, vector_size=embedding.dimension)
    registry_store = MetadataRegistryStore(settings.registry_root())
    if not any(entry.key == "latency_ms" for entry in registry_store.list_keys(_TENANT_ID)):
        registry_store.register_key(_TENANT_ID, "latency_ms", "number")
        print("[seed] Registered metadata key 'latency_ms' as number.")

    indexer = DocumentIndexer(
        store,
        embedding,
        index_name=settings.activity_index,
        partition_prefix=settings.activity_partition_prefix,
        registry_cache=TenantRegistryCache(registry_store),
        partition_concurrency=settings.indexing_partition_concurrency,
    )
    if recreate:
        print("[seed] Clearing existing partitions before ingesting data.")
        for name in store.list_indices(settings.activity_partition_prefix):
            store.delete_index(name)
    indexer.ensure_index_template()

    start = datetime.now(timezone.utc) - timedelta(days=2)
    events = build_events(order_id, scans, start)
    print(f"[seed] Indexing {len(events)} events for order {order_id}...")
    written = indexer.index_events_by_day(events)
    for name, count in sorted(written.items()):
        print(f"[seed] {name}: {count} document(s)")
    print("[seed] Completed.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--order-id", default="ord_uvw789", help="Order identifier to generate events for")
    parser.add_argument("--scans", type=int, default=40, help="Number of hub scan events to generate")
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="Delete existing activity partitions before seeding",
    )
    args = parser.parse_args()
    main(args.order_id, args.scans, args.recreate)
