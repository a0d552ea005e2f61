from __future__ import annotations

import uuid
from typing import Iterable

import pytest
from qdrant_client import QdrantClient

from eventlens.document_store import QdrantDocumentStore
from eventlens.events import ActivityEvent
from eventlens.indexer import DocumentIndexer

TENANT_ID = "6a2f41a0-1c4e-4f6e-9d87-1b7a3c2d9e10"


class FakeEmbeddingService:
    def __init__(self, dimension: int = 3) -> None:
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def embed(self, texts: Iterable[str]):
        texts = list(texts)
        self.calls.append(texts)
        return [self._vector_for(text) for text in texts]

    def embed_one(self, text: str):
        return self._vector_for(text)

    def _vector_for(self, text: str) -> list[float]:
        lowered = text.lower()
        vector = [0.0] * self.dimension
        if "payment" in lowered:
            vector[0] = 1.0
        elif "shipment" in lowered:
            vector[1 % self.dimension] = 1.0
        else:
            vector[2 % self.dimension] = 1.0
        return vector


@pytest.fixture()
def embedding() -> FakeEmbeddingService:
    return FakeEmbeddingService()


@pytest.fixture()
def qdrant_client() -> QdrantClient:
    return QdrantClient(":memory:")


@pytest.fixture()
def store(qdrant_client: QdrantClient) -> QdrantDocumentStore:
    return QdrantDocumentStore(qdrant_client, vector_size=3)


@pytest.fixture()
def indexer(store: QdrantDocumentStore, embedding: FakeEmbeddingService) -> DocumentIndexer:
    return DocumentIndexer(
        store,
        embedding,
        index_name="activity",
        partition_prefix="activity-",
    )


def make_event(**overrides) -> ActivityEvent:
    values = {
        "tenant_id": TENANT_ID,
        "event_id": str(uuid.uuid4()),
        "occurred_at": "2024-05-01T10:00:00Z",
        "category": "logistics",
        "action": "shipment.created",
        "outcome": "success",
        "source": "shipping-service",
        "message": "Shipment created",
    }
    values.update(overrides)
    return ActivityEvent(**values)


@pytest.fixture()
def event_factory():
    return make_event


@pytest.fixture()
def tenant_id() -> str:
    return TENANT_ID
