"""Qdrant-backed document store used for activity indices."""

from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Iterable, List, Sequence

from qdrant_client import QdrantClient, models

from .config import Settings

logger = logging.getLogger(__name__)

# Namespace for deriving stable point IDs from document identifiers.
_POINT_ID_NAMESPACE = uuid.UUID("6f1c1a52-8d55-4b1e-9a1e-52d4bb8c0a7e")

_KEYWORD_FIELDS: tuple[str, ...] = ("eventId", "tenantId", "source", "service", "level")
TEXT_FIELDS: tuple[str, ...] = ("message", "title", "summary")


def point_id_for(document_id: str) -> str:
    """Return the deterministic Qdrant point ID for a document identifier."""

    return str(uuid.uuid5(_POINT_ID_NAMESPACE, document_id))


class IndexDimensionMismatchError(RuntimeError):
    """The configured embedding dimension differs from what an index declares."""

    def __init__(self, expected: int, actual: int, *, index: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.index = index
        target = f"index '{index}'" if index else "index template"
        super().__init__(
            f"Activity {target} dimension mismatch: expected {expected}, but it declares {actual}. "
            "The embedding backend and the stored template disagree; align EMBEDDING_DIMENSION "
            "with the template or migrate the indices."
        )


@dataclass(slots=True)
class BulkItemFailure:
    document_id: str
    reason: str


class BulkIndexError(RuntimeError):
    """Some documents of a bulk write were rejected; the rest were written."""

    def __init__(self, index: str, failures: Sequence[BulkItemFailure], succeeded: int) -> None:
        self.index = index
        self.failures = list(failures)
        self.succeeded = succeeded
        sample = json.dumps([asdict(item) for item in self.failures[:3]], indent=2)
        super().__init__(
            f"Bulk indexing into '{index}' had {len(self.failures)} failed item(s) "
            f"({succeeded} written): {sample}"
        )


@dataclass(slots=True)
class StoredDocument:
    """A document and its embedding, keyed by a caller-provided identifier."""

    id: str
    vector: Sequence[float]
    payload: dict[str, Any]


@dataclass(slots=True)
class ScoredDocument:
    id: str
    score: float
    payload: dict[str, Any]


class QdrantDocumentStore:
    """Index management, bulk writes and queries on top of the Qdrant client."""

    def __init__(
        self,
        client: QdrantClient,
        *,
        vector_size: int,
        distance: models.Distance = models.Distance.COSINE,
    ) -> None:
        if vector_size <= 0:
            raise ValueError("vector_size must be a positive integer")
        self._client = client
        self._vector_size = vector_size
        self._distance = distance

    @classmethod
    def from_settings(cls, settings: Settings, *, vector_size: int) -> "QdrantDocumentStore":
        """Instantiate the store using application settings."""

        client = QdrantClient(**settings.qdrant_client_kwargs())
        return cls(client, vector_size=vector_size)

    @property
    def client(self) -> QdrantClient:
        return self._client

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def index_exists(self, name: str) -> bool:
        return bool(self._client.collection_exists(name))

    def index_dimension(self, name: str) -> int | None:
        """Return the vector size declared by ``name``, or ``None`` when it is missing."""

        if not self.index_exists(name):
            return None
        info = self._client.get_collection(name)
        return int(info.config.params.vectors.size)

    def create_index(self, name: str, *, vector_size: int | None = None) -> bool:
        """Create ``name``; returns False when another caller created it first."""

        try:
            self._client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(
                    size=vector_size or self._vector_size,
                    distance=self._distance,
                ),
            )
        except Exception as exc:
            if "already exists" not in str(exc).lower():
                raise
            logger.debug("store.index.exists index=%s", name)
            return False
        logger.info("store.index.created index=%s size=%s", name, vector_size or self._vector_size)
        return True

    def ensure_index(self, name: str) -> None:
        """Create ``name`` when missing and verify its declared dimension."""

        if not self.index_exists(name):
            if self.create_index(name):
                self.ensure_payload_indexes(name)
                return
        actual = self.index_dimension(name)
        if actual is not None and actual != self._vector_size:
            raise IndexDimensionMismatchError(self._vector_size, actual, index=name)

    def ensure_payload_indexes(self, name: str) -> None:
        """Index the payload fields used by exact and filtered lookups."""

        schemas: dict[str, Any] = {field: models.PayloadSchemaType.KEYWORD for field in _KEYWORD_FIELDS}
        text_schema = models.TextIndexParams(
            type=models.TextIndexType.TEXT,
            tokenizer=models.TokenizerType.WORD,
            lowercase=True,
        )
        schemas.update({field: text_schema for field in TEXT_FIELDS})

        for field_name, schema in schemas.items():
            try:
                self._client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=schema,
                )
            except Exception as exc:
                if "already exists" in str(exc).lower():
                    continue
                logger.warning(
                    "store.payload_index.failed index=%s field=%s error=%s", name, field_name, exc
                )

    def delete_index(self, name: str) -> bool:
        if not self.index_exists(name):
            return False
        self._client.delete_collection(name)
        logger.info("store.index.deleted index=%s", name)
        return True

    def list_indices(self, prefix: str | None = None) -> List[str]:
        names = [collection.name for collection in self._client.get_collections().collections]
        if prefix is not None:
            names = [name for name in names if name.startswith(prefix)]
        return sorted(names)

    def bulk_write(self, name: str, documents: Sequence[StoredDocument], *, wait: bool = True) -> int:
        """Upsert documents by identifier and return how many were written.

        Invalid items are reported through :class:`BulkIndexError` after the
        valid ones have been written.
        """

        if not documents:
            return 0

        ids: list[str] = []
        vectors: list[list[float]] = []
        payloads: list[dict[str, Any]] = []
        failures: list[BulkItemFailure] = []

        for document in documents:
            reason = self._reject_reason(document)
            if reason is not None:
                failures.append(BulkItemFailure(document_id=str(document.id), reason=reason))
                continue
            ids.append(point_id_for(document.id))
            vectors.append([float(value) for value in document.vector])
            payloads.append(document.payload)

        if ids:
            self._client.upsert(
                collection_name=name,
                points=models.Batch(ids=ids, vectors=vectors, payloads=payloads),
                wait=wait,
            )

        if failures:
            logger.error(
                "store.bulk.partial_failure index=%s failed=%s written=%s",
                name,
                len(failures),
                len(ids),
            )
            raise BulkIndexError(name, failures, succeeded=len(ids))
        return len(ids)

    def knn(
        self,
        name: str,
        vector: Sequence[float],
        *,
        limit: int,
        query_filter: models.Filter | None = None,
        candidates: int | None = None,
    ) -> List[ScoredDocument]:
        """Return the ``limit`` nearest documents, best first."""

        query_vector = list(vector)
        if len(query_vector) != self._vector_size:
            msg = f"Query vector has length {len(query_vector)}, expected {self._vector_size}."
            raise ValueError(msg)
        if not self.index_exists(name):
            logger.warning("store.knn.missing_index index=%s", name)
            return []

        response = self._client.query_points(
            collection_name=name,
            query=query_vector,
            query_filter=query_filter,
            search_params=models.SearchParams(hnsw_ef=candidates) if candidates else None,
            limit=limit,
            with_payload=True,
        )
        return [
            ScoredDocument(id=str(point.id), score=float(point.score), payload=dict(point.payload or {}))
            for point in response.points
        ]

    def scan(
        self,
        names: Iterable[str],
        query_filter: models.Filter | None,
        *,
        limit: int | None = None,
        batch_size: int = 256,
    ) -> List[dict[str, Any]]:
        """Collect matching payloads across ``names``, at most ``limit`` when given.

        Points come back in storage order, not in any payload order.
        """

        payloads: list[dict[str, Any]] = []
        for name in names:
            offset = None
            while limit is None or len(payloads) < limit:
                batch = batch_size if limit is None else min(batch_size, limit - len(payloads))
                points, offset = self._client.scroll(
                    collection_name=name,
                    scroll_filter=query_filter,
                    limit=batch,
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                payloads.extend(dict(point.payload or {}) for point in points)
                if offset is None:
                    break
            if limit is not None and len(payloads) >= limit:
                break
        return payloads if limit is None else payloads[:limit]

    def count(self, name: str) -> int:
        return self._client.count(name).count

    def _reject_reason(self, document: StoredDocument) -> str | None:
        if not document.id:
            return "document has no identifier"
        vector = list(document.vector or [])
        if len(vector) != self._vector_size:
            return f"vector has length {len(vector)}, expected {self._vector_size}"
        try:
            if not all(math.isfinite(float(value)) for value in vector):
                return "vector contains non-finite values"
        except (TypeError, ValueError):
            return "vector contains non-numeric values"
        return None
