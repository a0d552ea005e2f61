"""Write activity events and log chunks into the document store."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import nullcontext
from datetime import date, datetime
from typing import Any, Mapping, Sequence

from .config import partition_index_name, template_index_name
from .document_store import IndexDimensionMismatchError, QdrantDocumentStore, StoredDocument
from .embeddings import EmbeddingService
from .events import ActivityEvent, LogChunk, parse_iso_datetime
from .observability import MetricsRecorder
from .registry import MetadataType, RegistryEntry, TenantRegistryCache

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})


class PartitionedIndexError(RuntimeError):
    """One or more partitions of a multi-partition write failed."""

    def __init__(self, errors: Mapping[str, Exception], written: Mapping[str, int]) -> None:
        self.errors = dict(errors)
        self.written = dict(written)
        details = "; ".join(f"{name}: {exc}" for name, exc in sorted(self.errors.items()))
        super().__init__(
            f"Indexing failed for {len(self.errors)} of "
            f"{len(self.errors) + len(self.written)} partition(s): {details}"
        )


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_typed_value(metadata_type: MetadataType, value: Any) -> Any:
    """Convert ``value`` to ``metadata_type``; raises ValueError when it cannot."""

    if value is None:
        raise ValueError("null values are never promoted")

    if metadata_type is MetadataType.NUMBER:
        if isinstance(value, bool):
            raise ValueError("booleans are not numbers")
        if isinstance(value, (int, float)):
            number = value
        elif isinstance(value, str):
            number = float(value.strip())
        else:
            raise ValueError(f"cannot convert {type(value).__name__} to number")
        if isinstance(number, float):
            if not math.isfinite(number):
                raise ValueError("number is not finite")
            if number.is_integer():
                return int(number)
        return number

    if metadata_type is MetadataType.DATE:
        if isinstance(value, str):
            parse_iso_datetime(value)
            return value
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        raise ValueError(f"cannot convert {type(value).__name__} to date")

    if metadata_type is MetadataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in _TRUE_STRINGS:
                return True
            if normalized in _FALSE_STRINGS:
                return False
        raise ValueError(f"cannot interpret {value!r} as boolean")

    return stringify(value)


def build_metadata_fields(
    metadata: Mapping[str, Any],
    registry: Mapping[str, RegistryEntry] | None,
) -> dict[str, Any]:
    """Return the raw blob, flat ``key=value`` list and typed namespaces for ``metadata``.

    Only keys present in ``registry`` are promoted; free-form keys stay in the
    raw blob and the flat list so they never widen the typed mapping.
    """

    meta_kv: list[str] = []
    promoted: dict[str, dict[str, Any]] = defaultdict(dict)

    for key, value in metadata.items():
        if value is not None and not isinstance(value, (Mapping, list, tuple)):
            meta_kv.append(f"{key}={stringify(value)}")

        entry = registry.get(key) if registry else None
        if entry is None:
            continue
        try:
            promoted[entry.promote_to.value][key] = coerce_typed_value(entry.type, value)
        except (TypeError, ValueError) as exc:
            logger.debug(
                "indexer.metadata.skipped key=%s type=%s reason=%s", key, entry.type.value, exc
            )

    fields: dict[str, Any] = {"metadata": dict(metadata), "meta_kv": meta_kv}
    fields.update(promoted)
    return fields


class DocumentIndexer:
    """Create indices and write events with idempotent, identifier-keyed documents."""

    def __init__(
        self,
        store: QdrantDocumentStore,
        embedding_service: EmbeddingService,
        *,
        index_name: str,
        partition_prefix: str,
        registry_cache: TenantRegistryCache | None = None,
        metrics: MetricsRecorder | None = None,
        partition_concurrency: int = 4,
    ) -> None:
        self._store = store
        self._embedding = embedding_service
        self._index_name = index_name
        self._partition_prefix = partition_prefix
        self._registry_cache = registry_cache
        self._metrics = metrics
        self._partition_concurrency = max(1, partition_concurrency)

    @property
    def index_name(self) -> str:
        return self._index_name

    @property
    def template_index(self) -> str:
        return template_index_name(self._partition_prefix)

    def partition_for(self, event: ActivityEvent) -> str:
        return partition_index_name(self._partition_prefix, event.partition_day)

    def ensure_index(self) -> None:
        self._store.ensure_index(self._index_name)

    def ensure_index_template(self) -> None:
        """Create the partition template, or verify the existing one's dimension."""

        expected = self._store.vector_size
        actual = self._store.index_dimension(self.template_index)
        if actual is None and not self._store.create_index(self.template_index):
            actual = self._store.index_dimension(self.template_index)
        if actual is not None and actual != expected:
            raise IndexDimensionMismatchError(expected, actual)
        logger.info("indexer.template.ready template=%s dimension=%s", self.template_index, expected)

    def clear_index(self) -> None:
        self._store.delete_index(self._index_name)

    def build_activity_document(
        self,
        event: ActivityEvent,
        vector: Sequence[float],
        registry: Mapping[str, RegistryEntry] | None,
    ) -> StoredDocument:
        payload: dict[str, Any] = {
            "eventId": event.event_id,
            "tenantId": event.tenant_id,
            "occurredAt": event.occurred_at,
            "category": event.category,
            "action": event.action,
            "outcome": event.outcome,
            "source": event.source,
            "schemaVersion": event.schema_version,
            "timestamp": event.occurred_at,
            "level": event.outcome,
            "service": event.source,
        }
        for name in ("title", "summary", "message"):
            value = getattr(event, name)
            if value is not None:
                payload[name] = value
        if event.actor:
            payload["actor"] = dict(event.actor)
        if event.object:
            payload["object"] = dict(event.object)
        if event.correlation:
            payload["correlation"] = dict(event.correlation)
        payload.update(build_metadata_fields(event.metadata or {}, registry))
        return StoredDocument(id=event.event_id, vector=vector, payload=payload)

    def index_activity_events(self, events: Sequence[ActivityEvent], index_name: str) -> int:
        """Write ``events`` into ``index_name``; re-indexing an event ID overwrites it."""

        if not events:
            return 0

        with self._track("indexer.activity.duration", index=index_name):
            self._store.ensure_index(index_name)
            vectors = self._vectors_for(events)
            registries: dict[str, Mapping[str, RegistryEntry] | None] = {}
            documents = []
            for event, vector in zip(events, vectors):
                if event.tenant_id not in registries:
                    registries[event.tenant_id] = self._registry_for(event.tenant_id)
                documents.append(
                    self.build_activity_document(event, vector, registries[event.tenant_id])
                )
            written = self._store.bulk_write(index_name, documents)

        logger.info("indexer.bulk.completed index=%s documents=%s", index_name, written)
        if self._metrics is not None:
            self._metrics.increment("indexer.documents", value=written, index=index_name)
        return written

    def index_events_by_day(self, events: Sequence[ActivityEvent]) -> dict[str, int]:
        """Write events into daily partitions concurrently, surfacing every failure."""

        batches: dict[str, list[ActivityEvent]] = defaultdict(list)
        for event in events:
            batches[self.partition_for(event)].append(event)
        if not batches:
            return {}

        written: dict[str, int] = {}
        errors: dict[str, Exception] = {}
        workers = min(self._partition_concurrency, len(batches))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.index_activity_events, batch, name): name
                for name, batch in batches.items()
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    written[name] = future.result()
                except Exception as exc:
                    logger.error("indexer.partition.failed index=%s error=%s", name, exc)
                    errors[name] = exc

        if errors:
            raise PartitionedIndexError(errors, written)
        return written

    def index_chunks(self, chunks: Sequence[LogChunk]) -> int:
        """Embed and write log chunks into the main index."""

        if not chunks:
            return 0

        self._store.ensure_index(self._index_name)
        vectors = self._embedding.embed([chunk.message for chunk in chunks])
        documents = []
        for chunk, vector in zip(chunks, vectors):
            payload: dict[str, Any] = {
                "id": chunk.id,
                "eventId": chunk.id,
                "timestamp": chunk.timestamp,
                "level": chunk.level,
                "service": chunk.service,
                "message": chunk.message,
            }
            payload.update(build_metadata_fields(chunk.metadata or {}, None))
            documents.append(StoredDocument(id=chunk.id, vector=vector, payload=payload))
        written = self._store.bulk_write(self._index_name, documents)
        logger.info("indexer.chunks.completed index=%s chunks=%s", self._index_name, written)
        return written

    def _vectors_for(self, events: Sequence[ActivityEvent]) -> list[Sequence[float]]:
        missing = [idx for idx, event in enumerate(events) if event.embedding is None]
        vectors: list[Sequence[float]] = [event.embedding or [] for event in events]
        if missing:
            embedded = self._embedding.embed([events[idx].embedding_text() for idx in missing])
            for idx, vector in zip(missing, embedded):
                vectors[idx] = vector
        return vectors

    def _registry_for(self, tenant_id: str) -> Mapping[str, RegistryEntry] | None:
        if self._registry_cache is None or not tenant_id:
            return None
        return self._registry_cache.get_registry(tenant_id)

    def _track(self, metric: str, **tags: Any):
        if self._metrics is None:
            return nullcontext()
        return self._metrics.track_timing(metric, **tags)
