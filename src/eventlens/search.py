"""Semantic (k-NN) and exact identifier search over activity indices."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, List, Mapping

from qdrant_client import models

from .config import template_index_name
from .document_store import TEXT_FIELDS, QdrantDocumentStore
from .embeddings import EmbeddingService
from .events import LEVEL_FIELDS, SERVICE_FIELDS, TIMESTAMP_FIELDS, first_present, parse_iso_datetime
from .field_paths import FieldPathResolver
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(slots=True)
class KnnHit:
    id: str
    score: float
    text: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class ExactHit:
    id: str
    timestamp: str | None
    level: str | None
    service: str | None
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level,
            "service": self.service,
            "message": self.message,
        }


@dataclass(slots=True)
class ExactSearchResult:
    """Chronologically ordered hits; ``truncated`` is set when the result cap was hit."""

    hits: List[ExactHit]
    truncated: bool = False

    def __iter__(self) -> Iterator[ExactHit]:
        return iter(self.hits)

    def __len__(self) -> int:
        return len(self.hits)

    def __getitem__(self, index: int) -> ExactHit:
        return self.hits[index]


def _value_conditions(key: str, value: Any) -> list[models.FieldCondition]:
    """Exact conditions (as given and lower-cased) for one field.

    Full-text matching is only added for fields carrying a text index; on other
    fields Qdrant degrades ``MatchText`` to a substring test.
    """

    if isinstance(value, (list, tuple, set)):
        options = [item for item in value if isinstance(item, (str, int))]
        if not options:
            return []
        return [models.FieldCondition(key=key, match=models.MatchAny(any=options))]
    if isinstance(value, float):
        return [models.FieldCondition(key=key, range=models.Range(gte=value, lte=value))]
    if not isinstance(value, (str, int)):
        value = str(value)

    conditions = [models.FieldCondition(key=key, match=models.MatchValue(value=value))]
    if isinstance(value, str):
        lowered = value.lower()
        if lowered != value:
            conditions.append(models.FieldCondition(key=key, match=models.MatchValue(value=lowered)))
        if key in TEXT_FIELDS:
            conditions.append(models.FieldCondition(key=key, match=models.MatchText(text=value)))
    return conditions


def _sort_key(payload: Mapping[str, Any]) -> datetime:
    raw = first_present(payload, TIMESTAMP_FIELDS)
    if not isinstance(raw, str):
        return _EPOCH
    try:
        parsed = parse_iso_datetime(raw)
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _document_id(payload: Mapping[str, Any], fallback: str = "") -> str:
    return str(payload.get("eventId") or payload.get("id") or fallback)


class SearchService:
    """Runs k-NN and exact identifier queries against the document store."""

    def __init__(
        self,
        store: QdrantDocumentStore,
        embedding_service: EmbeddingService,
        *,
        index_name: str,
        partition_prefix: str,
        resolver: FieldPathResolver | None = None,
        metrics: MetricsRecorder | None = None,
        default_k: int = 8,
        max_k: int = 20,
        filter_overfetch: int = 3,
        max_results: int = 1000,
    ) -> None:
        self._store = store
        self._embedding = embedding_service
        self._index_name = index_name
        self._partition_prefix = partition_prefix
        self._resolver = resolver or FieldPathResolver()
        self._metrics = metrics
        self._default_k = default_k
        self._max_k = max_k
        self._filter_overfetch = max(1, filter_overfetch)
        self._max_results = max_results

    @property
    def resolver(self) -> FieldPathResolver:
        return self._resolver

    @property
    def max_results(self) -> int:
        return self._max_results

    def knn_search(
        self,
        query: str,
        k: int | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> List[KnnHit]:
        """Return the ``k`` documents closest to ``query``, best first.

        Every filter key must match, either on the field itself or on
        ``metadata.<key>``, exactly or as analysed text.
        """

        limit = max(1, min(k or self._default_k, self._max_k))
        clauses: list[models.Filter] = []
        for key, value in (filter or {}).items():
            if value is None:
                continue
            should = _value_conditions(key, value) + _value_conditions(f"metadata.{key}", value)
            if should:
                clauses.append(models.Filter(should=should))

        query_filter = models.Filter(must=clauses) if clauses else None
        candidates = limit * self._filter_overfetch if clauses else None

        vector = self._embedding.embed_one(query)
        points = self._store.knn(
            self._index_name,
            vector,
            limit=limit,
            query_filter=query_filter,
            candidates=candidates,
        )
        hits = [
            KnnHit(
                id=_document_id(point.payload, point.id),
                score=point.score,
                text=str(point.payload.get("message") or ""),
                metadata=point.payload,
            )
            for point in points
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        logger.info("search.knn.completed k=%s filters=%s hits=%s", limit, len(clauses), len(hits))
        if self._metrics is not None:
            self._metrics.increment("search.knn.requests", filtered=bool(clauses))
        return hits

    def exact_search(self, identifier: str, identifier_type: str) -> ExactSearchResult:
        """Return every document whose resolved identifier fields hold ``identifier``.

        Results are ordered by event time and capped at ``max_results``.
        """

        paths = self._resolver.resolve_paths(identifier_type)
        if not paths or not identifier:
            logger.info("search.exact.no_paths identifier_type=%s", identifier_type)
            return ExactSearchResult(hits=[])

        should: list[models.FieldCondition] = []
        for path in paths:
            should.extend(_value_conditions(path, identifier))
        query_filter = models.Filter(should=should)

        indices = self._search_indices()
        if not indices:
            return ExactSearchResult(hits=[])

        # The cap keeps the earliest events, so every match is ordered before cutting.
        if self._metrics is not None:
            with self._metrics.track_timing("search.exact.duration", identifier_type=identifier_type):
                payloads = self._store.scan(indices, query_filter)
        else:
            payloads = self._store.scan(indices, query_filter)

        payloads.sort(key=_sort_key)
        truncated = len(payloads) > self._max_results
        payloads = payloads[: self._max_results]
        hits = [
            ExactHit(
                id=_document_id(payload),
                timestamp=first_present(payload, TIMESTAMP_FIELDS),
                level=first_present(payload, LEVEL_FIELDS),
                service=first_present(payload, SERVICE_FIELDS),
                message=str(payload.get("message") or ""),
                metadata=payload,
            )
            for payload in payloads
        ]
        if truncated:
            logger.warning(
                "search.exact.truncated identifier_type=%s limit=%s", identifier_type, self._max_results
            )
        logger.info(
            "search.exact.completed identifier_type=%s paths=%s indices=%s hits=%s",
            identifier_type,
            len(paths),
            len(indices),
            len(hits),
        )
        return ExactSearchResult(hits=hits, truncated=truncated)

    def _search_indices(self) -> list[str]:
        template = template_index_name(self._partition_prefix)
        names = [name for name in self._store.list_indices(self._partition_prefix) if name != template]
        if self._index_name not in names and self._store.index_exists(self._index_name):
            names.append(self._index_name)
        return names
