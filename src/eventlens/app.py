"""FastAPI application exposing activity search and the metadata registry."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .document_store import QdrantDocumentStore
from .embeddings import EmbeddingService
from .field_paths import FieldPathResolver
from .observability import MetricsRecorder
from .query_token import QueryTokenError, decode_query_token
from .registry import (
    MetadataRegistryStore,
    RegistryConflictError,
    RegistryKeyNotFoundError,
    RegistryValidationError,
    TenantRegistryCache,
)
from .search import ExactHit, SearchService
from .story import StorySearchService

logger = logging.getLogger(__name__)

_CACHE_CONTROL = "public, max-age=300"
_CACHE_TTL = timedelta(minutes=5)
_DEFAULT_PAGE_SIZE = 50
_MAX_PAGE_SIZE = 1000

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("eventlens")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        search_service: SearchService,
        story_service: StorySearchService,
        registry_store: MetadataRegistryStore,
        registry_cache: TenantRegistryCache,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.search_service = search_service
        self.story_service = story_service
        self.registry_store = registry_store
        self.registry_cache = registry_cache
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    embedding_service: EmbeddingService | None = None,
    store: QdrantDocumentStore | None = None,
    registry_store: MetadataRegistryStore | None = None,
    registry_cache: TenantRegistryCache | None = None,
    resolver: FieldPathResolver | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    embedding_service = embedding_service or EmbeddingService(settings)
    metrics = metrics or settings.build_metrics_recorder()
    store = store or QdrantDocumentStore.from_settings(settings, vector_size=embedding_service.dimension)
    registry_store = registry_store or MetadataRegistryStore(settings.registry_root())
    if registry_cache is None:
        registry_cache = TenantRegistryCache(
            registry_store,
            ttl_seconds=settings.registry_cache_ttl_seconds,
            max_entries=settings.registry_cache_max_entries,
            metrics=metrics,
        )
    logger.info(
        "app.start index=%s partition_prefix=%s dimension=%s",
        settings.activity_index,
        settings.activity_partition_prefix,
        store.vector_size,
    )

    search_service = SearchService(
        store,
        embedding_service,
        index_name=settings.activity_index,
        partition_prefix=settings.activity_partition_prefix,
        resolver=resolver,
        metrics=metrics,
        default_k=settings.knn_default_k,
        max_k=settings.knn_max_k,
        filter_overfetch=settings.knn_filter_overfetch,
        max_results=settings.exact_search_max_results,
    )

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        search_service=search_service,
        story_service=StorySearchService(search_service),
        registry_store=registry_store,
        registry_cache=registry_cache,
        metrics=metrics,
    )

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_settings_dependency(request: Request) -> Settings:
        return get_state(request).settings

    def get_search_service(request: Request) -> SearchService:
        return get_state(request).search_service

    def get_story_service(request: Request) -> StorySearchService:
        return get_state(request).story_service

    def get_registry_store(request: Request) -> MetadataRegistryStore:
        return get_state(request).registry_store

    def get_registry_cache(request: Request) -> TenantRegistryCache:
        return get_state(request).registry_cache

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    @app.get("/api/activities/search", response_class=JSONResponse)
    async def activities_search(
        request: Request,
        query: str | None = Query(None),
        page: str | None = Query(None),
        page_size: str | None = Query(None, alias="pageSize"),
        fields: str | None = Query(None),
        search_service: SearchService = Depends(get_search_service),
    ) -> Response:
        if not query:
            return JSONResponse({"error": "Query parameter is required"}, status_code=400)
        try:
            token = decode_query_token(query)
        except QueryTokenError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)

        page_number = _parse_int(page, 1)
        size = _parse_int(page_size, _DEFAULT_PAGE_SIZE)
        if page_number is None or size is None or page_number < 1 or not 1 <= size <= _MAX_PAGE_SIZE:
            return JSONResponse({"error": "Invalid pagination parameters"}, status_code=400)

        result = search_service.exact_search(token.identifier, token.identifier_type)
        selected = [field.strip() for field in fields.split(",") if field.strip()] if fields else None
        records = [_activity_record(hit, selected) for hit in result]

        start = (page_number - 1) * size
        end = start + size
        has_more = end < len(records)

        data_hash = hashlib.sha256(
            json.dumps(records, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()[:16]
        etag_input = {
            "identifier": token.identifier,
            "identifierType": token.identifier_type,
            "timestamp": token.timestamp,
            "cacheKey": token.cache_key,
            "dataHash": data_hash,
        }
        etag = hashlib.sha256(json.dumps(etag_input, sort_keys=True).encode("utf-8")).hexdigest()[:16]
        headers = {"ETag": f'"{etag}"', "Cache-Control": _CACHE_CONTROL}

        if request.headers.get("if-none-match") == f'"{etag}"':
            return Response(status_code=304, headers=headers)

        pagination: dict[str, Any] = {"page": page_number, "page_size": size, "has_more": has_more}
        if has_more:
            cursor = json.dumps({"page": page_number + 1}).encode("utf-8")
            pagination["next_cursor"] = base64.b64encode(cursor).decode("ascii")

        expires_at = datetime.now(timezone.utc) + _CACHE_TTL
        logger.info(
            "activities.search identifier_type=%s total=%s page=%s page_size=%s",
            token.identifier_type,
            len(records),
            page_number,
            size,
        )
        return JSONResponse(
            {
                "events": records[start:end],
                "total": len(records),
                "truncated": result.truncated,
                "time_range": {
                    "from": records[0]["timestamp"] if records else "",
                    "to": records[-1]["timestamp"] if records else "",
                },
                "pagination": pagination,
                "cache": {"etag": etag, "expires_at": expires_at.isoformat()},
            },
            headers=headers,
        )

    @app.post("/api/story/search", response_class=JSONResponse)
    async def story_search(
        request: Request,
        story_service: StorySearchService = Depends(get_story_service),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        payload = await request.json()
        identifier = str(payload.get("identifier") or "").strip()
        identifier_type = str(payload.get("identifierType") or "").strip()
        if not identifier or not identifier_type:
            return JSONResponse({"error": "identifier and identifierType are required."}, status_code=400)
        budget = _coerce_optional_int(payload.get("budget"), min_value=1) or settings_inst.digest_max_events

        result = story_service.search(identifier, identifier_type)
        return JSONResponse(result.digest(budget).to_dict())

    @app.post("/api/search/knn", response_class=JSONResponse)
    async def knn_search(
        request: Request,
        search_service: SearchService = Depends(get_search_service),
    ) -> JSONResponse:
        payload = await request.json()
        query = str(payload.get("query") or "").strip()
        if not query:
            return JSONResponse({"error": "Query is required."}, status_code=400)
        k = _coerce_optional_int(payload.get("k"), min_value=1)
        filters = payload.get("filter")
        if filters is not None and not isinstance(filters, dict):
            return JSONResponse({"error": "filter must be an object."}, status_code=400)

        hits = search_service.knn_search(query, k=k, filter=filters)
        return JSONResponse(
            {
                "hits": [
                    {"id": hit.id, "score": hit.score, "text": hit.text, "metadata": hit.metadata}
                    for hit in hits
                ]
            }
        )

    @app.get("/v1/metadata/keys", response_class=JSONResponse)
    async def list_metadata_keys(
        request: Request,
        registry_store: MetadataRegistryStore = Depends(get_registry_store),
    ) -> JSONResponse:
        tenant_id = _tenant_id(request)
        if tenant_id is None:
            return JSONResponse({"error": "tenantId is required"}, status_code=400)
        return JSONResponse([entry.to_dict() for entry in registry_store.list_keys(tenant_id)])

    @app.post("/v1/metadata/keys", response_class=JSONResponse)
    async def register_metadata_key(
        request: Request,
        registry_store: MetadataRegistryStore = Depends(get_registry_store),
        registry_cache: TenantRegistryCache = Depends(get_registry_cache),
    ) -> JSONResponse:
        tenant_id = _tenant_id(request)
        if tenant_id is None:
            return JSONResponse({"error": "tenantId is required"}, status_code=400)
        payload = await request.json()
        key = payload.get("key")
        if not isinstance(key, str) or not key.strip():
            return JSONResponse({"error": "key must be a non-empty string"}, status_code=400)
        constraints = payload.get("constraintsJson", payload.get("constraints"))
        if constraints is not None and not isinstance(constraints, dict):
            return JSONResponse({"error": "constraintsJson must be an object"}, status_code=400)

        try:
            entry = registry_store.register_key(
                tenant_id,
                key,
                payload.get("type"),
                constraints=constraints,
                promote_to=payload.get("promoteTo"),
            )
        except RegistryConflictError as exc:
            return JSONResponse({"error": str(exc)}, status_code=409)
        except RegistryValidationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        registry_cache.invalidate(tenant_id)
        return JSONResponse(entry.to_dict(), status_code=201)

    @app.delete("/v1/metadata/keys/{key}")
    async def delete_metadata_key(
        key: str,
        request: Request,
        registry_store: MetadataRegistryStore = Depends(get_registry_store),
        registry_cache: TenantRegistryCache = Depends(get_registry_cache),
    ) -> Response:
        tenant_id = _tenant_id(request)
        if tenant_id is None:
            return JSONResponse({"error": "tenantId is required"}, status_code=400)
        try:
            registry_store.delete_key(tenant_id, key)
        except RegistryKeyNotFoundError as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        registry_cache.invalidate(tenant_id)
        return Response(status_code=204)

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app


def _tenant_id(request: Request) -> str | None:
    value = request.query_params.get("tenantId") or request.headers.get("x-tenant-id")
    value = (value or "").strip()
    return value or None


def _parse_int(value: str | None, default: int) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return None


def _coerce_optional_int(value: Any, *, min_value: int | None = None) -> int | None:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Expected integer value") from exc
    if min_value is not None and parsed < min_value:
        raise HTTPException(status_code=400, detail=f"Value must be >= {min_value}")
    return parsed


def _activity_record(hit: ExactHit, fields: list[str] | None) -> dict[str, Any]:
    record: dict[str, Any] = hit.summary()
    if fields is None or "metadata" in fields:
        record["metadata"] = dict(hit.metadata)
    else:
        record["metadata"] = {name: hit.metadata[name] for name in fields if name in hit.metadata}
    return record
