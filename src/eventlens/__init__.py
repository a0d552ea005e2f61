"""eventlens application package."""

from __future__ import annotations

from .compression import Digest, StoryEvent, build_digest, cluster_by_pattern, select_representative
from .config import Settings
from .document_store import BulkIndexError, IndexDimensionMismatchError, QdrantDocumentStore
from .field_paths import FieldMappingConfig, FieldPathResolver
from .query_token import decode_query_token, encode_query_token
from .registry import MetadataRegistryStore, RegistryEntry, TenantRegistryCache

__all__ = [
    "Settings",
    "EmbeddingService",
    "EmbeddingBackend",
    "QdrantDocumentStore",
    "IndexDimensionMismatchError",
    "BulkIndexError",
    "FieldMappingConfig",
    "FieldPathResolver",
    "MetadataRegistryStore",
    "RegistryEntry",
    "TenantRegistryCache",
    "DocumentIndexer",
    "SearchService",
    "StorySearchService",
    "StoryEvent",
    "Digest",
    "build_digest",
    "cluster_by_pattern",
    "select_representative",
    "encode_query_token",
    "decode_query_token",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingService", "EmbeddingBackend"}:
        from .embeddings import EmbeddingBackend, EmbeddingService

        return {"EmbeddingService": EmbeddingService, "EmbeddingBackend": EmbeddingBackend}[name]
    if name == "DocumentIndexer":
        from .indexer import DocumentIndexer

        return DocumentIndexer
    if name in {"SearchService", "StorySearchService"}:
        from .search import SearchService
        from .story import StorySearchService

        return {"SearchService": SearchService, "StorySearchService": StorySearchService}[name]
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'eventlens' has no attribute {name}")
