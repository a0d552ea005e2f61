"""Configuration helpers for the eventlens service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

load_dotenv()

_DEFAULT_EMBEDDING_MODEL: Final[str] = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_QDRANT_URL: Final[str] = "http://localhost:6333"
_DEFAULT_ACTIVITY_INDEX: Final[str] = "activity"
_DEFAULT_PARTITION_PREFIX: Final[str] = "activity-"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 60.0
_DEFAULT_OLLAMA_EMBED_CONCURRENCY: Final[int] = 2
_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_REGISTRY_CACHE_TTL: Final[float] = 300.0
_DEFAULT_REGISTRY_CACHE_MAX_ENTRIES: Final[int] = 100
_DEFAULT_KNN_K: Final[int] = 8
_DEFAULT_KNN_MAX_K: Final[int] = 20
_DEFAULT_KNN_FILTER_OVERFETCH: Final[int] = 3
_DEFAULT_EXACT_SEARCH_MAX_RESULTS: Final[int] = 1000
_DEFAULT_DIGEST_MAX_EVENTS: Final[int] = 30
_DEFAULT_PARTITION_CONCURRENCY: Final[int] = 4


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _split_remote_model_spec(spec: str) -> tuple[str, str | None]:
    """
    Split an embedding model spec into (model, base_url).

    Accepts either a bare model name or a full URL ending with the model name.
    When a URL is provided, the final path segment is treated as the model name.
    """

    value = spec.strip()
    if not value:
        return "", None

    lowered = value.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        base, sep, model = value.rpartition("/")
        model = model.strip()
        if not sep or not base.strip():
            msg = f"Embedding model spec '{spec}' must include a URL ending with the model name."
            raise ValueError(msg)
        return model, base.strip()

    return value, None


def template_index_name(partition_prefix: str) -> str:
    """Name of the point-less collection that carries the partition template."""

    return f"{partition_prefix}template"


def partition_index_name(partition_prefix: str, day: str) -> str:
    """Name of the daily partition for ``day`` (``YYYY-MM-DD``)."""

    return f"{partition_prefix}{day}"


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_dimension: int | None = None
    openai_api_key: str | None = None
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    ollama_embedding_concurrency: int = _DEFAULT_OLLAMA_EMBED_CONCURRENCY
    qdrant_url: str = _DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    activity_index: str = _DEFAULT_ACTIVITY_INDEX
    activity_partition_prefix: str = _DEFAULT_PARTITION_PREFIX
    data_dir: str = _DEFAULT_DATA_DIR
    registry_cache_ttl_seconds: float = _DEFAULT_REGISTRY_CACHE_TTL
    registry_cache_max_entries: int = _DEFAULT_REGISTRY_CACHE_MAX_ENTRIES
    knn_default_k: int = _DEFAULT_KNN_K
    knn_max_k: int = _DEFAULT_KNN_MAX_K
    knn_filter_overfetch: int = _DEFAULT_KNN_FILTER_OVERFETCH
    exact_search_max_results: int = _DEFAULT_EXACT_SEARCH_MAX_RESULTS
    digest_max_events: int = _DEFAULT_DIGEST_MAX_EVENTS
    indexing_partition_concurrency: int = _DEFAULT_PARTITION_CONCURRENCY
    observability_metrics_enabled: bool = True
    observability_namespace: str = "eventlens"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_dimension=_env_optional_int("EMBEDDING_DIMENSION"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            ollama_request_timeout=_env_float("OLLAMA_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            ollama_embedding_concurrency=max(
                1, _env_int("OLLAMA_EMBEDDING_CONCURRENCY", _DEFAULT_OLLAMA_EMBED_CONCURRENCY)
            ),
            qdrant_url=os.getenv("QDRANT_URL", _DEFAULT_QDRANT_URL),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            activity_index=os.getenv("ACTIVITY_INDEX", _DEFAULT_ACTIVITY_INDEX),
            activity_partition_prefix=os.getenv(
                "ACTIVITY_PARTITION_PREFIX", _DEFAULT_PARTITION_PREFIX
            ),
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            registry_cache_ttl_seconds=max(
                0.0, _env_float("REGISTRY_CACHE_TTL_SECONDS", _DEFAULT_REGISTRY_CACHE_TTL)
            ),
            registry_cache_max_entries=max(
                1, _env_int("REGISTRY_CACHE_MAX_ENTRIES", _DEFAULT_REGISTRY_CACHE_MAX_ENTRIES)
            ),
            knn_default_k=max(1, _env_int("KNN_DEFAULT_K", _DEFAULT_KNN_K)),
            knn_max_k=max(1, _env_int("KNN_MAX_K", _DEFAULT_KNN_MAX_K)),
            knn_filter_overfetch=max(1, _env_int("KNN_FILTER_OVERFETCH", _DEFAULT_KNN_FILTER_OVERFETCH)),
            exact_search_max_results=max(
                1, _env_int("EXACT_SEARCH_MAX_RESULTS", _DEFAULT_EXACT_SEARCH_MAX_RESULTS)
            ),
            digest_max_events=max(1, _env_int("DIGEST_MAX_EVENTS", _DEFAULT_DIGEST_MAX_EVENTS)),
            indexing_partition_concurrency=max(
                1, _env_int("INDEXING_PARTITION_CONCURRENCY", _DEFAULT_PARTITION_CONCURRENCY)
            ),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "eventlens"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_backend(self) -> bool:
        """Return True when the configured embedding backend is OpenAI."""

        return self.embedding_model.strip().lower().startswith("text-embedding-3")

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def is_huggingface_backend(self) -> bool:
        """Return True when the configured embedding backend is a local HuggingFace model."""

        return not self.is_openai_backend and not self.is_ollama_embedding_backend

    @property
    def ollama_embedding_endpoint(self) -> tuple[str, str]:
        """Return the Ollama embedding model and resolved base URL for embeddings."""

        if not self.is_ollama_embedding_backend:
            msg = "Ollama embedding endpoint requested but EMBEDDING_MODEL is not an Ollama model."
            raise ValueError(msg)
        _, _, name = self.embedding_model.partition(":")
        model, base = _split_remote_model_spec(name)
        if not model:
            msg = "EMBEDDING_MODEL must include an Ollama model identifier."
            raise ValueError(msg)
        return model, (base or _DEFAULT_OLLAMA_URL).rstrip("/")

    @property
    def template_index(self) -> str:
        """Name of the collection that carries the partition template."""

        return template_index_name(self.activity_partition_prefix)

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client."""

        kwargs: dict[str, Any] = {"url": self.qdrant_url}
        if self.qdrant_api_key:
            kwargs["api_key"] = self.qdrant_api_key
        return kwargs

    def registry_root(self) -> Path:
        """Return the directory holding per-tenant metadata registries."""

        return Path(self.data_dir).resolve() / "metadata_registry"

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
