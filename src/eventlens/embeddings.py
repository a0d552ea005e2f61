"""Embedding service supporting OpenAI, SentenceTransformers and Ollama backends."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum, auto
from typing import Final, List

import httpx
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from .config import Settings

logger = logging.getLogger(__name__)

_OPENAI_DEFAULT_DIMENSION: Final[int] = 3072


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    HUGGINGFACE = auto()
    OLLAMA = auto()


class EmbeddingService:
    """Turns text into fixed-length vectors with a declared dimensionality."""

    def __init__(self, settings: Settings, *, validate: bool = True) -> None:
        self._settings = settings
        if settings.is_openai_backend:
            backend = EmbeddingBackend.OPENAI
        elif settings.is_ollama_embedding_backend:
            backend = EmbeddingBackend.OLLAMA
        else:
            backend = EmbeddingBackend.HUGGINGFACE

        self._backend = backend
        self._dimension: int | None = None
        self._openai_client: OpenAI | None = None
        self._hf_model: SentenceTransformer | None = None
        self._ollama_model: str | None = None
        self._ollama_client: httpx.Client | None = None
        self._ollama_concurrency = max(1, settings.ollama_embedding_concurrency)

        if backend is EmbeddingBackend.OPENAI:
            self._setup_openai(validate)
        elif backend is EmbeddingBackend.OLLAMA:
            self._setup_ollama()
        else:
            self._setup_huggingface(validate)
        logger.info(
            "embeddings.ready backend=%s model=%s dimension=%s",
            self._backend.name.lower(),
            settings.embedding_model,
            self._dimension,
        )

    @classmethod
    def from_env(cls, *, validate: bool = True) -> "EmbeddingService":
        """Create the embedding service from environment configuration."""

        return cls(Settings.from_env(), validate=validate)

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality for the active backend."""

        if self._dimension is None:
            raise RuntimeError("Embedding dimension is not initialised.")
        return self._dimension

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for a sequence of texts."""

        if not texts:
            return []

        if self._backend is EmbeddingBackend.OPENAI:
            assert self._openai_client is not None
            kwargs = {}
            if self._settings.embedding_dimension is not None:
                kwargs["dimensions"] = self._settings.embedding_dimension
            result = self._openai_client.embeddings.create(
                model=self._settings.embedding_model,
                input=list(texts),
                **kwargs,
            )
            return [list(item.embedding) for item in result.data]

        if self._backend is EmbeddingBackend.OLLAMA:
            return self._ollama_batch_embed(texts)

        assert self._hf_model is not None
        vectors = self._hf_model.encode(list(texts), show_progress_bar=False)
        if hasattr(vectors, "tolist"):
            return vectors.tolist()
        return [list(vector) for vector in vectors]

    def embed_one(self, text: str) -> List[float]:
        """Generate an embedding for a single piece of text."""

        return self.embed([text])[0]

    def close(self) -> None:
        """Release any underlying client resources."""

        if self._ollama_client is not None:
            self._ollama_client.close()
            self._ollama_client = None

    # Internal helpers -------------------------------------------------

    def _setup_openai(self, validate: bool) -> None:
        api_key = self._settings.openai_api_key or None
        if not api_key:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise ValueError(msg)

        self._openai_client = OpenAI(api_key=api_key)
        self._dimension = self._settings.embedding_dimension or _OPENAI_DEFAULT_DIMENSION

        if validate:
            # Raises if the configured model is not available to this key.
            self._openai_client.models.retrieve(self._settings.embedding_model)

    def _setup_huggingface(self, validate: bool) -> None:
        model_name = self._settings.embedding_model
        self._hf_model = SentenceTransformer(model_name)
        self._dimension = int(self._hf_model.get_sentence_embedding_dimension())

        if validate and self._dimension <= 0:
            msg = f"Unexpected embedding dimension ({self._dimension}) for model '{model_name}'."
            raise ValueError(msg)
        declared = self._settings.embedding_dimension
        if validate and declared is not None and declared != self._dimension:
            msg = (
                f"EMBEDDING_DIMENSION is {declared} but model '{model_name}' "
                f"produces {self._dimension}-dimensional vectors."
            )
            raise ValueError(msg)

    def _setup_ollama(self) -> None:
        model, base_url = self._settings.ollama_embedding_endpoint
        self._ollama_model = model
        self._ollama_client = httpx.Client(
            base_url=base_url,
            timeout=self._settings.ollama_request_timeout,
        )

        if self._settings.embedding_dimension is not None:
            self._dimension = self._settings.embedding_dimension
            return

        vector = self._ollama_embed("__dimension_check__")
        if not vector:
            msg = f"Ollama embedding backend '{model}' returned no data."
            raise ValueError(msg)
        self._dimension = len(vector)

    def _ollama_embed(self, text: str) -> List[float]:
        if self._ollama_client is None or not self._ollama_model:
            raise RuntimeError("Ollama embedding backend is not initialised.")

        payload = {"model": self._ollama_model, "prompt": text}
        try:
            response = self._ollama_client.post("/api/embeddings", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Ollama embedding request failed: {exc}") from exc

        embedding = response.json().get("embedding")
        if embedding is None:
            raise RuntimeError("Ollama embedding response did not include an 'embedding' field.")

        vector = [float(value) for value in embedding]
        if self._dimension is not None and len(vector) != self._dimension:
            msg = f"Ollama embedding dimension changed from {self._dimension} to {len(vector)}."
            raise RuntimeError(msg)
        return vector

    def _ollama_batch_embed(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: list[list[float]] = [[] for _ in texts]
        concurrency = min(self._ollama_concurrency, len(texts))
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            futures = {executor.submit(self._ollama_embed, text): idx for idx, text in enumerate(texts)}
            for future in as_completed(futures):
                vectors[futures[future]] = future.result()
        return vectors
