from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import time
from typing import Optional, Sequence, Union

import numpy as np

from ..config import EmbeddingConfig
from ..errors import (
    EmbeddingMemoryError,
    InferenceError,
    ModelLoadError,
    ModelNotFoundError,
    NotInitializedError,
    TextTooLongError,
)
from ..hashing import seed_from_text
from .base import TEXT_EMBEDDING_DIMENSION, TextBackend, TextEmbedding, normalize, stub_vector

logger = logging.getLogger(__name__)

MAX_TEXT_LEN = 8192


@dataclass(frozen=True)
class EmbeddingResult:
    embedding: TextEmbedding
    inference_time_ms: float


@dataclass(frozen=True)
class BatchEmbeddingResult:
    embeddings: list[TextEmbedding] = field(default_factory=list)
    indices: list[int] = field(default_factory=list)  # input slot of each vector
    count: int = 0
    total_time_ms: float = 0.0


class StubTextBackend:
    """Deterministic hash-seeded vectors; no model required."""

    name = "stub"

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        rows = [stub_vector(seed_from_text(t), TEXT_EMBEDDING_DIMENSION) for t in texts]
        return np.vstack(rows).astype(np.float32)

    def close(self) -> None:
        pass


class SentenceTransformersBackend:
    name = "sentence_transformers"

    def __init__(self, model_path: str, device: str = "cpu", batch_size: int = 32, num_threads: int = 0) -> None:
        # Suppress harmless multiprocessing resource tracker warnings on macOS
        import warnings
        warnings.filterwarnings("ignore", message="resource_tracker: There appear to be.*leaked semaphore")

        from sentence_transformers import SentenceTransformer  # type: ignore

        if num_threads > 0:
            os.environ.setdefault("OMP_NUM_THREADS", str(num_threads))
        self.batch_size = batch_size
        self._model = SentenceTransformer(model_path, device=device)
        v = self._model.encode(["dimension_probe"], batch_size=1, convert_to_numpy=True, normalize_embeddings=True)
        dims = int(v.shape[1])
        if dims != TEXT_EMBEDDING_DIMENSION:
            raise ValueError(f"Model produces {dims}-d vectors, expected {TEXT_EMBEDDING_DIMENSION}")

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        return self._model.encode(
            list(texts), batch_size=self.batch_size, convert_to_numpy=True, normalize_embeddings=True
        )

    def close(self) -> None:
        self._model = None


@dataclass(frozen=True)
class Unloaded:
    pass


@dataclass(frozen=True)
class Loaded:
    backend: TextBackend
    model_path: Optional[str]


ProviderState = Union[Unloaded, Loaded]


class TextEmbeddingProvider:
    """384-d text embedder with an explicit unloaded/loaded lifecycle.

    `create` never touches the model; `load` resolves the model path and builds
    the configured backend. Every returned vector is unit length.
    """

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config
        self._state: ProviderState = Unloaded()

    @classmethod
    def create(cls, config: Optional[EmbeddingConfig] = None) -> "TextEmbeddingProvider":
        return cls(config or EmbeddingConfig())

    @property
    def is_loaded(self) -> bool:
        return isinstance(self._state, Loaded)

    @property
    def dimension(self) -> int:
        return TEXT_EMBEDDING_DIMENSION

    @property
    def backend_name(self) -> Optional[str]:
        if isinstance(self._state, Loaded):
            return self._state.backend.name
        return None

    def load(self, model_path: Optional[str] = None) -> None:
        path = model_path or self.config.model_path
        if path is not None and not os.path.exists(path):
            raise ModelNotFoundError(f"Model file not found: {path}")

        self.unload()

        if self.config.backend == "stub":
            backend: TextBackend = StubTextBackend()
        else:
            if path is None:
                raise ModelNotFoundError("No model path configured")
            try:
                backend = SentenceTransformersBackend(
                    path,
                    device=self.config.device,
                    batch_size=self.config.batch_size,
                    num_threads=self.config.num_threads,
                )
            except Exception as e:
                raise ModelLoadError(f"Failed to load model {path}: {e}") from e

        self._state = Loaded(backend=backend, model_path=path)
        logger.info(f"Loaded text embedding backend '{backend.name}' (model={path or 'none'})")

    def unload(self) -> None:
        if isinstance(self._state, Loaded):
            self._state.backend.close()
            logger.debug(f"Unloaded text embedding backend '{self._state.backend.name}'")
        self._state = Unloaded()

    def _backend(self) -> TextBackend:
        if not isinstance(self._state, Loaded):
            raise NotInitializedError("Embedding model not loaded")
        return self._state.backend

    def generate(self, text: Optional[str]) -> EmbeddingResult:
        backend = self._backend()
        if text is None:
            raise InferenceError("Text is None")
        if len(text) > MAX_TEXT_LEN:
            raise TextTooLongError(f"Text length {len(text)} exceeds {MAX_TEXT_LEN}")

        t0 = time.perf_counter()
        try:
            vec = backend.encode([text])[0]
        except MemoryError as e:
            raise EmbeddingMemoryError(f"Out of memory during inference: {e}") from e
        except Exception as e:
            raise InferenceError(f"Inference failed: {e}") from e
        elapsed = (time.perf_counter() - t0) * 1000.0
        return EmbeddingResult(embedding=TextEmbedding(normalize(vec)), inference_time_ms=elapsed)

    def generate_batch(self, texts: Sequence[Optional[str]]) -> BatchEmbeddingResult:
        """Embed several texts, skipping None and over-length entries."""
        backend = self._backend()
        if not texts:
            raise InferenceError("Empty batch")

        indices = [i for i, t in enumerate(texts) if t is not None and len(t) <= MAX_TEXT_LEN]
        skipped = len(texts) - len(indices)
        if skipped:
            logger.debug(f"Skipping {skipped} of {len(texts)} batch entries (None or too long)")
        if not indices:
            return BatchEmbeddingResult()

        t0 = time.perf_counter()
        try:
            matrix = backend.encode([texts[i] for i in indices])
        except MemoryError as e:
            raise EmbeddingMemoryError(f"Out of memory during batch inference: {e}") from e
        except Exception as e:
            raise InferenceError(f"Batch inference failed: {e}") from e
        elapsed = (time.perf_counter() - t0) * 1000.0

        embeddings = [TextEmbedding(normalize(row)) for row in matrix]
        return BatchEmbeddingResult(
            embeddings=embeddings,
            indices=indices,
            count=len(embeddings),
            total_time_ms=elapsed,
        )
