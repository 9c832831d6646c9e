from __future__ import annotations

from typing import Any, ClassVar, Optional, Protocol, Sequence, Union

import numpy as np

EPSILON = 1e-4

TEXT_EMBEDDING_DIMENSION = 384
IMAGE_EMBEDDING_DIMENSION = 512


class Embedding:
    """Fixed-length float32 vector bound to one embedding space.

    Subclasses pin the dimension. Text and image vectors live in different
    spaces, so comparing a TextEmbedding with an ImageEmbedding is a TypeError
    rather than a meaningless score.
    """
    dims: ClassVar[int] = 0
    space: ClassVar[str] = ""

    __slots__ = ("vector",)

    def __init__(self, values: Any) -> None:
        arr = np.asarray(values, dtype=np.float32).ravel()
        if arr.size != self.dims:
            raise ValueError(
                f"{type(self).__name__} expects {self.dims} dimensions, got {arr.size}"
            )
        self.vector = arr

    def __array__(self, dtype: Any = None, copy: Any = None) -> np.ndarray:
        if dtype is None:
            return self.vector
        return self.vector.astype(dtype)

    def __len__(self) -> int:
        return self.dims

    def __repr__(self) -> str:
        return f"{type(self).__name__}(norm={self.norm():.4f})"

    def norm(self) -> float:
        return float(np.linalg.norm(self.vector))

    def to_bytes(self) -> bytes:
        return self.vector.tobytes()

    @classmethod
    def from_bytes(cls, blob: bytes) -> "Embedding":
        return cls(np.frombuffer(blob, dtype=np.float32))


class TextEmbedding(Embedding):
    dims = TEXT_EMBEDDING_DIMENSION
    space = "text"
    __slots__ = ()


class ImageEmbedding(Embedding):
    dims = IMAGE_EMBEDDING_DIMENSION
    space = "image"
    __slots__ = ()


VectorLike = Union[Embedding, np.ndarray, Sequence[float]]


def as_vector(value: VectorLike) -> np.ndarray:
    if isinstance(value, Embedding):
        return value.vector
    return np.asarray(value, dtype=np.float32).ravel()


def cosine_similarity(a: Optional[VectorLike], b: Optional[VectorLike]) -> float:
    """dot(a, b) / (|a| |b|), or 0.0 when either side is missing or degenerate."""
    if a is None or b is None:
        return 0.0
    if isinstance(a, Embedding) and isinstance(b, Embedding) and a.space != b.space:
        raise TypeError(f"Cannot compare {a.space} and {b.space} embeddings")
    va = as_vector(a).astype(np.float64)
    vb = as_vector(b).astype(np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.size} vs {vb.size}")
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom < EPSILON:
        return 0.0
    return float(np.dot(va, vb) / denom)


def normalize(vec: np.ndarray) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm > 1e-6:
        arr = arr / norm
    return arr.astype(np.float32)


def stub_vector(seed: int, dims: int) -> np.ndarray:
    """Deterministic pseudo-random unit vector for the stub backends.

    Same seed, same vector, in every process. Carries no semantic meaning.
    """
    rng = np.random.default_rng(seed)
    return normalize(rng.uniform(-1.0, 1.0, size=dims))


class TextBackend(Protocol):
    name: str

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        ...

    def close(self) -> None:
        ...
