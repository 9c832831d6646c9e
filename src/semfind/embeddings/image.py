from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import time
from typing import Optional, Protocol, Sequence, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..config import ImageEmbeddingConfig
from ..errors import (
    EmbeddingMemoryError,
    ImageLoadError,
    InferenceError,
    ModelLoadError,
    ModelNotFoundError,
    NotInitializedError,
    SemfindError,
    TextTooLongError,
    UnsupportedFormatError,
)
from ..hashing import hash_bytes, seed_from_text
from .base import IMAGE_EMBEDDING_DIMENSION, ImageEmbedding, normalize, stub_vector

logger = logging.getLogger(__name__)

# CLIP's context window is 77 tokens; characters are a conservative proxy.
MAX_TEXT_LEN = 77

SUPPORTED_IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "bmp", "gif", "webp", "tiff", "tif"})

ImageSource = Union[str, Path, np.ndarray]


def is_supported_image(path: str | Path) -> bool:
    ext = os.path.splitext(str(path))[1]
    return ext[1:].lower() in SUPPORTED_IMAGE_EXTENSIONS if ext else False


def to_rgb(pixels: np.ndarray) -> np.ndarray:
    """Normalize a (H, W) or (H, W, C) pixel buffer to (H, W, 3) uint8.

    Grey is replicated across channels, alpha is dropped.
    """
    arr = np.asarray(pixels)
    if arr.size == 0 or arr.ndim not in (2, 3):
        raise ImageLoadError("Empty or malformed pixel buffer")
    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    height, width, channels = arr.shape
    if height <= 0 or width <= 0:
        raise ImageLoadError(f"Invalid image dimensions {width}x{height}")
    if channels not in (1, 3, 4):
        raise UnsupportedFormatError(f"Unsupported channel count: {channels}")

    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if channels == 1:
        arr = np.repeat(arr, 3, axis=2)
    elif channels == 4:
        arr = arr[:, :, :3]
    return np.ascontiguousarray(arr)


@dataclass(frozen=True)
class ImageEmbeddingResult:
    embedding: ImageEmbedding
    width: int
    height: int
    inference_time_ms: float


@dataclass(frozen=True)
class TextQueryResult:
    embedding: ImageEmbedding
    inference_time_ms: float


@dataclass(frozen=True)
class BatchImageResult:
    embeddings: list[ImageEmbedding] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    count: int = 0
    total_time_ms: float = 0.0


class ImageBackend(Protocol):
    name: str

    def encode_image(self, image: Image.Image, key: str) -> np.ndarray:
        ...

    def encode_text(self, text: str) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


class StubImageBackend:
    """Deterministic vectors seeded from the image key or the query text."""

    name = "stub"

    def encode_image(self, image: Image.Image, key: str) -> np.ndarray:
        return stub_vector(seed_from_text(key), IMAGE_EMBEDDING_DIMENSION)

    def encode_text(self, text: str) -> np.ndarray:
        return stub_vector(seed_from_text("text:" + text), IMAGE_EMBEDDING_DIMENSION)

    def close(self) -> None:
        pass


class ClipBackend:
    """sentence-transformers CLIP model; images and text share one space."""

    name = "clip"

    def __init__(self, model_path: str, device: str = "cpu", image_size: int = 224) -> None:
        from sentence_transformers import SentenceTransformer  # type: ignore

        self.image_size = image_size
        self._model = SentenceTransformer(model_path, device=device)
        v = self._model.encode(["dimension_probe"], batch_size=1, convert_to_numpy=True, normalize_embeddings=True)
        dims = int(v.shape[1])
        if dims != IMAGE_EMBEDDING_DIMENSION:
            raise ValueError(f"Model produces {dims}-d vectors, expected {IMAGE_EMBEDDING_DIMENSION}")

    def _prepare(self, image: Image.Image) -> Image.Image:
        # The model's own preprocessing crops to image_size; shrink large inputs first
        w, h = image.size
        short = min(w, h)
        if short > self.image_size:
            scale = self.image_size / short
            image = image.resize((max(1, round(w * scale)), max(1, round(h * scale))))
        return image

    def encode_image(self, image: Image.Image, key: str) -> np.ndarray:
        return self._model.encode(
            [self._prepare(image)], batch_size=1, convert_to_numpy=True, normalize_embeddings=True
        )[0]

    def encode_text(self, text: str) -> np.ndarray:
        return self._model.encode([text], batch_size=1, convert_to_numpy=True, normalize_embeddings=True)[0]

    def close(self) -> None:
        self._model = None


class ImageEmbeddingProvider:
    """512-d cross-modal embedder for images and short text queries."""

    def __init__(self, config: ImageEmbeddingConfig) -> None:
        self.config = config
        self._backend_impl: Optional[ImageBackend] = None
        self._model_path: Optional[str] = None

    @classmethod
    def create(cls, config: Optional[ImageEmbeddingConfig] = None) -> "ImageEmbeddingProvider":
        return cls(config or ImageEmbeddingConfig())

    @property
    def is_loaded(self) -> bool:
        return self._backend_impl is not None

    @property
    def dimension(self) -> int:
        return IMAGE_EMBEDDING_DIMENSION

    def load(self, model_path: Optional[str] = None) -> None:
        path = model_path or self.config.model_path
        if path is not None and not os.path.exists(path):
            raise ModelNotFoundError(f"Model file not found: {path}")

        self.unload()

        if self.config.backend == "stub":
            backend: ImageBackend = StubImageBackend()
        else:
            if path is None:
                raise ModelNotFoundError("No CLIP model path configured")
            try:
                backend = ClipBackend(path, device=self.config.device, image_size=self.config.image_size)
            except Exception as e:
                raise ModelLoadError(f"Failed to load CLIP model {path}: {e}") from e

        self._backend_impl = backend
        self._model_path = path
        logger.info(f"Loaded image embedding backend '{backend.name}' (model={path or 'none'})")

    def unload(self) -> None:
        if self._backend_impl is not None:
            self._backend_impl.close()
            logger.debug(f"Unloaded image embedding backend '{self._backend_impl.name}'")
        self._backend_impl = None
        self._model_path = None

    def _backend(self) -> ImageBackend:
        if self._backend_impl is None:
            raise NotInitializedError("Embedding model not loaded")
        return self._backend_impl

    def _open(self, path: str) -> Image.Image:
        if not is_supported_image(path):
            raise UnsupportedFormatError(f"Unsupported image format: {path}")
        try:
            with Image.open(path) as img:
                img.load()
                return img.convert("RGB")
        except (FileNotFoundError, UnidentifiedImageError, OSError) as e:
            raise ImageLoadError(f"Failed to load image {path}: {e}") from e

    def embed_image(self, source: ImageSource) -> ImageEmbeddingResult:
        """Embed an image file or an in-memory pixel buffer."""
        backend = self._backend()
        if isinstance(source, np.ndarray):
            channels = 1 if source.ndim == 2 else (source.shape[2] if source.ndim == 3 else 0)
            rgb = to_rgb(source)
            height, width = rgb.shape[:2]
            image = Image.fromarray(rgb)
            key = f"buffer:{width * 31 + height * 17 + channels}:{hash_bytes(rgb.tobytes())}"
        else:
            path = str(source)
            image = self._open(path)
            width, height = image.size
            key = path

        t0 = time.perf_counter()
        try:
            vec = backend.encode_image(image, key)
        except MemoryError as e:
            raise EmbeddingMemoryError(f"Out of memory embedding image: {e}") from e
        except Exception as e:
            raise InferenceError(f"Image inference failed: {e}") from e
        elapsed = (time.perf_counter() - t0) * 1000.0
        return ImageEmbeddingResult(
            embedding=ImageEmbedding(normalize(vec)),
            width=int(width),
            height=int(height),
            inference_time_ms=elapsed,
        )

    def embed_text(self, text: Optional[str]) -> TextQueryResult:
        backend = self._backend()
        if text is None:
            raise InferenceError("Text is None")
        if len(text) > MAX_TEXT_LEN:
            raise TextTooLongError(f"Query length {len(text)} exceeds {MAX_TEXT_LEN}")
        t0 = time.perf_counter()
        try:
            vec = backend.encode_text(text)
        except Exception as e:
            raise InferenceError(f"Text inference failed: {e}") from e
        elapsed = (time.perf_counter() - t0) * 1000.0
        return TextQueryResult(embedding=ImageEmbedding(normalize(vec)), inference_time_ms=elapsed)

    def embed_images_batch(self, paths: Sequence[str | Path]) -> BatchImageResult:
        """Embed several image files, keeping only the successes."""
        self._backend()
        t0 = time.perf_counter()
        embeddings: list[ImageEmbedding] = []
        ok_paths: list[str] = []
        for p in paths:
            try:
                res = self.embed_image(str(p))
            except SemfindError as e:
                logger.warning(f"Skipping image {p}: {e}")
                continue
            embeddings.append(res.embedding)
            ok_paths.append(str(p))
        return BatchImageResult(
            embeddings=embeddings,
            paths=ok_paths,
            count=len(embeddings),
            total_time_ms=(time.perf_counter() - t0) * 1000.0,
        )
