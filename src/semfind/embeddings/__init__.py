from .base import (
    IMAGE_EMBEDDING_DIMENSION,
    TEXT_EMBEDDING_DIMENSION,
    Embedding,
    ImageEmbedding,
    TextEmbedding,
    cosine_similarity,
    normalize,
)
from .image import (
    SUPPORTED_IMAGE_EXTENSIONS,
    BatchImageResult,
    ImageEmbeddingProvider,
    ImageEmbeddingResult,
    is_supported_image,
    to_rgb,
)
from .text import BatchEmbeddingResult, EmbeddingResult, TextEmbeddingProvider

__all__ = [
    "IMAGE_EMBEDDING_DIMENSION",
    "TEXT_EMBEDDING_DIMENSION",
    "Embedding",
    "ImageEmbedding",
    "TextEmbedding",
    "cosine_similarity",
    "normalize",
    "SUPPORTED_IMAGE_EXTENSIONS",
    "BatchImageResult",
    "ImageEmbeddingProvider",
    "ImageEmbeddingResult",
    "is_supported_image",
    "to_rgb",
    "BatchEmbeddingResult",
    "EmbeddingResult",
    "TextEmbeddingProvider",
]
