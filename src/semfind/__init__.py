"""semfind: local semantic file indexing and vector search."""
from .config import AppConfig, EmbeddingConfig, ImageEmbeddingConfig, IndexerConfig, SearchConfig
from .embeddings import (
    ImageEmbedding,
    ImageEmbeddingProvider,
    TextEmbedding,
    TextEmbeddingProvider,
    cosine_similarity,
)
from .errors import SemfindError, Status
from .indexer import FileWatcher, Indexer
from .models import (
    FileType,
    IndexedEntity,
    IndexerState,
    IndexerStats,
    SearchHit,
    SearchOptions,
    SearchResults,
    SortKey,
)
from .search import SemanticSearchService, VisualSearchService
from .store import VectorStore

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "EmbeddingConfig",
    "ImageEmbeddingConfig",
    "IndexerConfig",
    "SearchConfig",
    "ImageEmbedding",
    "ImageEmbeddingProvider",
    "TextEmbedding",
    "TextEmbeddingProvider",
    "cosine_similarity",
    "SemfindError",
    "Status",
    "FileWatcher",
    "Indexer",
    "FileType",
    "IndexedEntity",
    "IndexerState",
    "IndexerStats",
    "SearchHit",
    "SearchOptions",
    "SearchResults",
    "SortKey",
    "SemanticSearchService",
    "VisualSearchService",
    "VectorStore",
]
