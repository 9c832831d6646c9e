from __future__ import annotations

from dataclasses import replace
import logging
import time
from typing import Optional

from ..embeddings.base import VectorLike
from ..embeddings.text import TextEmbeddingProvider
from ..errors import NotFoundError, SemfindError
from ..indexer.indexer import Indexer
from ..models import SearchHit, SearchOptions, SearchResults, SemanticSearchStats, VectorHit
from ..store.vector_store import VectorStore
from .sorting import sort_hits

logger = logging.getLogger(__name__)


def _elapsed_ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0


def filter_hits(hits: list[VectorHit], options: SearchOptions) -> list[SearchHit]:
    """Apply the score floor and type filter, sort, and trim to max_results."""
    out = []
    for hit in hits:
        if hit.similarity < options.min_score:
            continue
        if options.file_type is not None and hit.entity.file_type != options.file_type:
            continue
        out.append(SearchHit.from_vector_hit(hit))
    return sort_hits(out, options.sort_by, options.descending)[: options.max_results]


class SemanticSearchService:
    """Natural-language search over the text-embedding store."""

    def __init__(
        self,
        embedder: Optional[TextEmbeddingProvider] = None,
        store: Optional[VectorStore] = None,
        indexer: Optional[Indexer] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.indexer = indexer

    def set_embedder(self, embedder: Optional[TextEmbeddingProvider]) -> None:
        self.embedder = embedder

    def set_store(self, store: Optional[VectorStore]) -> None:
        self.store = store

    def set_indexer(self, indexer: Optional[Indexer]) -> None:
        self.indexer = indexer

    def query(self, text: Optional[str], options: Optional[SearchOptions] = None) -> SearchResults:
        if self.embedder is None:
            return SearchResults.error("No embedding engine set", query=text or "")
        if not self.embedder.is_loaded:
            return SearchResults.error("Embedding model not loaded", query=text or "")
        if self.store is None:
            return SearchResults.error("No vector database set", query=text or "")
        if not text:
            return SearchResults.error("Query is empty")

        t0 = time.perf_counter()
        try:
            emb = self.embedder.generate(text).embedding
        except SemfindError as e:
            return SearchResults.error(e.message, query=text)

        results = self.by_embedding(emb, options)
        results.query = text
        results.search_time_ms = _elapsed_ms(t0)
        return results

    def by_embedding(self, embedding: Optional[VectorLike], options: Optional[SearchOptions] = None) -> SearchResults:
        if self.store is None:
            return SearchResults.error("No vector database set")
        if embedding is None:
            return SearchResults.error("Embedding is missing")
        opts = options or SearchOptions()

        t0 = time.perf_counter()
        try:
            if opts.directory:
                hits = self.store.search_in_prefix(embedding, opts.directory, opts.max_results)
            else:
                hits = self.store.search(embedding, opts.max_results)
        except SemfindError as e:
            return SearchResults.error(e.message)

        return SearchResults(
            success=True,
            hits=filter_hits(hits, opts),
            search_time_ms=_elapsed_ms(t0),
        )

    def similar_to_file(self, path: str, options: Optional[SearchOptions] = None) -> SearchResults:
        """Files whose embedding is closest to the stored embedding of `path`."""
        if self.store is None:
            return SearchResults.error("No vector database set", query=path)
        try:
            entity = self.store.get(path)
        except NotFoundError:
            return SearchResults.error("File not found in index", query=path)
        except SemfindError as e:
            return SearchResults.error(e.message, query=path)
        if not entity.has_embedding:
            return SearchResults.error("File has no embedding", query=path)

        opts = options or SearchOptions()
        # One extra slot for the source file, which is dropped below
        results = self.by_embedding(entity.embedding, replace(opts, max_results=opts.max_results + 1))
        if results.success:
            results.hits = [h for h in results.hits if h.path != path][: opts.max_results]
        results.query = path
        return results

    def is_ready(self) -> bool:
        return self.embedder is not None and self.embedder.is_loaded and self.store is not None

    def get_stats(self) -> SemanticSearchStats:
        total = with_emb = size = 0
        if self.store is not None:
            try:
                total = self.store.count()
                with_emb = self.store.count_with_embeddings()
                size = self.store.total_size()
            except SemfindError as e:
                logger.warning(f"Could not read store stats: {e}")
        running = False
        progress = 0.0
        if self.indexer is not None:
            running = self.indexer.is_busy()
            progress = self.indexer.get_stats().progress
        return SemanticSearchStats(
            total_files=total,
            files_with_embeddings=with_emb,
            total_size_bytes=size,
            indexer_running=running,
            indexer_progress=progress,
        )
