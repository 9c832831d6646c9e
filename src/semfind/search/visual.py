from __future__ import annotations

import logging
import os
import time
from typing import Optional

from ..embeddings.base import VectorLike
from ..embeddings.image import ImageEmbeddingProvider, is_supported_image
from ..errors import NotFoundError, SemfindError
from ..models import FileType, SearchOptions, SearchResults, VisualSearchStats
from ..store.vector_store import VectorStore
from .semantic import filter_hits

logger = logging.getLogger(__name__)

IMAGE_TABLE = "image_index"


class VisualSearchService:
    """Image search in the CLIP space: text -> image and image -> image.

    The store holds 512-d image vectors (conventionally table `image_index`)
    with width/height kept in row metadata.
    """

    def __init__(
        self,
        embedder: Optional[ImageEmbeddingProvider] = None,
        store: Optional[VectorStore] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store

    def set_embedder(self, embedder: Optional[ImageEmbeddingProvider]) -> None:
        self.embedder = embedder

    def set_store(self, store: Optional[VectorStore]) -> None:
        self.store = store

    def _precheck(self, query: str) -> Optional[SearchResults]:
        if self.embedder is None:
            return SearchResults.error("No embedding engine set", query=query)
        if not self.embedder.is_loaded:
            return SearchResults.error("Embedding model not loaded", query=query)
        if self.store is None:
            return SearchResults.error("No vector database set", query=query)
        return None

    def _search(
        self,
        embedding: VectorLike,
        options: Optional[SearchOptions],
        exclude: Optional[str] = None,
    ) -> SearchResults:
        opts = options or SearchOptions()
        wanted = opts.max_results + 1 if exclude else opts.max_results
        t0 = time.perf_counter()
        try:
            if opts.directory:
                hits = self.store.search_in_prefix(embedding, opts.directory, wanted)
            else:
                hits = self.store.search(embedding, wanted)
        except SemfindError as e:
            return SearchResults.error(e.message)
        if exclude:
            hits = [h for h in hits if h.entity.path != exclude]
        return SearchResults(
            success=True,
            hits=filter_hits(hits, opts),
            search_time_ms=(time.perf_counter() - t0) * 1000.0,
        )

    def query(self, text: Optional[str], options: Optional[SearchOptions] = None) -> SearchResults:
        """Images whose CLIP vector best matches a text description."""
        failed = self._precheck(text or "")
        if failed is not None:
            return failed
        if not text:
            return SearchResults.error("Query is empty")
        t0 = time.perf_counter()
        try:
            emb = self.embedder.embed_text(text).embedding
        except SemfindError as e:
            return SearchResults.error(e.message, query=text)
        results = self._search(emb, options)
        results.query = text
        results.search_time_ms = (time.perf_counter() - t0) * 1000.0
        return results

    def similar_to_file(self, path: str, options: Optional[SearchOptions] = None) -> SearchResults:
        """Images closest to an already-indexed image, excluding itself."""
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
        results = self._search(entity.embedding, options, exclude=path)
        results.query = path
        return results

    def similar_to_image(self, path: str, options: Optional[SearchOptions] = None) -> SearchResults:
        """Embed `path` now (it need not be indexed) and find the closest images."""
        failed = self._precheck(path)
        if failed is not None:
            return failed
        t0 = time.perf_counter()
        try:
            emb = self.embedder.embed_image(path).embedding
        except SemfindError as e:
            return SearchResults.error(e.message, query=path)
        results = self._search(emb, options, exclude=path)
        results.query = path
        results.search_time_ms = (time.perf_counter() - t0) * 1000.0
        return results

    def index_image(self, path: str) -> bool:
        if self.embedder is None or not self.embedder.is_loaded or self.store is None:
            return False
        if not is_supported_image(path):
            return False
        try:
            st = os.stat(path)
        except OSError:
            return False
        mtime = int(st.st_mtime)
        try:
            if self.store.is_up_to_date(path, mtime):
                return True
            res = self.embedder.embed_image(path)
            self.store.index(
                path,
                os.path.basename(path),
                FileType.IMAGE,
                st.st_size,
                mtime,
                embedding=res.embedding,
                metadata={"width": res.width, "height": res.height},
            )
        except SemfindError as e:
            logger.warning(f"Failed to index image {path}: {e}")
            return False
        logger.debug(f"Indexed image {path} ({res.width}x{res.height})")
        return True

    def index_directory(self, directory: str) -> int:
        """Index every supported image below `directory`; hidden entries are skipped."""
        count = 0
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.debug(f"Cannot read directory {directory}: {e}")
            return 0
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    count += self.index_directory(entry.path)
                elif entry.is_file() and self.index_image(entry.path):
                    count += 1
            except OSError:
                continue
        return count

    def is_ready(self) -> bool:
        return self.embedder is not None and self.embedder.is_loaded and self.store is not None

    def get_stats(self) -> VisualSearchStats:
        indexed = 0
        if self.store is not None:
            try:
                indexed = self.store.count()
            except SemfindError as e:
                logger.warning(f"Could not read image store stats: {e}")
        return VisualSearchStats(
            indexed_images=indexed,
            engine_loaded=self.embedder is not None and self.embedder.is_loaded,
        )
