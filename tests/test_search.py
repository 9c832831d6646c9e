"""Tests for the semantic and visual search services and hit sorting."""
from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from semfind.embeddings.base import IMAGE_EMBEDDING_DIMENSION, TEXT_EMBEDDING_DIMENSION
from semfind.embeddings.image import ImageEmbeddingProvider
from semfind.embeddings.text import MAX_TEXT_LEN, TextEmbeddingProvider
from semfind.models import FileType, SearchHit, SearchOptions, SortKey
from semfind.search.semantic import SemanticSearchService
from semfind.search.sorting import sort_hits
from semfind.search.visual import IMAGE_TABLE, VisualSearchService
from semfind.store.vector_store import VectorStore


def unit(dims: int, *weights: float) -> np.ndarray:
    v = np.zeros(dims, dtype=np.float32)
    v[: len(weights)] = weights
    return v / np.linalg.norm(v)


@pytest.fixture
def text_store(tmp_path: Path):
    s = VectorStore.open_path(tmp_path / "index.db")
    yield s
    s.close()


@pytest.fixture
def image_store(tmp_path: Path):
    s = VectorStore.open_path(tmp_path / "images.db", dims=IMAGE_EMBEDDING_DIMENSION, table=IMAGE_TABLE)
    yield s
    s.close()


@pytest.fixture
def text_embedder() -> TextEmbeddingProvider:
    p = TextEmbeddingProvider.create()
    p.load()
    return p


@pytest.fixture
def image_embedder() -> ImageEmbeddingProvider:
    p = ImageEmbeddingProvider.create()
    p.load()
    return p


def _row(store: VectorStore, path: str, vec, ftype=FileType.TEXT, size=1, mtime=1):
    store.index(path, os.path.basename(path), ftype, size, mtime, embedding=vec)


def _png(path: Path, size=(20, 10), color=(0, 128, 255)) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return str(path)


class TestSortHits:
    def _hits(self):
        return [
            SearchHit(path="/b", name="Beta", file_type=FileType.TEXT, size=30, score=0.5, modified_time=3),
            SearchHit(path="/a", name="alpha", file_type=FileType.TEXT, size=10, score=0.9, modified_time=1),
            SearchHit(path="/c", name="Gamma", file_type=FileType.TEXT, size=20, score=0.5, modified_time=2),
        ]

    def test_score_descending_with_path_tiebreak(self):
        assert [h.path for h in sort_hits(self._hits())] == ["/a", "/b", "/c"]

    def test_name_is_case_insensitive(self):
        ordered = sort_hits(self._hits(), SortKey.NAME, descending=False)
        assert [h.name for h in ordered] == ["alpha", "Beta", "Gamma"]

    def test_size_and_modified(self):
        assert [h.size for h in sort_hits(self._hits(), SortKey.SIZE, False)] == [10, 20, 30]
        assert [h.modified_time for h in sort_hits(self._hits(), SortKey.MODIFIED, True)] == [3, 2, 1]


class TestSemanticQuery:
    def test_error_order(self, text_store, text_embedder):
        assert SemanticSearchService(None, text_store).query("x").error_message == "No embedding engine set"
        unloaded = TextEmbeddingProvider.create()
        assert SemanticSearchService(unloaded, text_store).query("x").error_message == "Embedding model not loaded"
        assert SemanticSearchService(text_embedder, None).query("x").error_message == "No vector database set"
        res = SemanticSearchService(text_embedder, text_store).query("")
        assert not res.success
        assert res.error_message == "Query is empty"
        assert res.hits == []

    def test_query_too_long(self, text_store, text_embedder):
        res = SemanticSearchService(text_embedder, text_store).query("x" * (MAX_TEXT_LEN + 1))
        assert not res.success
        assert res.error_message

    def test_query_finds_matching_text(self, text_store, text_embedder):
        query_vec = text_embedder.generate("budget report").embedding
        _row(text_store, "/docs/budget.txt", query_vec)
        _row(text_store, "/docs/other.txt", text_embedder.generate("holiday photos").embedding)
        res = SemanticSearchService(text_embedder, text_store).query("budget report")
        assert res.success
        assert res.query == "budget report"
        assert res.paths[0] == "/docs/budget.txt"
        assert res.hits[0].score == pytest.approx(1.0, abs=1e-5)
        assert res.search_time_ms >= 0.0

    def test_is_ready(self, text_store, text_embedder):
        assert SemanticSearchService(text_embedder, text_store).is_ready()
        assert not SemanticSearchService(None, text_store).is_ready()


class TestSemanticByEmbedding:
    @pytest.fixture
    def service(self, text_store):
        D = TEXT_EMBEDDING_DIMENSION
        _row(text_store, "/a/b/one.txt", unit(D, 1.0), ftype=FileType.TEXT)
        _row(text_store, "/a/b/two.py", unit(D, 1.0, 0.2), ftype=FileType.CODE)
        _row(text_store, "/a/bc/three.txt", unit(D, 1.0, 0.4), ftype=FileType.TEXT)
        _row(text_store, "/a/far.txt", unit(D, -1.0), ftype=FileType.TEXT)
        return SemanticSearchService(None, text_store)

    def test_missing_embedding(self, service):
        assert service.by_embedding(None).error_message == "Embedding is missing"

    def test_min_score(self, service):
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), SearchOptions(min_score=0.5))
        assert "/a/far.txt" not in res.paths
        assert all(h.score >= 0.5 for h in res)

    def test_file_type_filter(self, service):
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), SearchOptions(file_type=FileType.CODE))
        assert res.paths == ["/a/b/two.py"]

    def test_directory_filter_respects_boundaries(self, service):
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), SearchOptions(directory="/a/b"))
        assert sorted(res.paths) == ["/a/b/one.txt", "/a/b/two.py"]

    def test_max_results(self, service):
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), SearchOptions(max_results=2))
        assert res.paths == ["/a/b/one.txt", "/a/b/two.py"]

    def test_sort_by_name_ascending(self, service):
        opts = SearchOptions(sort_by=SortKey.NAME, descending=False, min_score=-1.0)
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), opts)
        assert [h.name for h in res] == ["far.txt", "one.txt", "three.txt", "two.py"]

    def test_invalid_limit_is_reported(self, service):
        res = service.by_embedding(unit(TEXT_EMBEDDING_DIMENSION, 1.0), SearchOptions(max_results=0))
        assert not res.success


class TestSemanticSimilar:
    def test_excludes_source_file(self, text_store):
        D = TEXT_EMBEDDING_DIMENSION
        _row(text_store, "/x/src.txt", unit(D, 1.0))
        _row(text_store, "/x/near.txt", unit(D, 1.0, 0.1))
        _row(text_store, "/x/mid.txt", unit(D, 1.0, 1.0))
        svc = SemanticSearchService(None, text_store)
        res = svc.similar_to_file("/x/src.txt", SearchOptions(max_results=2))
        assert res.success
        assert res.paths == ["/x/near.txt", "/x/mid.txt"]
        assert res.query == "/x/src.txt"

    def test_not_indexed(self, text_store):
        res = SemanticSearchService(None, text_store).similar_to_file("/nowhere.txt")
        assert res.error_message == "File not found in index"

    def test_no_embedding(self, text_store):
        _row(text_store, "/x/video.mp4", None, ftype=FileType.VIDEO)
        res = SemanticSearchService(None, text_store).similar_to_file("/x/video.mp4")
        assert res.error_message == "File has no embedding"

    def test_no_store(self):
        assert SemanticSearchService().similar_to_file("/a").error_message == "No vector database set"


class TestSemanticStats:
    def test_stats(self, text_store):
        D = TEXT_EMBEDDING_DIMENSION
        _row(text_store, "/s/a.txt", unit(D, 1.0), size=5)
        _row(text_store, "/s/b.mp3", None, ftype=FileType.AUDIO, size=7)
        stats = SemanticSearchService(None, text_store).get_stats()
        assert stats.total_files == 2
        assert stats.files_with_embeddings == 1
        assert stats.total_size_bytes == 12
        assert not stats.indexer_running

    def test_stats_without_store(self):
        assert SemanticSearchService().get_stats().total_files == 0


class TestVisualSearch:
    def test_prechecks(self, image_store, image_embedder):
        assert VisualSearchService(None, image_store).query("dog").error_message == "No embedding engine set"
        unloaded = ImageEmbeddingProvider.create()
        assert VisualSearchService(unloaded, image_store).query("dog").error_message == "Embedding model not loaded"
        assert VisualSearchService(image_embedder, None).query("dog").error_message == "No vector database set"
        assert VisualSearchService(image_embedder, image_store).query("").error_message == "Query is empty"

    def test_index_and_query(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        a = _png(tmp_path / "pics" / "a.png", size=(20, 10))
        assert svc.index_image(a)
        entity = image_store.get(a)
        assert entity.file_type == FileType.IMAGE
        assert entity.metadata == {"width": 20, "height": 10}

        res = svc.query("a blue rectangle", SearchOptions(min_score=-1.0))
        assert res.success
        assert res.paths == [a]
        assert (res.hits[0].width, res.hits[0].height) == (20, 10)

    def test_query_honours_file_type(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        a = _png(tmp_path / "a.png")
        assert svc.index_image(a)
        res = svc.query("red", SearchOptions(min_score=-1.0, file_type=FileType.TEXT))
        assert res.success
        assert res.hits == []
        res = svc.query("red", SearchOptions(min_score=-1.0, file_type=FileType.IMAGE))
        assert res.paths == [a]

    def test_index_image_rejections(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        txt = tmp_path / "notes.txt"
        txt.write_text("hello")
        assert not svc.index_image(str(txt))
        assert not svc.index_image(str(tmp_path / "missing.png"))
        broken = tmp_path / "broken.png"
        broken.write_bytes(b"garbage")
        assert not svc.index_image(str(broken))
        assert VisualSearchService(None, image_store).index_image(_png(tmp_path / "ok.png")) is False

    def test_index_image_up_to_date(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        a = _png(tmp_path / "a.png")
        assert svc.index_image(a)
        first = image_store.get(a).indexed_time
        assert svc.index_image(a)
        assert image_store.get(a).indexed_time == first
        assert image_store.count() == 1

    def test_index_directory(self, tmp_path, image_store, image_embedder):
        root = tmp_path / "photos"
        _png(root / "a.png")
        _png(root / "nested" / "b.jpg")
        _png(root / ".hidden.png")
        _png(root / ".cache" / "c.png")
        (root / "readme.txt").write_text("not an image")
        svc = VisualSearchService(image_embedder, image_store)
        assert svc.index_directory(str(root)) == 2
        assert sorted(os.path.basename(p) for p in image_store.iter_paths()) == ["a.png", "b.jpg"]
        assert svc.index_directory(str(tmp_path / "absent")) == 0
        assert svc.get_stats().indexed_images == 2
        assert svc.get_stats().engine_loaded

    def test_similar_to_file_excludes_itself(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        paths = [_png(tmp_path / f"{i}.png", color=(i * 40, 0, 0)) for i in range(4)]
        for p in paths:
            svc.index_image(p)
        res = svc.similar_to_file(paths[0], SearchOptions(max_results=3, min_score=-1.0))
        assert res.success
        assert paths[0] not in res.paths
        assert len(res) == 3
        assert VisualSearchService(None, image_store).similar_to_file("/none.png").error_message == (
            "File not found in index"
        )

    def test_similar_to_image(self, tmp_path, image_store, image_embedder):
        svc = VisualSearchService(image_embedder, image_store)
        indexed = _png(tmp_path / "indexed.png")
        svc.index_image(indexed)
        probe = _png(tmp_path / "probe.png")
        res = svc.similar_to_image(probe, SearchOptions(min_score=-1.0))
        assert res.success
        assert res.paths == [indexed]
        # The probe itself is excluded once indexed
        svc.index_image(probe)
        res = svc.similar_to_image(probe, SearchOptions(min_score=-1.0))
        assert res.paths == [indexed]

    def test_similar_to_missing_image(self, tmp_path, image_store, image_embedder):
        res = VisualSearchService(image_embedder, image_store).similar_to_image(str(tmp_path / "gone.png"))
        assert not res.success
