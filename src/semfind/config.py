from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib
from typing import Any, Optional

MAX_WATCH_DIRS = 32
MAX_EXCLUDE_PATTERNS = 64

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "__pycache__",
    "*.pyc",
    "*.o",
    "*.a",
    "*.so",
    "*.dylib",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "*.tmp",
    "*.swp",
)

TEXT_BACKENDS = ("stub", "sentence_transformers")
IMAGE_BACKENDS = ("stub", "clip")

def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))

def _optional_path(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return _expand(str(value))


@dataclass(frozen=True)
class EmbeddingConfig:
    """Text embedding provider configuration.

    `model_path` points at a local sentence-transformers model directory. The
    stub backend needs no model; if a path is given it must still exist.
    """
    model_path: Optional[str] = None
    backend: str = "stub"
    num_threads: int = 0  # 0 = auto
    use_gpu: bool = False
    batch_size: int = 32

    def __post_init__(self) -> None:
        object.__setattr__(self, "model_path", _optional_path(self.model_path))

    @property
    def device(self) -> str:
        return "cuda" if self.use_gpu else "cpu"


@dataclass(frozen=True)
class ImageEmbeddingConfig:
    model_path: Optional[str] = None
    backend: str = "stub"
    num_threads: int = 0
    use_gpu: bool = False
    image_size: int = 224

    def __post_init__(self) -> None:
        object.__setattr__(self, "model_path", _optional_path(self.model_path))

    @property
    def device(self) -> str:
        return "cuda" if self.use_gpu else "cpu"


@dataclass
class IndexerConfig:
    """Crawler/watcher configuration.

    Mutable on purpose: the indexer copies it on construction and applies
    add_watch_dir / add_exclude_pattern to its own copy under its lock.
    """
    watch_dirs: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    index_hidden_files: bool = False
    recursive: bool = True
    max_file_size_mb: int = 10  # 0 disables the cutoff
    batch_size: int = 32
    delay_between_batches_ms: int = 10
    enable_watching: bool = False
    watch_latency: float = 0.5

    def __post_init__(self) -> None:
        self.watch_dirs = [os.path.abspath(_expand(str(d))) for d in self.watch_dirs]
        self.exclude_patterns = list(self.exclude_patterns)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb) * 1024 * 1024

    def copy(self) -> "IndexerConfig":
        return IndexerConfig(
            watch_dirs=list(self.watch_dirs),
            exclude_patterns=list(self.exclude_patterns),
            index_hidden_files=self.index_hidden_files,
            recursive=self.recursive,
            max_file_size_mb=self.max_file_size_mb,
            batch_size=self.batch_size,
            delay_between_batches_ms=self.delay_between_batches_ms,
            enable_watching=self.enable_watching,
            watch_latency=self.watch_latency,
        )


@dataclass(frozen=True)
class SearchConfig:
    max_results: int = 20
    min_score: float = 0.0


@dataclass(frozen=True)
class AppConfig:
    """Top-level configuration loaded from a TOML file."""

    store_path: Path
    image_store_path: Path
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    image_embeddings: ImageEmbeddingConfig = field(default_factory=ImageEmbeddingConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self):
        """Convert string paths to Path objects and expand ~ and environment variables."""
        if isinstance(self.store_path, str):
            object.__setattr__(self, "store_path", Path(_expand(self.store_path)))
        if isinstance(self.image_store_path, str):
            object.__setattr__(self, "image_store_path", Path(_expand(self.image_store_path)))

    @staticmethod
    def from_toml(path: str | Path) -> "AppConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        return AppConfig.from_dict(data)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "AppConfig":
        store = data.get("store", {})
        emb = data.get("embeddings", {})
        img = data.get("image_embeddings", {})
        idx = data.get("indexer", {})
        srch = data.get("search", {})

        store_path = store.get("path", "~/.semfind/index.db")
        image_store_path = store.get("image_path", "~/.semfind/images.db")

        backend = emb.get("backend", "stub")
        if backend not in TEXT_BACKENDS:
            raise ValueError(f"Invalid embeddings backend: {backend}. Must be one of {TEXT_BACKENDS}.")
        img_backend = img.get("backend", "stub")
        if img_backend not in IMAGE_BACKENDS:
            raise ValueError(f"Invalid image_embeddings backend: {img_backend}. Must be one of {IMAGE_BACKENDS}.")

        num_threads = int(emb.get("num_threads", 0))
        if num_threads < 0 or num_threads > 256:
            raise ValueError(f"Invalid num_threads: {num_threads}. Must be between 0 and 256.")

        batch_size = int(emb.get("batch_size", 32))
        if batch_size <= 0 or batch_size > 10000:
            raise ValueError(f"Invalid batch_size: {batch_size}. Must be between 1 and 10000.")

        image_size = int(img.get("image_size", 224))
        if image_size < 32 or image_size > 1024:
            raise ValueError(f"Invalid image_size: {image_size}. Must be between 32 and 1024.")

        watch_dirs = list(idx.get("watch_dirs", []))
        if len(watch_dirs) > MAX_WATCH_DIRS:
            raise ValueError(f"Too many watch_dirs: {len(watch_dirs)}. At most {MAX_WATCH_DIRS} are supported.")

        # User patterns extend the defaults unless the defaults are switched off
        patterns = list(DEFAULT_EXCLUDE_PATTERNS) if idx.get("use_default_excludes", True) else []
        patterns.extend(idx.get("exclude_patterns", []))
        if len(patterns) > MAX_EXCLUDE_PATTERNS:
            raise ValueError(
                f"Too many exclude_patterns: {len(patterns)}. At most {MAX_EXCLUDE_PATTERNS} are supported."
            )

        max_file_size_mb = int(idx.get("max_file_size_mb", 10))
        if max_file_size_mb < 0:
            raise ValueError(f"Invalid max_file_size_mb: {max_file_size_mb}. Must be >= 0.")

        idx_batch = int(idx.get("batch_size", 32))
        if idx_batch <= 0 or idx_batch > 10000:
            raise ValueError(f"Invalid indexer batch_size: {idx_batch}. Must be between 1 and 10000.")

        delay = int(idx.get("delay_between_batches_ms", 10))
        if delay < 0 or delay > 60000:
            raise ValueError(f"Invalid delay_between_batches_ms: {delay}. Must be between 0 and 60000.")

        latency = float(idx.get("watch_latency", 0.5))
        if latency < 0 or latency > 60:
            raise ValueError(f"Invalid watch_latency: {latency}. Must be between 0 and 60 seconds.")

        max_results = int(srch.get("max_results", 20))
        if max_results <= 0 or max_results > 100:
            raise ValueError(f"Invalid max_results: {max_results}. Must be between 1 and 100.")
        min_score = float(srch.get("min_score", 0.0))
        if min_score < -1.0 or min_score > 1.0:
            raise ValueError(f"Invalid min_score: {min_score}. Must be between -1.0 and 1.0.")

        return AppConfig(
            store_path=store_path,
            image_store_path=image_store_path,
            embeddings=EmbeddingConfig(
                model_path=emb.get("model_path"),
                backend=backend,
                num_threads=num_threads,
                use_gpu=bool(emb.get("use_gpu", False)),
                batch_size=batch_size,
            ),
            image_embeddings=ImageEmbeddingConfig(
                model_path=img.get("model_path"),
                backend=img_backend,
                num_threads=int(img.get("num_threads", 0)),
                use_gpu=bool(img.get("use_gpu", False)),
                image_size=image_size,
            ),
            indexer=IndexerConfig(
                watch_dirs=watch_dirs,
                exclude_patterns=patterns,
                index_hidden_files=bool(idx.get("index_hidden_files", False)),
                recursive=bool(idx.get("recursive", True)),
                max_file_size_mb=max_file_size_mb,
                batch_size=idx_batch,
                delay_between_batches_ms=delay,
                enable_watching=bool(idx.get("enable_watching", False)),
                watch_latency=latency,
            ),
            search=SearchConfig(max_results=max_results, min_score=min_score),
        )
