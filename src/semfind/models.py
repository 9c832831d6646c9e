from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Iterator, Optional

import numpy as np


class FileType(IntEnum):
    """Coarse file classification stored with every indexed row.

    Only TEXT and CODE files are read for text embeddings; every other type is
    indexed with metadata only.
    """
    UNKNOWN = 0
    TEXT = 1
    CODE = 2
    DOCUMENT = 3
    IMAGE = 4
    AUDIO = 5
    VIDEO = 6
    ARCHIVE = 7

    @classmethod
    def from_extension(cls, extension: str | None) -> "FileType":
        if not extension:
            return cls.UNKNOWN
        return _EXTENSION_MAP.get(extension, cls.UNKNOWN)

    @property
    def is_textual(self) -> bool:
        return self in (FileType.TEXT, FileType.CODE)


_EXTENSION_MAP: dict[str, FileType] = {
    **dict.fromkeys(("txt", "md", "rst", "org"), FileType.TEXT),
    **dict.fromkeys(
        ("c", "h", "cpp", "hpp", "py", "js", "ts", "go", "rs", "java", "swift", "rb",
         "sh", "json", "yaml", "yml", "xml", "html", "css"),
        FileType.CODE,
    ),
    **dict.fromkeys(
        ("pdf", "doc", "docx", "odt", "rtf", "xls", "xlsx", "ppt", "pptx"),
        FileType.DOCUMENT,
    ),
    **dict.fromkeys(
        ("jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "ico", "tiff", "heic"),
        FileType.IMAGE,
    ),
    **dict.fromkeys(("mp3", "wav", "flac", "aac", "ogg", "m4a"), FileType.AUDIO),
    **dict.fromkeys(("mp4", "mkv", "avi", "mov", "webm", "wmv"), FileType.VIDEO),
    **dict.fromkeys(("zip", "tar", "gz", "bz2", "xz", "7z", "rar", "dmg"), FileType.ARCHIVE),
}


@dataclass(frozen=True)
class IndexedEntity:
    """One row of the vector store, keyed by absolute path."""
    id: int
    path: str
    name: str
    file_type: FileType
    size: int
    modified_time: int
    indexed_time: int
    embedding: Optional[np.ndarray] = None
    has_embedding: bool = False
    content_hash: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorHit:
    entity: IndexedEntity
    similarity: float


class SortKey(str, Enum):
    SCORE = "score"
    NAME = "name"
    SIZE = "size"
    MODIFIED = "modified"
    PATH = "path"


@dataclass(frozen=True)
class SearchOptions:
    max_results: int = 20
    min_score: float = 0.0
    directory: Optional[str] = None
    file_type: Optional[FileType] = None
    sort_by: SortKey = SortKey.SCORE
    descending: bool = True


@dataclass(frozen=True)
class SearchHit:
    path: str
    name: str
    file_type: FileType
    size: int
    score: float
    modified_time: int = 0
    width: int = 0
    height: int = 0

    @classmethod
    def from_vector_hit(cls, hit: VectorHit) -> "SearchHit":
        e = hit.entity
        return cls(
            path=e.path,
            name=e.name,
            file_type=e.file_type,
            size=e.size,
            score=hit.similarity,
            modified_time=e.modified_time,
            width=int(e.metadata.get("width", 0)),
            height=int(e.metadata.get("height", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "file_type": self.file_type.name.lower(),
            "size": self.size,
            "score": self.score,
            "modified_time": self.modified_time,
            "width": self.width,
            "height": self.height,
        }


@dataclass
class SearchResults:
    """Outcome of a search service call.

    A failed call carries `success=False`, an `error_message` and no hits;
    nothing is partially executed.
    """
    success: bool
    hits: list[SearchHit] = field(default_factory=list)
    query: str = ""
    search_time_ms: float = 0.0
    error_message: str = ""

    @classmethod
    def error(cls, message: str, query: str = "") -> "SearchResults":
        return cls(success=False, query=query, error_message=message)

    def __len__(self) -> int:
        return len(self.hits)

    def __iter__(self) -> Iterator[SearchHit]:
        return iter(self.hits)

    @property
    def paths(self) -> list[str]:
        return [h.path for h in self.hits]


class IndexerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    WATCHING = "watching"
    ERROR = "error"


@dataclass
class IndexerStats:
    files_indexed: int = 0
    files_pending: int = 0
    files_skipped: int = 0
    total_bytes: int = 0
    progress: float = 0.0
    elapsed_time_sec: float = 0.0
    avg_time_per_file_ms: float = 0.0


@dataclass(frozen=True)
class SemanticSearchStats:
    total_files: int = 0
    files_with_embeddings: int = 0
    total_size_bytes: int = 0
    indexer_running: bool = False
    indexer_progress: float = 0.0


@dataclass(frozen=True)
class VisualSearchStats:
    indexed_images: int = 0
    engine_loaded: bool = False
