from .semantic import SemanticSearchService
from .sorting import sort_hits, sort_key
from .visual import IMAGE_TABLE, VisualSearchService

__all__ = ["SemanticSearchService", "sort_hits", "sort_key", "IMAGE_TABLE", "VisualSearchService"]
