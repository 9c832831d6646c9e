from .schema import CURRENT_SCHEMA_VERSION, SchemaManager
from .vector_store import MAX_RESULTS, VectorStore

__all__ = ["CURRENT_SCHEMA_VERSION", "SchemaManager", "MAX_RESULTS", "VectorStore"]
