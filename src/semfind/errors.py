"""Error taxonomy shared by the embedding providers, the store and the indexer.

Engine calls return result dataclasses on success and raise a SemfindError
subclass on failure. Each exception carries a typed Status so callers that
surface errors as data (the search services, the indexer's skip counter) can
report them without string matching.
"""
from __future__ import annotations

from enum import Enum


class Status(str, Enum):
    OK = "ok"
    NOT_INITIALIZED = "not_initialized"
    MODEL_NOT_FOUND = "model_not_found"
    MODEL_LOAD_ERROR = "model_load_error"
    TEXT_TOO_LONG = "text_too_long"
    UNSUPPORTED_FORMAT = "unsupported_format"
    IMAGE_LOAD_ERROR = "image_load_error"
    INFERENCE_ERROR = "inference_error"
    MEMORY_ERROR = "memory_error"
    STORE_ERROR = "store_error"
    NOT_FOUND = "not_found"
    INVALID_EMBEDDING = "invalid_embedding"
    CANCELLED = "cancelled"
    TOO_MANY_ITEMS = "too_many_items"


_MESSAGES: dict[Status, str] = {
    Status.OK: "Success",
    Status.NOT_INITIALIZED: "Engine not initialized",
    Status.MODEL_NOT_FOUND: "Model file not found",
    Status.MODEL_LOAD_ERROR: "Failed to load model",
    Status.TEXT_TOO_LONG: "Input text exceeds maximum length",
    Status.UNSUPPORTED_FORMAT: "Unsupported format",
    Status.IMAGE_LOAD_ERROR: "Failed to load image",
    Status.INFERENCE_ERROR: "Inference error",
    Status.MEMORY_ERROR: "Memory allocation error",
    Status.STORE_ERROR: "Database error",
    Status.NOT_FOUND: "Not found",
    Status.INVALID_EMBEDDING: "Invalid embedding",
    Status.CANCELLED: "Operation cancelled",
    Status.TOO_MANY_ITEMS: "Too many items",
}


def status_message(status: Status) -> str:
    return _MESSAGES.get(status, "Unknown error")


class SemfindError(Exception):
    status: Status = Status.INFERENCE_ERROR

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or status_message(self.status))

    @property
    def message(self) -> str:
        return str(self)


class NotInitializedError(SemfindError):
    status = Status.NOT_INITIALIZED


class ModelNotFoundError(SemfindError):
    status = Status.MODEL_NOT_FOUND


class ModelLoadError(SemfindError):
    status = Status.MODEL_LOAD_ERROR


class TextTooLongError(SemfindError):
    status = Status.TEXT_TOO_LONG


class UnsupportedFormatError(SemfindError):
    status = Status.UNSUPPORTED_FORMAT


class ImageLoadError(SemfindError):
    status = Status.IMAGE_LOAD_ERROR


class InferenceError(SemfindError):
    status = Status.INFERENCE_ERROR


class EmbeddingMemoryError(SemfindError):
    status = Status.MEMORY_ERROR


class StoreError(SemfindError):
    status = Status.STORE_ERROR


class NotFoundError(SemfindError):
    status = Status.NOT_FOUND


class InvalidEmbeddingError(SemfindError):
    status = Status.INVALID_EMBEDDING


class CancelledError(SemfindError):
    status = Status.CANCELLED


class TooManyItemsError(SemfindError):
    status = Status.TOO_MANY_ITEMS
