from __future__ import annotations

from collections import deque
import threading
from typing import Optional


class IndexQueue:
    """FIFO of absolute paths waiting to be indexed."""

    def __init__(self) -> None:
        self._items: deque[str] = deque()
        self._lock = threading.Lock()

    def put(self, path: str) -> None:
        with self._lock:
            self._items.append(path)

    def get(self) -> Optional[str]:
        """Pop the oldest path, or None when empty."""
        with self._lock:
            return self._items.popleft() if self._items else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __bool__(self) -> bool:
        return len(self) > 0
