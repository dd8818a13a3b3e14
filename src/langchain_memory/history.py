"""In-process chat history keyed by scope, with an extraction watermark."""

import threading
from typing import Sequence

from langchain_core.messages import SystemMessage

from .types import MemoryScope


class InMemoryChatHistoryStore:
    """
    Append-only message log per scope.

    ``mark_extracted`` records the last message index that has been turned
    into long-term memory; ``load_unextracted`` returns what comes after it.
    """

    def __init__(self):
        self._messages: dict[str, list] = {}
        self._extracted: dict[str, int] = {}
        self._lock = threading.Lock()

    def save(self, scope: MemoryScope, message) -> None:
        with self._lock:
            self._messages.setdefault(scope.to_key(), []).append(message)

    def save_all(self, scope: MemoryScope, messages: Sequence) -> None:
        with self._lock:
            self._messages.setdefault(scope.to_key(), []).extend(messages)

    def load(self, scope: MemoryScope) -> list:
        with self._lock:
            return list(self._messages.get(scope.to_key(), []))

    def load_unextracted(self, scope: MemoryScope) -> list:
        with self._lock:
            messages = self._messages.get(scope.to_key(), [])
            start = self._extracted.get(scope.to_key(), -1) + 1
            return [m for m in messages[start:] if not isinstance(m, SystemMessage)]

    def count(self, scope: MemoryScope) -> int:
        with self._lock:
            return len(self._messages.get(scope.to_key(), []))

    def mark_extracted(self, scope: MemoryScope, last_index: int) -> None:
        with self._lock:
            key = scope.to_key()
            self._extracted[key] = max(self._extracted.get(key, -1), last_index)

    def extracted_index(self, scope: MemoryScope) -> int:
        with self._lock:
            return self._extracted.get(scope.to_key(), -1)

    def clear(self, scope: MemoryScope) -> None:
        with self._lock:
            self._messages.pop(scope.to_key(), None)
            self._extracted.pop(scope.to_key(), None)
