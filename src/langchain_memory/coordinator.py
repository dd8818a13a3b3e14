"""
Single-flight background extraction of long-term memory.

Each scope has at most one extraction in flight. A trigger while one is
running is a no-op; whatever arrived in the meantime is picked up by the
next trigger. The per-scope watermark (``last_extracted_index``) only moves
after a batch has been embedded and fully persisted.

Two variants share the pipeline:

- ``ExtractionCoordinator`` reads unextracted turns from a chat history store.
- ``RollingBufferCoordinator`` buffers live messages itself and extracts
  when the buffer grows past a turn or token limit.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from .config import ConflictConfig, ExtractionConfig
from .conflict import ConflictResolver, delete_superseded, reconcile_with_store
from .token_budget import TokenCounter
from .types import ChatHistoryStore, MemoryExtractor, MemoryRecord, MemoryScope, MemoryStore

logger = logging.getLogger(__name__)


class ExtractionStatus(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"


@dataclass
class ExtractionState:
    """Per-scope watermark and the handle of the running extraction, if any."""

    last_extracted_index: int = -1
    in_flight: Optional[Future] = None

    @property
    def extracting(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


@dataclass
class ExtractionBatch:
    scope: MemoryScope
    messages: list = field(default_factory=list)
    last_index: int = -1


class BaseExtractionCoordinator:
    """Shared trigger/embed/persist pipeline. Subclasses decide where turns come from."""

    def __init__(
        self,
        extractor: MemoryExtractor,
        store: MemoryStore,
        embeddings,
        config: Optional[ExtractionConfig] = None,
        resolver: Optional[ConflictResolver] = None,
        conflict_config: Optional[ConflictConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.extractor = extractor
        self.store = store
        self.embeddings = embeddings
        self.config = config or ExtractionConfig()
        self.resolver = resolver
        self.conflict_config = conflict_config or ConflictConfig()

        self._states: dict[str, ExtractionState] = {}
        self._lock = threading.Lock()
        self._executor = executor
        self._owns_executor = executor is None

    # ── subclass hooks ──

    def _unextracted(self, scope: MemoryScope, state: ExtractionState) -> tuple[list, int]:
        """Return (messages after the watermark, absolute index of the last one)."""
        raise NotImplementedError

    def _on_persisted(self, scope: MemoryScope, last_index: int):
        pass

    def _initial_watermark(self, scope: MemoryScope) -> int:
        return -1

    def _should_trigger(self, messages: list) -> bool:
        return count_user_turns(messages) >= self.config.max_buffer_turns

    # ── public API ──

    def should_extract(self, scope: MemoryScope) -> bool:
        with self._lock:
            state = self._state(scope)
            if state.extracting:
                return False
            messages, _ = self._unextracted(scope, state)
        return self._should_trigger(messages)

    def extract_if_needed(self, scope: MemoryScope) -> bool:
        """Trigger extraction when the unextracted backlog is large enough."""
        if not self.should_extract(scope):
            return False
        return self.trigger_extraction(scope) is not None

    def trigger_extraction(self, scope: MemoryScope) -> Optional[Future]:
        """
        Start extraction of everything after the watermark.

        Returns the task handle, or None when an extraction is already running
        for the scope or there is nothing to extract.
        """
        with self._lock:
            state = self._state(scope)
            if state.extracting:
                logger.debug("Extraction already in progress for %s, skipping", scope)
                return None
            messages, last_index = self._unextracted(scope, state)
            if not messages:
                logger.debug("No unextracted messages for %s", scope)
                return None
            future: Future = Future()
            future.set_running_or_notify_cancel()
            state.in_flight = future

        batch = ExtractionBatch(scope=scope, messages=messages, last_index=last_index)
        logger.info(
            "Triggering memory extraction for %s: %d messages up to index %d",
            scope, len(messages), last_index,
        )
        if self.config.async_extraction:
            self._get_executor().submit(self._run, batch, future)
        else:
            self._run(batch, future)
        return future

    def wait_for_completion(self, timeout: Optional[float] = None,
                            scope: Optional[MemoryScope] = None) -> bool:
        """
        Block until running extractions finish or ``timeout`` seconds pass.

        Returns False on timeout. The task keeps running and still applies
        its result. Task failures are logged, never raised.
        """
        timeout = self.config.extraction_timeout if timeout is None else timeout
        with self._lock:
            if scope is not None:
                state = self._states.get(scope.to_key())
                futures = [state.in_flight] if state and state.in_flight else []
            else:
                futures = [s.in_flight for s in self._states.values() if s.in_flight]

        deadline = time.monotonic() + timeout
        completed = True
        for future in futures:
            try:
                future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeoutError:
                logger.warning("Memory extraction still running after %.1fs timeout", timeout)
                completed = False
            except Exception as e:
                logger.error("Memory extraction failed: %s", e)
        return completed

    def on_session_end(self, scope: MemoryScope):
        """Flush the remaining backlog for a closing session."""
        if not self.config.extract_on_session_end:
            return
        # A running batch would make the final trigger a no-op
        self.wait_for_completion(scope=scope)
        self.trigger_extraction(scope)
        self.wait_for_completion(scope=scope)

    def last_extracted_index(self, scope: MemoryScope) -> int:
        with self._lock:
            state = self._states.get(scope.to_key())
            return state.last_extracted_index if state else -1

    def status(self, scope: MemoryScope) -> ExtractionStatus:
        with self._lock:
            state = self._states.get(scope.to_key())
            if state and state.extracting:
                return ExtractionStatus.EXTRACTING
            return ExtractionStatus.IDLE

    def is_extracting(self, scope: MemoryScope) -> bool:
        return self.status(scope) == ExtractionStatus.EXTRACTING

    def reset(self, scope: Optional[MemoryScope] = None):
        """Forget extraction state for one scope, or for all of them."""
        with self._lock:
            if scope is None:
                self._states.clear()
            else:
                self._states.pop(scope.to_key(), None)

    def shutdown(self, wait: bool = True):
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # ── internals ──

    def _state(self, scope: MemoryScope) -> ExtractionState:
        # caller holds self._lock
        key = scope.to_key()
        state = self._states.get(key)
        if state is None:
            state = ExtractionState(last_extracted_index=self._initial_watermark(scope))
            self._states[key] = state
        return state

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=2, thread_name_prefix="memory-extraction"
                )
            return self._executor

    def _run(self, batch: ExtractionBatch, future: Future):
        started = time.monotonic()
        try:
            saved = self._process(batch)
        except Exception as e:
            logger.exception("Memory extraction failed for %s", batch.scope)
            future.set_exception(e)
        else:
            logger.debug(
                "Memory extraction for %s finished in %.1fs", batch.scope, time.monotonic() - started
            )
            future.set_result(saved)

    def _process(self, batch: ExtractionBatch) -> int:
        records = self.extractor.extract(batch.scope, batch.messages)
        if not records:
            logger.info("No memories extracted for %s", batch.scope)
            self._advance(batch)
            return 0

        reconciliation = None
        if self.resolver is not None and self.config.enable_conflict_resolution:
            reconciliation = reconcile_with_store(
                self.resolver, self.store, batch.scope, records,
                self.conflict_config.default_strategy, self.conflict_config.similar_top_k,
            )
            records = reconciliation.records
            if not records:
                self._advance(batch)
                return 0

        vectors = self._embed(records)
        if len(vectors) != len(records):
            logger.error(
                "Embedding count mismatch for %s: %d records, %d embeddings; batch aborted",
                batch.scope, len(records), len(vectors),
            )
            return 0

        self.store.save_all(records, vectors)
        if reconciliation is not None:
            delete_superseded(self.store, reconciliation, records)
        self._advance(batch)
        logger.info("Persisted %d memory records for %s", len(records), batch.scope)
        return len(records)

    def _embed(self, records: Sequence[MemoryRecord]) -> list:
        texts = [r.content for r in records]
        if self.config.batch_embeddings:
            return list(self.embeddings.embed_documents(texts))
        return [self.embeddings.embed_query(text) for text in texts]

    def _advance(self, batch: ExtractionBatch):
        with self._lock:
            state = self._state(batch.scope)
            state.last_extracted_index = max(state.last_extracted_index, batch.last_index)
        self._on_persisted(batch.scope, batch.last_index)


class ExtractionCoordinator(BaseExtractionCoordinator):
    """
    Extracts from a chat history store.

    Usage:
        coordinator = ExtractionCoordinator(extractor, store, embeddings, history)
        coordinator.extract_if_needed(scope)      # after each turn
        coordinator.on_session_end(scope)         # flush and wait
    """

    def __init__(self, extractor: MemoryExtractor, store: MemoryStore, embeddings,
                 history: ChatHistoryStore, **kwargs):
        super().__init__(extractor, store, embeddings, **kwargs)
        self.history = history

    def _initial_watermark(self, scope: MemoryScope) -> int:
        # Resume where a previous coordinator over the same history stopped
        return self.history.extracted_index(scope)

    def load_unextracted(self, scope: MemoryScope) -> list:
        with self._lock:
            messages, _ = self._unextracted(scope, self._state(scope))
        return messages

    def _unextracted(self, scope: MemoryScope, state: ExtractionState) -> tuple[list, int]:
        all_messages = self.history.load(scope)
        start = state.last_extracted_index + 1
        messages = [m for m in all_messages[start:] if not isinstance(m, SystemMessage)]
        return messages, len(all_messages) - 1

    def _on_persisted(self, scope: MemoryScope, last_index: int):
        self.history.mark_extracted(scope, last_index)


class RollingBufferCoordinator(BaseExtractionCoordinator):
    """
    Buffers live messages and extracts once the buffer holds
    ``max_buffer_turns`` user turns or ``max_buffer_tokens`` tokens.

    Buffered messages are dropped only after their batch is persisted, so a
    failed batch is retried on the next trigger.
    """

    def __init__(self, extractor: MemoryExtractor, store: MemoryStore, embeddings,
                 counter: Optional[TokenCounter] = None, **kwargs):
        super().__init__(extractor, store, embeddings, **kwargs)
        self.counter = counter or TokenCounter()
        self._buffers: dict[str, list] = {}
        self._offsets: dict[str, int] = {}  # absolute index of buffer[0]
        self._current_scope: Optional[MemoryScope] = None

    def start_session(self, scope: MemoryScope):
        with self._lock:
            self._current_scope = scope
            self._state(scope)
            self._buffers.setdefault(scope.to_key(), [])

    def on_message(self, message, scope: Optional[MemoryScope] = None) -> bool:
        """Buffer a message and extract if the buffer is full. Returns True if triggered."""
        scope = scope or self._current_scope
        if scope is None:
            raise ValueError("No scope given and no session started")
        if isinstance(message, SystemMessage):
            return False
        with self._lock:
            key = scope.to_key()
            self._buffers.setdefault(key, []).append(message)
            self._offsets.setdefault(key, 0)
        return self.extract_if_needed(scope)

    def end_session(self, scope: Optional[MemoryScope] = None):
        scope = scope or self._current_scope
        if scope is not None:
            self.on_session_end(scope)

    def buffered_messages(self, scope: MemoryScope) -> list:
        with self._lock:
            return list(self._buffers.get(scope.to_key(), []))

    def _should_trigger(self, messages: list) -> bool:
        if not messages:
            return False
        if count_user_turns(messages) >= self.config.max_buffer_turns:
            return True
        return self.counter.count_messages(messages) >= self.config.max_buffer_tokens

    def _unextracted(self, scope: MemoryScope, state: ExtractionState) -> tuple[list, int]:
        key = scope.to_key()
        buffer = self._buffers.get(key, [])
        offset = self._offsets.get(key, 0)
        start = max(0, state.last_extracted_index + 1 - offset)
        return list(buffer[start:]), offset + len(buffer) - 1

    def _on_persisted(self, scope: MemoryScope, last_index: int):
        with self._lock:
            key = scope.to_key()
            buffer = self._buffers.get(key, [])
            offset = self._offsets.get(key, 0)
            drop = max(0, min(len(buffer), last_index + 1 - offset))
            self._buffers[key] = buffer[drop:]
            self._offsets[key] = offset + drop

    def reset(self, scope: Optional[MemoryScope] = None):
        super().reset(scope)
        with self._lock:
            if scope is None:
                self._buffers.clear()
                self._offsets.clear()
            else:
                self._buffers.pop(scope.to_key(), None)
                self._offsets.pop(scope.to_key(), None)


def count_user_turns(messages: Sequence) -> int:
    return sum(1 for m in messages if isinstance(m, HumanMessage))
