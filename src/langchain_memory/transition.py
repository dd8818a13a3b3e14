"""
Session-boundary transition from short-term conversation to long-term memory.
"""

import logging
from typing import Optional, Sequence

from .config import ConflictConfig
from .conflict import ConflictResolver, Reconciliation, delete_superseded, reconcile_with_store
from .types import MemoryExtractor, MemoryRecord, MemoryScope, MemoryStore

logger = logging.getLogger(__name__)


class TransitionService:
    """
    Extract, reconcile against stored memory, embed and persist.

    Records are embedded one at a time; a record whose embedding fails is
    skipped while the rest are still saved.
    """

    def __init__(
        self,
        extractor: MemoryExtractor,
        store: MemoryStore,
        embeddings,
        resolver: Optional[ConflictResolver] = None,
        config: Optional[ConflictConfig] = None,
    ):
        self.extractor = extractor
        self.store = store
        self.embeddings = embeddings
        self.resolver = resolver or ConflictResolver()
        self.config = config or ConflictConfig()

    def extract_and_save(self, scope: MemoryScope, messages: Sequence) -> list[MemoryRecord]:
        """Returns the records that were actually persisted."""
        candidates = self.extractor.extract(scope, list(messages or []))
        if not candidates:
            return []

        reconciliation = self.resolve_conflicts_with_existing(scope, candidates)

        to_save, vectors = [], []
        for record in reconciliation.records:
            vector = self._embed(record)
            if vector is None:
                continue
            to_save.append(record)
            vectors.append(vector)

        if not to_save:
            return []

        self.store.save_all(to_save, vectors)
        delete_superseded(self.store, reconciliation, to_save)
        logger.info(
            "Saved %d of %d extracted memories for %s", len(to_save), len(candidates), scope
        )
        return to_save

    def resolve_conflicts_with_existing(
        self, scope: MemoryScope, records: Sequence[MemoryRecord]
    ) -> Reconciliation:
        return reconcile_with_store(
            self.resolver, self.store, scope, records,
            self.config.default_strategy, self.config.similar_top_k,
        )

    def on_session_end(self, scope: MemoryScope, session_messages: Sequence) -> list[MemoryRecord]:
        try:
            return self.extract_and_save(scope, session_messages)
        except Exception:
            logger.exception("Memory transition failed for %s", scope)
            return []

    def _embed(self, record: MemoryRecord) -> Optional[list[float]]:
        try:
            return self.embeddings.embed_query(record.content)
        except Exception as e:
            logger.warning("Failed to embed memory '%.40s', skipping: %s", record.content, e)
            return None
