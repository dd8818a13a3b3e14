"""
Long-term memory recall and re-injection.

Recalled records come back into the conversation as a synthetic
``recall_memory`` tool call plus its ToolMessage result, the same shape the
compression summary uses.
"""

import logging
import uuid
from typing import Optional, Sequence

from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from .config import RecallConfig
from .token_budget import ContextBudgetManager, message_text
from .types import MemoryRecord, MemoryScope, MemoryStore

logger = logging.getLogger(__name__)

TOOL_NAME = "recall_memory"
MEMORY_HEADER = "[User Memory]"


class RecallService:
    def __init__(
        self,
        store: MemoryStore,
        budget_manager: ContextBudgetManager,
        config: Optional[RecallConfig] = None,
        default_scope: Optional[MemoryScope] = None,
    ):
        self.store = store
        self.budget_manager = budget_manager
        self.config = config or RecallConfig()
        self.default_scope = default_scope

    def recall(self, query: Optional[str], scope: Optional[MemoryScope],
               max_records: Optional[int] = None) -> list[MemoryRecord]:
        """Similarity search in ``scope``. Blank queries and empty scopes give []."""
        if not query or not query.strip() or scope is None or scope.is_empty():
            return []
        # Records are stored per user, not per session
        scope = scope.user_scope()
        if scope.is_empty():
            return []
        limit = self.config.default_max_records if max_records is None else max_records
        try:
            return list(self.store.recall_similar(scope, query, limit))
        except Exception as e:
            logger.warning("Memory recall failed for %s: %s", scope, e)
            return []

    def recall_with_budget(
        self,
        query: Optional[str],
        messages: Sequence,
        system_prompt: str = "",
        scope: Optional[MemoryScope] = None,
    ) -> list[MemoryRecord]:
        """Recall twice the default count, then keep what fits the memory budget."""
        candidates = self.recall(
            query, scope or self.default_scope, self.config.default_max_records * 2
        )
        if not candidates:
            return []
        budget = self.budget_manager.calculate_available_budget(messages, system_prompt)
        return self.budget_manager.select_within_budget(candidates, budget)

    def format_as_tool_messages(self, records: Sequence[MemoryRecord]) -> list:
        if not records:
            return []
        call_id = f"memory_{uuid.uuid4().hex[:8]}"
        return [
            AIMessage(
                content="",
                tool_calls=[{
                    "id": call_id,
                    "name": TOOL_NAME,
                    "args": {"query": "recall relevant memories"},
                }],
            ),
            ToolMessage(
                content=self.format_memory_content(records),
                tool_call_id=call_id,
                name=TOOL_NAME,
            ),
        ]

    @staticmethod
    def format_memory_content(records: Sequence[MemoryRecord]) -> str:
        lines = [MEMORY_HEADER]
        for record in records:
            lines.append(f"- [{record.type.name}] {record.content}")
        return "\n".join(lines).strip()

    @staticmethod
    def extract_latest_user_query(messages: Sequence) -> Optional[str]:
        for msg in reversed(list(messages or [])):
            if isinstance(msg, HumanMessage):
                text = message_text(msg)
                if text.strip():
                    return text
        return None
