"""
Memory middleware.

``MemoryMiddleware`` is the plain entry point for an orchestration loop:
call ``apply`` before each model call, ``record_turns`` and
``extract_if_needed`` after each turn, and ``on_session_end`` when the
conversation closes.

``MemoryAgentMiddleware`` plugs the same pipeline into ``create_agent``:
its ``before_model`` hook rewrites the agent state when the window changes,
and ``wrap_tool_call`` condenses oversized tool results.
"""

import logging
from typing import Any, Optional, Sequence

from langchain.agents.middleware import AgentMiddleware
from langchain_core.messages import (
    AIMessage,
    HumanMessage,
    RemoveMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph.message import REMOVE_ALL_MESSAGES

from .compression import COMPRESS_TOOL_NAME, CompressionEngine
from .condenser import condense_tool_message
from .config import MemoryConfig
from .conflict import ConflictResolver
from .coordinator import BaseExtractionCoordinator, ExtractionCoordinator
from .extractor import LLMMemoryExtractor
from .model_limits import ModelLimitRegistry
from .recall import TOOL_NAME as RECALL_TOOL_NAME
from .recall import RecallService
from .sliding_window import SlidingWindowEngine
from .token_budget import ContextBudgetManager, TokenCounter
from .transition import TransitionService
from .types import ChatHistoryStore, MemoryRecord, MemoryScope, MemoryStore

logger = logging.getLogger(__name__)

# Tool exchanges that carry memory back into the window, never new facts
MEMORY_TOOL_NAMES = frozenset({COMPRESS_TOOL_NAME, RECALL_TOOL_NAME})


class MemoryMiddleware:
    """
    Short-term window management plus long-term memory hooks.

    Usage:
        middleware = MemoryMiddleware.build(config, llm, embeddings, store, history)
        messages = middleware.apply(messages)
        # Send trimmed messages to LLM instead of full history
    """

    def __init__(
        self,
        config: MemoryConfig,
        sliding_window: Optional[SlidingWindowEngine] = None,
        compression: Optional[CompressionEngine] = None,
        coordinator: Optional[BaseExtractionCoordinator] = None,
        recall_service: Optional[RecallService] = None,
        transition: Optional[TransitionService] = None,
        counter: Optional[TokenCounter] = None,
        system_prompt: str = "",
        session_id: Optional[str] = None,
    ):
        self.config = config
        self.sliding_window = sliding_window
        self.compression = compression
        self.coordinator = coordinator
        self.recall_service = recall_service
        self.transition = transition
        self.counter = counter or TokenCounter()
        self.system_prompt = system_prompt
        self.session_id = session_id

    @classmethod
    def build(
        cls,
        config: MemoryConfig,
        llm=None,
        embeddings=None,
        store: Optional[MemoryStore] = None,
        history: Optional[ChatHistoryStore] = None,
        registry: Optional[ModelLimitRegistry] = None,
        counter: Optional[TokenCounter] = None,
        system_prompt: str = "",
        session_id: Optional[str] = None,
    ) -> "MemoryMiddleware":
        """Wire every component from one config. Long-term parts need a store."""
        counter = counter or TokenCounter()
        max_tokens = config.get_context_window(registry)

        coordinator = recall_service = transition = None
        if store is not None and llm is not None and embeddings is not None:
            extractor = LLMMemoryExtractor(llm, config.extraction, counter.tokenizer)
            resolver = ConflictResolver(llm)
            transition = TransitionService(extractor, store, embeddings, resolver, config.conflict)
            if history is not None:
                coordinator = ExtractionCoordinator(
                    extractor, store, embeddings, history,
                    config=config.extraction, resolver=resolver,
                    conflict_config=config.conflict,
                )
        if store is not None:
            recall_service = RecallService(
                store, ContextBudgetManager(max_tokens, config.budget, counter), config.recall
            )

        return cls(
            config,
            sliding_window=SlidingWindowEngine(max_tokens, config.sliding_window, counter),
            compression=CompressionEngine(llm, max_tokens, config.compression, counter),
            coordinator=coordinator,
            recall_service=recall_service,
            transition=transition,
            counter=counter,
            system_prompt=system_prompt,
            session_id=session_id,
        )

    def apply(self, messages: Sequence) -> list:
        """
        Fit ``messages`` into the context window: slide first, then compress.

        Returns a new list; the input is not modified.
        """
        result = list(messages or [])
        if not result:
            return result

        if self.sliding_window is not None and self.sliding_window.should_slide(result):
            result = self.sliding_window.slide(result)

        if self.compression is not None:
            result = self.compression.compress(result)
        return result

    def record_turns(self, scope: MemoryScope, messages: Sequence) -> int:
        """
        Append conversation messages the coordinator's chat history has not
        seen yet. System prompts and memory tool exchanges are skipped.

        Returns the number of messages added.
        """
        history = getattr(self.coordinator, "history", None)
        if history is None or not messages:
            return 0
        try:
            stored = history.load(scope)
            seen_ids = {m.id for m in stored if getattr(m, "id", None)}
            added = 0
            for msg in messages:
                if isinstance(msg, SystemMessage) or _is_memory_message(msg):
                    continue
                msg_id = getattr(msg, "id", None)
                if msg_id:
                    if msg_id in seen_ids:
                        continue
                    seen_ids.add(msg_id)
                elif msg in stored:
                    continue
                history.save(scope, msg)
                stored.append(msg)
                added += 1
            return added
        except Exception as e:
            logger.warning("Failed to record chat history for %s: %s", scope, e)
            return 0

    def extract_if_needed(self, scope: MemoryScope) -> bool:
        if self.coordinator is None:
            return False
        try:
            return self.coordinator.extract_if_needed(scope)
        except Exception as e:
            logger.warning("Memory extraction trigger failed for %s: %s", scope, e)
            return False

    def recall_with_budget(self, query: Optional[str], messages: Sequence,
                           scope: Optional[MemoryScope] = None) -> list[MemoryRecord]:
        if self.recall_service is None:
            return []
        return self.recall_service.recall_with_budget(query, messages, self.system_prompt, scope)

    def format_as_tool_messages(self, records: Sequence[MemoryRecord]) -> list:
        if self.recall_service is None:
            return []
        return self.recall_service.format_as_tool_messages(records)

    def inject_memories(self, messages: Sequence, scope: MemoryScope) -> list:
        """Insert recalled memories right before the latest user message."""
        messages = list(messages or [])
        if self.recall_service is None:
            return messages

        query = self.recall_service.extract_latest_user_query(messages)
        records = self.recall_with_budget(query, messages, scope)
        injected = self.format_as_tool_messages(records)
        if not injected:
            return messages

        position = next(
            (i for i in range(len(messages) - 1, -1, -1) if isinstance(messages[i], HumanMessage)),
            len(messages),
        )
        logger.info("Injecting %d memory records for %s", len(records), scope)
        return messages[:position] + injected + messages[position:]

    def condense_tool_message(self, msg: ToolMessage) -> ToolMessage:
        return condense_tool_message(
            msg, self.session_id, self.config.compression, self.counter.tokenizer
        )

    def on_session_end(self, scope: MemoryScope, messages: Optional[Sequence] = None):
        """Flush long-term memory for a closing session. Never raises."""
        try:
            if self.coordinator is not None:
                self.record_turns(scope, messages)
                self.coordinator.on_session_end(scope)
            elif self.transition is not None and messages:
                self.transition.on_session_end(scope, messages)
        except Exception:
            logger.exception("Session-end memory flush failed for %s", scope)


class MemoryAgentMiddleware(AgentMiddleware):
    """Runs a ``MemoryMiddleware`` inside a LangChain agent."""

    def __init__(self, memory: MemoryMiddleware, scope: Optional[MemoryScope] = None):
        super().__init__()
        self.memory = memory
        self.scope = scope

    def before_model(self, state, runtime) -> Optional[dict[str, Any]]:
        messages = list(state.get("messages", []))
        if not messages:
            return None

        if self.scope is not None:
            self.memory.record_turns(self.scope, messages)
        updated = self.memory.apply(messages)
        if self.scope is not None:
            self.memory.extract_if_needed(self.scope)

        if _same_messages(messages, updated):
            return None

        logger.info("Memory window updated agent state: %d -> %d messages",
                    len(messages), len(updated))
        return {"messages": [RemoveMessage(id=REMOVE_ALL_MESSAGES), *updated]}

    def wrap_tool_call(self, request, handler):
        result = handler(request)
        if isinstance(result, ToolMessage):
            return self.memory.condense_tool_message(result)
        return result


def _is_memory_message(msg) -> bool:
    if isinstance(msg, ToolMessage):
        return getattr(msg, "name", None) in MEMORY_TOOL_NAMES
    if isinstance(msg, AIMessage) and msg.tool_calls:
        return all(call.get("name") in MEMORY_TOOL_NAMES for call in msg.tool_calls)
    return False


def _same_messages(before: Sequence, after: Sequence) -> bool:
    return len(before) == len(after) and all(a is b for a, b in zip(before, after))
