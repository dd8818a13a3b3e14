"""
Token counting and the long-term memory injection budget.

Counting is pluggable: ``HeuristicTokenizer`` needs no setup, while
``TiktokenTokenizer`` uses the cl100k_base encoding.
"""

import json
import logging
from typing import Optional, Sequence

from langchain_core.messages import AIMessage, SystemMessage

from .config import BudgetConfig
from .types import MemoryRecord, Tokenizer

logger = logging.getLogger(__name__)

MESSAGE_OVERHEAD_TOKENS = 4  # role, separators
TOOL_CALL_OVERHEAD_TOKENS = 10


class HeuristicTokenizer:
    """Rough estimate: ~3 chars per token for mixed CJK/English."""

    chars_per_token = 3

    def count(self, text: str) -> int:
        if not text:
            return 0
        return max(1, len(text) // self.chars_per_token)

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        return text[: max_tokens * self.chars_per_token]

    def tail(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        return text[-max_tokens * self.chars_per_token:]


class TiktokenTokenizer:
    """Exact BPE counts through tiktoken. The encoding is loaded on first use."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._enc = None

    @property
    def encoding(self):
        if self._enc is None:
            import tiktoken

            self._enc = tiktoken.get_encoding(self.encoding_name)
        return self._enc

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0 or not text:
            return ""
        tokens = self.encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoding.decode(tokens[:max_tokens])

    def tail(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0 or not text:
            return ""
        tokens = self.encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoding.decode(tokens[-max_tokens:])


def message_text(msg) -> str:
    """Plain text of a message, flattening content blocks."""
    content = getattr(msg, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content) if content else ""


class TokenCounter:
    """Counts tokens for text and LangChain messages with a given tokenizer."""

    def __init__(self, tokenizer: Optional[Tokenizer] = None):
        self.tokenizer = tokenizer or HeuristicTokenizer()

    def count_text(self, text: Optional[str]) -> int:
        return self.tokenizer.count(text or "")

    def count_message(self, msg) -> int:
        content = getattr(msg, "content", "")
        total = MESSAGE_OVERHEAD_TOKENS
        if isinstance(content, str):
            total += self.count_text(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, str):
                    total += self.count_text(block)
                elif isinstance(block, dict):
                    btype = block.get("type", "")
                    if btype in ("thinking", "reasoning"):
                        total += self.count_text(
                            block.get("thinking", "") or block.get("reasoning", "")
                        )
                    elif btype == "text":
                        total += self.count_text(block.get("text", ""))
                    elif btype in ("tool_use", "tool_call"):
                        args = block.get("input") or block.get("args") or {}
                        total += self.count_text(json.dumps(args, ensure_ascii=False))
                        total += TOOL_CALL_OVERHEAD_TOKENS

        if isinstance(msg, AIMessage):
            for call in msg.tool_calls or []:
                total += self.count_text(call.get("name", ""))
                total += self.count_text(json.dumps(call.get("args") or {}, ensure_ascii=False))
                total += TOOL_CALL_OVERHEAD_TOKENS
        return total

    def count_messages(
        self,
        messages: Sequence,
        start: int = 0,
        exclude_system: bool = False,
    ) -> int:
        """Total tokens of ``messages[start:]``, optionally skipping system messages."""
        total = 0
        for msg in messages[max(0, start):]:
            if exclude_system and isinstance(msg, SystemMessage):
                continue
            total += self.count_message(msg)
        return total


class ContextBudgetManager:
    """
    Decides how many tokens long-term memory may occupy in the live context
    and which records fit.
    """

    def __init__(
        self,
        max_context_tokens: int,
        config: Optional[BudgetConfig] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self.max_context_tokens = max_context_tokens
        self.config = config or BudgetConfig()
        self.counter = counter or TokenCounter()

    def calculate_available_budget(self, messages: Sequence, system_prompt: str = "") -> int:
        used = self.counter.count_text(system_prompt) + self.counter.count_messages(messages or [])
        reserved = int(self.max_context_tokens * self.config.reserved_for_generation_ratio)
        available_for_all = self.max_context_tokens - used - reserved
        budget = int(available_for_all * self.config.memory_budget_ratio)
        return max(self.config.min_memory_budget, budget)

    def select_within_budget(
        self, candidates: Sequence[MemoryRecord], budget: int
    ) -> list[MemoryRecord]:
        """
        Greedy selection by importance × decay, highest first.

        The top candidate is always returned when it alone exceeds the budget,
        so a positive budget with any candidates never yields an empty list.
        """
        if not candidates or budget <= 0:
            return []

        ranked = sorted(candidates, key=lambda r: r.priority, reverse=True)
        selected = []
        used = 0
        for record in ranked:
            tokens = self.estimate_record_tokens(record)
            if used + tokens <= budget:
                selected.append(record)
                used += tokens
            elif not selected:
                selected.append(record)
                break

        logger.debug(
            "Selected %d/%d memory records (%d tokens, budget %d)",
            len(selected), len(candidates), used, budget,
        )
        return selected

    def estimate_record_tokens(self, record: MemoryRecord) -> int:
        return self.counter.count_text(record.content) + self.config.record_token_overhead
