"""
Summary compression of old conversation turns.

Older turns are replaced by an LLM summary delivered as a synthetic
``memory_compress`` tool call and its ToolMessage result, so the compressed
history stays a valid tool-calling transcript.
"""

import logging
import time
from typing import Optional, Sequence

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from .config import CompressionConfig
from .token_budget import TokenCounter, message_text

logger = logging.getLogger(__name__)

COMPRESS_TOOL_NAME = "memory_compress"
SUMMARY_PREFIX = "[Previous Conversation Summary]\n"
SUMMARY_SUFFIX = "\n[End Summary]"

COMPRESSION_PROMPT = """Summarize the following conversation into a concise summary.
Requirements:
1. Preserve key facts, decisions, and context
2. Keep important user preferences and goals mentioned
3. Remove redundant back-and-forth and filler content
4. Use bullet points for clarity
5. Keep within {target_words} words

Conversation to summarize:
{conversation}

Output summary directly:"""


class CompressionEngine:
    """
    Replaces old turns with an LLM-generated summary.

    Usage:
        engine = CompressionEngine(llm, max_context_tokens=128_000)
        messages = engine.compress(messages)  # no-op below the trigger threshold
    """

    def __init__(
        self,
        llm=None,
        max_context_tokens: int = 128_000,
        config: Optional[CompressionConfig] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self._llm = llm
        self.max_context_tokens = max_context_tokens
        self.config = config or CompressionConfig()
        self.counter = counter or TokenCounter()

    @property
    def trigger_tokens(self) -> int:
        return int(self.max_context_tokens * self.config.trigger_threshold)

    @property
    def summary_target_tokens(self) -> int:
        return min(
            self.config.max_summary_tokens,
            max(self.config.min_summary_tokens, self.max_context_tokens // 10),
        )

    def should_compress(self, current_tokens: int) -> bool:
        if self._llm is None:
            return False
        return current_tokens >= self.trigger_tokens

    def compress(self, messages: Sequence) -> list:
        """
        Compress ``messages`` when they cross the trigger threshold.

        Returns the input unchanged when there is nothing worth compressing
        or the summary could not be produced.
        """
        messages = list(messages or [])
        if not messages or self._llm is None:
            return messages

        current_tokens = self.counter.count_messages(messages)
        if not self.should_compress(current_tokens):
            return messages

        logger.info(
            "Compressing messages: %d tokens, threshold %d", current_tokens, self.trigger_tokens
        )

        system_msg = next((m for m in messages if isinstance(m, SystemMessage)), None)
        conversation = [m for m in messages if not isinstance(m, SystemMessage)]

        if len(conversation) < 2:
            logger.debug("Not enough messages to compress")
            return messages

        last_user_index = _last_user_index(conversation)
        if last_user_index < 0:
            logger.debug("No user message found, skipping compression")
            return messages

        keep_from = self._keep_from_index(conversation, last_user_index)
        if keep_from <= 0:
            logger.warning("No messages left to compress after keeping recent turns")
            return messages

        preserved_user = None
        if keep_from > last_user_index:
            preserved_user = conversation[last_user_index]
            to_compress = [m for i, m in enumerate(conversation[:keep_from]) if i != last_user_index]
        else:
            to_compress = conversation[:keep_from]
        to_keep = conversation[keep_from:]

        if not to_compress:
            logger.debug("Nothing to compress")
            return messages

        summary = self._summarize(to_compress)
        if not summary:
            logger.warning("Summarization returned empty result, keeping original messages")
            return messages

        result = _build_compressed(system_msg, summary, preserved_user, to_keep)
        logger.info(
            "Compression complete: %d -> %d tokens, %d -> %d messages",
            current_tokens, self.counter.count_messages(result), len(messages), len(result),
        )
        return result

    # ── keep-from calculation ──

    def _keep_from_index(self, conversation: list, last_user_index: int) -> int:
        keep_from = _align_to_tool_chain(
            conversation, self._keep_from_by_turns_and_tokens(conversation, last_user_index)
        )

        kept_tokens = self.counter.count_messages(conversation, start=keep_from)
        if kept_tokens >= self.trigger_tokens:
            # Recent turns alone are over the limit: keep only the active chain
            logger.info(
                "Recent turns exceed threshold (%d >= %d), keeping only the active chain",
                kept_tokens, self.trigger_tokens,
            )
            keep_from = max(keep_from, _align_to_tool_chain(conversation, len(conversation) - 1))
        return keep_from

    def _keep_from_by_turns_and_tokens(self, conversation: list, last_user_index: int) -> int:
        turn_count = 0
        accumulated = 0
        index_by_turns = last_user_index
        index_by_tokens = 0
        budget_exceeded = False

        for i in range(len(conversation) - 1, -1, -1):
            msg = conversation[i]
            if not budget_exceeded:
                accumulated += self.counter.count_message(msg)
                if accumulated > self.config.keep_tokens:
                    index_by_tokens = i + 1
                    budget_exceeded = True

            if i < last_user_index and turn_count < self.config.keep_recent_turns:
                index_by_turns = i
                if isinstance(msg, HumanMessage):
                    turn_count += 1

        return max(index_by_turns, index_by_tokens)

    # ── summarization ──

    def _summarize(self, to_compress: list) -> str:
        conversation = format_for_summary(to_compress)
        if not conversation.strip():
            return ""

        target_words = int(self.summary_target_tokens * 0.75)
        prompt = COMPRESSION_PROMPT.format(target_words=target_words, conversation=conversation)
        try:
            response = self._llm.invoke([{"role": "user", "content": prompt}])
            summary = message_text(response) if hasattr(response, "content") else str(response)
        except Exception as e:
            logger.warning("Failed to generate compression summary: %s", e)
            return ""

        summary = summary.strip()
        if not summary:
            return ""
        return SUMMARY_PREFIX + summary + SUMMARY_SUFFIX


def format_for_summary(messages: Sequence) -> str:
    """Render messages as ``Role: content`` lines for the summary prompt."""
    lines = []
    for msg in messages:
        if isinstance(msg, SystemMessage):
            continue
        if isinstance(msg, AIMessage) and msg.tool_calls:
            names = ", ".join(call.get("name") or "unknown" for call in msg.tool_calls)
            lines.append(f"Assistant: [Called tools: {names}]")

        content = message_text(msg)
        if content.strip():
            if isinstance(msg, HumanMessage):
                role = "User"
            elif isinstance(msg, AIMessage):
                role = "Assistant"
            elif isinstance(msg, ToolMessage):
                role = "Tool"
            else:
                role = "Unknown"
            lines.append(f"{role}: {content}")
    return "\n".join(lines)


def is_compression_summary(msg) -> bool:
    return isinstance(msg, ToolMessage) and getattr(msg, "name", None) == COMPRESS_TOOL_NAME


def _build_compressed(system_msg, summary: str, preserved_user, to_keep: list) -> list:
    call_id = f"{COMPRESS_TOOL_NAME}_{int(time.time() * 1000)}"
    tool_call_msg = AIMessage(
        content="",
        tool_calls=[{"id": call_id, "name": COMPRESS_TOOL_NAME, "args": {}}],
    )
    tool_result_msg = ToolMessage(content=summary, tool_call_id=call_id, name=COMPRESS_TOOL_NAME)

    result = [system_msg] if system_msg is not None else []
    result.extend([tool_call_msg, tool_result_msg])
    if preserved_user is not None:
        result.append(preserved_user)
    result.extend(to_keep)
    return result


def _last_user_index(messages: Sequence) -> int:
    for i in range(len(messages) - 1, -1, -1):
        if isinstance(messages[i], HumanMessage):
            return i
    return -1


def _align_to_tool_chain(messages: Sequence, index: int) -> int:
    """Move ``index`` back so the kept suffix never starts with an orphaned ToolMessage."""
    while 0 < index < len(messages) and isinstance(messages[index], ToolMessage):
        index -= 1
    return index
