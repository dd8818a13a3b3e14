"""
Sliding window over short-term history.

Cuts are only made at safe cut points: a HumanMessage position where every
earlier tool call already has its ToolMessage reply. The system message is
always kept.
"""

import logging
from typing import Optional, Sequence

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from .config import SlidingWindowConfig
from .token_budget import TokenCounter

logger = logging.getLogger(__name__)


def pending_tool_call_ids(messages: Sequence) -> set[str]:
    """Tool call ids issued in ``messages`` that have no ToolMessage reply yet."""
    pending: set[str] = set()
    for msg in messages:
        if isinstance(msg, AIMessage):
            for call in msg.tool_calls or []:
                if call.get("id"):
                    pending.add(call["id"])
        elif isinstance(msg, ToolMessage):
            pending.discard(msg.tool_call_id)
    return pending


def safe_cut_points(messages: Sequence) -> list[int]:
    """Indices of HumanMessages where no tool call is awaiting its reply."""
    points = []
    pending: set[str] = set()
    for i, msg in enumerate(messages):
        if isinstance(msg, HumanMessage) and not pending:
            points.append(i)
        if isinstance(msg, AIMessage):
            for call in msg.tool_calls or []:
                if call.get("id"):
                    pending.add(call["id"])
        elif isinstance(msg, ToolMessage):
            pending.discard(msg.tool_call_id)
    return points


class SlidingWindowEngine:
    """
    Drops the oldest turns once a turn limit or a token threshold is crossed.

    Usage:
        engine = SlidingWindowEngine(max_context_tokens=128_000)
        if engine.should_slide(messages):
            messages = engine.slide(messages)
    """

    def __init__(
        self,
        max_context_tokens: int,
        config: Optional[SlidingWindowConfig] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self.max_context_tokens = max_context_tokens
        self.config = config or SlidingWindowConfig()
        self.counter = counter or TokenCounter()

    @property
    def trigger_tokens(self) -> int:
        return int(self.max_context_tokens * self.config.trigger_threshold)

    @property
    def target_tokens(self) -> int:
        return int(self.max_context_tokens * self.config.target_threshold)

    def should_slide(self, messages: Sequence) -> bool:
        if not messages:
            return False

        # Never slide in the middle of a tool exchange
        if pending_tool_call_ids(messages):
            logger.debug("Pending tool calls present, not sliding")
            return False

        max_turns = self.config.max_turns
        if max_turns is not None and len(safe_cut_points(messages)) > max_turns:
            return True

        if self.config.auto_token_protection:
            tokens = self.counter.count_messages(messages, exclude_system=True)
            return tokens > self.trigger_tokens

        return False

    def slide(self, messages: Sequence) -> list:
        """Return a new list with the oldest turns removed. The input is not modified."""
        messages = list(messages)
        system_msg = _find_system_message(messages)
        cut_points = safe_cut_points(messages)
        if not cut_points:
            return messages

        turns_to_keep = self._turns_to_keep(messages, cut_points, system_msg)
        cut = cut_points[max(0, len(cut_points) - turns_to_keep)]

        result = [system_msg] if system_msg is not None else []
        result.extend(m for m in messages[cut:] if not isinstance(m, SystemMessage))

        logger.info(
            "Sliding window: kept %d of %d turns (%d -> %d messages)",
            min(turns_to_keep, len(cut_points)), len(cut_points), len(messages), len(result),
        )
        return result

    def evicted_messages(self, messages: Sequence) -> list:
        """Non-system messages that ``slide`` would drop."""
        kept = {id(m) for m in self.slide(messages)}
        return [m for m in messages if id(m) not in kept and not isinstance(m, SystemMessage)]

    def _turns_to_keep(self, messages: list, cut_points: list[int], system_msg) -> int:
        if self.config.max_turns is not None:
            return max(1, self.config.max_turns)

        system_tokens = self.counter.count_message(system_msg) if system_msg is not None else 0
        budget = self.target_tokens - system_tokens

        for keep in range(len(cut_points), 0, -1):
            start = cut_points[len(cut_points) - keep]
            if self.counter.count_messages(messages, start=start, exclude_system=True) <= budget:
                return keep
        return 1


def _find_system_message(messages: Sequence):
    for msg in messages:
        if isinstance(msg, SystemMessage):
            return msg
    return None
