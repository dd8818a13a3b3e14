"""
LLM-backed memory extraction.

Conversation messages are chunked by user turns, long messages are
truncated, and each chunk is sent to the chat model, which answers with a
JSON array of memory candidates.
"""

import json
import logging
import re
from typing import Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

from .config import ExtractionConfig
from .token_budget import HeuristicTokenizer, message_text
from .types import MemoryRecord, MemoryScope, MemoryType, Tokenizer

logger = logging.getLogger(__name__)

TRUNCATED_SUFFIX = "\n[truncated]"

MEMORY_EXTRACTION_PROMPT = """Analyze the following conversation and extract memorable information about the user.

Conversation:
{conversation}

Return a JSON array of memories. Each memory has:
- "content": a short, self-contained statement about the user
- "type": one of FACT, PREFERENCE, GOAL, EPISODE, RELATIONSHIP
- "importance": a number from 0.0 to 1.0

Importance guidelines:
- 0.9-1.0: critical (identity, strong preferences, long-term goals)
- 0.7-0.8: useful (habits, ongoing projects)
- 0.5-0.6: nice to know
- below 0.5: do not extract

Only extract information stated or clearly implied by the user. If nothing is worth remembering, return [].

Response format: [{{"content": "...", "type": "PREFERENCE", "importance": 0.8}}, ...]"""


class LLMMemoryExtractor:
    """Extracts memory candidates from conversation messages with a chat model."""

    def __init__(
        self,
        llm,
        config: Optional[ExtractionConfig] = None,
        tokenizer: Optional[Tokenizer] = None,
    ):
        self._llm = llm
        self.config = config or ExtractionConfig()
        self.tokenizer = tokenizer or HeuristicTokenizer()

    def extract(self, scope: MemoryScope, messages: Sequence) -> list[MemoryRecord]:
        records = []
        for chunk in chunk_by_user_turns(messages, self.config.max_turns_per_extraction):
            conversation = self._format(chunk)
            if not conversation.strip():
                continue
            records.extend(self._extract_chunk(scope, conversation))
        return records

    def _extract_chunk(self, scope: MemoryScope, conversation: str) -> list[MemoryRecord]:
        prompt = MEMORY_EXTRACTION_PROMPT.format(conversation=conversation)
        try:
            response = self._llm.invoke([{"role": "user", "content": prompt}])
            raw = message_text(response) if hasattr(response, "content") else str(response)
        except Exception as e:
            logger.warning("Memory extraction call failed: %s", e)
            return []

        records = []
        for item in parse_json_array(raw):
            record = _to_record(scope, item)
            if record is not None:
                records.append(record)
        logger.debug("Extracted %d memory candidates for %s", len(records), scope)
        return records

    def _format(self, messages: Sequence) -> str:
        lines = []
        for msg in messages:
            content = message_text(msg)
            if not content.strip():
                continue
            if self.tokenizer.count(content) > self.config.max_tokens_per_message:
                content = (
                    self.tokenizer.truncate(content, self.config.max_tokens_per_message)
                    + TRUNCATED_SUFFIX
                )
            role = type(msg).__name__.replace("Message", "")
            lines.append(f"{role}: {content}")
        return "\n".join(lines)


def chunk_by_user_turns(messages: Sequence, turns_per_chunk: int) -> list[list]:
    """Split messages into chunks of at most ``turns_per_chunk`` user turns."""
    chunks: list[list] = []
    current: list = []
    turns = 0
    for msg in messages:
        if isinstance(msg, SystemMessage):
            continue
        if isinstance(msg, HumanMessage):
            if turns >= max(1, turns_per_chunk):
                chunks.append(current)
                current, turns = [], 0
            turns += 1
        current.append(msg)
    if current:
        chunks.append(current)
    return chunks


def parse_json_array(raw: str) -> list:
    """Parse a JSON array from a model reply, tolerating prose and code fences."""
    raw = (raw or "").strip()
    if not raw:
        return []
    try:
        if raw.startswith("["):
            data = json.loads(raw)
        else:
            match = re.search(r"\[.*\]", raw, re.DOTALL)
            data = json.loads(match.group()) if match else []
    except ValueError as e:
        logger.warning("Failed to parse extraction output: %s", e)
        return []
    return data if isinstance(data, list) else []


def _to_record(scope: MemoryScope, item) -> Optional[MemoryRecord]:
    if not isinstance(item, dict):
        return None
    content = str(item.get("content") or "").strip()
    if not content:
        return None

    memory_type = MemoryType.parse(item.get("type"))
    importance = item.get("importance")
    if not isinstance(importance, (int, float)) or isinstance(importance, bool):
        importance = None

    return MemoryRecord.create(
        content,
        type=memory_type,
        importance=importance,
        scope=scope.user_scope(),
        session_id=scope.session_id,
    )
