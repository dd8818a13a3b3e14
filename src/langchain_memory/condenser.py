"""
Tool result condenser.

Tool results above the token limit are written to a per-session file and
replaced by a head/tail excerpt that points at the file, so one oversized
result cannot flood the context window.
"""

import logging
import re
import time
from pathlib import Path
from typing import Optional

from langchain_core.messages import ToolMessage

from .config import CompressionConfig
from .token_budget import HeuristicTokenizer
from .types import Tokenizer

logger = logging.getLogger(__name__)

TRUNCATED_RESULT_TEMPLATE = """[Tool result truncated - full content saved to file]
Tool: {tool_name}
File: {path}
Total: {total} tokens (exceeds {limit} token limit)

=== HEAD (first {head_tokens} tokens) ===
{head}

=== ... truncated ... ===

=== TAIL (last {tail_tokens} tokens) ===
{tail}

[WARNING: This is a large file. Do NOT read the full file directly as it will be truncated again. Use file tools to read specific parts of the file as needed.]
File path: {path}"""


def should_condense(result: Optional[str], config: CompressionConfig,
                    tokenizer: Optional[Tokenizer] = None) -> bool:
    if not result:
        return False
    tokenizer = tokenizer or HeuristicTokenizer()
    return tokenizer.count(result) > config.max_tool_result_tokens


def condense_tool_result(
    tool_name: str,
    result: Optional[str],
    session_id: Optional[str] = None,
    config: Optional[CompressionConfig] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> Optional[str]:
    """
    Return ``result`` unchanged if it fits, otherwise save it to disk and
    return the excerpt. If the file cannot be written the original is kept.
    """
    config = config or CompressionConfig()
    tokenizer = tokenizer or HeuristicTokenizer()
    if not result:
        return result

    total = tokenizer.count(result)
    if total <= config.max_tool_result_tokens:
        return result

    try:
        path = _write_result_file(config.tool_result_dir, tool_name, result, session_id)
    except OSError as e:
        logger.error("Failed to save long tool result from %s, keeping original: %s", tool_name, e)
        return result

    logger.info(
        "Long tool result from %s saved to %s (%d tokens, limit %d)",
        tool_name, path, total, config.max_tool_result_tokens,
    )
    return TRUNCATED_RESULT_TEMPLATE.format(
        tool_name=tool_name,
        path=path,
        total=total,
        limit=config.max_tool_result_tokens,
        head_tokens=config.tool_result_head_tokens,
        head=tokenizer.truncate(result, config.tool_result_head_tokens),
        tail_tokens=config.tool_result_tail_tokens,
        tail=tokenizer.tail(result, config.tool_result_tail_tokens),
    )


def condense_tool_message(
    msg: ToolMessage,
    session_id: Optional[str] = None,
    config: Optional[CompressionConfig] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> ToolMessage:
    """Condensed copy of a ToolMessage, or the message itself if it fits."""
    content = msg.content if isinstance(msg.content, str) else str(msg.content)
    condensed = condense_tool_result(msg.name or "tool", content, session_id, config, tokenizer)
    if condensed == content:
        return msg
    return ToolMessage(
        content=condensed,
        tool_call_id=msg.tool_call_id,
        name=getattr(msg, "name", None),
        id=msg.id,
    )


def _write_result_file(base_dir: Path, tool_name: str, content: str,
                       session_id: Optional[str]) -> Path:
    session_dir = Path(base_dir) / (session_id or "default")
    session_dir.mkdir(parents=True, exist_ok=True)
    safe_name = re.sub(r"[^a-zA-Z0-9_-]", "_", tool_name or "tool")
    path = session_dir / f"{safe_name}_{int(time.time() * 1000)}.txt"
    path.write_text(content, encoding="utf-8")
    return path
