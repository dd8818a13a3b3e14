"""
LangChain tool exposing long-term memory recall to the agent.

Built with the ``@tool`` decorator from LangChain 1.0; the recall service
and scope are bound through a closure.
"""

from langchain.tools import tool

from .recall import TOOL_NAME, RecallService
from .types import MemoryScope

NO_MEMORY_MESSAGE = "No relevant memories found."


def create_recall_memory_tool(recall_service: RecallService, scope: MemoryScope):
    """Build a ``recall_memory`` tool bound to one memory scope."""

    @tool(TOOL_NAME)
    def recall_memory(query: str) -> str:
        """
        Recall long-term memories about the user.

        Use this when earlier preferences, facts, goals or past events about
        the user would help answer the current request.

        Args:
            query: What to look for, e.g. "coffee preference"
        """
        records = recall_service.recall(query, scope)
        if not records:
            return NO_MEMORY_MESSAGE
        return recall_service.format_memory_content(records)

    return recall_memory
