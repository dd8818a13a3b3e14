"""
Conversational memory engine for LangChain agents.

Short-term: a sliding window and LLM summary compression keep the message
history under the model's context limit without splitting tool-call pairs.

Long-term: durable facts are extracted from finished turns in the
background, reconciled against what is already stored, and recalled into
the conversation within a token budget.
"""

from .compression import CompressionEngine
from .condenser import condense_tool_result
from .config import (
    BudgetConfig,
    CompressionConfig,
    ConflictConfig,
    ExtractionConfig,
    MemoryConfig,
    RecallConfig,
    SlidingWindowConfig,
)
from .conflict import ConflictGroup, ConflictResolver, extract_topic
from .coordinator import (
    ExtractionCoordinator,
    ExtractionStatus,
    RollingBufferCoordinator,
)
from .extractor import LLMMemoryExtractor
from .factory import create_memory_middleware
from .history import InMemoryChatHistoryStore
from .middleware import MemoryAgentMiddleware, MemoryMiddleware
from .model_limits import ModelLimitRegistry
from .recall import RecallService
from .sliding_window import SlidingWindowEngine
from .stores import InMemoryMemoryStore, PgVectorMemoryStore, connect_pg
from .token_budget import (
    ContextBudgetManager,
    HeuristicTokenizer,
    TiktokenTokenizer,
    TokenCounter,
)
from .tools import create_recall_memory_tool
from .transition import TransitionService
from .types import ConflictStrategy, MemoryRecord, MemoryScope, MemoryType

__all__ = [
    "BudgetConfig",
    "CompressionConfig",
    "CompressionEngine",
    "ConflictConfig",
    "ConflictGroup",
    "ConflictResolver",
    "ConflictStrategy",
    "ContextBudgetManager",
    "ExtractionConfig",
    "ExtractionCoordinator",
    "ExtractionStatus",
    "HeuristicTokenizer",
    "InMemoryChatHistoryStore",
    "InMemoryMemoryStore",
    "LLMMemoryExtractor",
    "MemoryAgentMiddleware",
    "MemoryConfig",
    "MemoryMiddleware",
    "MemoryRecord",
    "MemoryScope",
    "MemoryType",
    "ModelLimitRegistry",
    "PgVectorMemoryStore",
    "RecallConfig",
    "RecallService",
    "RollingBufferCoordinator",
    "SlidingWindowConfig",
    "SlidingWindowEngine",
    "TiktokenTokenizer",
    "TokenCounter",
    "TransitionService",
    "condense_tool_result",
    "connect_pg",
    "create_memory_middleware",
    "create_recall_memory_tool",
    "extract_topic",
]
