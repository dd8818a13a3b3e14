"""
Memory engine configuration.

Every threshold used by the engine is a named default here; components
receive the relevant sub-config and never hard-code ratios.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .model_limits import ModelLimitRegistry
from .types import ConflictStrategy


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "")
    return int(value) if value else None


def _check_ratio(name: str, value: float):
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass
class SlidingWindowConfig:
    """Turn/token limits for the sliding window."""

    max_turns: Optional[int] = None  # None = token-driven only
    trigger_threshold: float = 0.8
    target_threshold: float = 0.6
    auto_token_protection: bool = True

    def __post_init__(self):
        _check_ratio("trigger_threshold", self.trigger_threshold)
        _check_ratio("target_threshold", self.target_threshold)


@dataclass
class CompressionConfig:
    """Summary compression settings."""

    trigger_threshold: float = 0.8
    keep_recent_turns: int = 5
    keep_tokens: int = 15000
    min_summary_tokens: int = 500
    max_summary_tokens: int = 4000

    # Oversized tool results are offloaded to disk
    max_tool_result_tokens: int = 30000
    tool_result_head_tokens: int = 500
    tool_result_tail_tokens: int = 500
    tool_result_dir: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "langchain-memory"
    )

    def __post_init__(self):
        _check_ratio("trigger_threshold", self.trigger_threshold)


@dataclass
class BudgetConfig:
    """Token budget for injecting long-term memory into context."""

    memory_budget_ratio: float = 0.2
    reserved_for_generation_ratio: float = 0.3
    min_memory_budget: int = 200
    record_token_overhead: int = 10  # bullet, type label, newline

    def __post_init__(self):
        _check_ratio("memory_budget_ratio", self.memory_budget_ratio)
        _check_ratio("reserved_for_generation_ratio", self.reserved_for_generation_ratio)


@dataclass
class ExtractionConfig:
    """Background long-term memory extraction."""

    max_buffer_turns: int = 10
    max_buffer_tokens: int = 2000  # rolling buffer only
    extract_on_session_end: bool = True
    async_extraction: bool = True
    extraction_timeout: float = 30.0  # seconds
    batch_embeddings: bool = True
    enable_conflict_resolution: bool = True

    # Extractor chunking
    max_turns_per_extraction: int = 5
    max_tokens_per_message: int = 1000


@dataclass
class ConflictConfig:
    default_strategy: ConflictStrategy = ConflictStrategy.NEWEST_WITH_MERGE
    similar_top_k: int = 3


@dataclass
class RecallConfig:
    default_max_records: int = 5


@dataclass
class MemoryConfig:
    """Top-level configuration for the memory engine."""

    model_name: str = ""
    # Context window (0 = resolve from model name through the registry)
    context_window: int = 0
    # Embeddings for long-term memory (empty = reuse API credentials)
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""
    embedding_api_key: str = ""

    sliding_window: SlidingWindowConfig = field(default_factory=SlidingWindowConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    conflict: ConflictConfig = field(default_factory=ConflictConfig)
    recall: RecallConfig = field(default_factory=RecallConfig)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "MemoryConfig":
        """Load configuration from environment variables (and a .env file if present)."""
        load_dotenv(dotenv_path)
        return cls(
            model_name=os.getenv("MEMORY_MODEL_NAME", ""),
            context_window=int(os.getenv("MEMORY_CONTEXT_WINDOW", "0")),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            sliding_window=SlidingWindowConfig(
                max_turns=_env_optional_int("MEMORY_WINDOW_MAX_TURNS"),
                trigger_threshold=float(os.getenv("MEMORY_WINDOW_TRIGGER_THRESHOLD", "0.8")),
                target_threshold=float(os.getenv("MEMORY_WINDOW_TARGET_THRESHOLD", "0.6")),
                auto_token_protection=_env_bool("MEMORY_WINDOW_AUTO_TOKEN_PROTECTION", True),
            ),
            compression=CompressionConfig(
                trigger_threshold=float(os.getenv("MEMORY_COMPRESSION_TRIGGER_THRESHOLD", "0.8")),
                keep_recent_turns=int(os.getenv("MEMORY_COMPRESSION_KEEP_RECENT_TURNS", "5")),
                keep_tokens=int(os.getenv("MEMORY_COMPRESSION_KEEP_TOKENS", "15000")),
                max_tool_result_tokens=int(os.getenv("MEMORY_MAX_TOOL_RESULT_TOKENS", "30000")),
            ),
            budget=BudgetConfig(
                memory_budget_ratio=float(os.getenv("MEMORY_BUDGET_RATIO", "0.2")),
                reserved_for_generation_ratio=float(
                    os.getenv("MEMORY_RESERVED_FOR_GENERATION_RATIO", "0.3")
                ),
                min_memory_budget=int(os.getenv("MEMORY_MIN_BUDGET", "200")),
            ),
            extraction=ExtractionConfig(
                max_buffer_turns=int(os.getenv("MEMORY_EXTRACTION_MAX_BUFFER_TURNS", "10")),
                max_buffer_tokens=int(os.getenv("MEMORY_EXTRACTION_MAX_BUFFER_TOKENS", "2000")),
                extract_on_session_end=_env_bool("MEMORY_EXTRACT_ON_SESSION_END", True),
                async_extraction=_env_bool("MEMORY_ASYNC_EXTRACTION", True),
                extraction_timeout=float(os.getenv("MEMORY_EXTRACTION_TIMEOUT", "30")),
                enable_conflict_resolution=_env_bool("MEMORY_ENABLE_CONFLICT_RESOLUTION", True),
            ),
            conflict=ConflictConfig(
                default_strategy=ConflictStrategy(
                    os.getenv("MEMORY_CONFLICT_STRATEGY", ConflictStrategy.NEWEST_WITH_MERGE.value)
                ),
                similar_top_k=int(os.getenv("MEMORY_CONFLICT_TOP_K", "3")),
            ),
            recall=RecallConfig(
                default_max_records=int(os.getenv("MEMORY_RECALL_MAX_RECORDS", "5")),
            ),
        )

    def get_context_window(self, registry: Optional[ModelLimitRegistry] = None) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        if registry is None:
            registry = ModelLimitRegistry().load()
        return registry.max_input_tokens(self.model_name)
