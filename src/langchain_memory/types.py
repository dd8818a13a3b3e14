"""
Core data types for long-term memory.

MemoryRecord and MemoryScope are frozen: conflict resolution produces new
records instead of mutating stored ones.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol, Sequence, runtime_checkable


class MemoryType(Enum):
    """Kind of long-term memory, with its default importance and daily decay rate."""

    FACT = ("Objective information about the user", 0.7, 0.02)
    PREFERENCE = ("User preferences and habits", 0.8, 0.015)
    GOAL = ("Long-term goals and intentions", 0.9, 0.01)
    EPISODE = ("Important interaction events", 0.6, 0.05)
    RELATIONSHIP = ("Relationships mentioned by user", 0.75, 0.01)

    def __init__(self, description: str, default_importance: float, decay_rate: float):
        self.description = description
        self.default_importance = default_importance
        self.decay_rate = decay_rate

    @classmethod
    def parse(cls, value: Any, default: Optional["MemoryType"] = None) -> "MemoryType":
        """Parse a type name case-insensitively, falling back to ``default`` (FACT)."""
        if isinstance(value, MemoryType):
            return value
        if isinstance(value, str) and value.strip().upper() in cls.__members__:
            return cls[value.strip().upper()]
        return default or cls.FACT


class ConflictStrategy(str, Enum):
    NEWEST_WINS = "newest_wins"
    IMPORTANCE_BASED = "importance_based"
    MERGE = "merge"
    NEWEST_WITH_MERGE = "newest_with_merge"

    @property
    def replaces_existing(self) -> bool:
        """Whether resolving with this strategy supersedes the stored records."""
        return self in (ConflictStrategy.MERGE, ConflictStrategy.NEWEST_WITH_MERGE)


@dataclass(frozen=True)
class MemoryScope:
    """Partition key for memory and chat history. Unset fields act as wildcards."""

    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def for_user(cls, user_id: str, tenant_id: Optional[str] = None) -> "MemoryScope":
        return cls(tenant_id=tenant_id, user_id=user_id)

    @classmethod
    def for_session(cls, user_id: str, session_id: str,
                    tenant_id: Optional[str] = None) -> "MemoryScope":
        return cls(tenant_id=tenant_id, user_id=user_id, session_id=session_id)

    def to_key(self) -> str:
        parts = []
        if self.tenant_id:
            parts.append(f"t:{self.tenant_id}")
        if self.user_id:
            parts.append(f"u:{self.user_id}")
        if self.session_id:
            parts.append(f"s:{self.session_id}")
        return "/".join(parts) if parts else "_global_"

    def user_scope(self) -> "MemoryScope":
        """Same tenant and user, without the session."""
        return MemoryScope(tenant_id=self.tenant_id, user_id=self.user_id)

    def is_empty(self) -> bool:
        return not (self.tenant_id or self.user_id or self.session_id)

    def matches(self, other: Optional["MemoryScope"]) -> bool:
        """True if ``other`` falls inside this scope."""
        if other is None:
            return False
        if self.tenant_id and self.tenant_id != other.tenant_id:
            return False
        if self.user_id and self.user_id != other.user_id:
            return False
        if self.session_id and self.session_id != other.session_id:
            return False
        return True

    def __str__(self) -> str:
        return self.to_key()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MemoryRecord:
    """A durable fact about a scope. The embedding lives in the store, keyed by id."""

    content: str
    type: MemoryType = MemoryType.FACT
    scope: Optional[MemoryScope] = None
    importance: float = 0.5
    decay_factor: float = 1.0
    created_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def create(cls, content: str, type: MemoryType = MemoryType.FACT,
               importance: Optional[float] = None, **kwargs) -> "MemoryRecord":
        """Build a record, taking the type's default importance when none is given."""
        if importance is None:
            importance = type.default_importance
        return cls(content=content, type=type, importance=_clamp(importance), **kwargs)

    @property
    def priority(self) -> float:
        return self.importance * self.decay_factor

    def effective_score(self, similarity: float, access_count: int = 0) -> float:
        frequency_bonus = 1.0 + 0.1 * math.log1p(access_count)
        return similarity * self.importance * self.decay_factor * frequency_bonus


def decay_factor(record: MemoryRecord, now: Optional[datetime] = None) -> float:
    """Exponential decay exp(-rate * days) since the record was created."""
    now = now or _utcnow()
    days = max(0, (now - record.created_at).days)
    return math.exp(-record.type.decay_rate * days)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ── Collaborator contracts ──


@runtime_checkable
class Tokenizer(Protocol):
    def count(self, text: str) -> int: ...

    def truncate(self, text: str, max_tokens: int) -> str: ...

    def tail(self, text: str, max_tokens: int) -> str: ...


class MemoryStore(Protocol):
    def save(self, record: MemoryRecord, embedding: Sequence[float]) -> None: ...

    def save_all(self, records: Sequence[MemoryRecord],
                 embeddings: Sequence[Sequence[float]]) -> None: ...

    def delete(self, record_id: str) -> None: ...

    def recall_similar(self, scope: MemoryScope, text: str, k: int) -> list[MemoryRecord]: ...


class ChatHistoryStore(Protocol):
    def load(self, scope: MemoryScope) -> list: ...

    def load_unextracted(self, scope: MemoryScope) -> list: ...

    def count(self, scope: MemoryScope) -> int: ...

    def mark_extracted(self, scope: MemoryScope, last_index: int) -> None: ...

    def extracted_index(self, scope: MemoryScope) -> int: ...

    def save(self, scope: MemoryScope, message) -> None: ...


class MemoryExtractor(Protocol):
    def extract(self, scope: MemoryScope, messages: list) -> list[MemoryRecord]: ...
