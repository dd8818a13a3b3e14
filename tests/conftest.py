"""
Shared pytest setup.

conftest.py is loaded automatically by pytest. It puts ``src/`` on the
module search path so tests can import ``langchain_memory`` without an
editable install, and provides fixtures used across the test modules.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src directory to PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_core.embeddings import DeterministicFakeEmbedding  # noqa: E402
from langchain_core.messages import AIMessage, HumanMessage  # noqa: E402

from langchain_memory.types import MemoryRecord, MemoryScope, MemoryType  # noqa: E402


@pytest.fixture
def scope():
    return MemoryScope(tenant_id="acme", user_id="alice", session_id="s1")


@pytest.fixture
def user_scope(scope):
    return scope.user_scope()


@pytest.fixture
def fake_embeddings():
    return DeterministicFakeEmbedding(size=16)


@pytest.fixture
def make_record(user_scope):
    """Factory for records created ``days_ago`` days in the past."""
    now = datetime.now(timezone.utc)

    def _make(content, type=MemoryType.FACT, importance=0.5, days_ago=0, scope=None):
        return MemoryRecord(
            content=content,
            type=type,
            importance=importance,
            scope=scope or user_scope,
            created_at=now - timedelta(days=days_ago),
        )

    return _make


def make_turns(count: int, prefix: str = "question") -> list:
    """Alternating user/assistant messages, ``count`` pairs."""
    messages = []
    for i in range(count):
        messages.append(HumanMessage(content=f"{prefix} {i}", id=f"h-{i}"))
        messages.append(AIMessage(content=f"answer {i}", id=f"a-{i}"))
    return messages
