"""
Conflict detection and resolution for long-term memory records.

Records conflict when they share a type, a scope and a topic. The topic is
a cheap keyword heuristic: the first three significant lowercase words.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .token_budget import message_text
from .types import ConflictStrategy, MemoryRecord, MemoryScope, MemoryStore, MemoryType

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({"the", "and", "for", "that", "this", "with", "are", "was", "has", "have"})
TOPIC_WORDS = 3
MIN_WORD_LENGTH = 3
FULL_CONFLICT_SIZE = 5

MERGE_PROMPT = """You have multiple memory records about the same topic that may conflict.
Merge them into a single, accurate, and up-to-date memory record.

Topic: {topic}

Records (from oldest to newest):
{records}

Rules:
1. Prefer newer information when facts conflict
2. Preserve important details from all records
3. Remove redundant or outdated information
4. Keep the merged content concise (1-2 sentences)

Output only the merged memory content:"""


def extract_topic(content: Optional[str]) -> str:
    """First three significant words of ``content`` (``general`` if none)."""
    if not content or not content.strip():
        return "unknown"
    words = [
        w for w in content.lower().split()
        if len(w) >= MIN_WORD_LENGTH and w not in STOPWORDS
    ]
    return " ".join(words[:TOPIC_WORDS]) or "general"


@dataclass
class ConflictGroup:
    """Records sharing a topic. Built per resolution pass and then discarded."""

    topic: str
    records: list[MemoryRecord] = field(default_factory=list)
    conflict_score: float = 0.0

    def has_conflict(self) -> bool:
        return len(self.records) > 1

    def newest(self) -> Optional[MemoryRecord]:
        if not self.records:
            return None
        return max(self.records, key=lambda r: r.created_at)

    def most_important(self) -> Optional[MemoryRecord]:
        if not self.records:
            return None
        return max(self.records, key=lambda r: r.importance)


class ConflictResolver:
    """
    Detects and resolves overlapping memory records.

    MERGE and NEWEST_WITH_MERGE ask the chat model to synthesize one record;
    without a model, or when it returns nothing, the newest record wins.
    """

    def __init__(self, llm=None):
        self._llm = llm

    def detect_conflicts(self, records: Sequence[MemoryRecord]) -> list[ConflictGroup]:
        if not records or len(records) < 2:
            return []

        by_type: dict[MemoryType, list[MemoryRecord]] = {}
        for record in records:
            by_type.setdefault(record.type or MemoryType.FACT, []).append(record)

        groups = []
        for type_records in by_type.values():
            if len(type_records) < 2:
                continue
            by_topic: dict[str, list[MemoryRecord]] = {}
            for record in type_records:
                by_topic.setdefault(extract_topic(record.content), []).append(record)
            for topic, members in by_topic.items():
                if len(members) > 1:
                    groups.append(ConflictGroup(topic, members, conflict_score(members)))
        return groups

    def resolve(self, groups: Sequence[ConflictGroup],
                strategy: ConflictStrategy) -> list[MemoryRecord]:
        resolved = []
        for group in groups or []:
            record = self.resolve_group(group, strategy)
            if record is not None:
                resolved.append(record)
        return resolved

    def resolve_group(self, group: Optional[ConflictGroup],
                      strategy: ConflictStrategy) -> Optional[MemoryRecord]:
        if group is None or not group.has_conflict():
            return group.records[0] if group is not None and group.records else None

        if strategy == ConflictStrategy.NEWEST_WINS:
            return group.newest()
        if strategy == ConflictStrategy.IMPORTANCE_BASED:
            return group.most_important()
        return self.merge(group)

    def merge(self, group: Optional[ConflictGroup]) -> Optional[MemoryRecord]:
        if group is None or not group.records:
            return None
        if len(group.records) == 1:
            return group.records[0]

        if self._llm is None:
            logger.warning("No chat model for memory merge, falling back to newest")
            return group.newest()

        ordered = sorted(group.records, key=lambda r: r.created_at)
        lines = "\n".join(
            f"{i}. {r.content} ({r.created_at.isoformat()})" for i, r in enumerate(ordered, 1)
        )
        prompt = MERGE_PROMPT.format(topic=group.topic, records=lines)

        try:
            response = self._llm.invoke([{"role": "user", "content": prompt}])
            merged = message_text(response) if hasattr(response, "content") else str(response)
        except Exception as e:
            logger.warning("Failed to merge memory records on '%s': %s", group.topic, e)
            merged = ""

        newest = group.newest()
        if not merged or not merged.strip():
            return newest

        return MemoryRecord(
            content=merged.strip(),
            type=newest.type,
            scope=newest.scope,
            importance=max(r.importance for r in group.records),
            session_id=newest.session_id,
            metadata={"merged_from": [r.id for r in ordered]},
        )

    def may_conflict(self, a: Optional[MemoryRecord], b: Optional[MemoryRecord]) -> bool:
        if a is None or b is None:
            return False
        if a.type != b.type:
            return False
        if a.scope != b.scope:
            return False
        return extract_topic(a.content) == extract_topic(b.content)


def conflict_score(records: Sequence[MemoryRecord]) -> float:
    return max(0.0, min(1.0, len(records) / FULL_CONFLICT_SIZE))


@dataclass
class Reconciliation:
    """Outcome of reconciling candidates against stored records.

    ``superseded`` maps a record to save onto the stored record ids it
    replaces; those ids are deleted only once the record is persisted.
    """

    records: list[MemoryRecord] = field(default_factory=list)
    superseded: dict[str, list[str]] = field(default_factory=dict)


def reconcile_with_store(
    resolver: ConflictResolver,
    store: MemoryStore,
    scope: MemoryScope,
    candidates: Sequence[MemoryRecord],
    strategy: ConflictStrategy,
    top_k: int = 3,
) -> Reconciliation:
    """
    Resolve each candidate against its most similar stored records.

    Candidates sharing a topic are resolved against each other first, and a
    stored record is claimed by at most one candidate per pass. A resolution
    that lands on an already stored record adds nothing. Store lookups that
    fail leave the candidate as-is.
    """
    result = Reconciliation()
    claimed: set[str] = set()
    for candidate in _resolve_within_batch(resolver, candidates, strategy):
        try:
            similar = store.recall_similar(candidate.scope or scope, candidate.content, top_k)
        except Exception as e:
            logger.warning("Similar-memory lookup failed, keeping candidate as-is: %s", e)
            similar = []

        conflicting = [
            r for r in similar
            if r.id != candidate.id and r.type == candidate.type and resolver.may_conflict(r, candidate)
        ]
        existing = [r for r in conflicting if r.id not in claimed]
        if conflicting and not existing:
            logger.debug("Stored records on '%s' already resolved in this pass",
                         extract_topic(candidate.content))
            continue
        if not existing:
            result.records.append(candidate)
            continue

        group = ConflictGroup(extract_topic(candidate.content), [*existing, candidate])
        group.conflict_score = conflict_score(group.records)
        resolved = resolver.resolve_group(group, strategy)

        existing_ids = {r.id for r in existing}
        claimed.update(existing_ids)
        if resolved is None or resolved.id in existing_ids:
            logger.debug("Candidate on '%s' resolved to a stored record", group.topic)
            continue

        result.records.append(resolved)
        if strategy.replaces_existing:
            result.superseded[resolved.id] = sorted(existing_ids)
        logger.info(
            "Resolved conflict on '%s' (%d stored records, strategy %s)",
            group.topic, len(existing), strategy.value,
        )
    return result


def _resolve_within_batch(resolver: ConflictResolver, candidates: Sequence[MemoryRecord],
                          strategy: ConflictStrategy) -> list[MemoryRecord]:
    """Collapse same-topic candidates to one record each, keeping batch order."""
    candidates = list(candidates)
    groups = resolver.detect_conflicts(candidates)
    if not groups:
        return candidates

    replacement: dict[str, Optional[MemoryRecord]] = {}
    for group in groups:
        resolved = resolver.resolve_group(group, strategy)
        first, *rest = group.records
        replacement[first.id] = resolved
        for record in rest:
            replacement[record.id] = None

    result = []
    for candidate in candidates:
        record = replacement.get(candidate.id, candidate)
        if record is not None:
            result.append(record)
    return result


def delete_superseded(store: MemoryStore, reconciliation: Reconciliation,
                      saved: Sequence[MemoryRecord]):
    """Delete stored records replaced by the records that were actually saved."""
    for record in saved:
        for record_id in reconciliation.superseded.get(record.id, []):
            try:
                store.delete(record_id)
            except Exception as e:
                logger.warning("Failed to delete superseded memory %s: %s", record_id, e)
