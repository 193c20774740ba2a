# -*- coding: utf-8 -*-
"""
Knowledge and rule stores.

The matcher only reads snapshots (`get_all`) taken before a run; learning is
the only writer. `InMemoryKnowledgeStore` / `InMemoryRuleStore` back the tests
and the CLI when no MongoDB is configured; `mongodb_client` provides the
persistent implementations.
"""
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from models import KnowledgeEntry, KnowledgeKey, KnowledgeMap, LearnedRule
from settings import KNOWLEDGE_BASE_IMPORT_BATCH_SIZE

logger = logging.getLogger(__name__)

# (source_make, source_base_model, reference_make, reference_base_model)
KnowledgeRow = Tuple[str, str, str, str]

ProgressFn = Callable[[int, int], None]


def knowledge_source_key(source_make: str, source_base_model: str) -> str:
    """Flat key used by the persistent store: "toyota|camry"."""
    return f"{source_make}|{source_base_model}"


def dedupe_rules(rules: Iterable[LearnedRule]) -> List[LearnedRule]:
    """Drop rules whose logic (content hash) was already seen, first one wins."""
    seen = set()
    unique = []
    for rule in rules:
        rule_hash = rule.content_hash()
        if rule_hash in seen:
            continue
        seen.add(rule_hash)
        unique.append(rule)
    return unique


class KnowledgeStore(ABC):

    @abstractmethod
    def get_all(self) -> KnowledgeMap:
        """Snapshot of every entry grouped by (source make, source base model)."""

    @abstractmethod
    def bulk_upsert(self, rows: List[KnowledgeRow], on_progress: Optional[ProgressFn] = None) -> int:
        """Insert rows that are not stored yet; returns how many were new."""

    @abstractmethod
    def count(self) -> int:
        pass


class RuleStore(ABC):

    @abstractmethod
    def get_all(self) -> List[LearnedRule]:
        pass

    @abstractmethod
    def upsert(self, rules: List[LearnedRule]) -> int:
        """Store rules by content hash; returns how many were new."""

    @abstractmethod
    def count(self) -> int:
        pass


class InMemoryKnowledgeStore(KnowledgeStore):

    def __init__(self, rows: Optional[Iterable[KnowledgeRow]] = None,
                 batch_size: int = KNOWLEDGE_BASE_IMPORT_BATCH_SIZE):
        self.batch_size = batch_size
        self._entries: Dict[KnowledgeKey, List[KnowledgeEntry]] = defaultdict(list)
        if rows:
            self.bulk_upsert(list(rows))

    def get_all(self) -> KnowledgeMap:
        return {key: list(entries) for key, entries in self._entries.items()}

    def bulk_upsert(self, rows: List[KnowledgeRow], on_progress: Optional[ProgressFn] = None) -> int:
        added = 0
        total = len(rows)
        for start in range(0, total, self.batch_size):
            for src_make, src_base, ref_make, ref_base in rows[start:start + self.batch_size]:
                entry = KnowledgeEntry(reference_make=ref_make, reference_base_model=ref_base)
                bucket = self._entries[(src_make, src_base)]
                if entry not in bucket:
                    bucket.append(entry)
                    added += 1
            if on_progress:
                on_progress(min(start + self.batch_size, total), total)
        logger.debug("Knowledge upsert: %d new of %d rows", added, total)
        return added

    def count(self) -> int:
        return sum(len(entries) for entries in self._entries.values())


class InMemoryRuleStore(RuleStore):

    def __init__(self, rules: Optional[Iterable[LearnedRule]] = None):
        self._rules: Dict[str, LearnedRule] = {}
        if rules:
            self.upsert(list(rules))

    def get_all(self) -> List[LearnedRule]:
        return list(self._rules.values())

    def upsert(self, rules: List[LearnedRule]) -> int:
        added = 0
        for rule in rules:
            rule_hash = rule.content_hash()
            if rule_hash not in self._rules:
                self._rules[rule_hash] = rule
                added += 1
        return added

    def count(self) -> int:
        return len(self._rules)
