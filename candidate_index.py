# -*- coding: utf-8 -*-
"""
Candidate Index

Read-only lookups over the reference records of one run:
- records_by_make: exact normalized make -> records (reference order kept)
- top-N same-make candidates ranked by base-model similarity
- fuzzy make correction ("mercedes benz" -> "mercedes-benz")
- exact (make, model) and (make, base model) lookups used to resolve
  knowledge entries, rule targets and provider answers to reference rows
"""

from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from models import Candidate, ReferenceRecord, SourceRecord
from normalizers import extract_base_model, normalize_text
from settings import CANDIDATE_MIN_SIMILARITY, FUZZY_MAKE_SIMILARITY_THRESHOLD
from similarity import DEFAULT_SIMILARITY, SimilarityFn


class CandidateIndex:
    """Indexes built once per run from the reference records."""

    def __init__(
        self,
        references: Sequence[ReferenceRecord],
        similarity: SimilarityFn = DEFAULT_SIMILARITY,
        make_threshold: float = FUZZY_MAKE_SIMILARITY_THRESHOLD,
        candidate_floor: float = CANDIDATE_MIN_SIMILARITY,
        code_columns: Sequence[str] = (),
    ):
        self.references: List[ReferenceRecord] = list(references)
        self.position: Dict[str, int] = {rec.id: i for i, rec in enumerate(self.references)}
        self.similarity = similarity
        self.make_threshold = make_threshold
        self.candidate_floor = candidate_floor
        self.code_columns = tuple(code_columns)

        records_by_make: Dict[str, List[ReferenceRecord]] = defaultdict(list)
        by_make_model: Dict[Tuple[str, str], List[ReferenceRecord]] = defaultdict(list)
        by_make_base: Dict[Tuple[str, str], List[ReferenceRecord]] = defaultdict(list)

        for rec in self.references:
            if not rec.normalized_make:
                continue
            records_by_make[rec.normalized_make].append(rec)
            by_make_model[(rec.normalized_make, rec.normalized_model)].append(rec)
            by_make_base[(rec.normalized_make, rec.normalized_base_model)].append(rec)

        # Convert to regular dicts
        self.records_by_make = dict(records_by_make)
        self._by_make_model = dict(by_make_model)
        self._by_make_base = dict(by_make_base)

    def __len__(self) -> int:
        return len(self.references)

    @property
    def primary_code_column(self) -> Optional[str]:
        return self.code_columns[0] if self.code_columns else None

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def top_n_candidates(self, source: SourceRecord, n: int) -> List[Candidate]:
        """
        Rank same-make references by base-model similarity.

        Args:
            source: Record to find candidates for
            n: Maximum number of candidates

        Returns:
            Up to n candidates, unique by reference id, best first. Records
            below the candidate floor are dropped.
        """
        if n <= 0 or not source.normalized_make:
            return []

        same_make = self.records_by_make.get(source.normalized_make, [])
        if not same_make:
            return []

        seen = set()
        scored = []
        for rec in same_make:
            if rec.id in seen:
                continue
            seen.add(rec.id)
            score = self.similarity(source.normalized_base_model, rec.normalized_base_model)
            if score >= self.candidate_floor:
                scored.append(Candidate(record=rec, similarity=score))

        # Stable sort: ties keep reference order
        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:n]

    def best_base_model_similarity(self, source: SourceRecord) -> float:
        """Best base-model similarity against references of the same make (0.0 if none)."""
        same_make = self.records_by_make.get(source.normalized_make, [])
        best = 0.0
        for rec in same_make:
            score = self.similarity(source.normalized_base_model, rec.normalized_base_model)
            if score > best:
                best = score
        return best

    def fuzzy_make_lookup(self, make: str) -> Optional[str]:
        """Closest reference make at or above the make threshold, else None."""
        if not make:
            return None
        if make in self.records_by_make:
            return make

        best_make = None
        best_score = 0.0
        for ref_make in self.records_by_make:
            score = self.similarity(make, ref_make)
            if score > best_score:
                best_make, best_score = ref_make, score

        if best_make is not None and best_score >= self.make_threshold:
            return best_make
        return None

    # ------------------------------------------------------------------
    # Exact lookups
    # ------------------------------------------------------------------

    def find_by_make_model(self, make: str, model: str) -> Optional[ReferenceRecord]:
        """First reference row whose normalized make and full model equal the given text."""
        matches = self._by_make_model.get((normalize_text(make), normalize_text(model)))
        return matches[0] if matches else None

    def find_by_make_base_model(self, make: str, base_model: str) -> List[ReferenceRecord]:
        """All reference rows of a normalized (make, base model) identity, in reference order."""
        return list(self._by_make_base.get((normalize_text(make), extract_base_model(base_model)), []))
