# -*- coding: utf-8 -*-
"""
Data model for the mapping run.

Records and match results are immutable values: a layer never edits a result
in place, it returns the next value through `MatchResult.transition`, and the
orchestrator swaps it into the run's result table.

Rules and provider verdicts come from outside (stores, LLM responses) and are
pydantic models so that malformed payloads are rejected on parse.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# MATCH STATUS STATE MACHINE
# =============================================================================

class MatchStatus(str, Enum):
    NOT_PROCESSED = 'Not Processed'
    MATCHED_KNOWLEDGE = 'Matched (Knowledge)'
    MATCHED_RULE = 'Matched (Learned Rule)'
    MATCHED_FUZZY = 'Matched (Fuzzy)'
    PROCESSING_SEMANTIC_LLM = 'Processing (Semantic LLM)'
    MATCHED_SEMANTIC_LLM = 'Matched (Semantic LLM)'
    PROCESSING_AI = 'Processing (AI)'
    MATCHED_AI = 'Matched (AI)'
    NO_MATCH = 'No Match'
    ERROR_AI = 'Error (AI)'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_match(self) -> bool:
        return self in MATCHED_STATUSES


TERMINAL_STATUSES = frozenset([
    MatchStatus.MATCHED_KNOWLEDGE,
    MatchStatus.MATCHED_RULE,
    MatchStatus.MATCHED_FUZZY,
    MatchStatus.MATCHED_SEMANTIC_LLM,
    MatchStatus.MATCHED_AI,
    MatchStatus.NO_MATCH,
    MatchStatus.ERROR_AI,
])

MATCHED_STATUSES = frozenset([
    MatchStatus.MATCHED_KNOWLEDGE,
    MatchStatus.MATCHED_RULE,
    MatchStatus.MATCHED_FUZZY,
    MatchStatus.MATCHED_SEMANTIC_LLM,
    MatchStatus.MATCHED_AI,
])

# Position in the cascade; a result may only move to a higher rank
_STATUS_RANK = {
    MatchStatus.NOT_PROCESSED: 0,
    MatchStatus.PROCESSING_SEMANTIC_LLM: 1,
    MatchStatus.PROCESSING_AI: 2,
}
_TERMINAL_RANK = 3


def _rank(status: MatchStatus) -> int:
    return _STATUS_RANK.get(status, _TERMINAL_RANK)


class InvalidTransition(ValueError):
    """Raised when a result would move backwards through the cascade."""


# =============================================================================
# RECORDS
# =============================================================================

def new_record_id() -> str:
    """Synthetic record id, unique per import and never reused."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SourceRecord:
    """A row of the source file plus its normalized make/model."""
    id: str
    data: Dict[str, Any]
    make: str
    model: str
    normalized_make: str
    normalized_model: str
    normalized_base_model: str

    @property
    def has_identity(self) -> bool:
        return bool(self.normalized_make and self.normalized_model)


@dataclass(frozen=True)
class ReferenceRecord:
    """A row of the reference file plus its normalized make/model and code columns."""
    id: str
    data: Dict[str, Any]
    make: str
    model: str
    normalized_make: str
    normalized_model: str
    normalized_base_model: str
    codes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Candidate:
    """A reference record with its similarity to the record being matched."""
    record: ReferenceRecord
    similarity: float


class GroundingSource(BaseModel):
    uri: str
    title: str = ''


# =============================================================================
# MATCH RESULT
# =============================================================================

@dataclass(frozen=True)
class MatchResult:
    """Projection of a source record through the matching cascade."""
    record: SourceRecord
    status: MatchStatus = MatchStatus.NOT_PROCESSED
    matched_make: Optional[str] = None
    matched_model: Optional[str] = None
    matched_codes: Dict[str, str] = field(default_factory=dict)
    confidence: Optional[float] = None
    actual_fuzzy_similarity: Optional[float] = None
    reason: str = ''
    all_candidate_models: Tuple[str, ...] = ()
    external_sources: Tuple[GroundingSource, ...] = ()

    @property
    def id(self) -> str:
        return self.record.id

    def transition(self, status: MatchStatus, **changes: Any) -> 'MatchResult':
        """
        Move to `status`, applying `changes` to the other fields.

        Raises:
            InvalidTransition: when leaving a terminal status or moving backwards
        """
        if self.status.is_terminal:
            raise InvalidTransition(
                f"Record {self.id} is already final ({self.status.value}); cannot move to {status.value}"
            )
        if _rank(status) < _rank(self.status) or status == MatchStatus.NOT_PROCESSED:
            raise InvalidTransition(
                f"Record {self.id} cannot move from {self.status.value} back to {status.value}"
            )
        return replace(self, status=status, **changes)

    def annotate(self, **changes: Any) -> 'MatchResult':
        """Update diagnostic fields without a status change."""
        if 'status' in changes:
            raise InvalidTransition("Use transition() to change the status")
        return replace(self, **changes)

    def with_reference(self, reference: ReferenceRecord) -> Dict[str, Any]:
        """Field changes that point this result at `reference`."""
        return {
            'matched_make': reference.make,
            'matched_model': reference.model,
            'matched_codes': dict(reference.codes),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': dict(self.record.data),
            'source_make': self.record.make,
            'source_model': self.record.model,
            'status': self.status.value,
            'status_code': self.status.name,
            'matched_make': self.matched_make,
            'matched_model': self.matched_model,
            'matched_codes': dict(self.matched_codes),
            'confidence': self.confidence,
            'actual_fuzzy_similarity': self.actual_fuzzy_similarity,
            'reason': self.reason,
            'all_candidate_models': list(self.all_candidate_models),
            'external_sources': [s.model_dump() for s in self.external_sources],
        }


# =============================================================================
# KNOWLEDGE BASE
# =============================================================================

KnowledgeKey = Tuple[str, str]


@dataclass(frozen=True)
class KnowledgeEntry:
    """A confirmed reference identity (normalized make, normalized base model)."""
    reference_make: str
    reference_base_model: str


KnowledgeMap = Dict[KnowledgeKey, List[KnowledgeEntry]]


# =============================================================================
# LEARNED RULES
# =============================================================================

class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: Literal['make', 'model']
    operator: Literal['contains', 'equals']
    value: str

    @field_validator('value')
    @classmethod
    def _lowercase(cls, v: str) -> str:
        return v.strip().lower()

    def holds(self, make: str, model: str) -> bool:
        text = make if self.field == 'make' else model
        if not text:
            return False
        if self.operator == 'contains':
            return self.value in text
        return text == self.value


class RuleAction(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    set_make: str = Field(alias='setMake')
    set_model: str = Field(alias='setModel')


class LearnedRule(BaseModel):
    """Conjunctive conditions over normalized make/model text with one target."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    conditions: List[RuleCondition]
    action: RuleAction = Field(alias='actions')

    def matches(self, record: SourceRecord) -> bool:
        if not self.conditions:
            return False
        return all(
            cond.holds(record.normalized_make, record.normalized_model)
            for cond in self.conditions
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            'conditions': [c.model_dump() for c in self.conditions],
            'actions': self.action.model_dump(by_alias=True),
        }

    def content_hash(self) -> str:
        """SHA-256 over the rule logic only, used to store each rule once."""
        payload = json.dumps(
            {'c': [c.model_dump() for c in self.conditions], 'a': self.action.model_dump(by_alias=True)},
            sort_keys=True,
            separators=(',', ':'),
        )
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()


# =============================================================================
# REASONING PROVIDER PAYLOADS
# =============================================================================

def _confidence_in_unit_range(cls, v: Optional[float]) -> Optional[float]:
    # Answers on a 0-100 scale are rejected, not rescaled
    if v is not None and not 0.0 <= v <= 1.0:
        raise ValueError(f"confidence must be between 0 and 1, got {v}")
    return v


class SemanticCandidate(BaseModel):
    reference_id: str
    make: str
    model: str
    primary_code: Optional[str] = None


class SemanticTask(BaseModel):
    record_id: str
    make: str
    model: str
    candidates: List[SemanticCandidate]


class SemanticVerdict(BaseModel):
    """Provider answer for one semantic task (chosen_index is 1-based)."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    record_id: str = Field(alias='recordId')
    chosen_index: Optional[int] = Field(default=None, alias='chosenIndex')
    confidence: Optional[float] = None
    reason: str = ''
    error: Optional[str] = None

    @field_validator('chosen_index', mode='before')
    @classmethod
    def _coerce_index(cls, v: Any) -> Any:
        # Some models answer "2" or 2.0 instead of 2
        if isinstance(v, str):
            v = v.strip()
            return int(v) if v.lstrip('-').isdigit() else None
        if isinstance(v, float):
            return int(v) if v.is_integer() else None
        return v

    check_confidence = field_validator('confidence')(_confidence_in_unit_range)


class WebSearchRecord(BaseModel):
    record_id: str
    make: str
    model: str


class ReferenceListItem(BaseModel):
    make: str
    model: str
    code: Optional[str] = None


class WebSearchVerdict(BaseModel):
    """Provider answer for one open-ended (web grounded) match request."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    record_id: str = Field(alias='recordId')
    matched_make: Optional[str] = Field(default=None, alias='matchedMake')
    matched_model: Optional[str] = Field(default=None, alias='matchedModel')
    matched_code: Optional[str] = Field(default=None, alias='matchedCode')
    confidence: Optional[float] = None
    reason: str = ''
    sources: List[GroundingSource] = Field(default_factory=list)
    error: Optional[str] = None
    unsupported: bool = False

    check_confidence = field_validator('confidence')(_confidence_in_unit_range)


class RuleExample(BaseModel):
    source_make: str
    source_model: str
    matched_make: str
    matched_model: str
