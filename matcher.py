# -*- coding: utf-8 -*-
"""
Vehicle Matcher

Cascade over the source records of one run:

  Layer 0: Knowledge  - historical (make, base model) mappings, confidence 1.0
  Layer 1: Rules      - learned conditional rules, confidence 1.0
  Layer 2: Fuzzy      - same make (or corrected make) + fuzzy base model
  Layer 3: AI         - semantic comparison / web-grounded matching (ai_layer)

Each layer is a pure per-record function `match_by_*` plus a `run_*_layer`
driver that walks the pending ids, commits new result values and returns the
ids it resolved. `map_data` owns the pending list and the result table.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ai_layer import CancellationToken, run_ai_layer
from candidate_index import CandidateIndex
from llm_providers import LlmProvider
from models import (
    KnowledgeMap, LearnedRule, MatchResult, MatchStatus,
    ReferenceRecord, SourceRecord, new_record_id,
)
from normalizers import extract_base_model, normalize_text
from settings import ColumnConfig, MappingOptions
from similarity import DEFAULT_SIMILARITY, SimilarityFn, get_similarity
from stores import dedupe_rules

logger = logging.getLogger(__name__)

Commit = Callable[[MatchResult], None]
ProgressCallback = Callable[[MatchResult, int, int], None]


# ============================================================================
# RECORD PREPARATION
# ============================================================================

def _cell(row: Dict[str, Any], column: str) -> str:
    value = row.get(column)
    return '' if value is None else str(value)


def build_source_records(rows: Iterable[Dict[str, Any]], columns: ColumnConfig) -> List[SourceRecord]:
    """Normalize source rows once; every record gets a fresh id."""
    records = []
    for row in rows:
        make = _cell(row, columns.make)
        model = _cell(row, columns.model)
        normalized_model = normalize_text(model)
        records.append(SourceRecord(
            id=new_record_id(),
            data=dict(row),
            make=make,
            model=model,
            normalized_make=normalize_text(make),
            normalized_model=normalized_model,
            normalized_base_model=extract_base_model(normalized_model),
        ))
    return records


def build_reference_records(rows: Iterable[Dict[str, Any]], columns: ColumnConfig) -> List[ReferenceRecord]:
    """Normalize reference rows once and pull out the configured code columns."""
    records = []
    for row in rows:
        make = _cell(row, columns.make)
        model = _cell(row, columns.model)
        normalized_model = normalize_text(model)
        records.append(ReferenceRecord(
            id=new_record_id(),
            data=dict(row),
            make=make,
            model=model,
            normalized_make=normalize_text(make),
            normalized_model=normalized_model,
            normalized_base_model=extract_base_model(normalized_model),
            codes={col: _cell(row, col) for col in columns.codes},
        ))
    return records


def _remaining(pending: List[str], resolved: Iterable[str]) -> List[str]:
    done = set(resolved)
    return [rid for rid in pending if rid not in done]


# ============================================================================
# LAYER 0: KNOWLEDGE
# ============================================================================

def match_by_knowledge(
    result: MatchResult,
    index: CandidateIndex,
    knowledge: KnowledgeMap,
    similarity: SimilarityFn = DEFAULT_SIMILARITY,
) -> Optional[MatchResult]:
    """
    Resolve a record through the historical knowledge base.

    All reference rows of every stored (make, base model) identity are
    candidates. With several, the one whose full model is closest to the
    source's full model wins; reference order breaks ties.

    Returns:
        The MATCHED_KNOWLEDGE result, or None when nothing applies
    """
    src = result.record
    if not src.normalized_make or not src.normalized_base_model:
        return None

    entries = knowledge.get((src.normalized_make, src.normalized_base_model))
    if not entries:
        return None

    candidates: Dict[str, ReferenceRecord] = {}
    for entry in entries:
        for rec in index.find_by_make_base_model(entry.reference_make, entry.reference_base_model):
            candidates.setdefault(rec.id, rec)
    if not candidates:
        return None

    ordered = sorted(candidates.values(), key=lambda r: index.position[r.id])
    if len(ordered) == 1:
        best = ordered[0]
        reason = "Matched from historical knowledge base."
    else:
        # max() keeps the first of equal scores
        best = max(ordered, key=lambda r: similarity(src.normalized_model, r.normalized_model))
        reason = f"Best full-model match among {len(ordered)} historical options."

    return result.transition(
        MatchStatus.MATCHED_KNOWLEDGE,
        confidence=1.0,
        reason=reason,
        **result.with_reference(best),
    )


def run_knowledge_layer(
    results: Dict[str, MatchResult],
    pending: Sequence[str],
    index: CandidateIndex,
    knowledge: KnowledgeMap,
    commit: Commit,
    similarity: SimilarityFn = DEFAULT_SIMILARITY,
) -> List[str]:
    resolved = []
    for rid in pending:
        matched = match_by_knowledge(results[rid], index, knowledge, similarity)
        if matched is not None:
            commit(matched)
            resolved.append(rid)
    logger.info("Knowledge layer: %d of %d records matched", len(resolved), len(pending))
    return resolved


# ============================================================================
# LAYER 1: LEARNED RULES
# ============================================================================

def match_by_rules(
    result: MatchResult,
    index: CandidateIndex,
    rules: Sequence[LearnedRule],
) -> Optional[MatchResult]:
    """
    Apply learned rules to one record.

    Exactly one matching rule is applied when its target exists in the
    reference data. Several matching rules are never guessed between: the
    status stays as it is and only the reason records the ambiguity.

    Returns:
        New result value (matched or annotated), or None when no rule matches
    """
    src = result.record
    if not src.normalized_make or not src.normalized_model:
        return None

    matching = [rule for rule in rules if rule.matches(src)]
    if not matching:
        return None

    if len(matching) > 1:
        return result.annotate(
            reason=f"Rule ambiguity: {len(matching)} learned rules match this record; none applied."
        )

    action = matching[0].action
    target = index.find_by_make_model(action.set_make, action.set_model)
    if target is None:
        return result.annotate(
            reason=(f"Learned rule target '{action.set_make} {action.set_model}' "
                    f"is not in the reference data; rule not applied.")
        )

    return result.transition(
        MatchStatus.MATCHED_RULE,
        confidence=1.0,
        reason="Matched by learned rule.",
        **result.with_reference(target),
    )


def run_rule_layer(
    results: Dict[str, MatchResult],
    pending: Sequence[str],
    index: CandidateIndex,
    rules: Sequence[LearnedRule],
    commit: Commit,
) -> List[str]:
    resolved = []
    ambiguous = 0
    for rid in pending:
        updated = match_by_rules(results[rid], index, rules)
        if updated is None:
            continue
        commit(updated)
        if updated.status.is_terminal:
            resolved.append(rid)
        else:
            ambiguous += 1
    logger.info("Rule layer: %d of %d records matched (%d left with a diagnostic)",
                len(resolved), len(pending), ambiguous)
    return resolved


# ============================================================================
# LAYER 2: FUZZY
# ============================================================================

def match_by_fuzzy(
    result: MatchResult,
    index: CandidateIndex,
    threshold: float,
) -> Optional[MatchResult]:
    """
    Exact make (or corrected make) + fuzzy base model.

    `actual_fuzzy_similarity` is always recorded: the best base-model
    similarity against same-make references, 0.0 when the make is unknown.

    Returns:
        MATCHED_FUZZY result, the annotated result when nothing reached the
        threshold, or None for records without make/base model
    """
    src = result.record
    if not src.normalized_make or not src.normalized_base_model:
        return None

    best_same_make = index.best_base_model_similarity(src)

    pool = index.records_by_make.get(src.normalized_make, [])
    corrected_make = None
    if not pool:
        corrected_make = index.fuzzy_make_lookup(src.normalized_make)
        if corrected_make:
            pool = index.records_by_make.get(corrected_make, [])

    best: Optional[ReferenceRecord] = None
    best_score = 0.0
    for rec in pool:
        if not rec.normalized_base_model:
            continue
        score = index.similarity(src.normalized_base_model, rec.normalized_base_model)
        if score >= threshold and score > best_score:
            best, best_score = rec, score

    diagnostic = round(best_same_make, 4)
    if best is None:
        return result.annotate(actual_fuzzy_similarity=diagnostic)

    if corrected_make:
        reason = f"Matched by corrected make '{corrected_make}' and fuzzy base model."
    else:
        reason = "Matched by exact make and fuzzy base model."

    return result.transition(
        MatchStatus.MATCHED_FUZZY,
        confidence=round(best_score, 2),
        actual_fuzzy_similarity=diagnostic,
        reason=reason,
        **result.with_reference(best),
    )


def run_fuzzy_layer(
    results: Dict[str, MatchResult],
    pending: Sequence[str],
    index: CandidateIndex,
    threshold: float,
    commit: Commit,
) -> List[str]:
    resolved = []
    for rid in pending:
        updated = match_by_fuzzy(results[rid], index, threshold)
        if updated is None:
            continue
        commit(updated)
        if updated.status.is_terminal:
            resolved.append(rid)
    logger.info("Fuzzy layer: %d of %d records matched (threshold %.2f)",
                len(resolved), len(pending), threshold)
    return resolved


# ============================================================================
# ORCHESTRATOR
# ============================================================================

async def map_data(
    source_rows: Sequence[Dict[str, Any]],
    reference_rows: Sequence[Dict[str, Any]],
    source_columns: ColumnConfig,
    reference_columns: ColumnConfig,
    options: Optional[MappingOptions] = None,
    knowledge: Optional[KnowledgeMap] = None,
    rules: Optional[Sequence[LearnedRule]] = None,
    provider: Optional[LlmProvider] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    similarity: Optional[SimilarityFn] = None,
) -> List[MatchResult]:
    """
    Run the matching cascade over every source row.

    Args:
        source_rows: Rows to identify
        reference_rows: Rows to identify them against
        source_columns: Make/model columns of the source rows
        reference_columns: Make/model/code columns of the reference rows
        options: Layer toggles and thresholds (defaults when omitted)
        knowledge: Snapshot of the knowledge store
        rules: Snapshot of the rule store
        provider: Reasoning provider; the AI layer is skipped without one
        on_progress: Called as (result, index, total) once per record, when
            the record reaches its final status
        cancel_token: Checked between AI batches
        similarity: Overrides the metric named by options.similarity_metric

    Returns:
        One final MatchResult per source row, in input order
    """
    options = options or MappingOptions()
    knowledge = knowledge or {}
    similarity = similarity or get_similarity(options.similarity_metric)
    rules = dedupe_rules(rules or [])

    sources = build_source_records(source_rows, source_columns)
    references = build_reference_records(reference_rows, reference_columns)
    index = CandidateIndex(
        references,
        similarity=similarity,
        make_threshold=options.fuzzy_make_threshold,
        candidate_floor=options.candidate_floor,
        code_columns=reference_columns.codes,
    )

    results: Dict[str, MatchResult] = {src.id: MatchResult(record=src) for src in sources}
    total = len(sources)
    processed = 0

    def commit(updated: MatchResult):
        nonlocal processed
        results[updated.id] = updated
        if updated.status.is_terminal:
            processed += 1
            if on_progress:
                on_progress(updated, processed - 1, total)

    logger.info("Mapping %d source records against %d reference records", total, len(index))

    pending: List[str] = []
    for src in sources:
        if src.has_identity:
            pending.append(src.id)
            continue
        missing = [name for name, value in (('make', src.normalized_make), ('model', src.normalized_model)) if not value]
        commit(results[src.id].transition(
            MatchStatus.NO_MATCH,
            reason=f"Missing data: source {' and '.join(missing)} is empty.",
        ))

    if options.use_knowledge_layer and knowledge and pending:
        resolved = run_knowledge_layer(results, pending, index, knowledge, commit, similarity)
        pending = _remaining(pending, resolved)

    if options.use_rule_layer and rules and pending:
        resolved = run_rule_layer(results, pending, index, rules, commit)
        pending = _remaining(pending, resolved)

    if options.use_fuzzy_layer and pending:
        resolved = run_fuzzy_layer(results, pending, index, options.fuzzy_threshold, commit)
        pending = _remaining(pending, resolved)

    if options.use_ai_layer and provider is not None and pending:
        resolved = await run_ai_layer(results, pending, index, provider, options, commit, cancel_token)
        pending = _remaining(pending, resolved)

    cancelled = cancel_token is not None and cancel_token.cancelled
    enabled = ', '.join(options.enabled_layers) or 'none'
    for rid in pending:
        current = results[rid]
        if cancelled:
            reason = "Run cancelled before this record was resolved."
        elif current.reason:
            reason = current.reason
        else:
            reason = f"No match found by enabled layers: {enabled}."
        commit(current.transition(MatchStatus.NO_MATCH, reason=reason))

    if pending:
        logger.info("%d records finalized as no match", len(pending))

    return [results[src.id] for src in sources]
