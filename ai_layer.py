# -*- coding: utf-8 -*-
"""
AI Escalation Layer

Records still pending after the deterministic layers are routed to one of two
provider strategies:

  semantic   - the record has same-make candidates: the provider picks one of
               the top-N shortlisted reference rows, or rejects them all
  web search - no candidates, or the semantic strategy rejected them: the
               provider matches against a make-filtered reference list, with
               web grounding when it supports it

A semantic rejection is not final; the record gets a second chance through web
search. Every record that enters web search leaves it with a final status.
Batches run one after another with a pacing delay, and a cancellation token is
checked before each batch.
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from candidate_index import CandidateIndex
from llm_providers import MISSING_ANSWER, LlmProvider
from models import (
    Candidate, MatchResult, MatchStatus, ReferenceListItem,
    SemanticCandidate, SemanticTask, SemanticVerdict,
    WebSearchRecord, WebSearchVerdict,
)
from settings import MappingOptions

logger = logging.getLogger(__name__)

Commit = Callable[[MatchResult], None]


class CancellationToken:
    """Thread-safe flag a caller sets to stop a run between AI batches."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _round(confidence: Optional[float]) -> Optional[float]:
    return None if confidence is None else round(confidence, 2)


# ============================================================================
# REFERENCE LIST FOR OPEN-ENDED MATCHING
# ============================================================================

def build_reference_list(index: CandidateIndex, makes: Iterable[str], cap: int) -> List[ReferenceListItem]:
    """
    Reference rows to show the provider for one web search batch.

    Rows of the batch's makes, or every row when none of those makes exists,
    unique on (make, model), at most `cap` entries, with the primary code.
    The cap is shared round-robin between the makes so a make with many
    reference rows cannot crowd out the others.
    """
    groups = [index.records_by_make[m] for m in dict.fromkeys(makes) if m in index.records_by_make]
    if not groups:
        groups = [index.references]

    primary = index.primary_code_column
    queues = []
    seen = set()
    for records in groups:
        queue = []
        for rec in records:
            key = (rec.make, rec.model)
            if key in seen:
                continue
            seen.add(key)
            code = rec.codes.get(primary) if primary else None
            queue.append(ReferenceListItem(make=rec.make, model=rec.model, code=code or None))
        queues.append(queue)

    items = []
    for position in range(max(len(q) for q in queues)):
        for queue in queues:
            if position < len(queue):
                items.append(queue[position])
                if len(items) >= cap:
                    return items
    return items


# ============================================================================
# VERDICT HANDLING
# ============================================================================

def apply_semantic_verdict(
    result: MatchResult,
    verdict: SemanticVerdict,
    candidates: Sequence[Candidate],
    accept_confidence: float,
) -> Optional[MatchResult]:
    """
    Turn a semantic answer into the record's next value.

    Returns:
        MATCHED_SEMANTIC_LLM or ERROR_AI result, or None when the record
        should be escalated to web search
    """
    if verdict.error:
        return result.transition(MatchStatus.ERROR_AI, reason=f"AI error: {verdict.error}")

    chosen = verdict.chosen_index
    if chosen is None:
        return None

    if not 1 <= chosen <= len(candidates):
        return result.transition(
            MatchStatus.ERROR_AI,
            reason=f"Semantic AI chose candidate {chosen}, outside the {len(candidates)} offered. {verdict.reason}".strip(),
        )

    if verdict.confidence is not None and verdict.confidence < accept_confidence:
        return None

    reference = candidates[chosen - 1].record
    return result.transition(
        MatchStatus.MATCHED_SEMANTIC_LLM,
        confidence=_round(verdict.confidence),
        reason=verdict.reason or "Chosen by semantic AI comparison.",
        **result.with_reference(reference),
    )


def apply_web_verdict(
    result: MatchResult,
    verdict: WebSearchVerdict,
    index: CandidateIndex,
    accept_confidence: float,
) -> MatchResult:
    """Final status for a record answered by the web search strategy."""
    if verdict.error:
        return result.transition(MatchStatus.ERROR_AI, reason=f"AI error: {verdict.error}")

    sources = tuple(verdict.sources)
    if verdict.unsupported:
        # A semantic rejection explains more than the missing capability
        return result.transition(
            MatchStatus.NO_MATCH,
            reason=result.reason or verdict.reason or "Web search is not supported by the configured provider.",
        )

    confident = verdict.confidence is None or verdict.confidence >= accept_confidence
    if not (verdict.matched_make and verdict.matched_model and confident):
        return result.transition(
            MatchStatus.NO_MATCH,
            reason=verdict.reason or "AI found no confident match.",
            external_sources=sources,
        )

    reference = index.find_by_make_model(verdict.matched_make, verdict.matched_model)
    if reference is not None:
        fields = result.with_reference(reference)
    else:
        primary = index.primary_code_column
        codes = {primary: verdict.matched_code} if primary and verdict.matched_code else {}
        fields = {
            'matched_make': verdict.matched_make,
            'matched_model': verdict.matched_model,
            'matched_codes': codes,
        }

    return result.transition(
        MatchStatus.MATCHED_AI,
        confidence=_round(verdict.confidence),
        reason=verdict.reason or "Matched by AI.",
        external_sources=sources,
        **fields,
    )


# ============================================================================
# LAYER DRIVER
# ============================================================================

class _Pacer:
    """Sleeps between consecutive batches, not before the first one."""

    def __init__(self, delay: float):
        self.delay = delay
        self.sent = 0

    async def wait(self):
        if self.sent and self.delay > 0:
            await asyncio.sleep(self.delay)
        self.sent += 1


def _cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


async def _run_semantic_batch(
    batch: Sequence[Tuple[str, List[Candidate]]],
    results: Dict[str, MatchResult],
    index: CandidateIndex,
    provider: LlmProvider,
    options: MappingOptions,
    commit: Commit,
) -> Tuple[List[str], List[str]]:
    """Returns (resolved ids, escalated ids)."""
    primary = index.primary_code_column
    tasks = []
    candidates_by_id: Dict[str, List[Candidate]] = {}
    for rid, candidates in batch:
        current = results[rid].transition(MatchStatus.PROCESSING_SEMANTIC_LLM)
        commit(current)
        candidates_by_id[rid] = candidates
        tasks.append(SemanticTask(
            record_id=rid,
            make=current.record.make,
            model=current.record.model,
            candidates=[
                SemanticCandidate(
                    reference_id=c.record.id,
                    make=c.record.make,
                    model=c.record.model,
                    primary_code=(c.record.codes.get(primary) if primary else None) or None,
                )
                for c in candidates
            ],
        ))

    resolved: List[str] = []
    escalated: List[str] = []
    answered: Set[str] = set()
    failure = MISSING_ANSWER
    try:
        async for verdict in provider.semantic_compare_batch(tasks):
            rid = verdict.record_id
            if rid not in candidates_by_id or rid in answered:
                continue
            answered.add(rid)
            current = results[rid]
            outcome = apply_semantic_verdict(current, verdict, candidates_by_id[rid], options.ai_accept_confidence)
            if outcome is None:
                commit(current.annotate(reason=verdict.reason or "Semantic AI rejected all candidates."))
                escalated.append(rid)
            else:
                commit(outcome)
                resolved.append(rid)
    except Exception as e:
        logger.exception("Semantic batch aborted")
        failure = str(e)

    for rid in candidates_by_id:
        if rid not in answered:
            commit(results[rid].transition(MatchStatus.ERROR_AI, reason=f"AI error: {failure}"))
            resolved.append(rid)
    return resolved, escalated


async def _run_web_batch(
    batch: Sequence[str],
    results: Dict[str, MatchResult],
    index: CandidateIndex,
    provider: LlmProvider,
    options: MappingOptions,
    commit: Commit,
) -> List[str]:
    records = []
    for rid in batch:
        current = results[rid].transition(MatchStatus.PROCESSING_AI)
        commit(current)
        records.append(WebSearchRecord(record_id=rid, make=current.record.make, model=current.record.model))

    reference_list = build_reference_list(
        index,
        (results[rid].record.normalized_make for rid in batch),
        options.max_reference_records_for_prompt,
    )

    resolved: List[str] = []
    wanted = set(batch)
    failure = MISSING_ANSWER
    try:
        async for verdict in provider.find_best_match_batch(records, reference_list):
            rid = verdict.record_id
            if rid not in wanted:
                continue
            wanted.discard(rid)
            commit(apply_web_verdict(results[rid], verdict, index, options.ai_accept_confidence))
            resolved.append(rid)
    except Exception as e:
        logger.exception("Web search batch aborted")
        failure = str(e)

    for rid in batch:
        if rid in wanted:
            commit(results[rid].transition(MatchStatus.ERROR_AI, reason=f"AI error: {failure}"))
            resolved.append(rid)
    return resolved


async def run_ai_layer(
    results: Dict[str, MatchResult],
    pending: Sequence[str],
    index: CandidateIndex,
    provider: LlmProvider,
    options: MappingOptions,
    commit: Commit,
    cancel_token: Optional[CancellationToken] = None,
) -> List[str]:
    """
    Resolve pending records through the provider.

    Args:
        results: The run's result table (read; updates go through commit)
        pending: Ids not resolved by earlier layers
        index: Candidate index over the reference records
        provider: Reasoning provider
        options: Batch sizes, delay, candidate count, acceptance confidence
        commit: Stores a new result value in the run's table
        cancel_token: Stops the layer before the next batch when set

    Returns:
        Ids that reached a final status in this layer
    """
    semantic_queue: List[Tuple[str, List[Candidate]]] = []
    web_queue: List[str] = []
    for rid in pending:
        current = results[rid]
        candidates = index.top_n_candidates(current.record, options.top_n_candidates)
        if candidates:
            commit(current.annotate(
                all_candidate_models=tuple(c.record.normalized_base_model for c in candidates)
            ))
            semantic_queue.append((rid, candidates))
        else:
            web_queue.append(rid)

    logger.info("AI layer: %d records for semantic comparison, %d for web search",
                len(semantic_queue), len(web_queue))

    pacer = _Pacer(options.inter_batch_delay)
    resolved: List[str] = []

    for batch in _chunks(semantic_queue, options.semantic_batch_size):
        if _cancelled(cancel_token):
            logger.warning("AI layer cancelled during semantic comparison")
            return resolved
        await pacer.wait()
        done, escalated = await _run_semantic_batch(batch, results, index, provider, options, commit)
        resolved.extend(done)
        web_queue.extend(escalated)

    for batch in _chunks(web_queue, options.web_search_batch_size):
        if _cancelled(cancel_token):
            logger.warning("AI layer cancelled during web search")
            return resolved
        await pacer.wait()
        resolved.extend(await _run_web_batch(batch, results, index, provider, options, commit))

    logger.info("AI layer: %d records finalized", len(resolved))
    return resolved
