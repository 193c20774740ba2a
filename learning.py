# -*- coding: utf-8 -*-
"""
Learning Feedback

After a run, high-confidence matches are turned into:
- knowledge entries: (source make, source base model) -> (reference make, reference base model)
- rule examples, sent to the provider in one request for rule mining

Every proposed rule passes `validate_rule` before it is stored. Learning is
best-effort: failures are logged and reported, the run's results are never
touched.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from llm_providers import LlmProvider
from models import LearnedRule, MatchResult, MatchStatus, RuleExample
from normalizers import extract_base_model, normalize_text
from settings import (
    MappingOptions, RULE_MIN_VALUE_LENGTH, RULE_MODEL_SIMILARITY_THRESHOLD,
)
from similarity import DEFAULT_SIMILARITY, SimilarityFn, get_similarity
from stores import KnowledgeRow, KnowledgeStore, RuleStore, dedupe_rules

logger = logging.getLogger(__name__)


@dataclass
class LearningReport:
    knowledge_entries_added: int = 0
    knowledge_candidates: int = 0
    rules_proposed: int = 0
    rules_saved: int = 0
    rejected_rules: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'knowledge_entries_added': self.knowledge_entries_added,
            'knowledge_candidates': self.knowledge_candidates,
            'rules_proposed': self.rules_proposed,
            'rules_saved': self.rules_saved,
            'rejected_rules': list(self.rejected_rules),
            'errors': list(self.errors),
        }


# ============================================================================
# HIGH-CONFIDENCE SELECTION
# ============================================================================

def is_high_confidence(result: MatchResult, options: MappingOptions) -> bool:
    """AI/semantic matches at the knowledge threshold, fuzzy matches at the stricter one."""
    if not (result.matched_make and result.matched_model):
        return False
    if not (result.record.normalized_make and result.record.normalized_base_model):
        return False

    confidence = result.confidence or 0.0
    if result.status in (MatchStatus.MATCHED_AI, MatchStatus.MATCHED_SEMANTIC_LLM):
        return confidence >= options.knowledge_confidence_threshold
    if result.status == MatchStatus.MATCHED_FUZZY:
        return confidence >= options.fuzzy_learning_threshold
    return False


def collect_knowledge_rows(results: Sequence[MatchResult], options: MappingOptions) -> List[KnowledgeRow]:
    rows = []
    seen = set()
    for result in results:
        if not is_high_confidence(result, options):
            continue
        row = (
            result.record.normalized_make,
            result.record.normalized_base_model,
            normalize_text(result.matched_make),
            extract_base_model(result.matched_model),
        )
        if not row[2] or not row[3] or row in seen:
            continue
        seen.add(row)
        rows.append(row)
    return rows


def collect_rule_examples(results: Sequence[MatchResult], options: MappingOptions) -> List[RuleExample]:
    examples = []
    seen = set()
    for result in results:
        if not is_high_confidence(result, options):
            continue
        example = RuleExample(
            source_make=result.record.normalized_make,
            source_model=result.record.normalized_model,
            matched_make=result.matched_make,
            matched_model=result.matched_model,
        )
        key = (example.source_make, example.source_model, example.matched_make, example.matched_model)
        if key in seen:
            continue
        seen.add(key)
        examples.append(example)
    return examples


# ============================================================================
# RULE SAFETY VALIDATOR
# ============================================================================

def validate_rule(
    rule: LearnedRule,
    examples: Sequence[RuleExample] = (),
    similarity: SimilarityFn = DEFAULT_SIMILARITY,
    min_value_length: int = RULE_MIN_VALUE_LENGTH,
    model_similarity_threshold: float = RULE_MODEL_SIMILARITY_THRESHOLD,
) -> Optional[str]:
    """
    Check a proposed rule before it is stored.

    A rule is rejected when it has no conditions, no target make/model, a
    condition value shorter than `min_value_length`, or when an example it was
    derived from (same target make/model) has a source model too different
    from the target model: "300zx" -> "350z" is a different car, not an alias.

    Returns:
        Rejection reason, or None when the rule is safe
    """
    if not rule.conditions:
        return "Rule has no conditions."

    target_make = normalize_text(rule.action.set_make)
    target_model = normalize_text(rule.action.set_model)
    if not target_make or not target_model:
        return "Rule has no target make or model."

    for cond in rule.conditions:
        if len(cond.value) < min_value_length:
            return f"Condition value '{cond.value}' is shorter than {min_value_length} characters."

    for example in examples:
        if normalize_text(example.matched_make) != target_make:
            continue
        if normalize_text(example.matched_model) != target_model:
            continue
        source_model = normalize_text(example.source_model)
        score = similarity(target_model, source_model)
        if score < model_similarity_threshold:
            return (f"Target model '{target_model}' is too different from source model "
                    f"'{source_model}' ({score:.2f} < {model_similarity_threshold:.2f}).")

    return None


# ============================================================================
# LEARNING
# ============================================================================

async def perform_learning(
    results: Sequence[MatchResult],
    provider: Optional[LlmProvider],
    knowledge_store: Optional[KnowledgeStore],
    rule_store: Optional[RuleStore],
    options: Optional[MappingOptions] = None,
    similarity: Optional[SimilarityFn] = None,
) -> LearningReport:
    """
    Grow the knowledge base and mine rules from a finished run.

    Args:
        results: Final results of the run
        provider: Used for rule mining; skipped when None
        knowledge_store: Receives new knowledge entries; skipped when None
        rule_store: Receives validated rules; skipped when None
        options: Learning thresholds and similarity metric
        similarity: Overrides the metric named by options.similarity_metric

    Returns:
        LearningReport; errors are collected there, never raised
    """
    options = options or MappingOptions()
    similarity = similarity or get_similarity(options.similarity_metric)
    report = LearningReport()

    if knowledge_store is not None:
        rows = collect_knowledge_rows(results, options)
        report.knowledge_candidates = len(rows)
        if rows:
            try:
                report.knowledge_entries_added = knowledge_store.bulk_upsert(rows)
                logger.info("Knowledge base: %d new entries from %d high-confidence matches",
                            report.knowledge_entries_added, len(rows))
            except Exception as e:
                logger.exception("Knowledge base update failed")
                report.errors.append(f"Knowledge base update failed: {e}")

    if provider is not None and rule_store is not None:
        examples = collect_rule_examples(results, options)
        if examples:
            try:
                proposed = dedupe_rules(await provider.generate_rules(examples))
                report.rules_proposed = len(proposed)

                accepted = []
                for rule in proposed:
                    reason = validate_rule(
                        rule,
                        examples,
                        similarity=similarity,
                        min_value_length=options.rule_min_value_length,
                        model_similarity_threshold=options.rule_model_similarity_threshold,
                    )
                    if reason:
                        logger.info("Rejected rule %s: %s", rule.to_document(), reason)
                        report.rejected_rules.append({'rule': rule.to_document(), 'reason': reason})
                    else:
                        accepted.append(rule)

                if accepted:
                    report.rules_saved = rule_store.upsert(accepted)
            except Exception as e:
                logger.exception("Rule generation failed")
                report.errors.append(f"Rule generation failed: {e}")

    return report
