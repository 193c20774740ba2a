import asyncio

import pytest

from fakes import ScriptedProvider
from learning import (
    collect_knowledge_rows, collect_rule_examples, is_high_confidence, perform_learning, validate_rule,
)
from matcher import build_source_records
from models import LearnedRule, MatchResult, MatchStatus, RuleAction, RuleCondition, RuleExample
from settings import MappingOptions
from stores import InMemoryKnowledgeStore, InMemoryRuleStore


@pytest.fixture
def matched(source_columns):
    def _matched(make, model, status, confidence, matched_make, matched_model):
        record = build_source_records([{'Make': make, 'Model': model}], source_columns)[0]
        return MatchResult(record=record).transition(
            status, confidence=confidence, matched_make=matched_make, matched_model=matched_model,
        )
    return _matched


def _rule(value, make, model, field='model', operator='equals'):
    return LearnedRule(
        conditions=[RuleCondition(field=field, operator=operator, value=value)],
        action=RuleAction(set_make=make, set_model=model),
    )


def test_high_confidence_thresholds(matched):
    options = MappingOptions()
    assert is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_AI, 0.95, 'BYD', 'S6'), options)
    assert not is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_AI, 0.9, 'BYD', 'S6'), options)
    assert is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_SEMANTIC_LLM, 0.97, 'BYD', 'S6'), options)
    assert is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_FUZZY, 0.99, 'BYD', 'S6'), options)
    assert not is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_FUZZY, 0.98, 'BYD', 'S6'), options)
    # Knowledge and rule matches are already known
    assert not is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_KNOWLEDGE, 1.0, 'BYD', 'S6'), options)
    assert not is_high_confidence(matched('BYD', 'S6', MatchStatus.MATCHED_AI, None, 'BYD', 'S6'), options)


def test_knowledge_rows_use_base_models(matched):
    results = [
        matched('Build Your Dreams', 'S6 SUV', MatchStatus.MATCHED_AI, 0.97, 'BYD', 'S6'),
        matched('Build Your Dreams', 'S6', MatchStatus.MATCHED_AI, 0.98, 'BYD', 'S6'),
        matched('Nissan', 'Navara', MatchStatus.MATCHED_AI, 0.6, 'NISSAN', 'NAVARA'),
    ]
    rows = collect_knowledge_rows(results, MappingOptions())
    assert rows == [('build your dreams', 's6', 'byd', 's6')]


def test_rule_examples_use_normalized_source(matched):
    results = [matched('MERC', 'C200 Kompressor', MatchStatus.MATCHED_AI, 0.96, 'MERCEDES-BENZ', 'C 200')]
    [example] = collect_rule_examples(results, MappingOptions())
    assert (example.source_make, example.source_model) == ('merc', 'c200 kompressor')
    assert (example.matched_make, example.matched_model) == ('MERCEDES-BENZ', 'C 200')


def test_validator_rejects_different_model_numbers():
    rule = _rule('300zx', 'NISSAN', '350Z')
    examples = [RuleExample(source_make='nissan', source_model='300zx', matched_make='NISSAN', matched_model='350Z')]

    reason = validate_rule(rule, examples)
    assert reason is not None
    assert "too different" in reason


def test_validator_accepts_spacing_variant():
    rule = _rule('c200', 'MERCEDES-BENZ', 'C 200', operator='contains')
    examples = [RuleExample(source_make='merc', source_model='c200', matched_make='MERCEDES-BENZ', matched_model='C 200')]
    assert validate_rule(rule, examples) is None


@pytest.mark.parametrize("rule, fragment", [
    (LearnedRule(conditions=[], action=RuleAction(set_make='BYD', set_model='S6')), "no conditions"),
    (_rule('s6', 'BYD', ''), "no target"),
    (_rule('f', 'FERRARI', 'F430'), "shorter than 2"),
])
def test_validator_structural_checks(rule, fragment):
    assert fragment in validate_rule(rule)


def test_learning_stores_knowledge_and_safe_rules(matched):
    results = [
        matched('Nissan', '300ZX', MatchStatus.MATCHED_AI, 0.96, 'NISSAN', '350Z'),
        matched('Merc', 'C200', MatchStatus.MATCHED_SEMANTIC_LLM, 0.97, 'MERCEDES-BENZ', 'C 200'),
    ]
    provider = ScriptedProvider(rules=[
        _rule('300zx', 'NISSAN', '350Z'),
        _rule('c200', 'MERCEDES-BENZ', 'C 200', operator='contains'),
        _rule('c200', 'MERCEDES-BENZ', 'C 200', operator='contains'),
    ])
    knowledge, rules = InMemoryKnowledgeStore(), InMemoryRuleStore()

    report = asyncio.run(perform_learning(results, provider, knowledge, rules))

    assert report.knowledge_entries_added == 2
    assert report.rules_proposed == 2
    assert report.rules_saved == 1
    assert [r['reason'] for r in report.rejected_rules][0].startswith("Target model '350z'")
    assert rules.get_all()[0].action.set_model == 'C 200'
    assert len(provider.rule_calls[0]) == 2
    assert report.errors == []


def test_learning_survives_provider_failure(matched):
    results = [matched('BYD', 'Seal', MatchStatus.MATCHED_AI, 0.99, 'BYD', 'SEAL')]
    provider = ScriptedProvider(rules=RuntimeError("rate limited"))
    knowledge = InMemoryKnowledgeStore()

    report = asyncio.run(perform_learning(results, provider, knowledge, InMemoryRuleStore()))

    assert knowledge.count() == 1
    assert report.errors == ["Rule generation failed: rate limited"]
    assert report.to_dict()['rules_saved'] == 0


def test_learning_survives_store_failure(matched):
    class BrokenStore(InMemoryKnowledgeStore):
        def bulk_upsert(self, rows, on_progress=None):
            raise ConnectionError("store offline")

    results = [matched('BYD', 'Seal', MatchStatus.MATCHED_AI, 0.99, 'BYD', 'SEAL')]
    report = asyncio.run(perform_learning(results, None, BrokenStore(), None))

    assert report.knowledge_candidates == 1
    assert report.knowledge_entries_added == 0
    assert "store offline" in report.errors[0]


def test_learning_without_high_confidence_matches(matched):
    provider = ScriptedProvider()
    results = [matched('BYD', 'Seal', MatchStatus.MATCHED_AI, 0.5, 'BYD', 'SEAL')]
    report = asyncio.run(perform_learning(results, provider, InMemoryKnowledgeStore(), InMemoryRuleStore()))

    assert report.knowledge_candidates == 0
    assert provider.rule_calls == []
