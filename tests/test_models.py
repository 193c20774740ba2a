import pytest

from matcher import build_source_records
from models import (
    InvalidTransition, LearnedRule, MatchResult, MatchStatus,
    RuleAction, RuleCondition, SemanticVerdict, WebSearchVerdict,
)
from settings import ColumnConfig, MappingOptions


@pytest.fixture
def result(source_columns):
    record = build_source_records([{'Make': 'Toyota', 'Model': 'Camry LE'}], source_columns)[0]
    return MatchResult(record=record)


def test_new_result_starts_not_processed(result):
    assert result.status == MatchStatus.NOT_PROCESSED
    assert not result.status.is_terminal
    assert result.record.normalized_base_model == 'camry'


def test_transition_returns_new_value(result):
    processing = result.transition(MatchStatus.PROCESSING_SEMANTIC_LLM)
    matched = processing.transition(MatchStatus.MATCHED_SEMANTIC_LLM, confidence=0.9, matched_make='TOYOTA')

    assert result.status == MatchStatus.NOT_PROCESSED
    assert processing.status == MatchStatus.PROCESSING_SEMANTIC_LLM
    assert matched.status == MatchStatus.MATCHED_SEMANTIC_LLM
    assert matched.confidence == 0.9
    assert matched.id == result.id


def test_terminal_status_cannot_change(result):
    final = result.transition(MatchStatus.NO_MATCH, reason="nothing")
    with pytest.raises(InvalidTransition):
        final.transition(MatchStatus.MATCHED_AI)


def test_no_backward_moves(result):
    web = result.transition(MatchStatus.PROCESSING_AI)
    with pytest.raises(InvalidTransition):
        web.transition(MatchStatus.PROCESSING_SEMANTIC_LLM)
    with pytest.raises(InvalidTransition):
        result.transition(MatchStatus.NOT_PROCESSED)


def test_annotate_keeps_status(result):
    noted = result.annotate(reason="Rule ambiguity", actual_fuzzy_similarity=0.4)
    assert noted.status == MatchStatus.NOT_PROCESSED
    assert noted.reason == "Rule ambiguity"
    with pytest.raises(InvalidTransition):
        result.annotate(status=MatchStatus.MATCHED_AI)


def test_to_dict_uses_labels(result):
    data = result.transition(MatchStatus.MATCHED_FUZZY, confidence=1.0).to_dict()
    assert data['status'] == 'Matched (Fuzzy)'
    assert data['status_code'] == 'MATCHED_FUZZY'
    assert data['source'] == {'Make': 'Toyota', 'Model': 'Camry LE'}


def test_record_ids_are_unique(source_columns):
    rows = [{'Make': 'Toyota', 'Model': 'Camry'}] * 50
    records = build_source_records(rows, source_columns)
    assert len({r.id for r in records}) == 50


def test_rule_parses_provider_json():
    rule = LearnedRule.model_validate({
        'conditions': [{'field': 'make', 'operator': 'contains', 'value': 'MERC'}],
        'actions': {'setMake': 'Mercedes-Benz', 'setModel': 'C 200'},
    })
    assert rule.conditions[0].value == 'merc'
    assert rule.action.set_make == 'Mercedes-Benz'
    assert rule.to_document()['actions'] == {'setMake': 'Mercedes-Benz', 'setModel': 'C 200'}


def test_rule_rejects_unknown_operator():
    with pytest.raises(ValueError):
        RuleCondition(field='model', operator='startswith', value='cam')


def test_content_hash_covers_rule_logic_only():
    a = LearnedRule(
        conditions=[RuleCondition(field='model', operator='contains', value='camry')],
        action=RuleAction(set_make='TOYOTA', set_model='CAMRY 4D SDN LE'),
    )
    b = LearnedRule.model_validate(a.to_document())
    c = LearnedRule(
        conditions=[RuleCondition(field='model', operator='equals', value='camry')],
        action=RuleAction(set_make='TOYOTA', set_model='CAMRY 4D SDN LE'),
    )
    assert a.content_hash() == b.content_hash()
    assert a.content_hash() != c.content_hash()
    assert len(a.content_hash()) == 64


def test_verdicts_accept_camel_case_and_loose_numbers():
    verdict = SemanticVerdict.model_validate({'recordId': 'r1', 'chosenIndex': '2', 'confidence': '0.8'})
    assert verdict.chosen_index == 2
    assert verdict.confidence == 0.8

    no_match = SemanticVerdict.model_validate({'recordId': 'r1', 'chosenIndex': None, 'reason': 'none'})
    assert no_match.chosen_index is None

    web = WebSearchVerdict.model_validate({'recordId': 'r2', 'matchedMake': 'BYD', 'matchedModel': 'S6', 'extra': 1})
    assert web.matched_make == 'BYD'
    assert web.sources == []


@pytest.mark.parametrize("model, payload", [
    (SemanticVerdict, {'recordId': 'r', 'chosenIndex': 1, 'confidence': 95}),
    (WebSearchVerdict, {'recordId': 'r', 'matchedMake': 'BYD', 'confidence': -0.2}),
])
def test_verdict_confidence_must_be_a_fraction(model, payload):
    with pytest.raises(ValueError, match="confidence"):
        model.model_validate(payload)


def test_verdict_confidence_bounds_are_inclusive():
    assert SemanticVerdict(record_id='r', chosen_index=1, confidence=0).confidence == 0.0
    assert WebSearchVerdict(record_id='r', confidence=1).confidence == 1.0


def test_mapping_options_validation():
    assert MappingOptions().fuzzy_threshold == 0.8
    with pytest.raises(ValueError):
        MappingOptions(fuzzy_threshold=1.5)
    with pytest.raises(ValueError):
        MappingOptions(semantic_batch_size=0)
    with pytest.raises(ValueError):
        MappingOptions(inter_batch_delay=-1)
    assert MappingOptions(use_ai_layer=False).enabled_layers == ('knowledge', 'rules', 'fuzzy')


def test_mapping_options_similarity_metric():
    assert MappingOptions().similarity_metric == 'ratio'
    assert MappingOptions(similarity_metric='token_sort').similarity_metric == 'token_sort'
    with pytest.raises(ValueError, match="soundex"):
        MappingOptions(similarity_metric='soundex')


def test_column_config_requires_make_and_model():
    assert ColumnConfig(make='A', model='B', codes=['C']).codes == ('C',)
    with pytest.raises(ValueError):
        ColumnConfig(make='', model='B')
