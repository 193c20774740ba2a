from unittest.mock import MagicMock

from pymongo import UpdateOne

import mongodb_client
from models import KnowledgeEntry, LearnedRule, RuleAction, RuleCondition
from stores import InMemoryKnowledgeStore, InMemoryRuleStore, dedupe_rules, knowledge_source_key


def _rule(value, model='PATROL'):
    return LearnedRule(
        conditions=[RuleCondition(field='model', operator='contains', value=value)],
        action=RuleAction(set_make='NISSAN', set_model=model),
    )


ROWS = [
    ('toyota', 'camry', 'toyota', 'camry'),
    ('toyota', 'camry', 'toyota', 'camry'),
    ('merc', 'c200', 'mercedes-benz', 'c'),
    ('toyota', 'camry', 'toyota', 'camry hybrid'),
    ('byd', 's6', 'byd', 's6'),
]


def test_in_memory_knowledge_upsert_and_progress():
    store = InMemoryKnowledgeStore(batch_size=2)
    progress = []

    added = store.bulk_upsert(ROWS, on_progress=lambda done, total: progress.append((done, total)))

    assert added == 4
    assert progress == [(2, 5), (4, 5), (5, 5)]
    assert store.get_all()[('toyota', 'camry')] == [
        KnowledgeEntry('toyota', 'camry'), KnowledgeEntry('toyota', 'camry hybrid'),
    ]
    assert store.bulk_upsert(ROWS) == 0
    assert store.count() == 4


def test_in_memory_rule_store_dedupes():
    store = InMemoryRuleStore([_rule('patrol'), _rule('PATROL ')])
    assert store.count() == 1
    assert store.upsert([_rule('patrol'), _rule('safari', 'PATROL')]) == 1
    assert [r.conditions[0].value for r in store.get_all()] == ['patrol', 'safari']


def test_dedupe_rules_keeps_first():
    first, second = _rule('patrol'), _rule('patrol')
    assert dedupe_rules([first, _rule('gu'), second]) == [first, _rule('gu')]


def test_knowledge_source_key():
    assert knowledge_source_key('toyota', 'land cruiser') == 'toyota|land cruiser'


# ----------------------------------------------------------------------------
# MongoDB stores over a mocked collection
# ----------------------------------------------------------------------------

def test_mongo_knowledge_store_bulk_upsert():
    collection = MagicMock()
    collection.bulk_write.return_value = MagicMock(upserted_count=1)
    store = mongodb_client.MongoKnowledgeStore(collection, batch_size=3)

    added = store.bulk_upsert(ROWS)

    assert collection.create_index.call_args.kwargs['unique'] is True
    assert collection.bulk_write.call_count == 2
    assert added == 2
    ops = collection.bulk_write.call_args_list[0].args[0]
    assert ops[2] == UpdateOne(
        {'source_key': 'merc|c200', 'reference_make': 'mercedes-benz', 'reference_base_model': 'c'},
        {'$setOnInsert': {
            'source_key': 'merc|c200', 'source_make': 'merc', 'source_base_model': 'c200',
            'reference_make': 'mercedes-benz', 'reference_base_model': 'c',
        }},
        upsert=True,
    )
    assert collection.bulk_write.call_args.kwargs['ordered'] is False


def test_mongo_knowledge_store_get_all():
    collection = MagicMock()
    collection.find.return_value = [
        {'source_make': 'toyota', 'source_base_model': 'camry', 'reference_make': 'toyota', 'reference_base_model': 'camry'},
        {'source_make': 'toyota', 'source_base_model': 'camry', 'reference_make': 'toyota', 'reference_base_model': 'camry'},
    ]
    knowledge = mongodb_client.MongoKnowledgeStore(collection).get_all()
    assert knowledge == {('toyota', 'camry'): [KnowledgeEntry('toyota', 'camry')]}


def test_mongo_rule_store_round_trip():
    collection = MagicMock()
    collection.bulk_write.return_value = MagicMock(upserted_count=1)
    store = mongodb_client.MongoRuleStore(collection)
    rule = _rule('patrol')

    assert store.upsert([rule]) == 1
    assert store.upsert([]) == 0
    [op] = collection.bulk_write.call_args.args[0]
    assert op == UpdateOne(
        {'rule_hash': rule.content_hash()},
        {'$setOnInsert': {'rule_hash': rule.content_hash(), 'rule': rule.to_document()}},
        upsert=True,
    )

    collection.find.return_value = [
        {'rule_hash': rule.content_hash(), 'rule': rule.to_document()},
        {'rule_hash': 'broken', 'rule': {'conditions': 'nope'}},
        {'rule_hash': 'missing'},
    ]
    assert store.get_all() == [rule]


def test_mongo_client_requires_uri(monkeypatch):
    monkeypatch.setattr(mongodb_client, '_client', None)
    monkeypatch.setattr(mongodb_client.settings, 'MONGO_URI', None)

    status = mongodb_client.test_connection()

    assert status['connected'] is False
    assert 'MONGO_URI' in status['error']
