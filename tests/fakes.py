"""
Scripted stand-ins for the reasoning provider and the HTTP layer.
"""

from typing import Callable, List, Optional

from llm_providers import Completion, LlmProvider
from models import (
    SemanticTask, SemanticVerdict, WebSearchRecord, WebSearchVerdict,
)


def reject_all(task: SemanticTask) -> SemanticVerdict:
    return SemanticVerdict(record_id=task.record_id, chosen_index=None, confidence=0.1, reason="no candidate fits")


def no_web_match(record: WebSearchRecord, reference_list) -> WebSearchVerdict:
    return WebSearchVerdict(record_id=record.record_id, confidence=0.1, reason="nothing similar")


class ScriptedProvider(LlmProvider):
    """Answers each item with a plain function and records every call."""

    name = 'scripted'

    def __init__(
        self,
        semantic: Callable[[SemanticTask], SemanticVerdict] = reject_all,
        web: Callable[[WebSearchRecord, list], WebSearchVerdict] = no_web_match,
        rules=None,
        supports_web_search: bool = True,
    ):
        self.semantic = semantic
        self.web = web
        self.rules = rules if rules is not None else []
        self.supports_web_search = supports_web_search
        self.semantic_calls: List[List[SemanticTask]] = []
        self.web_calls: List[List[WebSearchRecord]] = []
        self.reference_lists: List[list] = []
        self.rule_calls: List[list] = []

    async def complete(self, prompt: str, web_search: bool = False) -> Completion:
        raise AssertionError("ScriptedProvider answers batches directly")

    async def semantic_compare_batch(self, tasks):
        self.semantic_calls.append(list(tasks))
        for task in tasks:
            yield self.semantic(task)

    async def find_best_match_batch(self, records, reference_list):
        self.web_calls.append(list(records))
        self.reference_lists.append(list(reference_list))
        for record in records:
            yield self.web(record, reference_list)

    async def generate_rules(self, examples):
        self.rule_calls.append(list(examples))
        if isinstance(self.rules, Exception):
            raise self.rules
        return list(self.rules)


class FakeHttp:
    """LlmHttpClient replacement returning canned JSON bodies."""

    def __init__(self, responses: Optional[list] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    async def post_json(self, url, payload, headers=None):
        self.calls.append({'url': url, 'payload': payload, 'headers': headers or {}})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


class FakeResponse:

    def __init__(self, status_code: int = 200, payload=None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ('' if payload is None else str(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload
