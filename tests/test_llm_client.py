import asyncio

import pytest
import requests

import llm_client
from fakes import FakeResponse
from llm_client import (
    LlmHttpClient, ProviderError, ProviderResponseError, TransientProviderError, parse_json_array,
)


# ----------------------------------------------------------------------------
# JSON recovery
# ----------------------------------------------------------------------------

@pytest.mark.parametrize("text", [
    '[{"recordId": "a"}]',
    '```json\n[{"recordId": "a"}]\n```',
    'Here you go:\n```\n[{"recordId": "a"}]\n```',
    '{"results": [{"recordId": "a"}]}',
    '[{"recordId": "a"}, {"recordId": "b", }',
])
def test_parse_json_array_variants(text):
    assert parse_json_array(text)[0] == {'recordId': 'a'}


@pytest.mark.parametrize("text", ["I could not find any match.", '{"answer": 42}', None])
def test_parse_json_array_rejects_unusable_text(text):
    with pytest.raises(ProviderResponseError):
        parse_json_array(text)


# ----------------------------------------------------------------------------
# Retries
# ----------------------------------------------------------------------------

class Recorder:

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def delays():
    return []


@pytest.fixture
def client(delays):
    async def fake_sleep(seconds):
        delays.append(seconds)
    return LlmHttpClient(max_retries=3, initial_delay=1.0, timeout=5, sleep=fake_sleep)


def test_success_first_try(monkeypatch, client, delays):
    post = Recorder(FakeResponse(200, {'ok': True}))
    monkeypatch.setattr(llm_client.requests, 'post', post)

    assert asyncio.run(client.post_json('https://llm.test', {'q': 1}, {'X': 'y'})) == {'ok': True}
    assert post.calls[0]['json'] == {'q': 1}
    assert post.calls[0]['timeout'] == 5
    assert delays == []


def test_transient_errors_retry_with_backoff(monkeypatch, client, delays):
    post = Recorder(
        FakeResponse(503, None, text='busy'),
        requests.exceptions.Timeout('slow'),
        FakeResponse(200, {'ok': True}),
    )
    monkeypatch.setattr(llm_client.requests, 'post', post)

    assert asyncio.run(client.post_json('https://llm.test', {})) == {'ok': True}
    assert len(post.calls) == 3
    assert delays == [1.0, 2.0]


def test_gives_up_after_max_retries(monkeypatch, client, delays):
    post = Recorder(*[FakeResponse(429, None, text='slow down')] * 3)
    monkeypatch.setattr(llm_client.requests, 'post', post)

    with pytest.raises(TransientProviderError) as excinfo:
        asyncio.run(client.post_json('https://llm.test', {}))
    assert excinfo.value.status_code == 429
    assert delays == [1.0, 2.0]


def test_client_errors_are_not_retried(monkeypatch, client, delays):
    post = Recorder(FakeResponse(401, None, text='bad key'))
    monkeypatch.setattr(llm_client.requests, 'post', post)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(client.post_json('https://llm.test', {}))
    assert not isinstance(excinfo.value, TransientProviderError)
    assert excinfo.value.status_code == 401
    assert len(post.calls) == 1


def test_non_json_body(monkeypatch, client):
    monkeypatch.setattr(llm_client.requests, 'post', Recorder(FakeResponse(200, None, text='<html>')))
    with pytest.raises(ProviderResponseError):
        asyncio.run(client.post_json('https://llm.test', {}))
