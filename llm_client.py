# -*- coding: utf-8 -*-
"""
HTTP transport for hosted language models.

Blocking `requests` calls run in a worker thread so the mapping loop can
`await` them. Transient failures (timeouts, dropped connections, 429 and 5xx
gateway statuses) are retried with exponential backoff; any other HTTP error
fails on the first attempt.
"""
import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from settings import LLM_INITIAL_RETRY_DELAY, LLM_MAX_RETRIES, LLM_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset([429, 500, 502, 503, 504])


# ============================================================================
# ERRORS
# ============================================================================

class ProviderError(Exception):
    """A provider call failed and its batch cannot be answered."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Failure worth retrying: timeout, connection error, rate limit, server busy."""


class ProviderResponseError(ProviderError):
    """The provider answered but the body could not be understood."""


# ============================================================================
# JSON RESPONSE RECOVERY
# ============================================================================

_FENCE = re.compile(r'```(?:json)?\s*\n?([\s\S]*?)\n?\s*```')
_OBJECT = re.compile(r'\{[\s\S]*?\}')


def parse_json_array(text: str) -> List[Any]:
    """
    Extract a JSON array from model output.

    Accepts a bare array, an array inside a markdown fence, or an object that
    wraps one array ({"results": [...]}). When the array itself is malformed,
    each flat {...} object that still parses is recovered.

    Raises:
        ProviderResponseError: nothing usable in the text
    """
    if text is None:
        raise ProviderResponseError("Empty response from provider")

    original = text.strip()
    to_parse = original
    fence = _FENCE.search(original)
    if fence and fence.group(1):
        to_parse = fence.group(1).strip()

    try:
        parsed = json.loads(to_parse)
    except ValueError:
        recovered = []
        for chunk in _OBJECT.findall(to_parse):
            try:
                recovered.append(json.loads(chunk))
            except ValueError:
                logger.debug("Could not recover JSON object: %s", chunk[:200])
        if recovered:
            logger.warning("Recovered %d objects from a malformed JSON array", len(recovered))
            return recovered
        raise ProviderResponseError(f"Response is not JSON: {original[:300]}")

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for value in parsed.values():
            if isinstance(value, list):
                return value
    raise ProviderResponseError(f"Response JSON holds no array: {original[:300]}")


# ============================================================================
# HTTP CLIENT
# ============================================================================

class LlmHttpClient:
    """POST JSON with timeout, bounded retries and exponential backoff."""

    def __init__(
        self,
        max_retries: int = LLM_MAX_RETRIES,
        initial_delay: float = LLM_INITIAL_RETRY_DELAY,
        timeout: float = LLM_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max(1, max_retries)
        self.initial_delay = initial_delay
        self.timeout = timeout
        self._sleep = sleep

    def _post_once(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientProviderError(f"Request failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Request failed: {e}") from e

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientProviderError(
                f"Provider returned status {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"Provider returned status {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(f"Provider response is not JSON: {response.text[:300]}") from e

    async def post_json(self, url: str, payload: Dict[str, Any],
                        headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        POST `payload` and return the decoded JSON body.

        Raises:
            TransientProviderError: still failing after the last attempt
            ProviderError: non-retryable HTTP error
            ProviderResponseError: body is not JSON
        """
        delay = self.initial_delay
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.to_thread(self._post_once, url, payload, headers or {})
            except TransientProviderError as e:
                if attempt >= self.max_retries:
                    logger.error("Provider call failed after %d attempts: %s", attempt, e)
                    raise
                logger.warning("Attempt %d/%d failed, retrying in %.1fs: %s",
                               attempt, self.max_retries, delay, e)
                await self._sleep(delay)
                delay *= 2
        raise ProviderError("Exceeded max retries")
