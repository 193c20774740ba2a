# -*- coding: utf-8 -*-
"""
Reasoning providers for the AI layer and rule mining.

A provider answers three kinds of requests:
- semantic_compare_batch: pick one of a few shortlisted reference rows (or none)
- find_best_match_batch: open-ended match against a reference list, optionally
  grounded with web search
- generate_rules: propose reusable rules from confirmed matches

Batch calls are async generators yielding one verdict per input item, in input
order. A failed call never raises out of a batch: every item of that batch is
yielded with `error` set. Providers without web search yield `unsupported`
verdicts for the open-ended strategy.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence

from pydantic import ValidationError

import settings
from llm_client import LlmHttpClient, ProviderError, ProviderResponseError, parse_json_array
from models import (
    GroundingSource, LearnedRule, ReferenceListItem, RuleExample,
    SemanticTask, SemanticVerdict, WebSearchRecord, WebSearchVerdict,
)

logger = logging.getLogger(__name__)

MISSING_ANSWER = "Provider returned no answer for this record."


def _answer_id(item: dict) -> Optional[str]:
    rid = item.get('recordId')
    return rid if isinstance(rid, str) and rid else None


def _invalid_answer(error: ValidationError) -> str:
    first = error.errors()[0]
    field_name = '.'.join(str(part) for part in first.get('loc', ()))
    return f"Provider answer is invalid ({field_name}): {first.get('msg')}"


@dataclass
class Completion:
    text: str
    sources: List[GroundingSource] = field(default_factory=list)


# ============================================================================
# PROMPTS
# ============================================================================

_JSON_ARRAY_ONLY = (
    "**CRITICAL: Respond ONLY with a single valid JSON array, without any surrounding text, "
    "explanations, or markdown formatting. The first character of your response must be '[' "
    "and the last must be ']'.**"
)


def build_semantic_prompt(tasks: Sequence[SemanticTask]) -> str:
    blocks = []
    for number, task in enumerate(tasks, start=1):
        lines = []
        for i, cand in enumerate(task.candidates, start=1):
            line = f'{i}. Make: "{cand.make}", Model: "{cand.model}"'
            if cand.primary_code:
                line += f', PrimaryCode: "{cand.primary_code}"'
            lines.append(line)
        blocks.append(
            f"--- TASK {number} ---\n"
            f'Source Vehicle ID: "{task.record_id}"\n'
            f'Source Vehicle to Match: Make: "{task.make}", Model: "{task.model}"\n'
            f"Reference candidates for this task (choose one or none):\n"
            f"{chr(10).join(lines) or 'No candidates provided.'}\n"
        )

    return f"""You are a meticulous vehicle data analyst.
For each task below, strictly follow these rules to find the best match for a source vehicle among its reference candidates.

**Matching Rules:**
1. **VALIDATE MAKE:** The source MAKE and the candidate MAKE must be the same brand or a very common abbreviation of it (e.g., "Mercedes-Benz" and "Mercedes"). Different brands (e.g., "BYD" vs "AUDI") are NOT a match.
2. **VALIDATE MODEL:** If the make matches, strictly validate the MODEL.
   - Different numbers are NOT a match (e.g., "K4000" vs "K3000"; "300ZX" vs "350Z"; "F360" vs "F430").
   - Different body types or suffixes are NOT a match (e.g., "Patrol" vs "Patrol Pick Up"; "308" vs "308 SW").
   - Different core names are NOT a match (e.g., "Charmant" vs "Charade"; "Silver Spur" vs "Silver Spirit").
3. **REJECT IF NO MATCH:** If no candidate satisfies ALL rules, answer that no match was found. Do not select the "least bad" option.

**Response Format:**
{_JSON_ARRAY_ONLY}

Each object in the array answers one task and has exactly this shape:
{{
  "recordId": "THE_SOURCE_VEHICLE_ID_FROM_THE_TASK",
  "chosenIndex": ONE_BASED_INDEX_OF_THE_CHOSEN_CANDIDATE_OR_NULL,
  "confidence": CONFIDENCE_SCORE_0_TO_1_OR_NULL,
  "reason": "ONE_LINE_EXPLANATION"
}}

If no candidate matches, "chosenIndex" MUST be null and confidence should be low (e.g., 0.1).

--- TASKS ---
{chr(10).join(blocks)}"""


def build_web_search_prompt(records: Sequence[WebSearchRecord],
                            reference_list: Sequence[ReferenceListItem]) -> str:
    reference_lines = []
    for i, item in enumerate(reference_list, start=1):
        line = f'{i}. Make: "{item.make}", Model: "{item.model}"'
        if item.code:
            line += f', PrimaryCode: "{item.code}"'
        reference_lines.append(line)
    source_lines = [f'ID: "{r.record_id}", Make: "{r.make}", Model: "{r.model}"' for r in records]

    return f"""You are an expert vehicle data mapper.
Match each source vehicle below to the single most accurate vehicle from the reference list.
Match the MAKE first, then the MODEL. Consider spelling variations, typos and abbreviations.
Different brands, different model numbers and different body-style suffixes are NOT a match.
Use web search to check what a vehicle actually is when unsure.

{_JSON_ARRAY_ONLY}

Each object in the array answers one source vehicle and has exactly this shape:
{{
  "recordId": "THE_ORIGINAL_ID_OF_THE_SOURCE_VEHICLE",
  "matchedMake": "MATCHED_REFERENCE_MAKE_OR_NULL",
  "matchedModel": "MATCHED_REFERENCE_MODEL_OR_NULL",
  "matchedCode": "PRIMARY_CODE_OF_THE_MATCHED_REFERENCE_VEHICLE_OR_NULL",
  "confidence": CONFIDENCE_SCORE_0_TO_1_OR_NULL,
  "reason": "ONE_LINE_EXPLANATION"
}}

If there is no confident match, set the matched fields to null, use a low confidence and explain why.

Source vehicles to process:
{chr(10).join(source_lines)}

Reference vehicle list to match against:
{chr(10).join(reference_lines)}
"""


def build_rules_prompt(examples: Sequence[RuleExample]) -> str:
    lines = [
        f'- Source (Make: "{e.source_make}", Model: "{e.source_model}") => '
        f'Reference (Make: "{e.matched_make}", Model: "{e.matched_model}")'
        for e in examples
    ]
    return f"""You are a data analyst building a rule-based vehicle matching system.
From the confirmed matches below, generate **safe, reusable** matching rules.

**SAFETY RULES:**
1. Only create rules for abbreviations (e.g., "merc" -> "mercedes-benz") or reordered words (e.g., "pick up patrol" -> "patrol pickup").
2. Never generalize across different models: "300ZX" vs "350Z", "F360" vs "F430" and "Charmant" vs "Charade" are different vehicles.
3. Never map a base model to a model with a different body suffix ("308" to "308 SW" is wrong).
4. Conditions must be specific. A condition value like "f" is too broad.

{_JSON_ARRAY_ONLY}

Each rule object has exactly this shape:
{{
  "conditions": [
    {{ "field": "make" | "model", "operator": "contains" | "equals", "value": "LOWERCASE_STRING" }}
  ],
  "actions": {{ "setMake": "REFERENCE_MAKE_VALUE", "setModel": "REFERENCE_MODEL_VALUE" }}
}}

Confirmed matches:
{chr(10).join(lines)}
"""


# ============================================================================
# PROVIDER INTERFACE
# ============================================================================

class LlmProvider(ABC):
    """Base provider: prompt building and per-item result handling."""

    name = 'base'
    supports_web_search = False

    # Extra instruction for endpoints that only return JSON objects
    response_envelope_hint = ''

    @abstractmethod
    async def complete(self, prompt: str, web_search: bool = False) -> Completion:
        """Send one prompt and return the raw text answer (plus citations)."""

    def _prompt(self, body: str) -> str:
        return body + self.response_envelope_hint

    async def semantic_compare_batch(self, tasks: Sequence[SemanticTask]) -> AsyncIterator[SemanticVerdict]:
        if not tasks:
            return
        try:
            completion = await self.complete(self._prompt(build_semantic_prompt(tasks)))
            items = parse_json_array(completion.text)
        except ProviderError as e:
            logger.error("%s semantic batch of %d tasks failed: %s", self.name, len(tasks), e)
            for task in tasks:
                yield SemanticVerdict(record_id=task.record_id, error=str(e))
            return

        answers = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                verdict = SemanticVerdict.model_validate(item)
            except ValidationError as e:
                logger.warning("Skipping malformed semantic answer %r: %s", item, e)
                rid = _answer_id(item)
                if rid:
                    answers.setdefault(rid, SemanticVerdict(record_id=rid, error=_invalid_answer(e)))
                continue
            answers.setdefault(verdict.record_id, verdict)

        for task in tasks:
            yield answers.get(task.record_id) or SemanticVerdict(record_id=task.record_id, error=MISSING_ANSWER)

    async def find_best_match_batch(
        self,
        records: Sequence[WebSearchRecord],
        reference_list: Sequence[ReferenceListItem],
    ) -> AsyncIterator[WebSearchVerdict]:
        if not records:
            return
        try:
            completion = await self.complete(
                self._prompt(build_web_search_prompt(records, reference_list)),
                web_search=True,
            )
            items = parse_json_array(completion.text)
        except ProviderError as e:
            logger.error("%s web search batch of %d records failed: %s", self.name, len(records), e)
            for rec in records:
                yield WebSearchVerdict(record_id=rec.record_id, error=str(e))
            return

        answers = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                verdict = WebSearchVerdict.model_validate(item)
            except ValidationError as e:
                logger.warning("Skipping malformed web search answer %r: %s", item, e)
                rid = _answer_id(item)
                if rid:
                    answers.setdefault(rid, WebSearchVerdict(record_id=rid, error=_invalid_answer(e)))
                continue
            if not verdict.sources and completion.sources:
                verdict = verdict.model_copy(update={'sources': list(completion.sources)})
            answers.setdefault(verdict.record_id, verdict)

        for rec in records:
            yield answers.get(rec.record_id) or WebSearchVerdict(record_id=rec.record_id, error=MISSING_ANSWER)

    async def generate_rules(self, examples: Sequence[RuleExample]) -> List[LearnedRule]:
        """
        Ask for rules generalizing the confirmed matches.

        Raises:
            ProviderError: the request failed or the answer was not JSON
        """
        if not examples:
            return []
        completion = await self.complete(self._prompt(build_rules_prompt(examples)))
        rules = []
        for item in parse_json_array(completion.text):
            if not isinstance(item, dict):
                continue
            try:
                rules.append(LearnedRule.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed rule %r: %s", item, e)
        logger.info("%s proposed %d rules from %d examples", self.name, len(rules), len(examples))
        return rules


# ============================================================================
# GEMINI
# ============================================================================

class GeminiProvider(LlmProvider):
    """Google Gemini over the Generative Language REST API, with Google Search grounding."""

    name = 'gemini'
    supports_web_search = True

    def __init__(self, api_key: str, model: Optional[str] = None,
                 base_url: Optional[str] = None, http: Optional[LlmHttpClient] = None):
        if not api_key:
            raise ValueError("GeminiProvider requires an API key (GEMINI_API_KEY)")
        self.api_key = api_key
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip('/')
        self.http = http or LlmHttpClient()

    async def complete(self, prompt: str, web_search: bool = False) -> Completion:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {
            'contents': [{'role': 'user', 'parts': [{'text': prompt}]}],
            'generationConfig': {'temperature': 0.2, 'maxOutputTokens': 8192},
        }
        if web_search:
            # Search grounding cannot be combined with a JSON response MIME type
            payload['tools'] = [{'google_search': {}}]
        else:
            payload['generationConfig']['responseMimeType'] = 'application/json'
        headers = {'x-goog-api-key': self.api_key, 'Content-Type': 'application/json'}

        data = await self.http.post_json(url, payload, headers)

        candidates = data.get('candidates') or []
        if not candidates:
            feedback = data.get('promptFeedback') or {}
            raise ProviderResponseError(f"Gemini returned no candidates: {feedback}")

        top = candidates[0]
        parts = (top.get('content') or {}).get('parts') or []
        text = ''.join(part.get('text', '') for part in parts if isinstance(part, dict))
        if not text:
            raise ProviderResponseError(f"Gemini returned an empty answer (finishReason={top.get('finishReason')})")

        return Completion(text=text, sources=self._grounding_sources(top))

    @staticmethod
    def _grounding_sources(candidate: dict) -> List[GroundingSource]:
        chunks = (candidate.get('groundingMetadata') or {}).get('groundingChunks') or []
        sources = []
        seen = set()
        for chunk in chunks:
            web = chunk.get('web') or {}
            uri = web.get('uri')
            if not uri or uri in seen:
                continue
            seen.add(uri)
            sources.append(GroundingSource(uri=uri, title=web.get('title') or uri))
        return sources


# ============================================================================
# CUSTOM (OPENAI-COMPATIBLE)
# ============================================================================

class CustomProvider(LlmProvider):
    """Any OpenAI-compatible chat completions endpoint (Groq by default). No web search."""

    name = 'custom'
    supports_web_search = False
    response_envelope_hint = (
        '\nYour endpoint only accepts a JSON object: wrap the array in an object '
        'under the key "results", e.g. {"results": [...]}.\n'
    )

    def __init__(self, api_key: str, model: Optional[str] = None,
                 endpoint: Optional[str] = None, http: Optional[LlmHttpClient] = None):
        if not api_key:
            raise ValueError("CustomProvider requires an API key (CUSTOM_LLM_API_KEY)")
        self.api_key = api_key
        self.model = model or settings.CUSTOM_LLM_MODEL
        self.endpoint = endpoint or settings.CUSTOM_LLM_ENDPOINT
        self.http = http or LlmHttpClient()

    async def complete(self, prompt: str, web_search: bool = False) -> Completion:
        payload = {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'response_format': {'type': 'json_object'},
            'temperature': 0.1,
            'max_tokens': 4096,
        }
        headers = {'Authorization': f"Bearer {self.api_key}", 'Content-Type': 'application/json'}

        data = await self.http.post_json(self.endpoint, payload, headers)

        choices = data.get('choices') or []
        content = ((choices[0].get('message') or {}).get('content') if choices else None)
        if not content:
            raise ProviderResponseError("Custom provider response did not contain message content")
        return Completion(text=content)

    async def find_best_match_batch(
        self,
        records: Sequence[WebSearchRecord],
        reference_list: Sequence[ReferenceListItem],
    ) -> AsyncIterator[WebSearchVerdict]:
        if records:
            logger.warning("Web search requested from %s provider, which does not support it", self.name)
        for rec in records:
            yield WebSearchVerdict(
                record_id=rec.record_id,
                unsupported=True,
                reason="Web search matching is not available for the custom LLM provider.",
            )


# ============================================================================
# FACTORY
# ============================================================================

PROVIDERS = {
    'gemini': GeminiProvider,
    'custom': CustomProvider,
}


def create_provider(name: Optional[str] = None) -> Optional[LlmProvider]:
    """
    Build the configured provider from settings.

    Args:
        name: 'gemini' or 'custom'; defaults to LLM_PROVIDER, then to whichever
            API key is set

    Returns:
        Provider instance, or None when nothing is configured

    Raises:
        ValueError: unknown provider name, or the named provider has no API key
    """
    name = (name or settings.LLM_PROVIDER or '').strip().lower()
    if not name:
        if settings.GEMINI_API_KEY:
            name = 'gemini'
        elif settings.CUSTOM_LLM_API_KEY:
            name = 'custom'
        else:
            return None

    if name not in PROVIDERS:
        raise ValueError(f"Unknown LLM provider: {name}. Available: {list(PROVIDERS.keys())}")

    if name == 'gemini':
        return GeminiProvider(api_key=settings.GEMINI_API_KEY)
    return CustomProvider(api_key=settings.CUSTOM_LLM_API_KEY)
