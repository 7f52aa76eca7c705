"""
Language Service adapters: field extraction and follow-up generation.

The oracle is untrusted and non-deterministic. Everything it returns passes
through the public ``extract`` / ``generate_follow_up`` methods, which own the
timeout, circuit breaker, guardrails and fallbacks. Concrete services only
implement the raw ``_extract`` / ``_generate`` calls, so tests can stub the
input/output contract without touching prompt text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from google.adk.models.lite_llm import LiteLlm
from google.adk.models.llm_request import LlmRequest
from google.genai import types

from data.qualification_catalog import get_field_vocabulary
from qualifier.catalog import CatalogStep
from qualifier.circuit_breaker import CircuitBreaker
from qualifier.config import settings
from qualifier.guardrails import (
    UnsafeInputError,
    clean_generated_question,
    screen_utterance,
    validate_extracted_fields,
)
from qualifier.observability import trace_span

logger = logging.getLogger(__name__)


EXTRACTION_INSTRUCTION = (
    "You extract structured business-intake data from a prospect's answer. "
    "You always reply with a single JSON object and nothing else."
)

EXTRACTION_PROMPT = """Extract ONLY information the respondent states EXPLICITLY.

Fields to extract: {fields}
Respondent said: "{utterance}"
Already captured: {existing}

Rules:
- If a field is not mentioned or is unclear, leave it out
- No assumptions, no inferences, no defaults, no guessing from context
- When in doubt, leave it out

Allowed values:
{vocabulary}

Example:
Respondent: "I think maybe we need something"
Output: {{}}

Respondent: "I'm a manager and we need sales help"
Output: {{"jobFunction": "manager", "jobFunctionCategory": "management", "problemType": "sales_automation", "problemTypeCategory": "automation"}}

Return a JSON object only."""

FOLLOW_UP_INSTRUCTION = (
    "You are a friendly interviewer who asks short, natural follow-up questions."
)

FOLLOW_UP_PROMPT = """The respondent answered "{utterance}" to the question "{question}".

Still needed: {fields}
Optional information: {optional}

Write ONE short conversational question that would naturally get one or more of the
missing details. Never mention fields, data or anything technical.

Examples:
- missing industry: "What industry is your company in?"
- missing jobFunction: "What's your role at the company?"
- missing budgetAmount: "Do you have a rough budget range in mind?"

Return only the question text, without quotes."""


def humanize_field(field: str) -> str:
    """``problemType`` -> ``problem type``."""
    return re.sub(r"(?<!^)([A-Z])", r" \1", field).lower()


def fallback_question(missing_fields: list[str]) -> str:
    """Deterministic follow-up used whenever generation fails. Never raises."""
    if not missing_fields:
        return "Could you tell me a bit more about that?"
    return f"Could you tell me a bit more about {humanize_field(missing_fields[0])}?"


def parse_json_object(text: str) -> dict[str, Any]:
    """
    Parse the oracle's extraction reply.

    Accepts a bare JSON object, one wrapped in markdown fences, or one
    surrounded by chatter.

    Raises:
        ValueError: If no JSON object can be recovered
    """
    if not text or not text.strip():
        raise ValueError("Empty extraction response")

    body = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        start, end = body.find("{"), body.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object in extraction response") from None
        parsed = json.loads(body[start : end + 1])

    if not isinstance(parsed, dict):
        raise ValueError(f"Extraction response is {type(parsed).__name__}, not an object")
    return parsed


class LanguageService(ABC):
    """
    Contract between the interview and the oracle.

    Guarantees of the public methods:
    - ``extract`` returns a validated partial map, ``{}`` on any failure
    - ``generate_follow_up`` returns a single question, the template on any failure
    - neither raises, and neither waits longer than ``timeout_seconds``
    """

    def __init__(self, timeout_seconds: float | None = None, circuit_breaker: CircuitBreaker | None = None):
        self.timeout_seconds = settings.llm_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
            name="LanguageServiceCircuitBreaker",
        )

    async def _call_oracle(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run one oracle call under the timeout and the circuit breaker."""

        async def bounded():
            return await asyncio.wait_for(func(*args), timeout=self.timeout_seconds)

        return await self.circuit_breaker.acall(bounded)

    async def extract(
        self,
        utterance: str,
        target_fields: list[str] | tuple[str, ...],
        existing_data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Extract the explicitly stated values of ``target_fields`` from ``utterance``.

        Args:
            utterance: Raw respondent answer
            target_fields: Fields of the current step
            existing_data: Already captured data, for context only

        Returns:
            Validated partial map; missing keys mean "genuinely unknown"
        """
        target_fields = list(target_fields)

        with trace_span("extract", fields=len(target_fields)) as span:
            try:
                safe_utterance = screen_utterance(utterance)
            except UnsafeInputError:
                span["outcome"] = "rejected"
                return {}

            if not safe_utterance:
                span["outcome"] = "empty"
                return {}

            try:
                raw = await self._call_oracle(
                    self._extract, safe_utterance, target_fields, dict(existing_data)
                )
            except Exception as e:
                logger.warning(f"Extraction failed, continuing with nothing extracted: {e!r}")
                span["outcome"] = "fallback"
                return {}

            if not isinstance(raw, dict):
                logger.warning(f"Extraction returned {type(raw).__name__}; ignoring")
                span["outcome"] = "fallback"
                return {}

            extracted = validate_extracted_fields(raw, target_fields)
            span["outcome"] = "ok"
            span["extracted"] = len(extracted)
            return extracted

    async def generate_follow_up(
        self,
        missing_fields: list[str] | tuple[str, ...],
        prior_utterance: str,
        entry: CatalogStep,
        is_optional: bool = False,
    ) -> str:
        """
        Produce one conversational question asking for ``missing_fields``.

        Args:
            missing_fields: Fields still needed (required or whitelisted optional)
            prior_utterance: What the respondent just said
            entry: Current catalog step, for the question context
            is_optional: Whether the ask is a skippable optional one

        Returns:
            A single question; the deterministic template when generation fails
        """
        missing_fields = list(missing_fields)

        with trace_span("generate_follow_up", step=entry.step, optional=is_optional) as span:
            try:
                text = await self._call_oracle(
                    self._generate, missing_fields, prior_utterance, entry, is_optional
                )
            except Exception as e:
                logger.warning(f"Follow-up generation failed, using template: {e!r}")
                span["outcome"] = "fallback"
                return fallback_question(missing_fields)

            question = clean_generated_question(text if isinstance(text, str) else None)
            if question is None:
                span["outcome"] = "fallback"
                return fallback_question(missing_fields)

            span["outcome"] = "ok"
            return question

    def get_circuit_breaker_state(self) -> dict:
        """Get circuit breaker state for monitoring."""
        return self.circuit_breaker.get_state()

    @abstractmethod
    async def _extract(
        self, utterance: str, target_fields: list[str], existing_data: dict[str, Any]
    ) -> dict[str, Any]:
        """Raw extraction call; may raise on any failure."""

    @abstractmethod
    async def _generate(
        self, missing_fields: list[str], prior_utterance: str, entry: CatalogStep, is_optional: bool
    ) -> str:
        """Raw generation call; may raise on any failure."""


class LiteLlmLanguageService(LanguageService):
    """Language Service backed by a LiteLLM model through Google ADK."""

    def __init__(self, model_name: str | None = None, api_key: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.model_name = model_name or settings.litellm_model

        model_kwargs = {}
        api_key = api_key or settings.openai_api_key
        if api_key:
            model_kwargs["api_key"] = api_key

        self.model = LiteLlm(model=self.model_name, **model_kwargs)
        logger.info(f"LiteLlmLanguageService initialized: model={self.model_name}")

    async def _complete(
        self, instruction: str, prompt: str, temperature: float, max_tokens: int | None = None
    ) -> str:
        request = LlmRequest(
            model=self.model_name,
            contents=[types.Content(role="user", parts=[types.Part(text=prompt)])],
            config=types.GenerateContentConfig(
                system_instruction=instruction,
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )

        text = ""
        async for response in self.model.generate_content_async(request, stream=False):
            if response.content and response.content.parts:
                text = "".join(part.text or "" for part in response.content.parts)
        return text

    async def _extract(
        self, utterance: str, target_fields: list[str], existing_data: dict[str, Any]
    ) -> dict[str, Any]:
        vocabulary = "\n".join(
            f"{field}: {'|'.join(values)}"
            if (values := get_field_vocabulary(field))
            else f"{field}: a specific number (amounts mentioned, digits only)"
            for field in target_fields
        )
        prompt = EXTRACTION_PROMPT.format(
            fields=", ".join(target_fields),
            utterance=utterance,
            existing=json.dumps(existing_data),
            vocabulary=vocabulary,
        )

        text = await self._complete(
            EXTRACTION_INSTRUCTION, prompt, temperature=settings.extraction_temperature
        )
        return parse_json_object(text)

    async def _generate(
        self, missing_fields: list[str], prior_utterance: str, entry: CatalogStep, is_optional: bool
    ) -> str:
        prompt = FOLLOW_UP_PROMPT.format(
            utterance=prior_utterance,
            question=entry.prompt,
            fields=", ".join(missing_fields),
            optional="yes" if is_optional else "no",
        )

        return await self._complete(
            FOLLOW_UP_INSTRUCTION,
            prompt,
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
        )


# Global language service instance
_language_service: LanguageService | None = None


def get_language_service() -> LanguageService:
    """Get or create the global language service."""
    global _language_service
    if _language_service is None:
        _language_service = LiteLlmLanguageService()
    return _language_service
