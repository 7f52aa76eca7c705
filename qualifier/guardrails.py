"""
Guardrails around Language Service calls.
Run before extraction and after every oracle response, so nothing the
oracle returns reaches the session state or the respondent unchecked.
"""

import logging
import re
from typing import Any

from data.qualification_catalog import get_field_vocabulary
from qualifier.catalog import KNOWN_FIELDS

logger = logging.getLogger(__name__)

# Patterns for PII detection
PII_PATTERNS = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b",
    "phone": r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b",
    "ssn": r"\b\d{3}-\d{2}-\d{4}\b",
    "credit_card": r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b",
}

# Prompt-injection patterns; utterances matching these are never sent to the oracle
MALICIOUS_PATTERNS = [
    r"ignore (all )?previous instructions",
    r"disregard.*rules",
    r"you are now (a|an|the)\b.*\b(assistant|ai|model|chatbot)\b",
    r"system prompt",
    r"<script>",
    r"DROP TABLE",
    r"SELECT \* FROM",
]

AMOUNT_PATTERN = re.compile(r"^\$?\s*(\d[\d,]*(?:\.\d+)?)\s*$")
QUOTE_CHARS = "\"'`“”‘’"


class UnsafeInputError(ValueError):
    """Raised when an utterance looks like a prompt-injection attempt."""


def screen_utterance(utterance: str) -> str:
    """
    Check a respondent utterance before it is embedded in an extraction prompt.

    Performs:
    1. PII detection (logged only, the utterance is still used)
    2. Prompt-injection detection

    Returns:
        The stripped utterance

    Raises:
        UnsafeInputError: If an injection pattern matches
    """
    for pii_type, pattern in PII_PATTERNS.items():
        if re.search(pattern, utterance, re.IGNORECASE):
            logger.warning(f"PII detected in utterance: {pii_type}")

    for pattern in MALICIOUS_PATTERNS:
        if re.search(pattern, utterance, re.IGNORECASE):
            logger.error(f"Prompt injection pattern detected: {pattern}")
            raise UnsafeInputError("Utterance rejected by injection screen")

    return utterance.strip()


def coerce_amount(value: Any) -> int | float | None:
    """Turn ``50000``, ``"50,000"`` or ``"$50000"`` into a number; anything vaguer is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return value if value >= 0 else None
    if isinstance(value, str):
        match = AMOUNT_PATTERN.match(value.strip())
        if not match:
            return None
        number = float(match.group(1).replace(",", ""))
        return int(number) if number.is_integer() else number
    return None


def validate_extracted_fields(raw: dict[str, Any], target_fields: list[str]) -> dict[str, Any]:
    """
    Keep only the extracted values the interview can trust.

    Drops:
    - fields outside ``target_fields`` or the known field set
    - null, empty, boolean and non-scalar values
    - enumerated values outside the field's vocabulary
    - amounts that are not plain numbers

    Args:
        raw: Parsed oracle output
        target_fields: Fields the current step asked for

    Returns:
        Cleaned partial map (possibly empty)
    """
    cleaned: dict[str, Any] = {}

    for field, value in raw.items():
        if field not in target_fields or field not in KNOWN_FIELDS:
            continue
        if value is None or isinstance(value, bool | dict | list):
            continue

        vocabulary = get_field_vocabulary(field)
        if vocabulary is None:
            amount = coerce_amount(value)
            if amount is not None:
                cleaned[field] = amount
            continue

        normalized = str(value).strip().lower().replace(" ", "_").replace("-", "_")
        if normalized in vocabulary:
            cleaned[field] = normalized
        elif normalized:
            logger.info(f"Dropping out-of-vocabulary value for {field}: {value!r}")

    return cleaned


def clean_generated_question(text: str | None, field_names: frozenset[str] = KNOWN_FIELDS) -> str | None:
    """
    Normalize a generated follow-up into a single displayable question.

    Performs:
    1. Keeps the first non-empty line, strips wrapping quotes
    2. Redacts SSNs and email usernames
    3. Rejects text that leaks internal field names

    Returns:
        The cleaned question, or None when the text is unusable
    """
    if not text:
        return None

    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return None
    question = lines[0].strip(QUOTE_CHARS).strip()

    question = re.sub(r"\b\d{3}-\d{2}-\d{4}\b", "XXX-XX-XXXX", question)
    question = re.sub(
        r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Z|a-z]{2,})\b", r"****@\2", question
    )

    # single-word names like "industry" are ordinary English; only camelCase names leak
    leaked = [
        name
        for name in field_names
        if name != name.lower() and re.search(rf"\b{re.escape(name)}\b", question)
    ]
    if leaked:
        logger.warning(f"Generated question leaks field names {leaked}; discarding")
        return None

    return question or None
