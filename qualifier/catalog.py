"""
Question catalog: the fixed, ordered list of interview steps.

The catalog is process-wide configuration, not user data. It is built and
validated once at import time, so a broken step definition stops the
process at startup instead of failing a respondent mid-interview.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from data.qualification_catalog import (
    FIELD_VOCABULARY,
    HIGH_VALUE_OPTIONAL,
    QUALIFICATION_STEPS,
)

logger = logging.getLogger(__name__)

MAX_HIGH_VALUE_OPTIONAL = 2

# Closed enumeration of every field the interview can capture
IntakeField = Enum("IntakeField", {name: name for name in FIELD_VOCABULARY}, type=str)

KNOWN_FIELDS = frozenset(field.value for field in IntakeField)


class CatalogError(ValueError):
    """Raised when the question catalog is structurally invalid."""


@dataclass(frozen=True)
class CatalogStep:
    """One interview step."""

    step: int
    title: str
    prompt: str
    target_fields: tuple[str, ...]
    required_fields: tuple[str, ...]
    high_value_optional: tuple[str, ...] = ()

    @property
    def optional_fields(self) -> tuple[str, ...]:
        return tuple(f for f in self.target_fields if f not in self.required_fields)


class QuestionCatalog:
    """
    Read-only lookup of interview steps.

    Validation rules (any violation raises CatalogError):
    - at least one step, numbered 1..N in order
    - every field is a known IntakeField, no duplicates within a step
    - required_fields is a subset of target_fields
    - at most two high-value optional fields per step, each of them an
      optional field of that same step
    """

    def __init__(self, steps: list[CatalogStep]):
        self._steps = tuple(steps)
        self._validate()

    def _validate(self) -> None:
        if not self._steps:
            raise CatalogError("Question catalog must contain at least one step")

        for expected, entry in enumerate(self._steps, start=1):
            where = f"step {entry.step}"

            if entry.step != expected:
                raise CatalogError(f"Steps must be numbered 1..N in order; found {where} at {expected}")

            unknown = [f for f in entry.target_fields if f not in KNOWN_FIELDS]
            if unknown:
                raise CatalogError(f"{where}: unknown target fields {unknown}")

            if len(set(entry.target_fields)) != len(entry.target_fields):
                raise CatalogError(f"{where}: duplicate target fields")

            stray = [f for f in entry.required_fields if f not in entry.target_fields]
            if stray:
                raise CatalogError(f"{where}: required fields {stray} are not target fields")

            if len(entry.high_value_optional) > MAX_HIGH_VALUE_OPTIONAL:
                raise CatalogError(
                    f"{where}: at most {MAX_HIGH_VALUE_OPTIONAL} high-value optional fields allowed"
                )

            not_optional = [f for f in entry.high_value_optional if f not in entry.optional_fields]
            if not_optional:
                raise CatalogError(
                    f"{where}: high-value fields {not_optional} are not optional fields of the step"
                )

    @property
    def total_steps(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> tuple[CatalogStep, ...]:
        return self._steps

    def get_step(self, step: int) -> CatalogStep:
        """Return the entry for a 1-based step number."""
        if not 1 <= step <= self.total_steps:
            raise IndexError(f"Step {step} outside catalog range 1..{self.total_steps}")
        return self._steps[step - 1]

    def all_fields(self) -> frozenset[str]:
        """Union of every step's target fields."""
        return frozenset(f for entry in self._steps for f in entry.target_fields)

    def high_value_missing(self, step: int, missing_optional: list[str]) -> list[str]:
        """Whitelisted optional fields of ``step`` that are still missing, in whitelist order."""
        whitelist = self.get_step(step).high_value_optional
        return [f for f in whitelist if f in missing_optional][:MAX_HIGH_VALUE_OPTIONAL]


def build_catalog(
    definitions: list[dict] | None = None,
    high_value_optional: dict[int, list[str]] | None = None,
) -> QuestionCatalog:
    """
    Build a validated catalog from raw step definitions.

    Args:
        definitions: Step dicts shaped like ``QUALIFICATION_STEPS``
        high_value_optional: Step number -> whitelisted optional fields

    Raises:
        CatalogError: If the definitions are malformed
    """
    definitions = QUALIFICATION_STEPS if definitions is None else definitions
    high_value_optional = HIGH_VALUE_OPTIONAL if high_value_optional is None else high_value_optional

    try:
        steps = [
            CatalogStep(
                step=d["step"],
                title=d.get("title", f"Step {d['step']}"),
                prompt=d["prompt"],
                target_fields=tuple(d["target_fields"]),
                required_fields=tuple(d["required_fields"]),
                high_value_optional=tuple(high_value_optional.get(d["step"], ())),
            )
            for d in definitions
        ]
    except KeyError as e:
        raise CatalogError(f"Step definition missing key: {e}") from e

    catalog = QuestionCatalog(steps)
    logger.info(f"Question catalog loaded: {catalog.total_steps} steps")
    return catalog


# Built at import so misconfiguration fails at process start
DEFAULT_CATALOG = build_catalog()
