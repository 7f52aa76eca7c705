"""
Progress estimation and data-quality scoring.
"""

from __future__ import annotations

import math
from typing import Any

from data.qualification_catalog import CRITICAL_FIELDS
from qualifier.catalog import CatalogStep
from qualifier.conversation_state import FieldValue, is_filled


def calculate_progress(
    step: int,
    structured_data: dict[str, FieldValue],
    entry: CatalogStep,
    total_steps: int,
    is_complete: bool = False,
) -> int:
    """
    Convert (step, required-field completion) into a 0-100 value.

    Each step owns an equal slice of 100; the current step's slice is
    filled in proportion to its required fields already captured. A step
    with no required fields counts as fully filled. Completed sessions
    are always 100.
    """
    if is_complete:
        return 100

    base_progress = _round_half_up(100 * (step - 1) / total_steps)
    section_weight = 100 / total_steps

    required_count = len(entry.required_fields)
    filled_required = sum(1 for f in entry.required_fields if is_filled(structured_data.get(f)))
    section_completion = filled_required / required_count if required_count else 1.0

    return min(100, base_progress + _round_half_up(section_completion * section_weight))


def analyze_data_quality(
    structured_data: dict[str, FieldValue], critical_fields: list[str] | None = None
) -> dict[str, Any]:
    """Summarize how many critical fields a finished qualification captured."""
    critical_fields = CRITICAL_FIELDS if critical_fields is None else critical_fields

    filled = [f for f in critical_fields if is_filled(structured_data.get(f))]
    total = len(critical_fields)
    completeness = _round_half_up(100 * len(filled) / total) if total else 100

    if completeness >= 80:
        quality = "High"
    elif completeness >= 60:
        quality = "Medium"
    else:
        quality = "Low"

    return {
        "completeness": completeness,
        "quality": quality,
        "filled_fields": len(filled),
        "total_fields": total,
        "missing_critical": [f for f in critical_fields if f not in filled],
    }


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; 12.5 must become 13
    return math.floor(value + 0.5)
