"""
Deterministic qualification state.

Why:
The Language Service is probabilistic. The interview gate is not.
Fields captured in earlier turns are kept even when a later extraction
regresses, and the step only moves once its required fields are filled.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from dateutil import parser as date_parser

from qualifier.catalog import KNOWN_FIELDS

logger = logging.getLogger(__name__)

FieldValue = str | int | float | None


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


def is_filled(value: Any) -> bool:
    """A field counts as filled when it is neither None nor an empty/blank string."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def merge_fields(existing: dict[str, FieldValue], incoming: dict[str, FieldValue]) -> dict[str, FieldValue]:
    """
    Fold newly extracted fields into the accumulated map.

    Additive only: a filled key is never cleared or replaced, and
    null/empty incoming values are ignored. Returns a new dict; neither
    argument is mutated. Unknown field names are dropped.
    """
    merged = dict(existing)

    for key, value in incoming.items():
        if key not in KNOWN_FIELDS:
            logger.warning(f"Dropping unknown field from extraction: {key}")
            continue
        if not is_filled(value):
            continue
        if is_filled(merged.get(key)):
            if merged[key] != value:
                logger.info(f"Keeping captured value for {key}; ignoring later value {value!r}")
            continue
        merged[key] = value

    return merged


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QualificationSession:
    session_id: str
    current_step: int = 1
    structured_data: dict[str, FieldValue] = field(default_factory=dict)
    optional_asked: bool = False
    status: SessionStatus = SessionStatus.ACTIVE
    completed_at: datetime | None = None
    context_hint: str | None = None
    last_utterance: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    version: int = 0

    @property
    def is_complete(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    def missing_required(self, required_fields: tuple[str, ...]) -> list[str]:
        """Required fields not yet filled; present-but-null counts as missing."""
        return [f for f in required_fields if not is_filled(self.structured_data.get(f))]

    def missing_optional(
        self, target_fields: tuple[str, ...], required_fields: tuple[str, ...]
    ) -> list[str]:
        return [
            f
            for f in target_fields
            if f not in required_fields and not is_filled(self.structured_data.get(f))
        ]

    def advance(self) -> None:
        """Move to the next step. The optional-ask flag belongs to a single step."""
        self.current_step += 1
        self.optional_asked = False

    def mark_completed(self) -> None:
        """Transition active -> completed once; later calls keep the first timestamp."""
        if self.is_complete:
            return
        self.status = SessionStatus.COMPLETED
        self.completed_at = utc_now()

    def to_record(self) -> dict[str, Any]:
        """Flatten into a storage row (JSON-encoded data, ISO timestamps)."""
        return {
            "session_id": self.session_id,
            "current_step": self.current_step,
            "structured_data": json.dumps(self.structured_data),
            "optional_asked": self.optional_asked,
            "status": self.status.value,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "context_hint": self.context_hint,
            "last_utterance": self.last_utterance,
            "started_at": self.started_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> QualificationSession:
        """Rebuild a session from a storage row. Column names are matched case-insensitively."""
        row = {k.lower(): v for k, v in record.items()}

        data = row.get("structured_data") or {}
        if isinstance(data, str):
            data = json.loads(data)

        return cls(
            session_id=row["session_id"],
            current_step=int(row.get("current_step") or 1),
            structured_data={k: v for k, v in data.items() if k in KNOWN_FIELDS},
            optional_asked=bool(row.get("optional_asked")),
            status=SessionStatus(row.get("status") or SessionStatus.ACTIVE.value),
            completed_at=_parse_timestamp(row.get("completed_at")),
            context_hint=row.get("context_hint"),
            last_utterance=row.get("last_utterance"),
            started_at=_parse_timestamp(row.get("started_at")) or utc_now(),
            version=int(row.get("version") or 0),
        )


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return date_parser.isoparse(str(value))
