"""
Completion resolver: decides what an interview turn does next.

The decision is a pure function of (session, catalog). It never talks to
the Language Service, so every branch can be exercised with plain data.

Order of checks for the current step:
1. required fields missing            -> ASK_REQUIRED (stay)
2. whitelisted optional still missing,
   and no optional ask yet this step  -> ASK_OPTIONAL (stay, once)
3. otherwise                          -> ADVANCE, or FINISH past the last step
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from qualifier.catalog import QuestionCatalog
from qualifier.conversation_state import QualificationSession


class NextAction(str, Enum):
    ASK_REQUIRED = "ask_required"
    ASK_OPTIONAL = "ask_optional"
    ADVANCE = "advance"
    FINISH = "finish"


@dataclass(frozen=True)
class Decision:
    action: NextAction
    step: int
    missing_fields: tuple[str, ...] = ()

    @property
    def is_follow_up(self) -> bool:
        return self.action in (NextAction.ASK_REQUIRED, NextAction.ASK_OPTIONAL)


def resolve(session: QualificationSession, catalog: QuestionCatalog) -> Decision:
    """Decide the next action for an active session whose data is already merged."""
    entry = catalog.get_step(session.current_step)

    missing_required = session.missing_required(entry.required_fields)
    if missing_required:
        return Decision(NextAction.ASK_REQUIRED, entry.step, tuple(missing_required))

    if not session.optional_asked:
        missing_optional = session.missing_optional(entry.target_fields, entry.required_fields)
        high_value = catalog.high_value_missing(entry.step, missing_optional)
        if high_value:
            return Decision(NextAction.ASK_OPTIONAL, entry.step, tuple(high_value))

    if entry.step >= catalog.total_steps:
        return Decision(NextAction.FINISH, entry.step)
    return Decision(NextAction.ADVANCE, entry.step)


def apply_decision(session: QualificationSession, decision: Decision) -> None:
    """
    Apply the step/flag side of a decision to the session.

    FINISH leaves ``current_step`` on the last step; completion itself is
    recorded by the lifecycle layer when it persists the final state.
    """
    if decision.action == NextAction.ASK_OPTIONAL:
        session.optional_asked = True
    elif decision.action == NextAction.ADVANCE:
        session.advance()
