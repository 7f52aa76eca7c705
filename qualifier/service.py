"""
Qualification session lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from data.qualification_catalog import COMPLETION_MESSAGE, GREETING, OPTIONAL_SUFFIX
from qualifier.catalog import DEFAULT_CATALOG, QuestionCatalog
from qualifier.conversation_state import QualificationSession, merge_fields
from qualifier.language_service import LanguageService, get_language_service
from qualifier.observability import trace_span
from qualifier.progress import analyze_data_quality, calculate_progress
from qualifier.resolver import NextAction, apply_decision, resolve
from qualifier.session_store import SessionNotFoundError, SessionStore, build_session_store

logger = logging.getLogger(__name__)


class QualificationIncompleteError(RuntimeError):
    """Raised when final results are requested before the interview finished."""


@dataclass
class StartResult:
    session_id: str
    current_step: int
    total_steps: int
    prompt: str
    step_title: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TurnResult:
    session_id: str
    current_step: int
    total_steps: int
    prompt: str
    step_title: str
    is_follow_up: bool
    progress: int
    is_optional: bool | None = None
    section_complete: bool | None = None
    missing_required: list[str] | None = None
    is_complete: bool | None = None
    final_data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Response packet; flags that do not apply to this turn are left out."""
        return {k: v for k, v in asdict(self).items() if v is not None}


class SessionLocks:
    """
    One asyncio.Lock per session identifier.

    Turns of the same session run strictly one after another; different
    sessions never wait on each other. A lock is dropped as soon as nobody
    holds or waits for it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if not self._holders[session_id]:
                del self._holders[session_id]
                del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class QualificationService:
    """
    Runs structured qualification interviews.

    Responsibilities:
    - create sessions and hand out the first question
    - per turn: extract, merge, resolve, generate, persist
    - finalize sessions exactly once
    - report status and final results

    The Language Service only extracts values and words questions.
    Whether the interview stays, asks or advances is decided by the resolver.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        language_service: LanguageService | None = None,
        catalog: QuestionCatalog | None = None,
    ):
        logger.info("Initializing QualificationService")

        self.store = store or build_session_store()
        self.language_service = language_service or get_language_service()
        self.catalog = catalog or DEFAULT_CATALOG
        self.locks = SessionLocks()

    def _load(self, session_id: str) -> QualificationSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Qualification session {session_id} not found")
        return session

    def _progress(self, session: QualificationSession) -> int:
        return calculate_progress(
            session.current_step,
            session.structured_data,
            self.catalog.get_step(session.current_step),
            self.catalog.total_steps,
            is_complete=session.is_complete,
        )

    def _completion_result(self, session: QualificationSession) -> TurnResult:
        return TurnResult(
            session_id=session.session_id,
            current_step=session.current_step,
            total_steps=self.catalog.total_steps,
            prompt=COMPLETION_MESSAGE,
            step_title=self.catalog.get_step(session.current_step).title,
            is_follow_up=False,
            progress=100,
            is_complete=True,
            final_data=dict(session.structured_data),
        )

    def _finalize(self, session: QualificationSession) -> None:
        """Final persistence write. Keeps the first completed_at on repeat calls."""
        if session.is_complete:
            return
        session.mark_completed()
        self.store.save_session(session)
        logger.info(
            f"Qualification completed: session={session.session_id} "
            f"fields={len(session.structured_data)}"
        )

    async def start_qualification(self, session_id: str, context_hint: str | None = None) -> StartResult:
        """
        Create a session and return the greeting plus the first question.

        Args:
            session_id: Caller-chosen unique identifier
            context_hint: Optional company name used in the greeting

        Raises:
            SessionExistsError: If the identifier is already in use
        """
        logger.info(f"Starting qualification for session {session_id}")

        with trace_span("start_qualification", session=session_id):
            self.store.create_session(session_id, context_hint=context_hint)

        first = self.catalog.get_step(1)
        greeting = f"Hi {context_hint}! {GREETING}" if context_hint else f"Hi! {GREETING}"

        return StartResult(
            session_id=session_id,
            current_step=1,
            total_steps=self.catalog.total_steps,
            prompt=f"{greeting} {first.prompt}",
            step_title=first.title,
        )

    async def process_response(self, session_id: str, utterance: str) -> TurnResult:
        """
        Run one interview turn.

        Args:
            session_id: Session identifier
            utterance: Respondent's raw answer

        Returns:
            Next prompt with step, progress and completion flags

        Raises:
            SessionNotFoundError: If the session does not exist
            ConcurrentUpdateError: If another process saved the session mid-turn
        """
        async with self.locks.hold(session_id):
            with trace_span("process_response", session=session_id) as span:
                session = self._load(session_id)

                if session.is_complete:
                    span["action"] = "already_complete"
                    return self._completion_result(session)

                entry = self.catalog.get_step(session.current_step)
                span["step"] = entry.step

                extracted = await self.language_service.extract(
                    utterance, entry.target_fields, session.structured_data
                )
                session.structured_data = merge_fields(session.structured_data, extracted)
                session.last_utterance = utterance

                decision = resolve(session, self.catalog)
                span["action"] = decision.action.value

                if decision.action == NextAction.FINISH:
                    self._finalize(session)
                    return self._completion_result(session)

                question = None
                if decision.is_follow_up:
                    question = await self.language_service.generate_follow_up(
                        decision.missing_fields,
                        utterance,
                        entry,
                        is_optional=decision.action == NextAction.ASK_OPTIONAL,
                    )

                apply_decision(session, decision)
                self.store.save_session(session)

        result = TurnResult(
            session_id=session_id,
            current_step=session.current_step,
            total_steps=self.catalog.total_steps,
            prompt="",
            step_title="",
            is_follow_up=decision.is_follow_up,
            progress=self._progress(session),
        )

        if decision.action == NextAction.ASK_REQUIRED:
            logger.info(f"Step {entry.step} incomplete for {session_id}: missing {list(decision.missing_fields)}")
            result.prompt = question
            result.step_title = f"{entry.title} (gathering details...)"
            result.section_complete = False
            result.missing_required = list(decision.missing_fields)
        elif decision.action == NextAction.ASK_OPTIONAL:
            result.prompt = f"{question} {OPTIONAL_SUFFIX}"
            result.step_title = f"{entry.title} (optional details)"
            result.is_optional = True
            result.section_complete = True
        else:
            logger.info(f"Step {entry.step} complete for {session_id}; moving to step {session.current_step}")
            next_entry = self.catalog.get_step(session.current_step)
            result.prompt = next_entry.prompt
            result.step_title = next_entry.title

        return result

    async def complete_qualification(self, session_id: str) -> QualificationSession:
        """
        Finalize a session.

        Legal once the last step's required fields are captured; a pending
        optional follow-up does not block it. Idempotent: a completed session
        is returned unchanged, with its original ``completed_at``.

        Raises:
            SessionNotFoundError: If the session does not exist
            QualificationIncompleteError: If required data is still missing
        """
        async with self.locks.hold(session_id):
            session = self._load(session_id)
            if session.is_complete:
                return session

            last = self.catalog.get_step(self.catalog.total_steps)
            if session.current_step != last.step or session.missing_required(last.required_fields):
                raise QualificationIncompleteError(
                    f"Session {session_id} cannot complete at step {session.current_step}"
                )

            self._finalize(session)
            return session

    def get_status(self, session_id: str) -> dict[str, Any]:
        """Current step, status, captured data and progress of a session."""
        session = self._load(session_id)
        return {
            "session_id": session.session_id,
            "current_step": session.current_step,
            "total_steps": self.catalog.total_steps,
            "status": session.status.value,
            "structured_data": dict(session.structured_data),
            "progress": self._progress(session),
            "started_at": session.started_at,
            "completed_at": session.completed_at,
        }

    def get_results(self, session_id: str) -> dict[str, Any]:
        """
        Final data and data-quality summary of a completed session.

        Raises:
            SessionNotFoundError: If the session does not exist
            QualificationIncompleteError: If the session is still active
        """
        session = self._load(session_id)
        if not session.is_complete:
            raise QualificationIncompleteError(
                f"Qualification {session_id} not yet completed (step {session.current_step})"
            )

        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "completed_at": session.completed_at,
            "structured_data": dict(session.structured_data),
            "data_quality": analyze_data_quality(session.structured_data),
        }

    def reset_session(self, session_id: str) -> None:
        """Drop a session so the identifier can start over."""
        if not self.store.delete_session(session_id):
            raise SessionNotFoundError(f"Qualification session {session_id} not found")
        logger.info(f"Session reset: {session_id}")


# Global service instance
qualification_service = None


def get_service() -> QualificationService:
    """Get or create global service instance."""
    global qualification_service
    if qualification_service is None:
        qualification_service = QualificationService()
    return qualification_service
