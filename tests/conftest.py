"""
Pytest configuration and fixtures.
Deterministic Language Service stubs and in-memory service wiring.
"""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from qualifier.catalog import CatalogStep
from qualifier.circuit_breaker import CircuitBreaker
from qualifier.language_service import LanguageService
from qualifier.service import QualificationService
from qualifier.session_store import InMemorySessionStore


class StubLanguageService(LanguageService):
    """
    Scripted oracle: extraction results are looked up by utterance.

    Only the input/output contract is stubbed; the public ``extract`` and
    ``generate_follow_up`` methods (guardrails, timeout, fallbacks) run for real.
    """

    def __init__(
        self,
        extractions: dict | None = None,
        follow_up: str = "What's your role at the company?",
        fail_extraction: bool = False,
        fail_generation: bool = False,
        extract_delay: float = 0.0,
        timeout_seconds: float = 1.0,
        failure_threshold: int = 100,
    ):
        super().__init__(
            timeout_seconds=timeout_seconds,
            circuit_breaker=CircuitBreaker(
                failure_threshold=failure_threshold, timeout=60, name="StubCircuitBreaker"
            ),
        )
        self.extractions = extractions or {}
        self.follow_up = follow_up
        self.fail_extraction = fail_extraction
        self.fail_generation = fail_generation
        self.extract_delay = extract_delay
        self.extract_calls: list[tuple] = []
        self.generate_calls: list[tuple] = []

    async def _extract(self, utterance, target_fields, existing_data):
        self.extract_calls.append((utterance, tuple(target_fields), dict(existing_data)))
        if self.extract_delay:
            await asyncio.sleep(self.extract_delay)
        if self.fail_extraction:
            raise RuntimeError("oracle unavailable")
        return dict(self.extractions.get(utterance, {}))

    async def _generate(self, missing_fields, prior_utterance, entry: CatalogStep, is_optional):
        self.generate_calls.append((tuple(missing_fields), prior_utterance, entry.step, is_optional))
        if self.fail_generation:
            raise RuntimeError("oracle unavailable")
        return self.follow_up


# One answer per step that fills every required and whitelisted optional field
COMPLETE_RUN = [
    (
        "I'm a VP at a retail tech company and we need help with customer support",
        {
            "problemType": "customer_support",
            "problemTypeCategory": "communication",
            "jobFunction": "vp",
            "jobFunctionCategory": "executive",
            "industryCategory": "tech",
        },
    ),
    (
        "Off the shelf, our internal team is very technical and will run it",
        {
            "solutionType": "off_shelf",
            "implementationCapacity": "internal_team",
            "techCapabilityCategory": "technical",
        },
    ),
    (
        "It's urgent and I make the final call",
        {
            "businessUrgency": "immediate",
            "decisionRole": "final_decision",
            "decisionRoleCategory": "decision_maker",
        },
    ),
    (
        "Budget is allocated, about $50,000",
        {"budgetStatus": "allocated", "budgetAmount": "$50,000"},
    ),
]


@pytest.fixture
def stub_language_service():
    """Stub oracle that knows the complete happy-path run."""
    return StubLanguageService(extractions=dict(COMPLETE_RUN))


@pytest.fixture
def memory_store():
    """Fresh in-memory session store."""
    return InMemorySessionStore(max_sessions=100, ttl_seconds=3600)


@pytest.fixture
def service(memory_store, stub_language_service):
    """Qualification service wired to the stub oracle and in-memory store."""
    return QualificationService(store=memory_store, language_service=stub_language_service)


@pytest.fixture
def test_client(service):
    """FastAPI test client backed by the stubbed service."""
    from qualifier.main import app

    with patch("qualifier.main.get_service", return_value=service):
        yield TestClient(app)


@pytest.fixture
def complete_run():
    """(utterance, extraction) pairs that finish the interview in one turn per step."""
    return list(COMPLETE_RUN)


@pytest.fixture
def make_language_service():
    """Factory for stub oracles with custom scripts or failure modes."""
    return StubLanguageService


@pytest.fixture
def make_service(memory_store):
    """Factory for services with a custom stub oracle and/or catalog."""

    def _make(catalog=None, **stub_kwargs):
        return QualificationService(
            store=memory_store,
            language_service=StubLanguageService(**stub_kwargs),
            catalog=catalog,
        )

    return _make
