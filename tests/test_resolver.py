"""
Tests for the completion resolver.
Pure decisions over plain session data; no Language Service involved.
"""

from qualifier.catalog import DEFAULT_CATALOG, build_catalog
from qualifier.conversation_state import QualificationSession
from qualifier.resolver import Decision, NextAction, apply_decision, resolve


def session_at(step, data=None, optional_asked=False):
    return QualificationSession(
        session_id="resolver-test",
        current_step=step,
        structured_data=data or {},
        optional_asked=optional_asked,
    )


class TestResolve:
    """Order of checks: required, then one optional ask, then advance/finish."""

    def test_missing_required_stays(self):
        session = session_at(1, {"problemType": "customer_support"})

        decision = resolve(session, DEFAULT_CATALOG)

        assert decision.action == NextAction.ASK_REQUIRED
        assert decision.step == 1
        assert decision.missing_fields == ("jobFunction",)
        assert decision.is_follow_up

    def test_null_required_counts_as_missing(self):
        session = session_at(1, {"problemType": "customer_support", "jobFunction": None})
        assert resolve(session, DEFAULT_CATALOG).action == NextAction.ASK_REQUIRED

    def test_high_value_optional_asked_once(self):
        session = session_at(1, {"problemType": "customer_support", "jobFunction": "vp"})

        decision = resolve(session, DEFAULT_CATALOG)

        assert decision.action == NextAction.ASK_OPTIONAL
        assert decision.missing_fields == ("industryCategory", "jobFunctionCategory")
        assert decision.is_follow_up

    def test_optional_ask_does_not_reblock(self):
        session = session_at(
            1, {"problemType": "customer_support", "jobFunction": "vp"}, optional_asked=True
        )

        decision = resolve(session, DEFAULT_CATALOG)

        assert decision.action == NextAction.ADVANCE
        assert not decision.is_follow_up

    def test_non_whitelisted_optional_never_asked(self):
        # industry and problemTypeCategory are optional but not high value
        session = session_at(
            1,
            {
                "problemType": "customer_support",
                "jobFunction": "vp",
                "industryCategory": "tech",
                "jobFunctionCategory": "executive",
            },
        )
        assert resolve(session, DEFAULT_CATALOG).action == NextAction.ADVANCE

    def test_last_step_finishes(self):
        session = session_at(4, {"budgetStatus": "allocated", "budgetAmount": 20000})

        decision = resolve(session, DEFAULT_CATALOG)

        assert decision.action == NextAction.FINISH
        assert decision.step == 4

    def test_last_step_asks_optional_before_finishing(self):
        session = session_at(4, {"budgetStatus": "allocated"})
        assert resolve(session, DEFAULT_CATALOG).action == NextAction.ASK_OPTIONAL

    def test_step_without_required_fields_advances(self):
        catalog = build_catalog(
            [
                {"step": 1, "prompt": "Anything?", "target_fields": ["industry"], "required_fields": []},
                {"step": 2, "prompt": "Budget?", "target_fields": ["budgetStatus"], "required_fields": ["budgetStatus"]},
            ],
            {},
        )
        assert resolve(session_at(1), catalog).action == NextAction.ADVANCE

    def test_single_step_catalog(self):
        catalog = build_catalog(
            [{"step": 1, "prompt": "Budget?", "target_fields": ["budgetStatus"], "required_fields": ["budgetStatus"]}],
            {},
        )
        session = session_at(1, {"budgetStatus": "planning"})
        assert resolve(session, catalog).action == NextAction.FINISH


class TestApplyDecision:
    def test_ask_required_changes_nothing(self):
        session = session_at(2)
        apply_decision(session, Decision(NextAction.ASK_REQUIRED, 2, ("solutionType",)))
        assert session.current_step == 2
        assert session.optional_asked is False

    def test_ask_optional_sets_flag(self):
        session = session_at(2)
        apply_decision(session, Decision(NextAction.ASK_OPTIONAL, 2, ("techCapabilityCategory",)))
        assert session.current_step == 2
        assert session.optional_asked is True

    def test_advance_moves_one_step_and_clears_flag(self):
        session = session_at(2, optional_asked=True)
        apply_decision(session, Decision(NextAction.ADVANCE, 2))
        assert session.current_step == 3
        assert session.optional_asked is False

    def test_finish_stays_on_last_step(self):
        session = session_at(4)
        apply_decision(session, Decision(NextAction.FINISH, 4))
        assert session.current_step == 4
