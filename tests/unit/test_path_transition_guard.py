"""
Unit Tests for the Path Transition Guard

Reliability Level: SOVEREIGN TIER

Tests the confirmation protocol:
- Transition table (research/planning/creation/event → execution)
- High-value override
- Keyword matching (whole-word confirmation and cancellation)
- Confirmation, cancellation and re-prompt flows
- Path policy evaluation with confirmed intent ids
"""

import pytest
import os
from decimal import Decimal

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.gate_config import GateConfig
from services.gate_models import IntentPath, IntentState, ConfirmationType
from services.intent_context_store import InMemoryContextStore
from services.path_transition_guard import (
    PathTransitionGuard,
    PATH_TRANSITION_BLOCKED,
    RESEARCH_TO_EXECUTION_REASON,
    CONFIRMATION_PROMPTS,
    NO_PENDING_MESSAGE,
    CANCELLED_MESSAGE,
    validate_transition,
    get_confirmation_message,
    is_confirmation,
    is_cancellation,
    matches_confirmation_type,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def store() -> InMemoryContextStore:
    return InMemoryContextStore(ttl_seconds=600)


@pytest.fixture
def guard(store: InMemoryContextStore) -> PathTransitionGuard:
    return PathTransitionGuard(store, GateConfig(high_value_threshold_usd=Decimal("500")))


# =============================================================================
# validate_transition
# =============================================================================

class TestValidateTransition:

    @pytest.mark.parametrize("path", list(IntentPath))
    def test_same_path_always_allowed(self, path):
        result = validate_transition(path, path, usd_estimate=Decimal("1000000"))

        assert result.allowed is True
        assert result.confirmation_type == ConfirmationType.NONE

    def test_research_to_execution_blocked(self):
        result = validate_transition(IntentPath.RESEARCH, IntentPath.EXECUTION)

        assert result.allowed is False
        assert result.requires_confirmation is True
        assert result.confirmation_type == ConfirmationType.SIMPLE
        assert result.blocked_reason == RESEARCH_TO_EXECUTION_REASON

    @pytest.mark.parametrize("from_path,expected", [
        (IntentPath.PLANNING, ConfirmationType.SIMPLE),
        (IntentPath.CREATION, ConfirmationType.BOND_ACK),
        (IntentPath.EVENT_BETTING, ConfirmationType.RISK_ACK),
    ])
    def test_confirmation_type_per_source_path(self, from_path, expected):
        result = validate_transition(from_path, IntentPath.EXECUTION)

        assert result.allowed is False
        assert result.confirmation_type == expected
        assert result.blocked_reason == CONFIRMATION_PROMPTS[expected]

    @pytest.mark.parametrize("to_path", [
        IntentPath.PLANNING, IntentPath.CREATION, IntentPath.EVENT_BETTING,
    ])
    def test_non_execution_targets_allowed(self, to_path):
        assert validate_transition(IntentPath.RESEARCH, to_path).allowed is True

    def test_high_value_overrides_table(self):
        result = validate_transition(
            IntentPath.PLANNING, IntentPath.EXECUTION, usd_estimate=Decimal("10000")
        )

        assert result.allowed is False
        assert result.confirmation_type == ConfirmationType.HIGH_VALUE_ACK
        assert result.blocked_reason == "High-value transaction ($10,000) requires confirmation."

    def test_high_value_overrides_bond_ack(self):
        result = validate_transition(
            IntentPath.CREATION, IntentPath.EXECUTION, usd_estimate=Decimal("25000")
        )

        assert result.confirmation_type == ConfirmationType.HIGH_VALUE_ACK

    def test_below_threshold_keeps_table_type(self):
        result = validate_transition(
            IntentPath.PLANNING, IntentPath.EXECUTION, usd_estimate=Decimal("9999.99")
        )

        assert result.confirmation_type == ConfirmationType.SIMPLE

    def test_custom_threshold(self):
        result = validate_transition(
            IntentPath.PLANNING,
            IntentPath.EXECUTION,
            usd_estimate=Decimal("500"),
            high_value_threshold=Decimal("500"),
        )

        assert result.confirmation_type == ConfirmationType.HIGH_VALUE_ACK

    def test_high_value_only_applies_to_execution(self):
        result = validate_transition(
            IntentPath.RESEARCH, IntentPath.PLANNING, usd_estimate=Decimal("50000")
        )

        assert result.allowed is True


# =============================================================================
# Keyword Matching
# =============================================================================

class TestKeywordMatching:

    @pytest.mark.parametrize("text", [
        "yes", "Yes please", "execute", "go ahead", "OK", "let’s go", "  confirm  ",
    ])
    def test_confirmation_keywords(self, text):
        assert is_confirmation(text) is True

    @pytest.mark.parametrize("text", ["yesterday", "okra", "maybe later", ""])
    def test_confirmation_requires_whole_word(self, text):
        assert is_confirmation(text) is False

    @pytest.mark.parametrize("text", [
        "no", "cancel that", "STOP", "never mind", "don’t", "hold on a sec",
    ])
    def test_cancellation_keywords(self, text):
        assert is_cancellation(text) is True

    @pytest.mark.parametrize("text", ["know", "nothing", "stopwatch", "I accept the risk"])
    def test_cancellation_requires_whole_word(self, text):
        assert is_cancellation(text) is False

    @pytest.mark.parametrize("text,confirmation_type,expected", [
        ("anything", ConfirmationType.NONE, True),
        ("execute", ConfirmationType.SIMPLE, True),
        ("maybe", ConfirmationType.SIMPLE, False),
        ("I understand the bond requirements", ConfirmationType.BOND_ACK, True),
        ("yes", ConfirmationType.BOND_ACK, False),
        ("I accept the risk", ConfirmationType.RISK_ACK, True),
        ("I accept", ConfirmationType.RISK_ACK, False),
        ("yes", ConfirmationType.RISK_ACK, False),
        ("confirm", ConfirmationType.HIGH_VALUE_ACK, True),
        ("proceed", ConfirmationType.HIGH_VALUE_ACK, True),
        ("yes", ConfirmationType.HIGH_VALUE_ACK, False),
    ])
    def test_matches_confirmation_type(self, text, confirmation_type, expected):
        assert matches_confirmation_type(text, confirmation_type) is expected

    def test_unknown_type_uses_default_prompt(self):
        assert get_confirmation_message(ConfirmationType.NONE) == "Reply 'yes' to proceed."


# =============================================================================
# transition_path
# =============================================================================

class TestTransitionPath:

    @pytest.mark.asyncio
    async def test_allowed_transition_applies_path(self, guard):
        outcome = await guard.transition_path("s1", IntentPath.PLANNING, intent_id="i1")

        assert outcome.success is True
        assert outcome.requires_confirmation is False
        assert outcome.context.current_path == IntentPath.PLANNING
        assert outcome.context.current_state == IntentState.CLASSIFIED

    @pytest.mark.asyncio
    async def test_blocked_transition_enters_confirming(self, guard):
        await guard.transition_path("s1", IntentPath.PLANNING)

        outcome = await guard.transition_path(
            "s1", IntentPath.EXECUTION, intent_id="i1", usd_estimate=Decimal("50")
        )

        assert outcome.success is False
        assert outcome.requires_confirmation is True
        assert outcome.message == CONFIRMATION_PROMPTS[ConfirmationType.SIMPLE]
        context = await guard.get_context("s1")
        assert context.current_state == IntentState.CONFIRMING
        assert context.confirmation_type == ConfirmationType.SIMPLE
        assert context.pending_intent_id == "i1"
        assert context.pending_usd_estimate == Decimal("50")
        assert context.current_path == IntentPath.PLANNING
        assert context.last_confirmation_request_at is not None

    @pytest.mark.asyncio
    async def test_force_skips_table(self, guard):
        outcome = await guard.transition_path("s1", IntentPath.EXECUTION, force=True)

        assert outcome.success is True
        assert outcome.context.current_path == IntentPath.EXECUTION

    @pytest.mark.asyncio
    async def test_high_value_uses_configured_threshold(self, guard):
        await guard.transition_path("s1", IntentPath.PLANNING)

        outcome = await guard.transition_path(
            "s1", IntentPath.EXECUTION, intent_id="i1", usd_estimate=Decimal("750")
        )

        assert outcome.context.confirmation_type == ConfirmationType.HIGH_VALUE_ACK
        assert guard.high_value_threshold == Decimal("500")


# =============================================================================
# process_confirmation
# =============================================================================

class TestProcessConfirmation:

    async def _park(self, guard, from_path, intent_id="i1"):
        await guard.transition_path("s1", from_path, force=True)
        await guard.transition_path("s1", IntentPath.EXECUTION, intent_id=intent_id)

    @pytest.mark.asyncio
    async def test_no_pending_confirmation(self, guard):
        result = await guard.process_confirmation("s1", "yes")

        assert result.confirmed is False
        assert result.cancelled is False
        assert result.message == NO_PENDING_MESSAGE

    @pytest.mark.asyncio
    async def test_simple_confirmation(self, guard):
        await self._park(guard, IntentPath.PLANNING)

        result = await guard.process_confirmation("s1", "execute")

        assert result.confirmed is True
        assert result.context.current_path == IntentPath.EXECUTION
        assert result.context.current_state == IntentState.EXECUTING
        assert result.context.confirmation_type == ConfirmationType.NONE
        assert "i1" in result.context.confirmed_intent_ids
        stored = await guard.get_context("s1")
        assert stored.current_state == IntentState.EXECUTING

    @pytest.mark.asyncio
    async def test_cancellation_clears_pending(self, guard):
        await self._park(guard, IntentPath.PLANNING)

        result = await guard.process_confirmation("s1", "no, cancel that")

        assert result.confirmed is False
        assert result.cancelled is True
        assert result.message == CANCELLED_MESSAGE
        assert result.context.current_state == IntentState.CANCELLED
        assert result.context.pending_intent_id is None
        assert result.context.confirmation_type == ConfirmationType.NONE
        assert "i1" not in result.context.confirmed_intent_ids

    @pytest.mark.asyncio
    async def test_cancellation_wins_over_confirmation(self, guard):
        await self._park(guard, IntentPath.PLANNING)

        result = await guard.process_confirmation("s1", "yes... actually no")

        assert result.cancelled is True

    @pytest.mark.asyncio
    async def test_risk_ack_rejects_plain_yes(self, guard):
        await self._park(guard, IntentPath.EVENT_BETTING)

        result = await guard.process_confirmation("s1", "yes")

        assert result.confirmed is False
        assert result.cancelled is False
        assert result.message == CONFIRMATION_PROMPTS[ConfirmationType.RISK_ACK]
        assert result.context.current_state == IntentState.CONFIRMING

    @pytest.mark.asyncio
    async def test_risk_ack_accepted(self, guard):
        await self._park(guard, IntentPath.EVENT_BETTING)

        result = await guard.process_confirmation("s1", "I accept the risk")

        assert result.confirmed is True

    @pytest.mark.asyncio
    async def test_bond_ack_accepted(self, guard):
        await self._park(guard, IntentPath.CREATION)

        result = await guard.process_confirmation("s1", "I understand the bond requirements")

        assert result.confirmed is True
        assert result.context.current_path == IntentPath.EXECUTION

    @pytest.mark.asyncio
    async def test_to_dict(self, guard):
        await self._park(guard, IntentPath.PLANNING)

        data = (await guard.process_confirmation("s1", "yes")).to_dict()

        assert data["confirmed"] is True
        assert data["context"]["current_state"] == "executing"
        assert data["context"]["confirmed_intent_ids"] == ["i1"]


# =============================================================================
# mark_execution_complete / reset / clear
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_completion_returns_to_research(self, guard):
        await guard.transition_path("s1", IntentPath.PLANNING)
        await guard.transition_path("s1", IntentPath.EXECUTION, intent_id="i1")
        await guard.process_confirmation("s1", "yes")

        context = await guard.mark_execution_complete("s1", success=True)

        assert context.current_state == IntentState.COMPLETED
        assert context.current_path == IntentPath.RESEARCH
        assert context.pending_intent_id is None
        assert "i1" in context.confirmed_intent_ids

    @pytest.mark.asyncio
    async def test_failure_marks_failed(self, guard):
        context = await guard.mark_execution_complete("s1", success=False)

        assert context.current_state == IntentState.FAILED
        assert context.current_path == IntentPath.RESEARCH

    @pytest.mark.asyncio
    async def test_reset_keeps_path(self, guard):
        await guard.transition_path("s1", IntentPath.PLANNING)
        await guard.transition_path("s1", IntentPath.EXECUTION, intent_id="i1")

        context = await guard.reset_context_state("s1")

        assert context.current_state == IntentState.IDLE
        assert context.current_path == IntentPath.PLANNING
        assert context.pending_intent_id is None
        assert context.confirmation_type == ConfirmationType.NONE

    @pytest.mark.asyncio
    async def test_clear_context(self, guard, store):
        await guard.transition_path("s1", IntentPath.PLANNING)

        await guard.clear_context("s1")

        assert await store.get("s1") is None
        context = await guard.get_context("s1")
        assert context.current_path == IntentPath.RESEARCH
        assert context.current_state == IntentState.IDLE

    @pytest.mark.asyncio
    async def test_state_shared_through_store(self, store):
        first = PathTransitionGuard(store)
        second = PathTransitionGuard(store)

        await first.transition_path("s1", IntentPath.PLANNING)
        await first.transition_path("s1", IntentPath.EXECUTION, intent_id="i1")
        result = await second.process_confirmation("s1", "yes")

        assert result.confirmed is True


# =============================================================================
# evaluate_path_policy
# =============================================================================

class TestEvaluatePathPolicy:

    @pytest.mark.asyncio
    async def test_research_action_allowed(self, guard):
        result = await guard.evaluate_path_policy("s1", IntentPath.RESEARCH)

        assert result.allowed is True
        assert result.code is None

    @pytest.mark.asyncio
    async def test_execution_from_fresh_session_blocked(self, guard):
        result = await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")

        assert result.allowed is False
        assert result.code == PATH_TRANSITION_BLOCKED
        assert result.message == RESEARCH_TO_EXECUTION_REASON
        assert result.requires_confirmation is True
        assert result.confirmation_type == ConfirmationType.SIMPLE
        context = await guard.get_context("s1")
        assert context.current_state == IntentState.CONFIRMING
        assert context.pending_intent_id == "i1"

    @pytest.mark.asyncio
    async def test_repeat_evaluation_returns_pending_prompt(self, guard):
        await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")

        result = await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")

        assert result.allowed is False
        assert result.message == CONFIRMATION_PROMPTS[ConfirmationType.SIMPLE]

    @pytest.mark.asyncio
    async def test_confirmed_intent_allowed(self, guard):
        await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")
        await guard.process_confirmation("s1", "yes")

        result = await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_confirmation_authorizes_one_intent(self, guard):
        await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i1")
        await guard.process_confirmation("s1", "yes")
        await guard.mark_execution_complete("s1", success=True)

        result = await guard.evaluate_path_policy("s1", IntentPath.EXECUTION, intent_id="i2")

        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_blocked_without_intent_id_leaves_state(self, guard):
        result = await guard.evaluate_path_policy("s1", IntentPath.EXECUTION)

        assert result.allowed is False
        context = await guard.get_context("s1")
        assert context.current_state == IntentState.IDLE

    @pytest.mark.asyncio
    async def test_high_value_policy(self, guard):
        await guard.transition_path("s1", IntentPath.PLANNING)

        result = await guard.evaluate_path_policy(
            "s1", IntentPath.EXECUTION, intent_id="i1", usd_estimate=Decimal("600")
        )

        assert result.confirmation_type == ConfirmationType.HIGH_VALUE_ACK
        assert result.to_dict()["confirmation_type"] == "high_value_ack"
