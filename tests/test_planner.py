"""
Tests for the planner and its supervisory guards
"""

import pytest

from fakes import FakeModel, plan
from webpilot.agent.planner import (
    LoopDetector,
    Planner,
    apply_completion_guard,
    last_action_kind,
    popped_goals,
)
from webpilot.errors import TransportError
from webpilot.models import ActionPlan, HistoryEntry, NextAction, PageSnapshot, SessionContext


def _click_history(target="submit"):
    return [HistoryEntry(thought="submit form", action=NextAction(kind="click", target=target), success=True)]


@pytest.mark.asyncio
async def test_completion_guard_overrides_claim_when_page_unchanged(config):
    model = FakeModel([plan(completed=True, thinking="Form submitted", stack=["Submit form"])])
    planner = Planner(model, config)

    result = await planner.plan(
        "Submit form",
        PageSnapshot(url="https://example.com", content_hash="h1"),
        _click_history(),
        SessionContext(goal="Submit form", goal_stack=["Submit form"]),
        previous_hash="h1",
    )

    assert result.goal_completed is False
    assert result.next_action.kind == "wait"
    assert result.next_action.value == "2000"
    assert result.confidence == 0.9
    assert result.thinking.startswith("[System]")
    assert result.updated_goal_stack == ["Submit form"]


@pytest.mark.asyncio
async def test_completion_accepted_when_page_changed(config):
    model = FakeModel([plan(completed=True, thinking="Success message visible")])
    result = await Planner(model, config).plan(
        "Submit form",
        PageSnapshot(url="https://example.com", content_hash="h2"),
        _click_history(),
        SessionContext(goal_stack=["Submit form"]),
        previous_hash="h1",
    )
    assert result.goal_completed is True


def test_completion_guard_ignores_non_mutating_previous_action():
    claim = ActionPlan(goal_completed=True, thinking="done")
    result, fired = apply_completion_guard(claim, "scroll", "h1", "h1", ["g"])
    assert fired is False
    assert result.goal_completed is True


def test_completion_guard_needs_both_hashes():
    claim = ActionPlan(goal_completed=True)
    _, fired = apply_completion_guard(claim, "click", "h1", None, ["g"])
    assert fired is False


@pytest.mark.asyncio
async def test_unparseable_response_gives_degraded_plan(config):
    model = FakeModel(["I think we should click the button."])
    result = await Planner(model, config).plan(
        "goal", PageSnapshot(url="https://example.com"), [], SessionContext()
    )
    assert result.parse_error
    assert result.next_action is None
    assert result.goal_completed is False


@pytest.mark.asyncio
async def test_transport_error_propagates(config):
    model = FakeModel([TransportError("401 Unauthorized")])
    with pytest.raises(TransportError):
        await Planner(model, config).plan("goal", PageSnapshot(), [], SessionContext())


@pytest.mark.asyncio
async def test_prompt_contains_history_tags_and_memory_keys(config):
    model = FakeModel([plan("click", "submit")])
    history = [
        HistoryEntry(
            thought="fill",
            action=NextAction(kind="fill", target="name", description="Fill name"),
            success=True,
            state_change="PAGE_SAME",
        ),
        HistoryEntry(
            thought="click",
            action=NextAction(kind="click", target="missing", description="Click missing"),
            success=False,
            error="Element not found: missing",
        ),
    ]
    await Planner(model, config).plan(
        "Sign up",
        PageSnapshot(url="https://example.com", dom_tree='<input ai-id="name">'),
        history,
        SessionContext(goal_stack=["Sign up", "Fill name"]),
        user_memory={"email": "ada@example.com"},
    )

    prompt = model.prompts[0]
    assert "[PAGE_SAME]" in prompt
    assert "✗ FAILED" in prompt
    assert "do NOT repeat" in prompt
    assert "{{memory.email}}" in prompt
    assert "ada@example.com" not in prompt
    assert 'Current Focus: "Fill name"' in prompt


def test_loop_detector_blocks_third_identical_action():
    detector = LoopDetector(window=3)
    assert detector.record("click:submit") is False
    assert detector.record("click:submit") is False
    assert detector.record("click:submit") is True


def test_loop_detector_exempts_finishing_actions():
    detector = LoopDetector(window=3)
    for _ in range(2):
        detector.record("FINISH:")
    assert detector.record("FINISH:", finishing=True) is False


def test_loop_detector_resets_on_different_action():
    detector = LoopDetector(window=3, signatures=["click:a", "click:a"])
    assert detector.record("click:b") is False
    assert detector.signatures == ["click:a", "click:a", "click:b"]


def test_detect_loop_returns_window_to_persist(config):
    planner = Planner(FakeModel(), config)
    action = NextAction(kind="scroll", target=None)
    looped, window = planner.detect_loop(["scroll:None", "scroll:None", "click:x"], action)
    assert looped is False
    assert window == ["scroll:None", "click:x", "scroll:None"]


def test_last_action_kind_skips_system_entries():
    history = _click_history() + [HistoryEntry(thought="note", note="note", system=True)]
    assert last_action_kind(history) == "click"


def test_popped_goals():
    assert popped_goals(["Main", "Sub A", "Sub B"], ["Main", "Sub C"]) == ["Sub A", "Sub B"]
    assert popped_goals(["Main"], ["Main", "Sub"]) == []
