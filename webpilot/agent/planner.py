"""
Planner

Turns the goal, a page snapshot and recent history into one proposed next
action. The model's answer is parsed tolerantly, then two supervisory guards
run: the completion guard (no success claims right after a mutating action
that left the page unchanged) and the loop detector.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from webpilot.config import AgentConfig
from webpilot.errors import GuardViolation, PlanParseError
from webpilot.models import (
    FINISHING_KINDS,
    LOOP_DETECTED_KIND,
    MUTATING_KINDS,
    ActionPlan,
    HistoryEntry,
    NextAction,
    PageSnapshot,
    SessionContext,
)
from webpilot.agent.parsing import degraded_plan, parse_plan
from webpilot.agent.prompts import PLANNER_SYSTEM_PROMPT, build_planner_prompt
from webpilot.services.llm import ModelService
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

GUARD_WAIT_MS = "2000"
GUARD_CONFIDENCE = 0.9


def last_action_kind(history: List[HistoryEntry]) -> Optional[str]:
    """Kind of the most recent real (non-system) action."""
    for entry in reversed(history):
        if entry.system or entry.compressed_count:
            continue
        if entry.action is not None:
            return entry.action.kind
    return None


def apply_completion_guard(
    plan: ActionPlan,
    previous_kind: Optional[str],
    current_hash: Optional[str],
    previous_hash: Optional[str],
    goal_stack: List[str],
) -> Tuple[ActionPlan, bool]:
    """
    Reject a completion claim when the last mutating action left the page unchanged.

    Returns:
        (effective plan, whether the guard fired)
    """
    if not plan.goal_completed or previous_kind not in MUTATING_KINDS:
        return plan, False
    if not current_hash or not previous_hash or current_hash != previous_hash:
        return plan, False

    violation = GuardViolation("Completion claimed but page state is identical to previous step")
    logger.warning(f"[PLANNER] Completion guard triggered: {violation}. Forcing WAIT.")

    return (
        ActionPlan(
            thinking=(
                "[System] AI planned completion, but page state is identical to previous step. "
                "Forcing wait to verify action effect."
            ),
            goal_completed=False,
            updated_goal_stack=list(goal_stack),
            next_action=NextAction(
                kind="wait",
                target=None,
                value=GUARD_WAIT_MS,
                description="System: Waiting for page update...",
            ),
            confidence=GUARD_CONFIDENCE,
        ),
        True,
    )


class LoopDetector:
    """Fixed window of recent action signatures (kind:target)."""

    def __init__(self, window: int = 3, signatures: Optional[List[str]] = None):
        self.window = window
        self.signatures: List[str] = list(signatures or [])[-window:]

    def record(self, signature: str, finishing: bool = False) -> bool:
        """
        Add a signature.

        Returns:
            True if the last `window` signatures are identical and the action
            is not a finishing one (the caller must not execute it)
        """
        self.signatures.append(signature)
        self.signatures = self.signatures[-self.window:]
        return (
            not finishing
            and len(self.signatures) == self.window
            and all(s == signature for s in self.signatures)
        )


def system_entry(note: str, kind: Optional[str] = None) -> HistoryEntry:
    """A history entry authored by the agent itself rather than the model."""
    return HistoryEntry(
        thought=note,
        action=NextAction(kind=kind, description=note) if kind else None,
        note=note,
        system=True,
    )


def loop_entry(signature: str) -> HistoryEntry:
    return system_entry(
        f"WARNING: You are repeating the same action ({signature}). Choose a completely different strategy.",
        kind=LOOP_DETECTED_KIND,
    )


def parse_failure_entry(reason: str) -> HistoryEntry:
    return system_entry(
        f"Your previous response could not be parsed ({reason}). Reply with a single valid JSON object."
    )


def popped_goals(old_stack: List[str], new_stack: List[str]) -> List[str]:
    """Goals present in the old stack but gone from the new one, in stack order."""
    remaining = list(new_stack)
    popped = []
    for goal in old_stack:
        if goal in remaining:
            remaining.remove(goal)
        else:
            popped.append(goal)
    return popped


class Planner:
    """Model-calling protocol for the next single action."""

    def __init__(self, model: ModelService, config: Optional[AgentConfig] = None):
        self.model = model
        self.config = config or AgentConfig()

    async def plan(
        self,
        goal: str,
        snapshot: PageSnapshot,
        history: List[HistoryEntry],
        context: SessionContext,
        user_memory: Optional[Dict[str, Any]] = None,
        previous_hash: Optional[str] = None,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> ActionPlan:
        """
        Ask the model for the next action.

        Args:
            goal: The user's goal
            snapshot: Current page snapshot
            history: Recent history window (already bounded by the caller)
            context: Session context (goal stack, milestones, observations)
            user_memory: Free-form user values, offered as placeholders
            previous_hash: Content hash recorded at the previous planning turn
            on_token: Streaming progress callback

        Returns:
            The effective plan. Unparseable responses give a degraded plan
            with `parse_error` set instead of raising.

        Raises:
            TransportError: the model service failed
        """
        prompt = build_planner_prompt(goal, snapshot, history, context, user_memory)
        focus = context.goal_stack[-1] if context.goal_stack else goal
        logger.info(f"[PLANNER] Planning (focus: {focus})...")

        text = await self.model.complete(
            prompt,
            json_mode=True,
            streaming=self.config.streaming,
            on_token=on_token,
            system_prompt=PLANNER_SYSTEM_PROMPT,
        )

        try:
            plan = parse_plan(text)
        except PlanParseError as e:
            logger.warning(f"[PLANNER] {e}")
            return degraded_plan(str(e))

        plan, guarded = apply_completion_guard(
            plan,
            last_action_kind(history),
            snapshot.content_hash,
            previous_hash,
            context.goal_stack,
        )
        if not guarded:
            action = plan.next_action
            logger.info(
                f"[PLANNER] goalCompleted={plan.goal_completed} "
                f"next={action.kind + ':' + str(action.target) if action else None} "
                f"confidence={plan.confidence:.2f}"
            )
        return plan

    def detect_loop(self, signatures: List[str], action: NextAction) -> Tuple[bool, List[str]]:
        """
        Run the loop detector over persisted signatures.

        Returns:
            (loop detected, updated signature window to persist)
        """
        detector = LoopDetector(self.config.loop_window, signatures)
        looped = detector.record(action.signature(), finishing=action.kind in FINISHING_KINDS)
        if looped:
            logger.warning(f"[PLANNER] Loop detected: {action.signature()}")
        return looped, detector.signatures
