"""
LangGraph Node Functions

One planning turn is a short pass through these nodes:
- Coordinator: guards (inactive, step limit) and history compression
- Observer: takes the page snapshot
- Planner: asks the model for one action, applies goal stack and loop guard
- Executor: runs click/fill/scroll/select/wait and records the outcome
- Navigator: issues a navigation and waits for the page-load event
- Confirmer: handles a proposed switch to script mode

Nodes never sleep across turns. A turn that needs to continue later sets
`wakeup` and the orchestrator schedules it once the state is saved.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from webpilot.agent.executor import Executor
from webpilot.agent.memory import SessionMemory
from webpilot.agent.planner import (
    Planner,
    loop_entry,
    parse_failure_entry,
    popped_goals,
)
from webpilot.config import AgentConfig
from webpilot.errors import AgentError, NavigationTimeout, ProbeError, StepLimitExceeded, SurfaceGoneError
from webpilot.graph.state import TERMINAL_PHASES, AgentState, Phase, compress_history
from webpilot.models import (
    CREATE_SCRIPT_KIND,
    PAGE_CHANGED,
    PAGE_SAME,
    ActionPlan,
    HistoryEntry,
    NextAction,
    PageSnapshot,
)
from webpilot.services.notifier import Notifier
from webpilot.tools.page_probe import PageProbe, navigation_url
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

END_ROUTE = "END"


class NodeContext:
    """Everything the nodes need, passed explicitly instead of module globals."""

    def __init__(
        self,
        config: AgentConfig,
        probe: PageProbe,
        planner: Planner,
        executor: Executor,
        memory: SessionMemory,
        notifier: Optional[Notifier] = None,
        load_user_memory: Optional[Callable[[], Dict[str, Any]]] = None,
        is_current: Optional[Callable[[Optional[str]], bool]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.probe = probe
        self.planner = planner
        self.executor = executor
        self.memory = memory
        self.notifier = notifier or Notifier()
        self.load_user_memory = load_user_memory or (lambda: {})
        self.is_current = is_current or (lambda task_id: True)
        self.sleep = sleep

    def status(self, state: AgentState, text: str) -> Dict[str, Any]:
        """Tell the UI and return the matching state update."""
        self.notifier.update_overlay(state.get("surface_id"), text)
        return {"step_info": text}


def _wakeup(name: str, delay: float) -> Dict[str, Any]:
    return {"name": name, "delay": delay}


def _superseded(ctx: NodeContext, state: AgentState, tag: str) -> Optional[Dict[str, Any]]:
    """End the turn without side effects if the task was stopped or replaced while it awaited."""
    if ctx.is_current(state.get("task_id")):
        return None
    logger.info(f"[{tag}] Task was stopped or replaced, dropping this step")
    return {"next_node": END_ROUTE, "wakeup": None}


def _append_history(state: AgentState, *entries: HistoryEntry) -> Dict[str, Any]:
    history = list(state.get("action_history") or [])
    history.extend(e.model_dump(mode="json") for e in entries)
    return {
        "action_history": history,
        "step_count": state.get("step_count", 0) + len(entries),
    }


def _fatal(ctx: NodeContext, state: AgentState, error: BaseException, silent: bool = False) -> Dict[str, Any]:
    """End the task in the Error phase and close its session as failed."""
    session_id = state.get("session_id")
    if session_id:
        ctx.memory.end_session(session_id, "failed")

    message = f"❌ Error: {error}"
    if silent:
        logger.warning(f"[AGENT] Stopping silently: {error}")
    else:
        ctx.notifier.update_overlay(state.get("surface_id"), message)

    return {
        "active": False,
        "phase": Phase.ERROR,
        "step_info": message,
        "last_error": str(error),
        "waiting_for_load": False,
        "waiting_for_confirmation": False,
        "wakeup": None,
        "next_node": END_ROUTE,
        "last_update_time": time.time(),
    }


async def _guarded(ctx: NodeContext, state: AgentState, tag: str, body: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    """Run a node body; a closed surface ends the task quietly, anything else loudly."""
    try:
        return await body
    except SurfaceGoneError as e:
        return _fatal(ctx, state, e, silent=True)
    except AgentError as e:
        logger.error(f"[{tag}] {e}")
        return _fatal(ctx, state, e)
    except Exception as e:
        logger.error(f"[{tag}] Unexpected failure: {e}", exc_info=True)
        return _fatal(ctx, state, e)


def create_coordinator_node(ctx: NodeContext):
    """
    Coordinator: entry of every turn.

    Ends the turn for inactive, terminal or waiting tasks, enforces the step
    limit and compresses long histories before routing to the observer.
    """

    async def coordinator_node(state: AgentState) -> Dict[str, Any]:
        updates: Dict[str, Any] = {
            "last_update_time": time.time(),
            "wakeup": None,
            "handoff": None,
            "next_node": END_ROUTE,
        }

        if not state.get("active") or state.get("phase") in TERMINAL_PHASES:
            logger.info("[COORDINATOR] No active task, nothing to do")
            return updates
        if state.get("waiting_for_load") or state.get("waiting_for_confirmation"):
            logger.info("[COORDINATOR] Task is waiting, turn skipped")
            return updates

        step_count = state.get("step_count", 0)
        if step_count > ctx.config.max_steps:
            error = StepLimitExceeded(f"Maximum step count ({ctx.config.max_steps}) reached")
            logger.error(f"[COORDINATOR] {error}, stopping to prevent an infinite loop")
            session_id = state.get("session_id")
            if session_id:
                ctx.memory.end_session(session_id, "failed")
            updates.update(
                {
                    "active": False,
                    "phase": Phase.ERROR,
                    "last_error": str(error),
                }
            )
            updates.update(ctx.status(state, f"❌ Too many steps ({step_count}), stopped to prevent an infinite loop."))
            return updates

        compressed = compress_history(
            state.get("action_history") or [],
            ctx.config.history_soft_cap,
            ctx.config.history_keep,
        )
        if compressed is not None:
            logger.info(f"[COORDINATOR] History compressed to {len(compressed)} entries")
            updates["action_history"] = compressed

        updates["phase"] = Phase.PLANNING
        updates["next_node"] = "observer"
        logger.info(f"[COORDINATOR] Step {step_count + 1}, routing to observer")
        return updates

    return coordinator_node


def create_observer_node(ctx: NodeContext):
    """Observer: snapshot the page, retrying once after a pause when it looks empty."""

    async def observe(state: AgentState) -> Dict[str, Any]:
        surface_id = state["surface_id"]
        try:
            snapshot = await ctx.probe.get_snapshot(surface_id)
        except SurfaceGoneError:
            raise
        except ProbeError as e:
            logger.warning(f"[OBSERVER] Snapshot failed, retrying later: {e}")
            updates = ctx.status(state, "⏳ Page not ready, retrying...")
            updates.update(
                {
                    "phase": Phase.PLANNING,
                    "last_error": str(e),
                    "wakeup": _wakeup("retry_loop", ctx.config.retry_delay),
                    "next_node": END_ROUTE,
                }
            )
            return updates

        if not snapshot.restricted and snapshot.looks_empty():
            logger.info("[OBSERVER] Page looks empty, waiting for content...")
            ctx.notifier.update_overlay(surface_id, "⏳ Waiting for page content...")
            await ctx.sleep(ctx.config.empty_snapshot_retry_delay)
            try:
                snapshot = await ctx.probe.get_snapshot(surface_id)
            except SurfaceGoneError:
                raise
            except ProbeError as e:
                logger.warning(f"[OBSERVER] Second snapshot failed, using the first: {e}")

        logger.info(
            f"[OBSERVER] {snapshot.url or 'unknown url'}: "
            f"{len(snapshot.interactive_elements)} interactive elements"
        )
        updates = ctx.status(state, "🧠 AI is thinking...")
        updates.update(
            {
                "observation": snapshot.model_dump(mode="json"),
                "phase": Phase.AWAITING_MODEL_RESULT,
                "next_node": "planner",
            }
        )
        return updates

    async def observer_node(state: AgentState) -> Dict[str, Any]:
        return await _guarded(ctx, state, "OBSERVER", observe(state))

    return observer_node


def create_planner_node(ctx: NodeContext):
    """
    Planner: one model call for the next action.

    Applies the goal stack (popped goals become milestones), turns parse
    failures and loops into system history entries, and routes the action
    to the executor, the navigator or the confirmer.
    """

    async def plan(state: AgentState) -> Dict[str, Any]:
        surface_id = state["surface_id"]
        session_id = state.get("session_id")
        snapshot = PageSnapshot.model_validate(state.get("observation") or {})
        history = [HistoryEntry.model_validate(h) for h in state.get("action_history") or []]
        context = ctx.memory.get_context(session_id)
        previous_hash = ctx.memory.get_last_page_hash(session_id) if session_id else None

        try:
            action_plan: ActionPlan = await ctx.planner.plan(
                state.get("goal", ""),
                snapshot,
                history[-ctx.config.context_window:],
                context,
                ctx.load_user_memory(),
                previous_hash,
                on_token=lambda text: ctx.notifier.thinking_update(surface_id, text),
            )
        finally:
            ctx.notifier.thinking_done(surface_id)

        superseded = _superseded(ctx, state, "PLANNER")
        if superseded is not None:
            return superseded

        updates: Dict[str, Any] = {"last_plan": action_plan.model_dump(mode="json"), "next_node": END_ROUTE}

        milestones = set()
        if session_id:
            if action_plan.thinking:
                ctx.memory.add_observation(session_id, action_plan.thinking)
            if action_plan.updated_goal_stack:
                for goal in popped_goals(context.goal_stack, action_plan.updated_goal_stack):
                    label = f"Completed: {goal}"
                    milestones.add(label)
                    ctx.memory.add_milestone(session_id, label)
                ctx.memory.update_goal_stack(session_id, action_plan.updated_goal_stack)

        if action_plan.parse_error:
            updates.update(_append_history(state, parse_failure_entry(action_plan.parse_error)))
            updates.update(ctx.status(state, "⚠️ Could not read the AI response, retrying..."))
            updates.update({"phase": Phase.PLANNING, "wakeup": _wakeup("next_step", ctx.config.next_step_delay)})
            return updates

        if action_plan.goal_completed:
            logger.info(f"[PLANNER] Goal completed: {action_plan.thinking}")
            if session_id:
                label = f"Completed: {state.get('goal', '')}"
                if label not in milestones:
                    ctx.memory.add_milestone(session_id, label)
                ctx.memory.end_session(session_id, "completed")
            updates.update(ctx.status(state, f"✅ Done: {action_plan.thinking or 'goal completed'}"))
            updates.update({"active": False, "phase": Phase.FINISHED, "pending_action": None})
            return updates

        action = action_plan.next_action
        looped, signatures = ctx.planner.detect_loop(state.get("recent_signatures") or [], action)
        updates["recent_signatures"] = signatures
        if looped:
            updates.update(_append_history(state, loop_entry(action.signature())))
            updates.update(ctx.status(state, "⚠️ Loop detected, asking the AI for a different approach..."))
            updates.update({"phase": Phase.PLANNING, "wakeup": _wakeup("next_step", ctx.config.next_step_delay)})
            return updates

        updates.update(ctx.status(state, f"⚡️ {action_plan.thinking or action.description or action.kind}"))
        updates["pending_action"] = action.model_dump(mode="json", by_alias=True)

        if action.kind == CREATE_SCRIPT_KIND:
            updates["next_node"] = "confirmer"
        elif action.kind == "navigate":
            updates["next_node"] = "navigator"
        else:
            updates["phase"] = Phase.EXECUTING_ACTION
            updates["next_node"] = "executor"
        return updates

    async def planner_node(state: AgentState) -> Dict[str, Any]:
        return await _guarded(ctx, state, "PLANNER", plan(state))

    return planner_node


def _thought(state: AgentState) -> str:
    return (state.get("last_plan") or {}).get("thinking") or ""


def create_executor_node(ctx: NodeContext):
    """Executor: run the pending action and record whether the page changed."""

    async def execute(state: AgentState) -> Dict[str, Any]:
        surface_id = state["surface_id"]
        session_id = state.get("session_id")
        action = NextAction.model_validate(state["pending_action"])
        before = (state.get("observation") or {}).get("content_hash")
        if session_id:
            # Baseline for the completion guard: the page before this action
            ctx.memory.update_page_hash(session_id, before)

        result = await ctx.executor.execute(surface_id, action, ctx.load_user_memory())
        superseded = _superseded(ctx, state, "EXECUTOR")
        if superseded is not None:
            return superseded

        after: Optional[str] = None
        if result.success:
            try:
                after = await ctx.probe.content_hash(surface_id)
            except SurfaceGoneError:
                raise
            except ProbeError as e:
                logger.debug(f"[EXECUTOR] Could not hash page after {action.kind}: {e}")

        if not result.success:
            tag, state_change = "failed", None
        elif before and after:
            tag = "changed" if before != after else "same"
            state_change = PAGE_CHANGED if tag == "changed" else PAGE_SAME
        else:
            tag, state_change = "unknown", None

        entry = HistoryEntry(
            thought=_thought(state),
            action=action,
            success=result.success,
            state_change=state_change,
            error=result.error,
        )
        if session_id:
            ctx.memory.add_step(session_id, action, tag, result.success, result.error)

        updates = _append_history(state, entry)
        updates.update({"pending_action": None, "next_node": END_ROUTE})

        if action.kind == "click" and result.success:
            delay = (
                ctx.config.click_navigation_timeout
                if result.caused_navigation_hint
                else ctx.config.click_settle_timeout
            )
            updates.update(ctx.status(state, "⏳ Clicked, waiting for the page..."))
            updates.update(
                {
                    "waiting_for_load": True,
                    "phase": Phase.AWAITING_PAGE_LOAD,
                    "wakeup": _wakeup("navigation_timeout", delay),
                }
            )
        else:
            if not result.success:
                updates.update(ctx.status(state, f"⚠️ {action.kind} failed: {result.error}"))
            updates.update({"phase": Phase.PLANNING, "wakeup": _wakeup("next_step", ctx.config.next_step_delay)})

        logger.info(f"[EXECUTOR] {action.signature()} -> {tag}")
        return updates

    async def executor_node(state: AgentState) -> Dict[str, Any]:
        return await _guarded(ctx, state, "EXECUTOR", execute(state))

    return executor_node


def create_navigator_node(ctx: NodeContext):
    """Navigator: issue the navigation; the turn resumes on the page-load event or its timeout."""

    async def navigate(state: AgentState) -> Dict[str, Any]:
        surface_id = state["surface_id"]
        session_id = state.get("session_id")
        action = NextAction.model_validate(state["pending_action"])
        url = navigation_url(action)
        if session_id:
            ctx.memory.update_page_hash(session_id, (state.get("observation") or {}).get("content_hash"))

        success, error = True, None
        if not url:
            success, error = False, "No URL to navigate to"
        else:
            try:
                await ctx.probe.navigate(surface_id, url)
            except SurfaceGoneError:
                raise
            except NavigationTimeout as e:
                logger.warning(f"[NAVIGATOR] {e}, proceeding")
            except ProbeError as e:
                success, error = False, str(e)
        superseded = _superseded(ctx, state, "NAVIGATOR")
        if superseded is not None:
            return superseded

        entry = HistoryEntry(thought=_thought(state), action=action, success=success, error=error)
        if session_id:
            ctx.memory.add_step(session_id, action, "unknown" if success else "failed", success, error)

        updates = _append_history(state, entry)
        updates.update({"pending_action": None, "next_node": END_ROUTE})

        if success:
            logger.info(f"[NAVIGATOR] Navigating to {url}")
            updates.update(ctx.status(state, f"🚀 Navigating to {url}"))
            updates.update(
                {
                    "waiting_for_load": True,
                    "phase": Phase.AWAITING_PAGE_LOAD,
                    "wakeup": _wakeup("navigation_timeout", ctx.config.navigation_timeout),
                }
            )
        else:
            logger.warning(f"[NAVIGATOR] Navigation failed: {error}")
            updates.update({"phase": Phase.PLANNING, "wakeup": _wakeup("next_step", ctx.config.next_step_delay)})
        return updates

    async def navigator_node(state: AgentState) -> Dict[str, Any]:
        return await _guarded(ctx, state, "NAVIGATOR", navigate(state))

    return navigator_node


def create_confirmer_node(ctx: NodeContext):
    """
    Confirmer: the model proposed switching to script mode.

    Tasks the user explicitly started in agent mode ask for confirmation;
    auto-routed tasks hand over to script generation directly.
    """

    async def confirm(state: AgentState) -> Dict[str, Any]:
        surface_id = state["surface_id"]
        action = NextAction.model_validate(state["pending_action"])
        entry = HistoryEntry(thought=_thought(state), action=action, note="Proposed switching to script mode")
        updates = _append_history(state, entry)
        updates.update({"pending_action": None, "next_node": END_ROUTE})

        if state.get("initial_mode") == "AGENT":
            logger.info("[CONFIRMER] Asking the user before switching to script mode")
            ctx.notifier.show_confirm(surface_id, "AI suggests switching to Script Mode. Allow?")
            updates.update(ctx.status(state, "⚠️ Switching to Script Mode... Confirm?"))
            timeout = ctx.config.confirmation_timeout
            updates.update(
                {
                    "phase": Phase.AWAITING_CONFIRMATION,
                    "waiting_for_confirmation": True,
                    "wakeup": _wakeup("confirmation_timeout", timeout) if timeout else None,
                }
            )
            return updates

        logger.info("[CONFIRMER] Handing the task over to script generation")
        session_id = state.get("session_id")
        if session_id:
            ctx.memory.end_session(session_id, "completed")
        updates.update(ctx.status(state, "📜 A script fits this task better, switching to Script Mode..."))
        updates.update({"active": False, "phase": Phase.FINISHED, "handoff": "script"})
        return updates

    async def confirmer_node(state: AgentState) -> Dict[str, Any]:
        return await _guarded(ctx, state, "CONFIRMER", confirm(state))

    return confirmer_node

