"""
Orchestrator

Owns the single live task. Every entry point (control messages, page events,
wake-ups, resume at process start) reloads AgentState from the store, so the
process can be restarted at any suspension point. Planning turns run through
the LangGraph graph one at a time; stop does not wait for a running turn, the
turn notices the change when it tries to persist and drops its result.
"""

import asyncio
import time
import uuid
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Dict, List, Optional

from webpilot.agent.executor import Executor
from webpilot.agent.intent import AGENT, SCRIPT, resolve_mode
from webpilot.agent.memory import SessionMemory
from webpilot.agent.planner import Planner, system_entry
from webpilot.agent.scripting import ScriptGenerator
from webpilot.config import AgentConfig
from webpilot.errors import AgentError, ProbeError, UnsafeScriptError
from webpilot.graph.graph import build_graph
from webpilot.graph.nodes import NodeContext
from webpilot.graph.state import TERMINAL_PHASES, Phase, create_idle_state, create_initial_state
from webpilot.models import SurfaceEvent
from webpilot.services.llm import ModelService
from webpilot.services.notifier import Notifier
from webpilot.tools.page_probe import PageProbe
from webpilot.utils.logging import get_logger
from webpilot.utils.scheduler import WakeupScheduler
from webpilot.utils.store import StateStore

logger = get_logger(__name__)

AGENT_STATE_KEY = "agentState"
USER_MEMORY_KEY = "userMemory"

# Wake-ups that simply run the next planning turn
TURN_WAKEUPS = frozenset({"next_step", "retry_loop", "continue_loop"})


class Orchestrator:
    """Resumable task state machine driven by messages, page events and wake-ups."""

    def __init__(
        self,
        config: AgentConfig,
        store: StateStore,
        probe: PageProbe,
        model: ModelService,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.probe = probe
        self.model = model
        self.notifier = notifier or Notifier()

        self.memory = SessionMemory(
            store,
            max_sessions=config.max_sessions,
            context_window=config.context_window,
            max_observations=config.max_observations,
        )
        self.planner = Planner(model, config)
        self.executor = Executor(probe, config)
        self.scripts = ScriptGenerator(model, probe, store, config=config)
        self.scheduler = WakeupScheduler(store, self.post)

        self.inbox: "asyncio.Queue[Optional[SurfaceEvent]]" = asyncio.Queue()
        self._turn_lock = asyncio.Lock()

        self.graph = build_graph(
            NodeContext(
                config=config,
                probe=probe,
                planner=self.planner,
                executor=self.executor,
                memory=self.memory,
                notifier=self.notifier,
                load_user_memory=self.load_user_memory,
                is_current=self._is_current,
                sleep=sleep,
            )
        )
        probe.subscribe(self.post)

    # --- persisted state -----------------------------------------------

    def load_state(self) -> Dict[str, Any]:
        state = create_idle_state()
        state.update(self.store.get(AGENT_STATE_KEY) or {})
        return state

    def save_state(self, state: Dict[str, Any]) -> None:
        state = dict(state)
        state["last_update_time"] = time.time()
        self.store.set(AGENT_STATE_KEY, state)

    def load_user_memory(self) -> Dict[str, Any]:
        value = self.store.get(USER_MEMORY_KEY) or {}
        return value if isinstance(value, dict) else {}

    def set_user_memory(self, values: Dict[str, Any]) -> None:
        self.store.set(USER_MEMORY_KEY, dict(values))

    def _is_current(self, task_id: Optional[str]) -> bool:
        stored = self.store.get(AGENT_STATE_KEY) or {}
        return stored.get("task_id") == task_id and stored.get("phase") != Phase.STOPPED

    # --- event intake --------------------------------------------------

    def post(self, event: SurfaceEvent) -> None:
        """Queue an inbound event (page events, wake-ups, deferred messages)."""
        self.inbox.put_nowait(event)

    async def run(self) -> None:
        """Process inbound events one at a time until close()."""
        logger.info("[ORCHESTRATOR] Event loop started")
        while True:
            event = await self.inbox.get()
            if event is None:
                break
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"[ORCHESTRATOR] Failed to handle {event.kind} event: {e}", exc_info=True)
        logger.info("[ORCHESTRATOR] Event loop stopped")

    async def drain(self) -> int:
        """Handle every event already queued. Returns how many were handled."""
        handled = 0
        while not self.inbox.empty():
            event = self.inbox.get_nowait()
            if event is None:
                continue
            await self.handle_event(event)
            handled += 1
        return handled

    async def close(self) -> None:
        self.inbox.put_nowait(None)
        await self.scheduler.close()

    async def handle_event(self, event: SurfaceEvent) -> Optional[Dict[str, Any]]:
        if event.kind == "wakeup":
            await self.on_wakeup(event.payload.get("name", ""))
        elif event.kind == "page_loaded":
            await self.on_page_loaded(event.surface_id, event.payload.get("url"))
        elif event.kind == "surface_closed":
            self.on_surface_closed(event.surface_id)
        elif event.kind == "message":
            return await self.handle_message(event.payload)
        return None

    # --- control surface -----------------------------------------------

    async def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle one control-surface message.

        Args:
            message: {"type": ..., **fields}

        Returns:
            Response dict for the control surface
        """
        msg_type = message.get("type")
        logger.debug(f"[ORCHESTRATOR] Message: {msg_type}")

        if msg_type == "START_TASK":
            return await self._start_from_message(message, initial_mode=None)

        if msg_type == "SMART_START":
            goal = message.get("goal") or ""
            mode = await resolve_mode(self.model, goal, message.get("mode"))
            if mode == SCRIPT:
                response = await self.generate_script(message.get("surface_id"), message.get("url"), goal)
                response["mode"] = SCRIPT
                return response
            explicit = AGENT if str(message.get("mode") or "").upper() == AGENT else None
            response = await self._start_from_message(message, initial_mode=explicit)
            response["mode"] = AGENT
            return response

        if msg_type == "STOP_TASK":
            self.stop_task()
            return {"status": "stopped"}

        if msg_type == "GET_STATUS":
            return self.load_state()

        if msg_type == "CONFIRM_RESULT":
            return await self.confirm_result(message.get("result") is True)

        if msg_type == "GENERATE_SCRIPT":
            return await self.generate_script(
                message.get("surface_id"), message.get("url"), message.get("prompt") or ""
            )

        if msg_type == "CONVERT_HISTORY_TO_SCRIPT":
            state = self.load_state()
            history = state.get("action_history") or []
            if not history:
                return {"status": "error", "error": "No history found"}
            surface_id = message.get("surface_id") or state.get("surface_id")
            return await self.generate_script(surface_id, None, "Automate the steps I just did.", history)

        return {"status": "error", "error": f"Unknown message type: {msg_type}"}

    async def _start_from_message(self, message: Dict[str, Any], initial_mode: Optional[str]) -> Dict[str, Any]:
        surface_id, goal = message.get("surface_id"), message.get("goal")
        if not surface_id or not goal:
            return {"status": "error", "error": "surface_id and goal are required"}
        state = await self.start_task(surface_id, goal, initial_mode)
        return {"status": "started", "task_id": state["task_id"]}

    async def start_task(self, surface_id: str, goal: str, initial_mode: Optional[str] = None) -> Dict[str, Any]:
        """
        Start (or restart) the task and queue its first planning turn.

        Args:
            surface_id: Page to control
            goal: User's instruction
            initial_mode: "AGENT" when the user explicitly chose agent mode

        Returns:
            The new AgentState
        """
        self.scheduler.clear_all()

        url = None
        try:
            url = await self.probe.current_url(surface_id)
        except ProbeError as e:
            logger.warning(f"[ORCHESTRATOR] Could not read URL of {surface_id}: {e}")

        session_id = self.memory.create_session(goal, surface_id, url)
        state = create_initial_state(str(uuid.uuid4()), goal, surface_id, session_id, initial_mode)
        self.save_state(state)

        logger.info(f"[ORCHESTRATOR] Task started on {surface_id}: {goal}")
        self.notifier.update_overlay(surface_id, state["step_info"])
        self.post(SurfaceEvent(kind="wakeup", payload={"name": "next_step"}))
        return state

    def stop_task(self) -> Dict[str, Any]:
        """Stop the current task. Does not wait for a running turn."""
        self.scheduler.clear_all()
        state = self.load_state()
        if not state.get("active") and state.get("phase") in TERMINAL_PHASES | {Phase.IDLE}:
            return state

        state.update(
            {
                "active": False,
                "phase": Phase.STOPPED,
                "step_info": "⛔️ Stopped by user",
                "waiting_for_load": False,
                "waiting_for_confirmation": False,
                "wakeup": None,
            }
        )
        self.save_state(state)
        if state.get("session_id"):
            self.memory.end_session(state["session_id"], "stopped")

        logger.info("[ORCHESTRATOR] Task stopped by user")
        self.notifier.update_overlay(state.get("surface_id"), state["step_info"])
        return state

    async def confirm_result(self, approved: bool) -> Dict[str, Any]:
        """Answer to the switch-to-script-mode prompt."""
        state = self.load_state()
        if not state.get("active") or not state.get("waiting_for_confirmation"):
            return {"status": "ignored"}

        self.scheduler.cancel("confirmation_timeout")

        if not approved:
            self._continue_as_agent(state, "User rejected switching to script mode. Continue as Agent.")
            return {"status": "ok"}

        state.update(
            {
                "active": False,
                "waiting_for_confirmation": False,
                "phase": Phase.FINISHED,
                "step_info": "✅ Confirmed. Switching to script mode...",
                "handoff": "script",
            }
        )
        self.save_state(state)
        if state.get("session_id"):
            self.memory.end_session(state["session_id"], "completed")
        self.notifier.update_overlay(state.get("surface_id"), state["step_info"])
        return await self._script_handoff(state)

    def _continue_as_agent(self, state: Dict[str, Any], note: str) -> None:
        entry = system_entry(note)
        state["action_history"] = list(state.get("action_history") or []) + [entry.model_dump(mode="json")]
        state["step_count"] = state.get("step_count", 0) + 1
        state.update(
            {
                "waiting_for_confirmation": False,
                "phase": Phase.PLANNING,
                "step_info": "👌 Continuing as Agent...",
            }
        )
        self.save_state(state)
        logger.info(f"[ORCHESTRATOR] {note}")
        self.notifier.update_overlay(state.get("surface_id"), state["step_info"])
        self.post(SurfaceEvent(kind="wakeup", payload={"name": "next_step"}))

    # --- script generation ---------------------------------------------

    async def generate_script(
        self,
        surface_id: Optional[str],
        url: Optional[str],
        prompt: str,
        context_history: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        if not surface_id:
            return {"status": "error", "error": "surface_id is required"}

        self.notifier.update_overlay(surface_id, "📜 Generating script...")
        try:
            script = await self.scripts.generate(surface_id, url, prompt, context_history)
        except UnsafeScriptError as e:
            self.notifier.update_overlay(surface_id, f"🛑 {e}")
            return {"status": "error", "error": str(e), "warnings": e.warnings}
        except AgentError as e:
            logger.error(f"[ORCHESTRATOR] Script generation failed: {e}")
            self.notifier.update_overlay(surface_id, f"❌ Script generation failed: {e}")
            return {"status": "error", "error": str(e)}

        self.notifier.update_overlay(surface_id, f"✅ Script saved: {script.name}")
        return {"status": "ok", "script": script.model_dump(mode="json")}

    async def _script_handoff(self, state: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("[ORCHESTRATOR] Handing task history to script generation")
        return await self.generate_script(
            state.get("surface_id"),
            None,
            state.get("goal") or "",
            state.get("action_history") or [],
        )

    # --- planning turns ------------------------------------------------

    async def run_turn(self) -> Dict[str, Any]:
        """
        Run one planning turn for the stored task, persisting every state
        transition. The turn's results are dropped if the task was stopped or
        replaced while it ran.

        Returns:
            The state after the turn
        """
        async with self._turn_lock:
            state = self.load_state()
            if not state.get("active") or state.get("phase") in TERMINAL_PHASES:
                logger.debug("[ORCHESTRATOR] No active task, turn skipped")
                return state

            task_id = state.get("task_id")
            final = state
            async with aclosing(self.graph.astream(state, stream_mode="values")) as stream:
                async for value in stream:
                    if not self._is_current(task_id):
                        logger.info("[ORCHESTRATOR] Task was stopped or replaced during the turn, discarding result")
                        return self.load_state()
                    self.save_state(value)
                    final = value

            wakeup = final.get("wakeup")
            if final.get("active") and wakeup and self._is_current(task_id):
                self.scheduler.schedule(wakeup["name"], wakeup["delay"])

            if final.get("handoff") == "script" and self._is_current(task_id):
                await self._script_handoff(final)
        return final

    async def wait_idle(self) -> None:
        """Wait for a running turn (and any script handoff it started) to finish."""
        async with self._turn_lock:
            pass

    async def on_wakeup(self, name: str) -> None:
        logger.debug(f"[ORCHESTRATOR] Wake-up: {name}")

        if name in TURN_WAKEUPS:
            await self.run_turn()
            return

        state = self.load_state()
        if name == "navigation_timeout":
            if state.get("active") and state.get("waiting_for_load"):
                logger.warning("[ORCHESTRATOR] No page-load event in time, continuing optimistically")
                state.update({"waiting_for_load": False, "phase": Phase.PLANNING})
                self.save_state(state)
                await self.run_turn()
        elif name == "confirmation_timeout":
            if state.get("active") and state.get("waiting_for_confirmation"):
                self._continue_as_agent(state, "No answer to the script mode proposal. Continue as Agent.")
        else:
            logger.warning(f"[ORCHESTRATOR] Unknown wake-up: {name}")

    async def on_page_loaded(self, surface_id: Optional[str], url: Optional[str]) -> None:
        if surface_id and url:
            await self.scripts.inject_matching(surface_id, url)

        state = self.load_state()
        if not state.get("active") or state.get("surface_id") != surface_id or not state.get("waiting_for_load"):
            return

        self.scheduler.cancel("navigation_timeout")
        state.update(
            {
                "waiting_for_load": False,
                "phase": Phase.PLANNING,
                "step_info": "👀 Page loaded, continuing...",
            }
        )
        self.save_state(state)
        logger.info(f"[ORCHESTRATOR] Page loaded: {url}")
        self.notifier.update_overlay(surface_id, state["step_info"])
        self.scheduler.schedule("continue_loop", self.config.page_load_continue_delay)

    def on_surface_closed(self, surface_id: Optional[str]) -> None:
        state = self.load_state()
        if not state.get("active") or state.get("surface_id") != surface_id:
            return

        self.scheduler.clear_all()
        state.update(
            {
                "active": False,
                "phase": Phase.ERROR,
                "step_info": "Controlled page was closed",
                "last_error": f"Surface {surface_id} is gone",
                "waiting_for_load": False,
                "waiting_for_confirmation": False,
            }
        )
        self.save_state(state)
        if state.get("session_id"):
            self.memory.end_session(state["session_id"], "failed")
        logger.warning(f"[ORCHESTRATOR] Surface {surface_id} closed, task ended")

    async def resume(self) -> Dict[str, Any]:
        """
        Re-arm persisted wake-ups after a restart and make sure an active
        task has a continuation.
        """
        restored = self.scheduler.restore()
        state = self.load_state()
        if not state.get("active") or state.get("phase") in TERMINAL_PHASES:
            return state

        if not restored:
            if state.get("waiting_for_confirmation"):
                if self.config.confirmation_timeout:
                    self.scheduler.schedule("confirmation_timeout", self.config.confirmation_timeout)
            elif state.get("waiting_for_load"):
                self.scheduler.schedule("navigation_timeout", self.config.navigation_timeout)
            else:
                self.post(SurfaceEvent(kind="wakeup", payload={"name": "next_step"}))

        logger.info(f"[ORCHESTRATOR] Resumed task {state.get('task_id')} in phase {state.get('phase')}")
        return state
