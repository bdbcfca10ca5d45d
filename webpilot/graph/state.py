"""
LangGraph State Schema Definition

The single live task record. It flows through the graph during a planning
turn and is checkpointed to the store after every transition, so every field
must stay JSON-serializable (history entries are plain dicts).
"""

import time
from typing import Any, Dict, List, Optional, TypedDict

from webpilot.models import HistoryEntry


class Phase:
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_MODEL_RESULT = "awaiting_model_result"
    AWAITING_PAGE_LOAD = "awaiting_page_load"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_ACTION = "executing_action"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_PHASES = frozenset({Phase.FINISHED, Phase.STOPPED, Phase.ERROR})


class AgentState(TypedDict):
    """
    Main state schema for the agent graph.
    """
    # Task identity
    task_id: Optional[str]  # Changes on every start; stale turns compare against it
    session_id: Optional[str]  # SessionMemory session for this task
    goal: str  # Original user instruction
    surface_id: Optional[str]  # Controlled page
    initial_mode: Optional[str]  # "AGENT" when the user explicitly chose agent mode

    # Status
    active: bool
    phase: str
    step_info: str  # Human-readable status, rendered by the control surface
    waiting_for_load: bool
    waiting_for_confirmation: bool
    last_error: Optional[str]

    # History & guards
    action_history: List[Dict[str, Any]]  # HistoryEntry dicts
    step_count: int  # Every appended entry counts; compression does not reset it
    recent_signatures: List[str]  # Loop detector window

    # Per-turn scratch
    observation: Optional[Dict[str, Any]]  # Latest PageSnapshot
    last_plan: Optional[Dict[str, Any]]  # Latest ActionPlan
    pending_action: Optional[Dict[str, Any]]  # Action routed to executor / navigator / confirmer

    # Routing inside one turn
    next_node: Optional[str]

    # Continuation requested by the turn
    wakeup: Optional[Dict[str, Any]]  # {"name", "delay"}
    handoff: Optional[str]  # "script" when the task moves to script generation

    # Metadata
    started_at: Optional[float]
    last_update_time: Optional[float]


def create_idle_state(step_info: str = "Ready") -> Dict[str, Any]:
    return {
        "task_id": None,
        "session_id": None,
        "goal": "",
        "surface_id": None,
        "initial_mode": None,
        "active": False,
        "phase": Phase.IDLE,
        "step_info": step_info,
        "waiting_for_load": False,
        "waiting_for_confirmation": False,
        "last_error": None,
        "action_history": [],
        "step_count": 0,
        "recent_signatures": [],
        "observation": None,
        "last_plan": None,
        "pending_action": None,
        "next_node": None,
        "wakeup": None,
        "handoff": None,
        "started_at": None,
        "last_update_time": None,
    }


def create_initial_state(
    task_id: str,
    goal: str,
    surface_id: str,
    session_id: Optional[str],
    initial_mode: Optional[str] = None,
    step_info: str = "Starting analysis...",
) -> Dict[str, Any]:
    """
    Create the state for a freshly started task.

    Args:
        task_id: Unique id for this start command
        goal: User's natural language instruction
        surface_id: Page the task controls
        session_id: SessionMemory session created for the task
        initial_mode: Explicit mode the user chose, None when auto-routed

    Returns:
        Initial state dict
    """
    now = time.time()
    state = create_idle_state(step_info)
    state.update(
        {
            "task_id": task_id,
            "session_id": session_id,
            "goal": goal,
            "surface_id": surface_id,
            "initial_mode": initial_mode,
            "active": True,
            "phase": Phase.PLANNING,
            "started_at": now,
            "last_update_time": now,
        }
    )
    return state


def compress_history(
    history: List[Dict[str, Any]], soft_cap: int = 30, keep: int = 20
) -> Optional[List[Dict[str, Any]]]:
    """
    Collapse the oldest entries into one summary entry.

    Returns:
        [summary, *last `keep` entries] when len(history) > soft_cap, else None
    """
    if len(history) <= soft_cap:
        return None

    old, recent = history[:-keep], history[-keep:]
    removed = len(old)
    digest = [(HistoryEntry.model_validate(raw).thought or "")[:30] for raw in old]

    summary = HistoryEntry(
        thought=f"[Compressed {removed} steps]: " + " → ".join(digest),
        note="compressed",
        system=True,
        compressed_count=removed,
    )
    return [summary.model_dump(mode="json")] + list(recent)
