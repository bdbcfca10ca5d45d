"""
LangGraph Conditional Edges

Defines routing logic between nodes based on state.
"""

from typing import Literal

from webpilot.graph.state import AgentState
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)


def route_after_coordinator(state: AgentState) -> Literal["observer", "END"]:
    """
    Route after coordinator: observe the page, or end the turn.
    """
    if state.get("active") and state.get("next_node") == "observer":
        return "observer"
    return "END"


def route_after_observer(state: AgentState) -> Literal["planner", "END"]:
    """
    Route after observer: plan on a fresh snapshot, or end the turn (retry scheduled).
    """
    if state.get("active") and state.get("next_node") == "planner":
        return "planner"
    return "END"


def route_after_planner(state: AgentState) -> Literal["executor", "navigator", "confirmer", "END"]:
    """
    Route after planner based on the kind of the proposed action.
    """
    next_node = state.get("next_node")
    if not state.get("active"):
        return "END"
    if next_node in ("executor", "navigator", "confirmer"):
        return next_node
    logger.debug(f"[EDGE] Planner ended the turn (next_node={next_node})")
    return "END"
