"""
LangGraph Graph Definition

Builds the planning-turn graph: coordinator -> observer -> planner, then one
of executor / navigator / confirmer. Every turn ends at END; continuation is
driven by the orchestrator's wake-ups, so the graph is compiled without a
checkpointer and the orchestrator persists each streamed state itself.
"""

from langgraph.graph import END, StateGraph

from webpilot.graph.edges import route_after_coordinator, route_after_observer, route_after_planner
from webpilot.graph.nodes import (
    NodeContext,
    create_confirmer_node,
    create_coordinator_node,
    create_executor_node,
    create_navigator_node,
    create_observer_node,
    create_planner_node,
)
from webpilot.graph.state import AgentState
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)


def build_graph(ctx: NodeContext):
    """
    Build and compile the LangGraph state machine.

    Args:
        ctx: Collaborators shared by all nodes

    Returns:
        Compiled LangGraph graph
    """
    workflow = StateGraph(AgentState)

    # Add nodes
    workflow.add_node("coordinator", create_coordinator_node(ctx))
    workflow.add_node("observer", create_observer_node(ctx))
    workflow.add_node("planner", create_planner_node(ctx))
    workflow.add_node("executor", create_executor_node(ctx))
    workflow.add_node("navigator", create_navigator_node(ctx))
    workflow.add_node("confirmer", create_confirmer_node(ctx))

    # Set entry point
    workflow.set_entry_point("coordinator")

    # Add conditional edges
    workflow.add_conditional_edges(
        "coordinator",
        route_after_coordinator,
        {
            "observer": "observer",
            "END": END,
        },
    )

    workflow.add_conditional_edges(
        "observer",
        route_after_observer,
        {
            "planner": "planner",
            "END": END,
        },
    )

    workflow.add_conditional_edges(
        "planner",
        route_after_planner,
        {
            "executor": "executor",
            "navigator": "navigator",
            "confirmer": "confirmer",
            "END": END,
        },
    )

    # Acting nodes always end the turn
    workflow.add_edge("executor", END)
    workflow.add_edge("navigator", END)
    workflow.add_edge("confirmer", END)

    app = workflow.compile()

    logger.info("Graph compiled successfully")
    return app
