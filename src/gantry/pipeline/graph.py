"""Pipeline graph — wires the stage nodes and conditional edges into a LangGraph StateGraph."""

from __future__ import annotations

from langgraph.graph import END, START, StateGraph

from gantry.pipeline.edges import (
    after_apply,
    after_approval,
    after_plan,
    after_validate,
    route_entry,
)
from gantry.pipeline.nodes.apply import apply_node
from gantry.pipeline.nodes.approval import approval_node
from gantry.pipeline.nodes.plan import plan_node
from gantry.pipeline.nodes.validate import validate_node
from gantry.pipeline.state import PipelineState


def build_pipeline_graph() -> StateGraph:
    """Build the stage graph.

    Validate → Plan → Approval → Apply, entered at whichever stage the run is
    currently on so a parked or interrupted run resumes where it stopped:

        START ─→ validate → plan ─→ approval → apply → END
                             │  ↑                │
                             │  └── stale plan ──┘
                             └─→ END (PR / feature runs)
    """
    graph = StateGraph(PipelineState)

    graph.add_node("validate", validate_node)
    graph.add_node("plan", plan_node)
    graph.add_node("approval", approval_node)
    graph.add_node("apply", apply_node)

    graph.add_conditional_edges(
        START,
        route_entry,
        {"validate": "validate", "plan": "plan", "approval": "approval", "apply": "apply", "end": END},
    )
    graph.add_conditional_edges("validate", after_validate, {"plan": "plan", "end": END})
    graph.add_conditional_edges(
        "plan", after_plan, {"approval": "approval", "apply": "apply", "end": END}
    )
    graph.add_conditional_edges("approval", after_approval, {"apply": "apply", "end": END})
    graph.add_conditional_edges("apply", after_apply, {"plan": "plan", "end": END})

    return graph
