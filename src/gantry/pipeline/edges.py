"""Conditional edge functions for the pipeline graph.

Nodes record the next state-machine position on ``run.stage``; the edges map
it to a node name, or "end" when the run is terminal or parked.
"""

from __future__ import annotations

from gantry.models.stages import RunStatus, Stage
from gantry.pipeline.state import PipelineState

_NODE_FOR_STAGE: dict[Stage, str] = {
    Stage.VALIDATE: "validate",
    Stage.PLAN: "plan",
    Stage.APPROVAL: "approval",
    Stage.APPLY: "apply",
}


def _next(state: PipelineState) -> str:
    run = state["run"]
    if run.is_terminal or run.status is RunStatus.AWAITING_APPROVAL:
        return "end"
    return _NODE_FOR_STAGE.get(run.stage, "end")


def route_entry(state: PipelineState) -> str:
    """Resume at the node for the run's current stage (fresh runs start at validate)."""
    return _next(state)


def after_validate(state: PipelineState) -> str:
    """Route after validation.

    Returns:
        "plan" — checks passed
        "end" — validation failed
    """
    return _next(state)


def after_plan(state: PipelineState) -> str:
    """Route after plan.

    Returns:
        "approval" — apply-class run needs sign-off on this plan
        "apply" — re-plan reproduced the already-approved plan hash
        "end" — PR validation run is done, or plan failed
    """
    return _next(state)


def after_approval(state: PipelineState) -> str:
    """Route after the approval gate.

    Returns:
        "apply" — approved
        "end" — parked awaiting a decision, or rejected/expired
    """
    return _next(state)


def after_apply(state: PipelineState) -> str:
    """Route after apply.

    Returns:
        "plan" — plan went stale, re-plan
        "end" — applied, or failed
    """
    return _next(state)
