"""PipelineState — the structure flowing through every LangGraph node.

LangGraph requires a TypedDict. The run itself is the unit of persistence, so
the graph state is just a handle on it; nodes mutate the run and return it.
"""

from __future__ import annotations

from typing import TypedDict

from gantry.models.run import PipelineRun


class PipelineState(TypedDict):
    run: PipelineRun
