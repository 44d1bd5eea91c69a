"""Validate node — source checkout, promotion order, init / fmt / validate."""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.runnables import RunnableConfig

from gantry.errors import GantryError
from gantry.models.stages import Stage, StageKind
from gantry.pipeline.nodes import (
    check_promotion,
    credential_ttl,
    enter_stage,
    ensure_workdir,
    fail_with,
    finish_stage,
    get_services,
    retry_counter,
)
from gantry.pipeline.state import PipelineState

logger = logging.getLogger(__name__)


async def validate_node(state: PipelineState, config: RunnableConfig) -> dict[str, Any]:
    services = get_services(config)
    run = state["run"]
    execution = run.open_execution(StageKind.VALIDATE) or await enter_stage(
        services, run, StageKind.VALIDATE
    )

    try:
        await check_promotion(services, run)
        workdir = await ensure_workdir(services, run)
        async with services.credentials.scoped(
            run.run_id, StageKind.VALIDATE, run.environment, credential_ttl(run, StageKind.VALIDATE)
        ) as credential:
            output = await services.executor.validate(
                workdir,
                use_backend=run.use_backend,
                credential=credential,
                settings=run.pipeline_cfg(),
                on_retry=retry_counter(execution),
            )
    except GantryError as e:
        await fail_with(services, run, execution, e)
        return {"run": run}

    details = {}
    if run.linked_staging_run_id:
        details["linked_staging_run_id"] = run.linked_staging_run_id
    await finish_stage(services, run, execution, Stage.PLAN, output=output, **details)
    return {"run": run}
