"""
Experiment routes
- POST /experiments/{family}/steps/{step}: run one step on the experiment worker
- GET  /experiments/{family}/seeded: row count of the experiment table
"""
from __future__ import annotations

from typing import Any, Dict, List, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from app.core.background_jobs import ExperimentQueueFullError, submit_experiment_job
from app.core.index_manager import IndexOperationError
from app.core.query_executor import ExplainFailedError
from app.core.sql_exec import SQLExecutionError
from app.deps import dedicated_connection, get_db_pool
from app.experiments.base import (
    ExperimentParameterError,
    ExperimentSession,
    ExperimentStepOutOfOrderError,
    UnknownExperimentError,
)
from app.experiments.registry import get_experiment, list_families
from app.smart_logger import SmartLogger


router = APIRouter(prefix="/experiments", tags=["Experiments"])


class ExperimentStepRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    params: Dict[str, Any] = Field(default_factory=dict, description="Step parameters, e.g. threshold")
    completed_steps: List[Union[int, str]] = Field(
        default_factory=list,
        alias="completedSteps",
        description="Steps already completed in this session, as returned by the previous step",
    )


def _error(status_code: int, exc: Exception, **extra: Any) -> HTTPException:
    message = getattr(exc, "message", None) or str(exc)
    return HTTPException(status_code=status_code, detail={"error": True, "message": message, **extra})


@router.get("")
async def list_experiments() -> Dict[str, Any]:
    families = []
    for family in list_families():
        experiment = get_experiment(family)
        families.append(
            {
                "family": family,
                "table": experiment.table,
                "steps": [
                    {"step": spec.step_id, "requires": spec.requires, "label": spec.label}
                    for spec in experiment.steps()
                ],
            }
        )
    return {"experiments": families}


@router.post("/{family}/steps/{step}")
async def run_experiment_step(
    family: str,
    step: str,
    request: ExperimentStepRequest,
    db=Depends(get_db_pool),
) -> Dict[str, Any]:
    try:
        experiment = get_experiment(family)
        experiment.resolve_step(step)
    except UnknownExperimentError as exc:
        raise _error(404, exc)
    except ExperimentParameterError as exc:
        raise _error(400, exc)

    session = ExperimentSession.from_steps(request.completed_steps)

    async def _run():
        async with dedicated_connection(db) as conn:
            return await experiment.run_step(conn, step, session, request.params)

    try:
        result = await submit_experiment_job(_run, label=f"{experiment.family}:{step}")
    except ExperimentStepOutOfOrderError as exc:
        raise _error(409, exc, required=exc.required, completedSteps=session.completed)
    except ExperimentParameterError as exc:
        raise _error(400, exc)
    except ExperimentQueueFullError as exc:
        raise _error(503, exc, retryable=True)
    except (SQLExecutionError, IndexOperationError) as exc:
        SmartLogger.log(
            "ERROR",
            "experiments.step.failed",
            category="routers.experiments",
            params={"family": experiment.family, "step": step, "error": exc.message},
        )
        raise _error(500, exc, detail=exc.detail, retryable=exc.retryable, completedSteps=session.completed)
    except ExplainFailedError as exc:
        raise _error(500, exc, completedSteps=session.completed)

    return result.to_dict()


@router.get("/{family}/seeded")
async def check_experiment_seeded(family: str, db=Depends(get_db_pool)) -> Dict[str, int]:
    try:
        experiment = get_experiment(family)
    except UnknownExperimentError as exc:
        raise _error(404, exc)
    try:
        return await experiment.check_seeded(db)
    except SQLExecutionError as exc:
        raise _error(500, exc, retryable=exc.retryable)
