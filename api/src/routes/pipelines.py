from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, StageOutcome, Repository
from api.src.models.run import AbortRequest, PipelineRunResponse, RepositoryResponse, StageOutcomeResponse
from api.src.services.queue import get_run_status, request_abort

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = ["succeeded", "failed", "aborted"]

async def _load_run(run_id: UUID, db: AsyncSession) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.outcomes))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return run

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    target: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.outcomes))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)
    if target:
        query = query.where(PipelineRun.target == target)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run with every stage outcome."""
    return await _load_run(run_id, db)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run, latest status per service per stage."""
    run = await _load_run(run_id, db)

    # Get live status from Redis
    redis_status = await get_run_status(str(run_id))

    artifacts = {}
    for outcome in sorted(run.outcomes, key=lambda o: (o.stage_order, o.created_at)):
        artifacts.setdefault(outcome.artifact, {})[outcome.stage] = outcome.status

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": redis_status,
        "error": run.error,
        "artifacts": artifacts,
    }

@router.get("/runs/{run_id}/outcomes", response_model=List[StageOutcomeResponse])
async def get_run_outcomes(
    run_id: UUID,
    stage: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Structured outcome records of a pipeline run, in stage order."""
    query = (
        select(StageOutcome)
        .where(StageOutcome.run_id == run_id)
        .order_by(StageOutcome.stage_order, StageOutcome.created_at)
    )
    if stage:
        query = query.where(StageOutcome.stage == stage)

    result = await db.execute(query)
    outcomes = result.scalars().all()

    if not outcomes:
        await _load_run(run_id, db)
    return outcomes

@router.post("/runs/{run_id}/abort", status_code=202)
async def abort_run(
    run_id: UUID,
    request: Optional[AbortRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Ask the controller to abort a queued or running run."""
    run = await _load_run(run_id, db)

    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    reason = (request.reason if request else None) or "Aborted by operator"
    await request_abort(str(run_id), reason)
    return {"run_id": str(run_id), "status": "aborting", "reason": reason}

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    # Count runs by status
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    # Failures by stage and error kind
    failure_query = (
        select(StageOutcome.stage, StageOutcome.error_kind, func.count(StageOutcome.id))
        .where(StageOutcome.status == "failed")
        .group_by(StageOutcome.stage, StageOutcome.error_kind)
    )
    result = await db.execute(failure_query)
    failures = {}
    for stage, kind, count in result.all():
        failures.setdefault(stage, {})[kind or "error"] = count

    # Count total repositories
    repo_count_query = select(func.count(Repository.id))
    result = await db.execute(repo_count_query)
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "total_runs": sum(status_counts.values()),
        "failures_by_stage": failures,
    }
