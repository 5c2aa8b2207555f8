from fastapi import APIRouter, Depends, HTTPException, Query, status

from brandtrust.core.auth import Principal
from brandtrust.core.clock import Clock, get_clock
from brandtrust.core.config import Settings, get_settings
from brandtrust.core.security import get_machine_principal, require_scope
from brandtrust.jobs.runner import JobRunner
from brandtrust.schemas.jobs import DeadJobOut, RunSummaryOut
from brandtrust.services.push import PushSender, get_push_sender
from brandtrust.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/run", response_model=RunSummaryOut)
async def run_jobs(
    principal: Principal = Depends(get_machine_principal),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    clock: Clock = Depends(get_clock),
    push_sender: PushSender = Depends(get_push_sender),
) -> RunSummaryOut:
    require_scope(principal, "jobs:run")
    runner = JobRunner(repository, settings, clock=clock, push_sender=push_sender)
    try:
        summary = await runner.run_once()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunSummaryOut(**summary.as_dict())


@router.get("/dead", response_model=list[DeadJobOut])
async def list_dead_jobs(
    principal: Principal = Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=1000),
) -> list[DeadJobOut]:
    require_scope(principal, "jobs:read")
    try:
        records = await repository.list_dead_jobs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [
        DeadJobOut(
            id=record.id,
            stage=record.stage,
            payload=record.payload,
            attempts=record.attempts,
            last_error=record.last_error,
            original_created_at=record.original_created_at,
            moved_to_dead_at=record.moved_to_dead_at,
        )
        for record in records
    ]
