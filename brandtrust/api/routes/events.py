from fastapi import APIRouter, Depends, HTTPException, status

from brandtrust.core.auth import Principal
from brandtrust.core.clock import Clock, get_clock
from brandtrust.core.security import get_machine_principal, require_scope
from brandtrust.schemas.events import EventCandidatesAccepted, EventCandidatesIn
from brandtrust.services.adapters import enqueue_candidates
from brandtrust.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/candidates", response_model=EventCandidatesAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_candidates(
    payload: EventCandidatesIn,
    principal: Principal = Depends(get_machine_principal),
    repository=Depends(get_repository),
    clock: Clock = Depends(get_clock),
) -> EventCandidatesAccepted:
    require_scope(principal, "evidence:write")
    try:
        job_ids = await enqueue_candidates(repository, payload.candidates, now=clock.now())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return EventCandidatesAccepted(job_ids=job_ids)
