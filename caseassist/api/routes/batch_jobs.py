"""FastAPI routes for batch job runs (read-only)."""

from fastapi import APIRouter, Depends, Query

from caseassist.api.dependencies import Caller, get_caller, get_tracker
from caseassist.api.schemas import BatchJobListResponse, BatchJobResponse
from caseassist.db.models import BatchJobRun, BatchJobStatus
from caseassist.errors import NotFoundError
from caseassist.services import BatchJobTracker

router = APIRouter(prefix="/batch-jobs", tags=["batch-jobs"])


@router.get("", response_model=BatchJobListResponse)
def list_batch_jobs(
    feature: str | None = Query(None, description="Filter by feature"),
    status: BatchJobStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    tracker: BatchJobTracker = Depends(get_tracker),
) -> BatchJobListResponse:
    """List the caller firm's batch jobs, newest first.

    Args:
        feature: Filter by feature (optional).
        status: Filter by status (optional).
        limit: Maximum number of jobs to return.
        offset: Number of jobs to skip.
        caller: Calling user.
        tracker: Batch job tracker dependency.

    Returns:
        Paginated list of jobs.
    """
    jobs = tracker.list_jobs(
        firm_id=caller.firm_id, feature=feature, status=status, limit=limit, offset=offset
    )
    return BatchJobListResponse(
        jobs=[BatchJobResponse.model_validate(j) for j in jobs],
        total=tracker.count_jobs(firm_id=caller.firm_id, feature=feature, status=status),
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=BatchJobResponse)
def get_batch_job(
    job_id: str,
    caller: Caller = Depends(get_caller),
    tracker: BatchJobTracker = Depends(get_tracker),
) -> BatchJobRun:
    """Get a batch job by ID."""
    job = tracker.get_job(job_id)
    if job is None or job.firm_id != caller.firm_id:
        raise NotFoundError("batch job", job_id)
    return job
