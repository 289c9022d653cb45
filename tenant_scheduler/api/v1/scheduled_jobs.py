from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from tenant_scheduler.models.scheduling import (
    ExecutionOutcome,
    JobStatus,
    TriggerType,
)
from tenant_scheduler.services.scheduling import (
    AuthorizationError,
    JobFilter,
    JobNotFoundError,
    JobSpec,
    ScheduledJobService,
    SchedulingValidationError,
    StaleJobError,
)
from tenant_scheduler.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/tenants/{tenant_id}/scheduled-jobs", tags=["scheduled-jobs"]
)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    job_key: str
    app_installation_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    cron_expression: str
    timezone: str
    enabled: bool
    target_function: str
    params: Dict[str, Any]
    timeout_seconds: int
    max_consecutive_failures: int
    status: JobStatus
    consecutive_failure_count: int
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int


class ExecutionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    tenant_id: str
    job_key: Optional[str] = None
    target_function: Optional[str] = None
    trigger_type: TriggerType
    triggered_by: Optional[str] = None
    started_at: datetime
    ended_at: datetime
    duration_ms: int
    outcome: ExecutionOutcome
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error_message: Optional[str] = None


class SetEnabledRequest(BaseModel):
    enabled: bool


class RegisterJobsRequest(BaseModel):
    app_installation_id: Optional[str] = None
    jobs: Dict[str, Dict[str, Any]]


class RegistrationResponse(BaseModel):
    job_key: str
    created: bool
    job: JobResponse


class DeleteJobResponse(BaseModel):
    job_id: str
    deleted: bool


def get_scheduled_job_service(request: Request) -> ScheduledJobService:
    return request.app.state.scheduled_job_service


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity, set by the authenticating proxy"""
    return x_user_id


@contextmanager
def _http_errors() -> Iterator[None]:
    """Map control-surface errors onto HTTP status codes"""
    try:
        yield
    except SchedulingValidationError as e:
        raise HTTPException(
            status_code=422, detail={"message": str(e), "errors": e.errors}
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AuthorizationError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except StaleJobError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{job_key}", response_model=JobResponse)
async def create_or_update_job(
    tenant_id: str,
    job_key: str,
    spec: JobSpec,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    """Create the job with this key, or replace its definition"""
    with _http_errors():
        return await service.create_or_update_job(tenant_id, job_key, spec, user_id)


@router.post("/register", response_model=List[RegistrationResponse])
async def register_jobs(
    tenant_id: str,
    body: RegisterJobsRequest,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    """Register a batch of jobs. One invalid job rejects the batch."""
    with _http_errors():
        results = await service.register_jobs(
            tenant_id,
            body.jobs,
            user_id,
            app_installation_id=body.app_installation_id,
        )
    return [
        RegistrationResponse(
            job_key=result.job_key,
            created=result.created,
            job=JobResponse.model_validate(result.job),
        )
        for result in results
    ]


@router.get("/", response_model=List[JobResponse])
async def list_jobs(
    tenant_id: str,
    enabled: Optional[bool] = None,
    status: Optional[JobStatus] = None,
    app_installation_id: Optional[str] = None,
    target_function: Optional[str] = None,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    job_filter = JobFilter(
        enabled=enabled,
        status=status,
        app_installation_id=app_installation_id,
        target_function=target_function,
    )
    with _http_errors():
        return await service.list_jobs(tenant_id, job_filter, user_id)


@router.get("/executions", response_model=List[ExecutionRecordResponse])
async def get_execution_history(
    tenant_id: str,
    job_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    """Execution records, newest first"""
    with _http_errors():
        return await service.get_execution_history(
            tenant_id, job_id=job_id, limit=limit, user_id=user_id
        )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    tenant_id: str,
    job_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    with _http_errors():
        return await service.get_job(tenant_id, job_id, user_id)


@router.post("/{job_id}/enabled", response_model=JobResponse)
async def set_enabled(
    tenant_id: str,
    job_id: str,
    body: SetEnabledRequest,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    """Enable or disable a job. Enabling clears an auto-disable."""
    with _http_errors():
        return await service.set_enabled(tenant_id, job_id, body.enabled, user_id)


@router.delete("/{job_id}", response_model=DeleteJobResponse)
async def delete_job(
    tenant_id: str,
    job_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    with _http_errors():
        deleted = await service.delete_job(tenant_id, job_id, user_id)
    return DeleteJobResponse(job_id=job_id, deleted=deleted)


@router.post("/{job_id}/run", response_model=ExecutionRecordResponse)
async def run_now(
    tenant_id: str,
    job_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    service: ScheduledJobService = Depends(get_scheduled_job_service),
):
    """Execute the job now and return its execution record"""
    with _http_errors():
        record = await service.run_now(tenant_id, job_id, user_id)
    logger.info(
        "Manual run finished",
        tenant_id=tenant_id,
        job_id=job_id,
        outcome=record.outcome.value,
    )
    return record
