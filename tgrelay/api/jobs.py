"""HTTP endpoints for starting and polling bulk jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tgrelay.accounts.store import AccountStore
from tgrelay.api.dependencies import get_account_store, get_job_manager
from tgrelay.errors import AccountNotFoundError, JobNotFoundError, ValidationAppError
from tgrelay.jobs.manager import JobManager
from tgrelay.jobs.models import Job

router = APIRouter(tags=["Jobs"])

JobKindLiteral = Literal["verify", "import_chats", "import_contacts", "send"]

# Keys that reference credentials stay server-side.
_PRIVATE_PAYLOAD_KEYS = frozenset({"session_ref", "proxy_url"})


class JobCreateRequest(BaseModel):
    kind: JobKindLiteral
    targets: list[str] = Field(default_factory=list)
    message: Optional[str] = None
    delay_min_ms: int = 0
    delay_max_ms: int = 0
    labels: list[str] = Field(default_factory=list)
    ai_prompt: Optional[str] = None


class TargetResultPayload(BaseModel):
    target: str
    success: bool
    error: Optional[str] = None
    duplicate: bool = False
    retry_later: bool = False
    detail: Optional[str] = None


class JobPayload(BaseModel):
    id: str
    resource_key: str
    kind: str
    status: str
    total: int
    succeeded: int
    failed: int
    skipped: int
    progress: int
    results: list[TargetResultPayload]
    payload: Dict[str, Any]
    started_at: datetime
    updated_at: datetime
    error: Optional[str] = None


class JobCreateData(BaseModel):
    id: str
    status: str
    total: int
    is_new: bool


class JobCreateEnvelope(BaseModel):
    ok: bool
    data: JobCreateData
    error: Optional[Dict[str, Any]] = None


class JobEnvelope(BaseModel):
    ok: bool
    data: JobPayload
    error: Optional[Dict[str, Any]] = None


class JobListEnvelope(BaseModel):
    ok: bool
    data: list[JobPayload]
    error: Optional[Dict[str, Any]] = None


def _to_payload(job: Job) -> JobPayload:
    raw = job.to_dict()
    raw["payload"] = {
        key: value for key, value in raw["payload"].items() if key not in _PRIVATE_PAYLOAD_KEYS
    }
    return JobPayload.model_validate(raw)


@router.post("/accounts/{account_id}/jobs", response_model=JobCreateEnvelope)
async def create_job(
    account_id: str,
    request: JobCreateRequest,
    manager: JobManager = Depends(get_job_manager),
    accounts: AccountStore = Depends(get_account_store),
) -> JobCreateEnvelope:
    account = accounts.get(account_id)
    if account is None:
        raise AccountNotFoundError(account_id)
    if not account.session_token:
        raise ValidationAppError(
            "account has no session - please re-authenticate this account",
            meta={"account_id": account_id},
        )
    payload: dict[str, Any] = request.model_dump(exclude={"kind"}, exclude_none=True)
    payload["session_ref"] = account.session_token
    if account.proxy_url:
        payload["proxy_url"] = account.proxy_url
    job, is_new = await manager.start_job(account.id, request.kind, payload)
    data = JobCreateData(id=job.id, status=job.status.value, total=job.total, is_new=is_new)
    return JobCreateEnvelope(ok=True, data=data, error=None)


@router.get("/jobs/{job_id}", response_model=JobEnvelope)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobEnvelope:
    job = manager.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return JobEnvelope(ok=True, data=_to_payload(job), error=None)


@router.get("/accounts/{account_id}/jobs", response_model=JobListEnvelope)
def list_jobs(
    account_id: str,
    kind: Optional[JobKindLiteral] = Query(None),
    manager: JobManager = Depends(get_job_manager),
) -> JobListEnvelope:
    jobs = manager.get_jobs_by_resource(account_id, kind)
    return JobListEnvelope(ok=True, data=[_to_payload(job) for job in jobs], error=None)


@router.post("/jobs/{job_id}/retry", response_model=JobEnvelope)
async def retry_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobEnvelope:
    job = await manager.retry_failed(job_id)
    return JobEnvelope(ok=True, data=_to_payload(job), error=None)
