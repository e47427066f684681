"""
FastAPI application factory and HTTP schemas for the VEP scheduler.

The module exposes a `create_app` function that builds the REST API used to
inspect jobs and trigger execution passes. Authentication is enforced through
a configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import JobScheduler
from .models import Job, JobStatus, Recipient, VepUser

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    scheduler_running: bool = False


class JobPayload(BaseModel):
    """Job definition accepted by ``POST /jobs``."""
    id: Optional[int] = None
    type: str
    execution_time: str
    users: List[Recipient] = Field(default_factory=list)
    caducate: Optional[str] = None
    folder_name: Optional[str] = None


class JobUpdatePayload(BaseModel):
    """Fields accepted by ``PATCH /jobs/{job_id}``; omitted fields are kept."""
    type: Optional[str] = None
    execution_time: Optional[str] = None
    users: Optional[List[Recipient]] = None
    caducate: Optional[str] = None
    folder_name: Optional[str] = None


class JobResponse(CommandStatus):
    job: Job


class UserPayload(BaseModel):
    """Directory entry accepted by ``POST /users`` and ``PUT /users/{user_id}``."""
    id: Optional[int] = None
    real_name: str = ""
    alter_name: Optional[str] = None
    mobile_number: str
    cuit: Optional[str] = None
    is_group: bool = False
    need_papers: bool = False
    need_z: bool = False
    need_compra: bool = False
    need_auditoria: bool = False


class UserResponse(CommandStatus):
    user: VepUser


class UsersResponse(CommandStatus):
    users: List[VepUser] = Field(default_factory=list)


class SavedResponse(CommandStatus):
    id: Optional[int] = None


class JobsResponse(CommandStatus):
    jobs: List[Job] = Field(default_factory=list)


class StatsResponse(CommandStatus):
    stats: Dict[str, int]


class RunNowResponse(CommandStatus):
    """Execution report of a manual pass."""
    summary: Dict[str, int]
    report: Dict[str, Any]


class TemplatesResponse(CommandStatus):
    templates: List[Dict[str, Any]]
    defaults: Dict[str, str]
    cached: List[str]


class GatewayResponse(CommandStatus):
    connected: bool
    circuit: Dict[str, Any]
    rate_limit: Dict[str, Any]
    max_attachment_bytes: int


def create_app(
    svc: JobScheduler,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`vep_scheduler.core.JobScheduler` that implements
        the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="VEP Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    jobs = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[auth_dependency])
    users = APIRouter(prefix="/users", tags=["users"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        """Return a simple health status payload."""
        return StatusResponse(ok=True, scheduler_running=svc.running)

    @commands.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now():
        """Run one selection-and-execute pass and return its report."""
        result = await svc.handle_command("run now", {})
        return RunNowResponse.model_validate(result)

    @jobs.get("/stats", response_model=StatsResponse, response_model_exclude_none=True)
    async def job_stats():
        """Return job counts per status."""
        result = await svc.handle_command("stats", {})
        return StatsResponse.model_validate(result)

    @jobs.get("/pending", response_model=JobsResponse, response_model_exclude_none=True)
    async def pending_jobs():
        result = await svc.handle_command("listJobs", {"status": JobStatus.PENDING.value})
        return JobsResponse.model_validate(result)

    @jobs.get("/ready", response_model=JobsResponse, response_model_exclude_none=True)
    async def ready_jobs():
        """List the jobs the next pass would execute."""
        result = await svc.handle_command("readyJobs", {})
        return JobsResponse.model_validate(result)

    @jobs.get("/status/{job_status}", response_model=JobsResponse, response_model_exclude_none=True)
    async def jobs_by_status(job_status: str):
        result = await svc.handle_command("listJobs", {"status": job_status})
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return JobsResponse.model_validate(result)

    @jobs.post("", response_model=SavedResponse, response_model_exclude_none=True)
    async def add_job(payload: JobPayload):
        """Create a new ``PENDING`` job."""
        data = payload.model_dump(exclude_none=True)
        data["users"] = [user.model_dump() for user in payload.users]
        result = await svc.handle_command("addJob", data)
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return SavedResponse.model_validate(result)

    @jobs.get("/{job_id}", response_model=JobResponse, response_model_exclude_none=True)
    async def get_job(job_id: int):
        result = await svc.handle_command("getJob", {"id": job_id})
        if not result.get("ok"):
            raise HTTPException(status_code=404, detail=result.get("error"))
        return JobResponse.model_validate(result)

    @jobs.patch("/{job_id}", response_model=SavedResponse, response_model_exclude_none=True)
    async def update_job(job_id: int, payload: JobUpdatePayload):
        """Change a job that has not been claimed yet."""
        data = payload.model_dump(exclude_unset=True)
        if payload.users is not None:
            data["users"] = [user.model_dump() for user in payload.users]
        data["id"] = job_id
        result = await svc.handle_command("updateJob", data)
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return SavedResponse.model_validate(result)

    @jobs.delete("/{job_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_job(job_id: int):
        result = await svc.handle_command("deleteJob", {"id": job_id})
        if not result.get("ok"):
            raise HTTPException(status_code=404, detail=result.get("error"))
        return BasicOkResponse.model_validate(result)

    @users.post("", response_model=SavedResponse, response_model_exclude_none=True)
    async def add_user(payload: UserPayload):
        """Register a recipient in the directory."""
        result = await svc.handle_command("addUser", payload.model_dump(exclude_none=True))
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return SavedResponse.model_validate(result)

    @users.get("", response_model=UsersResponse, response_model_exclude_none=True)
    async def list_users():
        result = await svc.handle_command("listUsers", {})
        return UsersResponse.model_validate(result)

    @users.get("/not-sent/this-month", response_model=UsersResponse, response_model_exclude_none=True)
    async def users_not_sent_this_month():
        """List recipients that received nothing since the first day of the month."""
        result = await svc.handle_command("usersNotSentThisMonth", {})
        return UsersResponse.model_validate(result)

    @users.get("/{user_id}", response_model=UserResponse, response_model_exclude_none=True)
    async def get_user(user_id: int):
        result = await svc.handle_command("getUser", {"id": user_id})
        if not result.get("ok"):
            raise HTTPException(status_code=404, detail=result.get("error"))
        return UserResponse.model_validate(result)

    @users.put("/{user_id}", response_model=SavedResponse, response_model_exclude_none=True)
    async def update_user(user_id: int, payload: UserPayload):
        data = payload.model_dump(exclude_unset=True)
        data["id"] = user_id
        result = await svc.handle_command("updateUser", data)
        if not result.get("ok"):
            raise HTTPException(status_code=404, detail=result.get("error"))
        return SavedResponse.model_validate(result)

    @users.delete("/{user_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_user(user_id: int):
        result = await svc.handle_command("deleteUser", {"id": user_id})
        if not result.get("ok"):
            raise HTTPException(status_code=404, detail=result.get("error"))
        return BasicOkResponse.model_validate(result)

    @api.get("/templates", response_model=TemplatesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_templates():
        """List stored templates, built-in defaults and cached categories."""
        result = await svc.handle_command("listTemplates", {})
        return TemplatesResponse.model_validate(result)

    @api.get("/gateway", response_model=GatewayResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def gateway_status():
        """Report channel connectivity, circuit breaker and rate limiter state."""
        result = await svc.handle_command("gatewayStatus", {})
        return GatewayResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(jobs)
    api.include_router(users)
    return api
