import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException

from mailbridge.config import settings
from mailbridge.container import broadcast_service, lock_service, membership_source, sender_service
from mailbridge.db import engine
from mailbridge.models import Base
from mailbridge.schemas import (
    BulkSendDTO,
    BulkSendResponse,
    HealthResponse,
    JobResponse,
    JobStatsResponse,
    ResumeDTO,
    ResumeResponse,
    SenderConfigDTO,
)
from mailbridge.services.job_ledger_service import JobView
from mailbridge.utils import truncate_errors


logging.basicConfig(level=logging.INFO, format="[app] %(asctime)s %(levelname)s %(name)s %(message)s", force=True)
logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield
    finally:
        await membership_source.close()
        await lock_service.close()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


def job_response(job: JobView) -> JobResponse:
    data = asdict(job)
    data["errors"] = truncate_errors(job.errors, settings.error_display_limit)
    return JobResponse(**data)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(ok=True, role=settings.service_role)


@app.put("/tenants/{tenant_id}/senders/{platform}")
async def save_sender(tenant_id: str, platform: str, payload: SenderConfigDTO):
    await sender_service.save_sender(
        tenant_id,
        platform.strip().lower(),
        payload.api_key,
        destination_id=payload.destination_id,
        agent_user_id=payload.agent_user_id,
        agent_name=payload.agent_name,
        options=payload.options,
    )
    return {"success": True}


@app.post("/broadcasts", response_model=BulkSendResponse)
async def start_broadcast(payload: BulkSendDTO) -> BulkSendResponse:
    result = await broadcast_service.start_bulk_send(
        payload.tenant_id,
        payload.content,
        target_ids=payload.target_user_ids,
        platform=payload.platform,
        kind=payload.kind,
    )
    if not result.success and result.job_id is None:
        raise HTTPException(status_code=400, detail=asdict(result))
    return BulkSendResponse(**asdict(result))


@app.get("/broadcasts/{job_id}", response_model=JobResponse)
async def get_broadcast(job_id: str) -> JobResponse:
    job = await broadcast_service.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_response(job)


@app.get("/broadcasts/{job_id}/stats", response_model=JobStatsResponse)
async def get_broadcast_stats(job_id: str) -> JobStatsResponse:
    stats = await broadcast_service.get_job_stats(job_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatsResponse(**asdict(stats))


@app.post("/broadcasts/{job_id}/resume", response_model=ResumeResponse)
async def resume_broadcast(job_id: str, payload: ResumeDTO | None = None) -> ResumeResponse:
    result = await broadcast_service.resume_job(job_id, inline=bool(payload and payload.inline))
    if result.error == "Job not found":
        raise HTTPException(status_code=404, detail=result.error)
    return ResumeResponse(**asdict(result))


@app.get("/tenants/{tenant_id}/broadcasts", response_model=list[JobResponse])
async def list_broadcasts(tenant_id: str, limit: int | None = None) -> list[JobResponse]:
    jobs = await broadcast_service.list_jobs_for_tenant(tenant_id, limit)
    return [job_response(job) for job in jobs]
