from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool
    role: str


class SenderConfigDTO(BaseModel):
    api_key: str = Field(min_length=1)
    destination_id: str | None = None
    agent_user_id: str | None = None
    agent_name: str | None = None
    options: dict | None = None


class BulkSendDTO(BaseModel):
    tenant_id: str = Field(min_length=1)
    content: str = ""
    target_user_ids: list[str] | None = None
    platform: str = "whop"
    kind: str = "broadcast"


class BulkSendResponse(BaseModel):
    success: bool
    job_id: str | None = None
    immediate_sent_count: int | None = None
    failed_count: int | None = None
    errors: list[str] | None = None


class JobResponse(BaseModel):
    id: str
    tenant_id: str
    kind: str
    platform: str
    status: str
    total_members: int
    processed_count: int
    success_count: int
    error_count: int
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    errors: list[str] = []


class JobStatsResponse(BaseModel):
    total: int
    sent: int
    failed: int
    pending: int
    success_rate: float
    duplicates: int
    remaining: int


class ResumeDTO(BaseModel):
    inline: bool = False


class ResumeResponse(BaseModel):
    resumed: bool
    error: str | None = None
