from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ITEM_PENDING = "pending"
ITEM_SENT = "sent"
ITEM_FAILED = "failed"

KIND_BROADCAST = "broadcast"
KIND_AUDIENCE_SYNC = "audience_sync"


class Base(DeclarativeBase):
    pass


class TenantSender(Base):
    __tablename__ = "tenant_senders"
    __table_args__ = (UniqueConstraint("tenant_id", "platform", name="uq_tenant_platform"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    platform: Mapped[str] = mapped_column(String, default="whop")
    api_key: Mapped[str] = mapped_column(Text)
    destination_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_name: Mapped[str | None] = mapped_column(String, nullable=True)
    options: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BulkJob(Base):
    __tablename__ = "bulk_jobs"
    __table_args__ = (Index("ix_bulk_jobs_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String, default=KIND_BROADCAST)
    platform: Mapped[str] = mapped_column(String, default="whop")
    content: Mapped[str] = mapped_column(Text)
    target_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    total_members: Mapped[int] = mapped_column(Integer)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, default=JOB_PENDING)
    agent_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    credential_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class BulkJobItem(Base):
    __tablename__ = "bulk_job_items"
    __table_args__ = (
        UniqueConstraint("job_id", "target_id", name="uq_job_target"),
        Index("ix_bji_job_status", "job_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("bulk_jobs.id", ondelete="CASCADE"))
    tenant_id: Mapped[str] = mapped_column(String)
    target_id: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default=ITEM_PENDING)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BulkJobError(Base):
    __tablename__ = "bulk_job_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("bulk_jobs.id", ondelete="CASCADE"), index=True)
    message: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class TenantRateLimit(Base):
    __tablename__ = "tenant_rate_limits"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    last_batch_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    batch_count: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    current_window_count: Mapped[int] = mapped_column(Integer, default=0)
    previous_window_count: Mapped[int] = mapped_column(Integer, default=0)
    messages_sent_today: Mapped[int] = mapped_column(Integer, default=0)
    last_reset_date: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
