import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from mailbridge.db import db_session
from mailbridge.models import (
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_SENT,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    KIND_BROADCAST,
    BulkJob,
    BulkJobError,
    BulkJobItem,
)
from mailbridge.utils import PreconditionError, new_job_id, utcnow


# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    JOB_PROCESSING: (JOB_PENDING, JOB_PROCESSING),
    JOB_COMPLETED: (JOB_PROCESSING,),
    JOB_FAILED: (JOB_PENDING, JOB_PROCESSING),
}


@dataclass
class JobView:
    id: str
    tenant_id: str
    kind: str
    platform: str
    content: str
    total_members: int
    processed_count: int
    success_count: int
    error_count: int
    status: str
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    target_ids: list[str] | None = None
    agent_user_id: str | None = None
    credential_hash: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JOB_COMPLETED, JOB_FAILED)

    @classmethod
    def from_row(cls, row: BulkJob, errors: list[str] | None = None) -> "JobView":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            kind=row.kind,
            platform=row.platform,
            content=row.content,
            total_members=row.total_members,
            processed_count=row.processed_count or 0,
            success_count=row.success_count or 0,
            error_count=row.error_count or 0,
            status=row.status,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            target_ids=list(row.target_ids) if row.target_ids is not None else None,
            agent_user_id=row.agent_user_id,
            credential_hash=row.credential_hash,
            errors=errors or [],
        )


@dataclass
class JobStats:
    total: int
    sent: int
    failed: int
    pending: int
    success_rate: float
    duplicates: int
    remaining: int


class JobLedgerService:
    """Durable record of bulk jobs and their per-recipient delivery rows.

    Counters only ever move through ``increment_counts``, a single
    ``SET col = col + n`` statement, so concurrent batches cannot lose
    updates. Status changes are guarded updates that refuse to move a
    job backwards.
    """

    def __init__(self, session_scope=db_session):
        self.logger = logging.getLogger("job_ledger_service")
        self.session_scope = session_scope

    async def create_job(
        self,
        tenant_id: str,
        content: str,
        total_count: int,
        kind: str = KIND_BROADCAST,
        platform: str = "whop",
        target_ids: list[str] | None = None,
        agent_user_id: str | None = None,
        credential_hash: str | None = None,
    ) -> str:
        if total_count < 0:
            raise PreconditionError(f"total_count must be >= 0, got {total_count}")
        job_id = new_job_id("broadcast" if kind == KIND_BROADCAST else "sync")
        async with self.session_scope() as db:
            db.add(
                BulkJob(
                    id=job_id,
                    tenant_id=tenant_id,
                    kind=kind,
                    platform=platform,
                    content=content,
                    target_ids=target_ids,
                    total_members=total_count,
                    processed_count=0,
                    success_count=0,
                    error_count=0,
                    status=JOB_PENDING,
                    agent_user_id=agent_user_id,
                    credential_hash=credential_hash,
                )
            )
        self.logger.info("created job %s tenant=%s kind=%s total=%s", job_id, tenant_id, kind, total_count)
        return job_id

    async def get_job(self, job_id: str) -> JobView | None:
        async with self.session_scope() as db:
            row = await db.get(BulkJob, job_id)
            if row is None:
                return None
            errors = (
                await db.execute(
                    select(BulkJobError.message)
                    .where(BulkJobError.job_id == job_id)
                    .order_by(BulkJobError.id.asc())
                )
            ).scalars().all()
            return JobView.from_row(row, list(errors))

    async def list_jobs_for_tenant(self, tenant_id: str, limit: int = 50) -> list[JobView]:
        async with self.session_scope() as db:
            rows = (
                await db.execute(
                    select(BulkJob)
                    .where(BulkJob.tenant_id == tenant_id)
                    .order_by(BulkJob.created_at.desc(), BulkJob.id.desc())
                    .limit(max(1, limit))
                )
            ).scalars().all()
            return [JobView.from_row(row) for row in rows]

    async def update_job(
        self,
        job_id: str,
        status: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        values: dict = {"updated_at": utcnow()}
        if started_at is not None:
            values["started_at"] = started_at
        if completed_at is not None:
            values["completed_at"] = completed_at

        query = update(BulkJob).where(BulkJob.id == job_id)
        if status is not None:
            allowed_from = ALLOWED_TRANSITIONS.get(status)
            if allowed_from is None:
                raise PreconditionError(f"Unknown job status: {status}")
            query = query.where(BulkJob.status.in_(allowed_from))
            values["status"] = status

        async with self.session_scope() as db:
            result = await db.execute(query.values(**values))
            changed = (result.rowcount or 0) > 0
        if status is not None and not changed:
            self.logger.warning("job %s refused transition to %s", job_id, status)
        return changed

    async def increment_counts(self, job_id: str, success: int = 0, failed: int = 0) -> None:
        if success < 0 or failed < 0:
            raise PreconditionError("job counters never decrease")
        if success == 0 and failed == 0:
            return
        async with self.session_scope() as db:
            await db.execute(
                update(BulkJob)
                .where(BulkJob.id == job_id)
                .values(
                    processed_count=BulkJob.processed_count + success + failed,
                    success_count=BulkJob.success_count + success,
                    error_count=BulkJob.error_count + failed,
                    updated_at=utcnow(),
                )
            )

    async def append_error(self, job_id: str, message: str) -> None:
        async with self.session_scope() as db:
            db.add(BulkJobError(job_id=job_id, message=message))

    async def record_item(
        self,
        job_id: str,
        tenant_id: str,
        target_id: str,
        content: str,
        status: str,
        error: str | None = None,
    ) -> bool:
        """Insert or advance the (job, target) row.

        Only a pending row can be advanced; sent and failed rows are
        final and a later write for them is ignored (returns False).
        """
        sent_at = utcnow() if status == ITEM_SENT else None
        async with self.session_scope() as db:
            result = await db.execute(
                update(BulkJobItem)
                .where(
                    BulkJobItem.job_id == job_id,
                    BulkJobItem.target_id == target_id,
                    BulkJobItem.status == ITEM_PENDING,
                )
                .values(content=content, status=status, error_message=error, sent_at=sent_at, updated_at=utcnow())
            )
            if (result.rowcount or 0) > 0:
                return True
            existing = (
                await db.execute(
                    select(BulkJobItem.id).where(
                        BulkJobItem.job_id == job_id,
                        BulkJobItem.target_id == target_id,
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                return False

        try:
            async with self.session_scope() as db:
                db.add(
                    BulkJobItem(
                        job_id=job_id,
                        tenant_id=tenant_id,
                        target_id=target_id,
                        content=content,
                        status=status,
                        error_message=error,
                        sent_at=sent_at,
                    )
                )
            return True
        except IntegrityError:
            self.logger.info("record_item raced job=%s target=%s", job_id, target_id)
            return False

    async def _targets_with_status(self, job_id: str, statuses: tuple[str, ...]) -> set[str]:
        async with self.session_scope() as db:
            rows = (
                await db.execute(
                    select(BulkJobItem.target_id).where(
                        BulkJobItem.job_id == job_id,
                        BulkJobItem.status.in_(statuses),
                    )
                )
            ).scalars().all()
            return set(rows)

    async def list_sent_targets(self, job_id: str) -> set[str]:
        return await self._targets_with_status(job_id, (ITEM_SENT,))

    async def list_pending_targets(self, job_id: str) -> set[str]:
        return await self._targets_with_status(job_id, (ITEM_PENDING,))

    async def list_failed_targets(self, job_id: str) -> set[str]:
        return await self._targets_with_status(job_id, (ITEM_FAILED,))

    async def job_stats(self, job_id: str) -> JobStats | None:
        async with self.session_scope() as db:
            job = await db.get(BulkJob, job_id)
            if job is None:
                return None
            rows = (
                await db.execute(
                    select(BulkJobItem.status, func.count(BulkJobItem.id))
                    .where(BulkJobItem.job_id == job_id)
                    .group_by(BulkJobItem.status)
                )
            ).all()

        counts = {status: count for status, count in rows}
        total = sum(counts.values())
        sent = counts.get(ITEM_SENT, 0)
        failed = counts.get(ITEM_FAILED, 0)
        return JobStats(
            total=total,
            sent=sent,
            failed=failed,
            pending=counts.get(ITEM_PENDING, 0),
            success_rate=(sent / total) * 100 if total > 0 else 0.0,
            duplicates=max(0, total - job.total_members),
            remaining=max(0, job.total_members - sent - failed),
        )
