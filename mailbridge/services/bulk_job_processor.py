import asyncio
import logging
import random
import time
from datetime import datetime

from mailbridge.config import settings
from mailbridge.models import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING
from mailbridge.platforms import get_platform_limits
from mailbridge.services.budget_guard import BudgetExceeded, ExecutionBudget
from mailbridge.services.concurrency_service import ConcurrencyController, RunOptions
from mailbridge.services.dispatcher_service import DispatcherService
from mailbridge.services.job_ledger_service import JobLedgerService, JobView
from mailbridge.services.job_lock_service import JobLockService
from mailbridge.services.job_queue_service import JobQueueService
from mailbridge.services.membership_service import (
    MembershipFetchResult,
    Recipient,
    WhopMembershipSource,
    dedupe_recipients,
)
from mailbridge.services.rate_limiter_service import PlatformPacer, RateLimiterService
from mailbridge.services.sender_service import SenderIdentity, SenderService
from mailbridge.services.transports import build_transport
from mailbridge.utils import PreconditionError, normalize_error_message, utcnow


class BulkJobProcessor:
    def __init__(
        self,
        ledger: JobLedgerService,
        rate_limiter: RateLimiterService,
        sender_service: SenderService,
        membership_source: WhopMembershipSource,
        queue_service: JobQueueService,
        lock_service: JobLockService,
        pacer: PlatformPacer | None = None,
        transport_factory=build_transport,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.logger = logging.getLogger("bulk_job_processor")
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.sender_service = sender_service
        self.membership_source = membership_source
        self.queue_service = queue_service
        self.lock_service = lock_service
        self.pacer = pacer
        self.transport_factory = transport_factory
        self.sleep = sleep
        self.clock = clock

    async def process(self, payload: dict) -> dict:
        if settings.service_role.strip().lower() != "worker":
            return {"success": True, "count": 0, "outcome": "skipped-non-worker"}

        job_id = str(payload.get("jobId") or "")
        raw_members = payload.get("members")
        members = [Recipient.from_dict(m) for m in raw_members] if raw_members is not None else None
        started_at = utcnow()
        lag_ms = 0
        queued_at = payload.get("queuedAt")
        if queued_at:
            try:
                lag_ms = max(0, int((started_at - datetime.fromisoformat(str(queued_at))).total_seconds() * 1000))
            except ValueError:
                lag_ms = 0

        budget = ExecutionBudget(
            settings.worker_job_budget_ms,
            safety_margin_ms=settings.worker_job_safety_margin_ms,
            clock=self.clock,
        )
        result = await self.run_locked(job_id, members, budget=budget)
        result["startedAt"] = started_at.isoformat()
        result["lagMs"] = lag_ms
        return result

    async def run_locked(
        self,
        job_id: str,
        members: list[Recipient] | None = None,
        budget: ExecutionBudget | None = None,
    ) -> dict:
        token = f"{job_id}-{random.randint(10000, 99999)}"
        lock = await self.lock_service.acquire(job_id, token)
        if not lock:
            return {"success": True, "count": 0, "error": "job-lock-busy", "outcome": "lock-busy"}
        try:
            return await self.run(job_id, members, budget=budget)
        finally:
            await self.lock_service.release(job_id, token)

    async def fetch_targets(self, sender: SenderIdentity, target_ids: list[str] | None) -> MembershipFetchResult:
        return await self.membership_source.fetch_members(sender.membership_credential, target_ids)

    async def remaining_recipients(self, job: JobView, members: list[Recipient]) -> list[Recipient]:
        """Deduped members with no ledger row yet, capped at the job's open slots."""
        sent = await self.ledger.list_sent_targets(job.id)
        pending = await self.ledger.list_pending_targets(job.id)
        failed = await self.ledger.list_failed_targets(job.id)
        recorded = sent | pending | failed

        remaining = [r for r in dedupe_recipients(members) if r.target_id not in recorded]
        slots = max(0, job.total_members - len(recorded))
        if len(remaining) > slots:
            self.logger.warning(
                "job %s membership grew: %s unrecorded targets, %s open slots",
                job.id,
                len(remaining),
                slots,
            )
            remaining = remaining[:slots]
        return remaining

    async def _fail(self, job_id: str, message: str) -> dict:
        self.logger.error("job %s failed: %s", job_id, message)
        await self.ledger.append_error(job_id, message)
        await self.ledger.update_job(job_id, status=JOB_FAILED, completed_at=utcnow())
        return {"success": False, "count": 0, "error": message, "outcome": "failed"}

    async def run(
        self,
        job_id: str,
        members: list[Recipient] | None = None,
        budget: ExecutionBudget | None = None,
    ) -> dict:
        job = await self.ledger.get_job(job_id)
        if job is None:
            return {"success": False, "count": 0, "error": "job-not-found", "outcome": "missing-job"}
        if job.is_terminal:
            return {"success": True, "count": 0, "outcome": "already-terminal"}

        try:
            sender = await self.sender_service.resolve(job.tenant_id, job.platform)
            transport = self.transport_factory(
                job.platform,
                sender.delivery_credential,
                destination_id=sender.destination_id,
                options=sender.options,
            )
        except PreconditionError as e:
            return await self._fail(job.id, normalize_error_message(e))

        try:
            if members is None:
                fetched = await self.fetch_targets(sender, job.target_ids)
                if not fetched.success:
                    message = fetched.error or "Failed to fetch members"
                    self.logger.warning("job %s member fetch failed: %s", job.id, message)
                    await self.ledger.append_error(job.id, message)
                    return {"success": False, "count": 0, "error": message, "outcome": "fetch-failed"}
                members = fetched.members

            remaining = await self.remaining_recipients(job, members)
            await self.ledger.update_job(
                job.id,
                status=JOB_PROCESSING,
                started_at=None if job.started_at else utcnow(),
            )
            if not remaining:
                await self.ledger.update_job(job.id, status=JOB_COMPLETED, completed_at=utcnow())
                return {"success": True, "count": 0, "outcome": "completed"}

            limits = get_platform_limits(job.platform)
            dispatcher = DispatcherService(
                transport,
                ledger=self.ledger,
                pacer=self.pacer,
                call_interval_ms=limits.call_interval_ms,
                pacer_key=f"{job.platform}:{job.tenant_id}",
            )
            controller = ConcurrencyController(self.ledger, self.rate_limiter, sleep=self.sleep)
            self.logger.info("job %s running remaining=%s platform=%s", job.id, len(remaining), job.platform)
            try:
                summary = await controller.run_job(
                    job,
                    remaining,
                    lambda recipient: dispatcher.dispatch_one(job, recipient, job.content),
                    RunOptions.from_limits(limits),
                    budget=budget,
                )
            except BudgetExceeded as signal:
                queued = await self.queue_service.enqueue_job_run(
                    job.id,
                    members=signal.remaining,
                    delay_ms=self.queue_service.continuation_delay_ms(),
                    queue_job_id=self.queue_service.continuation_job_id(job.id),
                )
                self.logger.info("job %s deferred remaining=%s queued=%s", job.id, len(signal.remaining or []), queued)
                return {"success": True, "count": 0, "outcome": "deferred"}
        finally:
            await transport.close()

        if summary.halted_reason:
            queued = await self.queue_service.enqueue_job_run(
                job.id,
                delay_ms=settings.daily_limit_retry_delay_ms,
                queue_job_id=self.queue_service.continuation_job_id(job.id),
            )
            self.logger.warning("job %s halted: %s continuation=%s", job.id, summary.halted_reason, queued)
            return {
                "success": True,
                "count": summary.success,
                "failed": summary.failed,
                "error": summary.halted_reason,
                "outcome": "rate-limited",
            }

        return {
            "success": summary.failed == 0 or summary.success > 0,
            "count": summary.success,
            "failed": summary.failed,
            "outcome": "completed",
        }
