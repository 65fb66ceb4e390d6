import asyncio
import logging
import time
from dataclasses import dataclass, field

from mailbridge.config import settings
from mailbridge.models import ITEM_FAILED, JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, KIND_BROADCAST
from mailbridge.platforms import get_platform_limits
from mailbridge.services.budget_guard import BudgetExceeded, ExecutionBudget, with_budget
from mailbridge.services.bulk_job_processor import BulkJobProcessor
from mailbridge.services.concurrency_service import process_members_in_batches
from mailbridge.services.dispatcher_service import DispatcherService, DispatchOutcome
from mailbridge.services.job_ledger_service import JobLedgerService, JobStats, JobView
from mailbridge.services.job_queue_service import JobQueueService
from mailbridge.services.membership_service import Recipient, WhopMembershipSource, dedupe_recipients
from mailbridge.services.rate_limiter_service import PlatformPacer, RateLimiterService
from mailbridge.services.sender_service import SenderIdentity, SenderService
from mailbridge.services.transports import TRANSPORTS, build_transport
from mailbridge.utils import PreconditionError, dedupe_by, normalize_error_message, truncate_errors, utcnow


@dataclass
class BulkSendResult:
    success: bool
    job_id: str | None = None
    immediate_sent_count: int | None = None
    failed_count: int | None = None
    errors: list[str] | None = None


@dataclass
class ResumeResult:
    resumed: bool
    error: str | None = None


@dataclass
class _SendState:
    target_ids: list[str] | None = None
    members: list[Recipient] | None = None
    outcomes: list[tuple[Recipient, DispatchOutcome]] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for _, outcome in self.outcomes if outcome.sent)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.sent


class BroadcastService:
    """Entry point for bulk sends and audience syncs.

    Small sends are delivered inside the request; large ones become a
    durable job continued by the worker. If the request runs out of time
    part-way, whatever has not started is moved into a job.
    """

    def __init__(
        self,
        ledger: JobLedgerService,
        rate_limiter: RateLimiterService,
        sender_service: SenderService,
        membership_source: WhopMembershipSource,
        queue_service: JobQueueService,
        processor: BulkJobProcessor,
        pacer: PlatformPacer | None = None,
        transport_factory=build_transport,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.logger = logging.getLogger("broadcast_service")
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.sender_service = sender_service
        self.membership_source = membership_source
        self.queue_service = queue_service
        self.processor = processor
        self.pacer = pacer
        self.transport_factory = transport_factory
        self.sleep = sleep
        self.clock = clock

    async def start_bulk_send(
        self,
        tenant_id: str,
        content: str,
        target_ids: list[str] | None = None,
        platform: str = "whop",
        kind: str = KIND_BROADCAST,
    ) -> BulkSendResult:
        started = self.clock()
        platform = (platform or "whop").strip().lower()
        content = content or ""
        if kind == KIND_BROADCAST and not content.strip():
            return BulkSendResult(success=False, errors=["Message content is required"])
        if platform not in TRANSPORTS:
            return BulkSendResult(success=False, errors=[f"Unsupported platform: {platform}"])

        try:
            sender = await self.sender_service.resolve(tenant_id, platform)
        except PreconditionError as e:
            return BulkSendResult(success=False, errors=[normalize_error_message(e)])

        state = _SendState()
        if target_ids is not None:
            state.target_ids = dedupe_by([str(t) for t in target_ids if str(t).strip()], key=lambda t: t)
            if not state.target_ids:
                return BulkSendResult(success=False, errors=["No members to send to"])

        async def immediate(budget: ExecutionBudget) -> BulkSendResult:
            fetched = await self.membership_source.fetch_members(
                sender.membership_credential,
                state.target_ids,
                budget=budget,
            )
            if not fetched.success:
                return BulkSendResult(success=False, errors=[fetched.error or "Failed to fetch members"])
            state.members = dedupe_recipients(fetched.members)
            if not state.members:
                return BulkSendResult(success=False, errors=["No members to send to"])

            immediate_send = len(state.members) < settings.broadcast_immediate_threshold
            if immediate_send:
                decision = await self.rate_limiter.can_send(tenant_id, len(state.members))
            else:
                decision = await self.rate_limiter.can_send_today(tenant_id, len(state.members))
            if not decision.allowed:
                self.logger.warning("bulk send refused tenant=%s reason=%s", tenant_id, decision.reason)
                return BulkSendResult(success=False, errors=[decision.reason or "rate limited"])

            budget.check(remaining=state.members)
            if immediate_send:
                return await self._send_immediate(sender, content, state, budget)
            return await self._start_job(sender, content, kind, state, remaining=state.members)

        async def background(signal: BudgetExceeded) -> BulkSendResult:
            self.logger.info(
                "budget exceeded tenant=%s elapsed_ms=%s attempted=%s",
                tenant_id,
                int(signal.elapsed_ms),
                len(state.outcomes),
            )
            return await self._start_job(sender, content, kind, state, remaining=signal.remaining)

        return await with_budget(
            started,
            settings.execution_budget_ms,
            immediate,
            background,
            safety_margin_ms=settings.execution_safety_margin_ms,
            clock=self.clock,
        )

    async def _send_immediate(
        self,
        sender: SenderIdentity,
        content: str,
        state: _SendState,
        budget: ExecutionBudget,
    ) -> BulkSendResult:
        limits = get_platform_limits(sender.platform)
        transport = self.transport_factory(
            sender.platform,
            sender.delivery_credential,
            destination_id=sender.destination_id,
            options=sender.options,
        )
        dispatcher = DispatcherService(
            transport,
            pacer=self.pacer,
            call_interval_ms=limits.call_interval_ms,
            pacer_key=f"{sender.platform}:{sender.tenant_id}",
        )
        members = state.members or []

        async def process_batch(batch: list[Recipient], batch_index: int) -> None:
            offset = batch_index * limits.batch_size
            for position, recipient in enumerate(batch):
                budget.check(remaining=members[offset + position :])
                outcome = await dispatcher.dispatch_one(None, recipient, content)
                state.outcomes.append((recipient, outcome))

        try:
            progress = await process_members_in_batches(members, limits, process_batch, sleep=self.sleep)
        finally:
            await transport.close()
            if state.sent:
                await self.rate_limiter.record_send(sender.tenant_id, state.sent)

        errors = [f"Failed to send to {outcome.target_id}: {outcome.error}" for _, outcome in state.outcomes if not outcome.sent]
        if not progress.success:
            errors.append(progress.error or "Batch processing failed")
        self.logger.info(
            "immediate send tenant=%s platform=%s sent=%s failed=%s",
            sender.tenant_id,
            sender.platform,
            state.sent,
            state.failed,
        )
        return BulkSendResult(
            success=state.sent > 0,
            immediate_sent_count=state.sent,
            failed_count=state.failed,
            errors=truncate_errors(errors, settings.error_display_limit) or None,
        )

    async def _start_job(
        self,
        sender: SenderIdentity,
        content: str,
        kind: str,
        state: _SendState,
        remaining: list[Recipient] | None,
    ) -> BulkSendResult:
        if state.members is not None:
            total = len(state.members)
        else:
            total = len(state.target_ids or [])
        try:
            job_id = await self.ledger.create_job(
                sender.tenant_id,
                content,
                total,
                kind=kind,
                platform=sender.platform,
                target_ids=state.target_ids,
                agent_user_id=sender.agent_user_id,
                credential_hash=sender.credential_hash,
            )
        except Exception as e:
            self.logger.exception("could not create job tenant=%s", sender.tenant_id)
            return BulkSendResult(success=False, errors=[f"Failed to create job: {normalize_error_message(e)}"])

        try:
            if state.outcomes:
                await self._record_immediate_outcomes(job_id, sender.tenant_id, state)
            queued = await self.queue_service.enqueue_job_run(job_id, members=remaining)
        except Exception as e:
            self.logger.exception("could not hand off job %s", job_id)
            await self.ledger.append_error(job_id, f"Failed to start background processing: {normalize_error_message(e)}")
            await self.ledger.update_job(job_id, status=JOB_FAILED)
            return BulkSendResult(success=False, job_id=job_id, errors=["Failed to start background processing"])

        self.logger.info("job %s queued total=%s queue_id=%s", job_id, total, queued)
        return BulkSendResult(
            success=True,
            job_id=job_id,
            immediate_sent_count=state.sent if state.outcomes else None,
        )

    async def _record_immediate_outcomes(self, job_id: str, tenant_id: str, state: _SendState) -> None:
        for _, outcome in state.outcomes:
            await self.ledger.record_item(job_id, tenant_id, outcome.target_id, outcome.content, outcome.status, outcome.error)
            if outcome.status == ITEM_FAILED:
                await self.ledger.append_error(job_id, f"Failed to send to {outcome.target_id}: {outcome.error}")
        await self.ledger.increment_counts(job_id, success=state.sent, failed=state.failed)

    async def get_job_status(self, job_id: str) -> JobView | None:
        return await self.ledger.get_job(job_id)

    async def get_job_stats(self, job_id: str) -> JobStats | None:
        return await self.ledger.job_stats(job_id)

    async def list_jobs_for_tenant(self, tenant_id: str, limit: int | None = None) -> list[JobView]:
        return await self.ledger.list_jobs_for_tenant(tenant_id, limit or settings.job_list_limit)

    async def resume_job(self, job_id: str, inline: bool = False) -> ResumeResult:
        job = await self.ledger.get_job(job_id)
        if job is None:
            return ResumeResult(resumed=False, error="Job not found")
        if job.status == JOB_COMPLETED:
            return ResumeResult(resumed=False, error="Job already completed")
        if job.status == JOB_FAILED:
            return ResumeResult(resumed=False, error="Job failed and cannot be resumed")
        if await self.processor.lock_service.is_locked(job_id):
            return ResumeResult(resumed=False, error="Job is currently running")

        try:
            sender = await self.sender_service.resolve(job.tenant_id, job.platform)
        except PreconditionError as e:
            return ResumeResult(resumed=False, error=normalize_error_message(e))

        fetched = await self.processor.fetch_targets(sender, job.target_ids)
        if not fetched.success:
            return ResumeResult(resumed=False, error=fetched.error or "Failed to fetch members")

        remaining = await self.processor.remaining_recipients(job, fetched.members)
        await self.ledger.update_job(job_id, status=JOB_PROCESSING)
        if not remaining:
            await self.ledger.update_job(job_id, status=JOB_COMPLETED, completed_at=utcnow())
            self.logger.info("job %s had nothing left to send; marked completed", job_id)
            return ResumeResult(resumed=False, error="No remaining recipients; job marked completed")

        self.logger.info("resuming job %s remaining=%s inline=%s", job_id, len(remaining), inline)
        if inline:
            result = await self.processor.run_locked(job_id, remaining)
            if result.get("outcome") == "lock-busy":
                return ResumeResult(resumed=False, error="Job is currently running")
            return ResumeResult(resumed=True)

        await self.queue_service.enqueue_job_run(job_id, members=remaining)
        return ResumeResult(resumed=True)
