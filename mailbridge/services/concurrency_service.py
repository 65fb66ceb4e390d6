import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mailbridge.models import JOB_COMPLETED
from mailbridge.platforms import PlatformLimits
from mailbridge.services.budget_guard import BudgetExceeded, ExecutionBudget
from mailbridge.services.dispatcher_service import DispatchOutcome
from mailbridge.services.job_ledger_service import JobLedgerService, JobView
from mailbridge.services.rate_limiter_service import RateLimiterService
from mailbridge.utils import PreconditionError, normalize_error_message, partition, utcnow


@dataclass
class RunOptions:
    batch_size: int
    max_concurrent_batches: int = 1
    inter_group_delay_ms: int = 0

    @classmethod
    def from_limits(cls, limits: PlatformLimits) -> "RunOptions":
        return cls(
            batch_size=limits.batch_size,
            max_concurrent_batches=limits.max_concurrent_batches,
            inter_group_delay_ms=limits.delay_ms,
        )


@dataclass
class RunSummary:
    attempted: int = 0
    success: int = 0
    failed: int = 0
    groups_run: int = 0
    halted_reason: str | None = None


@dataclass
class BatchProgress:
    success: bool
    processed_count: int = 0
    error: str | None = None


@dataclass
class _BatchResult:
    success: int = 0
    failed: int = 0
    unstarted: list = field(default_factory=list)


class _Admission:
    """Per-run gate shared by the batches of a job.

    ``in_flight`` counts items admitted but not yet recorded against the
    tenant's window, so concurrent batches never overshoot the ceiling.
    """

    def __init__(self, job: JobView, budget: ExecutionBudget | None):
        self.job = job
        self.budget = budget
        self.lock = asyncio.Lock()
        self.in_flight = 0
        self.halted: str | None = None
        self.out_of_time = False

    @property
    def stopped(self) -> bool:
        return self.halted is not None or self.out_of_time


class ConcurrencyController:
    """Runs a job's items as batches, a bounded number of batches at a time.

    Items inside a batch go out one after another; the batches of one
    group run concurrently; groups run in order with a pause between
    them. Every item is admitted against the time budget and the
    tenant's ceilings before it starts, and counters are incremented
    after every item so progress is visible while the job runs.
    """

    def __init__(
        self,
        ledger: JobLedgerService,
        rate_limiter: RateLimiterService | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.logger = logging.getLogger("concurrency_controller")
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.sleep = sleep

    async def run_job(
        self,
        job: JobView,
        items: list,
        dispatch_fn: Callable[[Any], Awaitable[DispatchOutcome]],
        options: RunOptions,
        budget: ExecutionBudget | None = None,
        complete: bool = True,
    ) -> RunSummary:
        if options.max_concurrent_batches <= 0:
            raise PreconditionError(
                f"max_concurrent_batches must be positive, got {options.max_concurrent_batches}"
            )
        batches = partition(items, options.batch_size)
        groups = partition(batches, options.max_concurrent_batches)
        summary = RunSummary()
        admission = _Admission(job, budget)

        for index, group in enumerate(groups):
            if budget is not None:
                budget.check(remaining=_flatten(groups[index:]))
            if index > 0 and options.inter_group_delay_ms > 0:
                await self.sleep(options.inter_group_delay_ms / 1000)

            results = await asyncio.gather(
                *(self._run_batch(admission, batch, dispatch_fn) for batch in group),
                return_exceptions=True,
            )
            unstarted = []
            for batch, result in zip(group, results):
                if isinstance(result, BaseException):
                    self.logger.error(
                        "batch aborted job=%s size=%s error=%s",
                        job.id,
                        len(batch),
                        normalize_error_message(result),
                    )
                    continue
                summary.success += result.success
                summary.failed += result.failed
                summary.attempted += result.success + result.failed
                unstarted.extend(result.unstarted)
            summary.groups_run += 1
            self.logger.info(
                "group done job=%s group=%s/%s attempted=%s",
                job.id,
                index + 1,
                len(groups),
                summary.attempted,
            )

            if admission.halted:
                summary.halted_reason = admission.halted
                return summary
            if admission.out_of_time:
                remaining = unstarted + _flatten(groups[index + 1 :])
                self.logger.info("job %s out of time mid-group remaining=%s", job.id, len(remaining))
                raise BudgetExceeded(budget.elapsed_ms, remaining=remaining)

        if complete:
            await self.ledger.update_job(job.id, status=JOB_COMPLETED, completed_at=utcnow())
        return summary

    async def _admit(self, admission: _Admission) -> bool:
        job = admission.job
        budget = admission.budget
        async with admission.lock:
            while not admission.stopped:
                if budget is not None and budget.exceeded():
                    admission.out_of_time = True
                    break
                if self.rate_limiter is None:
                    admission.in_flight += 1
                    return True
                decision = await self.rate_limiter.can_send(job.tenant_id, admission.in_flight + 1)
                if decision.allowed:
                    admission.in_flight += 1
                    return True
                if decision.is_daily_limit or not decision.retry_after_seconds:
                    self.logger.warning("job %s halted: %s", job.id, decision.reason)
                    await self.ledger.append_error(job.id, decision.reason or "rate limited")
                    admission.halted = decision.reason or "rate limited"
                    break
                if budget is not None and decision.retry_after_seconds * 1000 > budget.remaining_ms:
                    self.logger.info("job %s rate window outlasts time budget", job.id)
                    admission.out_of_time = True
                    break
                self.logger.info("job %s waiting %.1fs for rate window", job.id, decision.retry_after_seconds)
                await self.sleep(decision.retry_after_seconds)
        return False

    async def _settle(self, admission: _Admission, sent: bool) -> None:
        try:
            if sent and self.rate_limiter is not None:
                await self.rate_limiter.record_send(admission.job.tenant_id, 1)
        finally:
            admission.in_flight -= 1

    async def _run_batch(self, admission: _Admission, batch: list, dispatch_fn) -> _BatchResult:
        job = admission.job
        result = _BatchResult()
        for position, item in enumerate(batch):
            if not await self._admit(admission):
                result.unstarted = batch[position:]
                break
            sent = False
            try:
                outcome = await dispatch_fn(item)
                sent = outcome.sent
            except Exception:
                self.logger.exception("dispatch raised job=%s", job.id)
            finally:
                await self._settle(admission, sent)
            if sent:
                result.success += 1
                await self.ledger.increment_counts(job.id, success=1)
            else:
                result.failed += 1
                await self.ledger.increment_counts(job.id, failed=1)
        return result


def _flatten(groups: list[list[list]]) -> list:
    return [item for group in groups for batch in group for item in batch]


async def process_members_in_batches(
    items: list,
    limits: PlatformLimits,
    process_batch: Callable[[list, int], Awaitable[Any]],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchProgress:
    """Sequential batch loop used by the single-invocation path.

    ``process_batch`` receives each batch and its index. A failure stops
    the loop and is reported with how many items had been handed off;
    ``BudgetExceeded`` is not a failure and propagates to the caller.
    """
    processed = 0
    try:
        batches = partition(items, limits.batch_size)
        for index, batch in enumerate(batches):
            if index > 0 and limits.delay_ms > 0:
                await sleep(limits.delay_ms / 1000)
            await process_batch(batch, index)
            processed += len(batch)
    except BudgetExceeded:
        raise
    except Exception as e:
        logging.getLogger("concurrency_controller").warning(
            "batch loop stopped processed=%s error=%s", processed, normalize_error_message(e)
        )
        return BatchProgress(success=False, processed_count=processed, error=normalize_error_message(e))
    return BatchProgress(success=True, processed_count=processed)
