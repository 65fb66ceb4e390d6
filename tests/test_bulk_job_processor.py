import pytest

from conftest import (
    DummyLock,
    DummyMembershipSource,
    DummyQueue,
    DummySenderService,
    DummyTransport,
    FakeClock,
    FakeLedger,
    FakeRateLimiter,
    RecordingSleep,
    recipient,
)
from mailbridge.config import settings
from mailbridge.models import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING
from mailbridge.services.bulk_job_processor import BulkJobProcessor


def build_processor(
    ledger,
    members=None,
    transport=None,
    rate_limiter=None,
    sender_service=None,
    lock=None,
    queue=None,
    clock=None,
):
    transport = transport or DummyTransport()
    kwargs = {"clock": clock} if clock is not None else {}
    return BulkJobProcessor(
        ledger,
        rate_limiter or FakeRateLimiter(),
        sender_service or DummySenderService(),
        DummyMembershipSource(members or []),
        queue or DummyQueue(),
        lock or DummyLock(),
        transport_factory=transport.factory,
        sleep=RecordingSleep(),
        **kwargs,
    )


def payload(job_id, members=None):
    return {
        "jobId": job_id,
        "members": [m.to_dict() for m in members] if members is not None else None,
        "queuedAt": "2020-01-01T00:00:00",
    }


@pytest.mark.asyncio
async def test_non_worker_role_skips_processing(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "app", raising=False)
    ledger = FakeLedger()
    result = await build_processor(ledger).process(payload("job_1"))
    assert result["outcome"] == "skipped-non-worker"
    assert result["count"] == 0


@pytest.mark.asyncio
async def test_busy_lock_skips_run(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 1)
    transport = DummyTransport()

    result = await build_processor(ledger, transport=transport, lock=DummyLock(free=False)).process(
        payload(job_id, [recipient("user_1")])
    )

    assert result["outcome"] == "lock-busy"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_missing_job(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    lock = DummyLock()
    result = await build_processor(FakeLedger(), lock=lock).process(payload("missing"))
    assert result["outcome"] == "missing-job"
    assert lock.released == ["missing"]


@pytest.mark.asyncio
async def test_run_counts_every_outcome(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    members = [recipient(f"user_{i}") for i in range(10)]
    job_id = await ledger.create_job("tenant_1", "Hi {{name}}", 10)
    transport = DummyTransport(fail_for={"user_1", "user_4", "user_7"})

    result = await build_processor(ledger, transport=transport).process(payload(job_id, members))

    job = await ledger.get_job(job_id)
    assert result["outcome"] == "completed"
    assert result["lagMs"] > 0
    assert (job.processed_count, job.success_count, job.error_count) == (10, 7, 3)
    assert job.status == JOB_COMPLETED
    assert len(job.errors) == 3
    assert transport.closed is True


@pytest.mark.asyncio
async def test_refetches_members_when_payload_has_none(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 2, target_ids=["user_1", "user_2"])
    transport = DummyTransport()

    await build_processor(ledger, transport=transport).process(payload(job_id))

    assert sorted(t for t, _ in transport.sent) == ["user_1", "user_2"]


@pytest.mark.asyncio
async def test_repeated_run_does_not_resend(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    members = [recipient("user_1"), recipient("user_2")]
    job_id = await ledger.create_job("tenant_1", "hello", 2)
    transport = DummyTransport()
    processor = build_processor(ledger, transport=transport)

    await processor.process(payload(job_id, members))
    ledger.jobs[job_id].status = JOB_PROCESSING
    second = await processor.process(payload(job_id, members))

    assert second["count"] == 0
    assert len(transport.sent) == 2
    assert ledger.jobs[job_id].processed_count == 2


@pytest.mark.asyncio
async def test_membership_growth_is_capped_at_job_total(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 2)
    transport = DummyTransport()

    await build_processor(ledger, transport=transport).process(
        payload(job_id, [recipient("a"), recipient("b"), recipient("c")])
    )

    job = ledger.jobs[job_id]
    assert len(transport.sent) == 2
    assert job.processed_count <= job.total_members


@pytest.mark.asyncio
async def test_setup_failure_marks_job_failed(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 1)

    result = await build_processor(
        ledger,
        sender_service=DummySenderService(error="No Whop API key configured for this account."),
    ).process(payload(job_id, [recipient("user_1")]))

    job = await ledger.get_job(job_id)
    assert result["outcome"] == "failed"
    assert job.status == JOB_FAILED
    assert job.errors == ["No Whop API key configured for this account."]


@pytest.mark.asyncio
async def test_daily_limit_halt_schedules_a_continuation(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 2)
    queue = DummyQueue()

    result = await build_processor(ledger, rate_limiter=FakeRateLimiter.daily_exhausted(), queue=queue).process(
        payload(job_id, [recipient("user_1"), recipient("user_2")])
    )

    job = await ledger.get_job(job_id)
    assert result["outcome"] == "rate-limited"
    assert job.status == JOB_PROCESSING
    assert "daily limit reached" in job.errors
    assert queue.calls[0]["delay_ms"] == settings.daily_limit_retry_delay_ms
    assert queue.calls[0]["members"] is None


@pytest.mark.asyncio
async def test_worker_budget_defers_remaining_members(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 3)
    queue = DummyQueue()
    members = [recipient("user_1"), recipient("user_2"), recipient("user_3")]

    result = await build_processor(ledger, queue=queue, clock=FakeClock(step=1000.0)).process(payload(job_id, members))

    assert result["outcome"] == "deferred"
    assert queue.calls[0]["delay_ms"] == 500
    assert [m.target_id for m in queue.calls[0]["members"]] == ["user_1", "user_2", "user_3"]
    assert ledger.jobs[job_id].status == JOB_PROCESSING


@pytest.mark.asyncio
async def test_fetch_failure_leaves_job_resumable(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 2)
    processor = build_processor(ledger)
    processor.membership_source = DummyMembershipSource(fail=True)

    result = await processor.process(payload(job_id))

    assert result["outcome"] == "fetch-failed"
    assert ledger.jobs[job_id].status != JOB_FAILED


@pytest.mark.asyncio
async def test_worker_budget_keeps_a_safety_margin_inside_a_batch(monkeypatch):
    monkeypatch.setattr(settings, "service_role", "worker", raising=False)
    monkeypatch.setattr(settings, "worker_job_budget_ms", 10000, raising=False)
    monkeypatch.setattr(settings, "worker_job_safety_margin_ms", 2000, raising=False)
    ledger = FakeLedger()
    job_id = await ledger.create_job("tenant_1", "hello", 5)
    queue = DummyQueue()
    clock = FakeClock(0.0)
    transport = DummyTransport(on_send=lambda _: setattr(clock, "value", clock.value + 3.0))
    members = [recipient(f"user_{i}") for i in range(1, 6)]

    result = await build_processor(ledger, transport=transport, queue=queue, clock=clock).process(
        payload(job_id, members)
    )

    assert result["outcome"] == "deferred"
    assert [target for target, _ in transport.sent] == ["user_1", "user_2", "user_3"]
    assert [m.target_id for m in queue.calls[0]["members"]] == ["user_4", "user_5"]
    assert ledger.jobs[job_id].processed_count == 3
    assert ledger.jobs[job_id].status == JOB_PROCESSING
