import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from dataclasses import replace

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mailbridge.db import session_scope_factory
from mailbridge.models import ITEM_FAILED, ITEM_PENDING, ITEM_SENT, JOB_PENDING, Base
from mailbridge.services.job_ledger_service import ALLOWED_TRANSITIONS, JobView
from mailbridge.services.membership_service import MembershipFetchResult, Recipient
from mailbridge.services.rate_limiter_service import DAILY_LIMIT_REASON, MINUTE_LIMIT_REASON, RateLimitDecision
from mailbridge.services.sender_service import SenderIdentity
from mailbridge.services.transports import DeliveryError
from mailbridge.utils import PreconditionError


@pytest_asyncio.fixture
async def session_scope(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mailbridge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield session_scope_factory(maker)
    await engine.dispose()


def recipient(user_id: str, name: str | None = None, email: str | None = None, username: str | None = None) -> Recipient:
    return Recipient(member_id=f"mem_{user_id}", user_id=user_id, email=email, username=username, name=name)


class FakeLedger:
    def __init__(self):
        self.jobs: dict[str, JobView] = {}
        self.items: dict[tuple[str, str], dict] = {}
        self.errors: dict[str, list[str]] = {}
        self.record_calls = []

    async def create_job(
        self,
        tenant_id,
        content,
        total_count,
        kind="broadcast",
        platform="whop",
        target_ids=None,
        agent_user_id=None,
        credential_hash=None,
    ):
        if total_count < 0:
            raise PreconditionError("total_count must be >= 0")
        job_id = f"job_{len(self.jobs) + 1}"
        self.jobs[job_id] = JobView(
            id=job_id,
            tenant_id=tenant_id,
            kind=kind,
            platform=platform,
            content=content,
            total_members=total_count,
            processed_count=0,
            success_count=0,
            error_count=0,
            status=JOB_PENDING,
            target_ids=target_ids,
            agent_user_id=agent_user_id,
            credential_hash=credential_hash,
        )
        self.errors[job_id] = []
        return job_id

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        if job is None:
            return None
        return replace(job, errors=list(self.errors.get(job_id, [])))

    async def list_jobs_for_tenant(self, tenant_id, limit=50):
        jobs = [job for job in self.jobs.values() if job.tenant_id == tenant_id]
        return list(reversed(jobs))[:limit]

    async def update_job(self, job_id, status=None, started_at=None, completed_at=None):
        job = self.jobs.get(job_id)
        if job is None:
            return False
        if status is not None:
            if job.status not in ALLOWED_TRANSITIONS[status]:
                return False
            job.status = status
        if started_at is not None:
            job.started_at = started_at
        if completed_at is not None:
            job.completed_at = completed_at
        return True

    async def increment_counts(self, job_id, success=0, failed=0):
        job = self.jobs[job_id]
        job.processed_count += success + failed
        job.success_count += success
        job.error_count += failed

    async def append_error(self, job_id, message):
        self.errors.setdefault(job_id, []).append(message)

    async def record_item(self, job_id, tenant_id, target_id, content, status, error=None):
        self.record_calls.append((job_id, target_id, status))
        key = (job_id, target_id)
        existing = self.items.get(key)
        if existing is not None and existing["status"] != ITEM_PENDING:
            return False
        self.items[key] = {"content": content, "status": status, "error": error}
        return True

    def _targets(self, job_id, status):
        return {target for (jid, target), item in self.items.items() if jid == job_id and item["status"] == status}

    async def list_sent_targets(self, job_id):
        return self._targets(job_id, ITEM_SENT)

    async def list_pending_targets(self, job_id):
        return self._targets(job_id, ITEM_PENDING)

    async def list_failed_targets(self, job_id):
        return self._targets(job_id, ITEM_FAILED)


class DummyTransport:
    platform = "whop"

    def __init__(self, fail_for=(), on_send=None):
        self.fail_for = set(fail_for)
        self.on_send = on_send
        self.sent = []
        self.closed = False

    async def send_to_one(self, recipient, content):
        if self.on_send is not None:
            self.on_send(recipient)
        if recipient.target_id in self.fail_for:
            raise DeliveryError("boom")
        self.sent.append((recipient.target_id, content))

    async def close(self):
        self.closed = True

    def factory(self, *args, **kwargs):
        return self


class DummyMembershipSource:
    def __init__(self, members=None, fail=False):
        self.members = list(members or [])
        self.fail = fail
        self.calls = []

    async def fetch_members(self, credential, user_ids=None, budget=None):
        self.calls.append(user_ids)
        if self.fail:
            return MembershipFetchResult(success=False, error="Failed to fetch members: 500")
        if user_ids is None:
            return MembershipFetchResult(success=True, members=list(self.members))
        known = {m.user_id: m for m in self.members}
        return MembershipFetchResult(success=True, members=[known.get(uid) or recipient(uid) for uid in user_ids])


class DummySenderService:
    def __init__(self, error: str | None = None):
        self.error = error

    async def resolve(self, tenant_id, platform="whop"):
        if self.error:
            raise PreconditionError(self.error)
        return SenderIdentity(
            tenant_id=tenant_id,
            platform=platform,
            membership_credential="whop-key",
            delivery_credential="app-key",
            destination_id="agent_1",
            agent_user_id="agent_1",
        )


class DummyQueue:
    def __init__(self):
        self.calls = []

    def continuation_delay_ms(self):
        return 500

    @staticmethod
    def continuation_job_id(job_id):
        return f"bulk-cont-{job_id}"

    async def enqueue_job_run(self, job_id, members=None, delay_ms=0, queue_job_id=None):
        self.calls.append({"job_id": job_id, "members": members, "delay_ms": delay_ms, "queue_job_id": queue_job_id})
        return queue_job_id or f"bulk-{job_id}"


class DummyLock:
    def __init__(self, free=True, locked=False):
        self.free = free
        self.locked = locked
        self.released = []

    async def acquire(self, job_id, token):
        return self.free

    async def release(self, job_id, token):
        self.released.append(job_id)

    async def is_locked(self, job_id):
        return self.locked


class FakeRateLimiter:
    def __init__(self, decisions=None):
        self.decisions = list(decisions or [])
        self.checks = []
        self.recorded = []

    @classmethod
    def daily_exhausted(cls):
        return cls([RateLimitDecision(allowed=False, reason=DAILY_LIMIT_REASON)] * 10)

    @classmethod
    def minute_then_allowed(cls, retry_after=5.0):
        return cls([RateLimitDecision(allowed=False, reason=MINUTE_LIMIT_REASON, retry_after_seconds=retry_after)])

    async def can_send(self, tenant_id, count=1):
        self.checks.append((tenant_id, count))
        if self.decisions:
            return self.decisions.pop(0)
        return RateLimitDecision(allowed=True)

    async def can_send_today(self, tenant_id, count=1):
        return await self.can_send(tenant_id, count)

    async def record_send(self, tenant_id, count):
        self.recorded.append((tenant_id, count))


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, value=0.0, step=0.0):
        self.value = value
        self.step = step

    def __call__(self):
        current = self.value
        self.value += self.step
        return current
