import random
import uuid

from arq import create_pool
from arq.connections import RedisSettings

from mailbridge.config import settings
from mailbridge.services.membership_service import Recipient
from mailbridge.utils import utcnow


class JobQueueService:
    def __init__(self):
        self.redis_pool = None

    async def get_pool(self):
        if self.redis_pool is None:
            self.redis_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
        return self.redis_pool

    async def enqueue_job_run(
        self,
        job_id: str,
        members: list[Recipient] | None = None,
        delay_ms: int = 0,
        queue_job_id: str | None = None,
    ) -> str | None:
        pool = await self.get_pool()
        resolved_job_id = queue_job_id or f"bulk-{job_id}-{uuid.uuid4().hex[:10]}"
        _defer_by = delay_ms / 1000 if delay_ms > 0 else None
        queued = await pool.enqueue_job(
            "process_bulk_job",
            {
                "jobId": job_id,
                "members": [m.to_dict() for m in members] if members is not None else None,
                "queuedAt": utcnow().isoformat(),
            },
            _defer_by=_defer_by,
            _job_id=resolved_job_id,
        )
        if queued is None:
            return None
        return resolved_job_id

    @staticmethod
    def continuation_job_id(job_id: str) -> str:
        return f"bulk-cont-{job_id}-{uuid.uuid4().hex[:6]}"

    def continuation_delay_ms(self) -> int:
        jitter = random.randint(0, max(0, settings.continuation_jitter_ms))
        return max(250, settings.continuation_base_delay_ms) + jitter
