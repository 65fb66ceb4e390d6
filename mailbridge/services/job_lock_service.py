import redis.asyncio as redis

from mailbridge.config import settings


RELEASE_SCRIPT = "if redis.call('get', KEYS[1]) == ARGV[1] then return redis.call('del', KEYS[1]) else return 0 end"


class JobLockService:
    """Per-job run lock: SET NX PX to take it, compare-and-delete to release."""

    def __init__(self, client=None):
        self.client = client or redis.from_url(settings.redis_url, decode_responses=True)

    @staticmethod
    def key(job_id: str) -> str:
        return f"bulk:job-lock:{job_id}"

    async def acquire(self, job_id: str, token: str) -> bool:
        result = await self.client.set(self.key(job_id), token, px=max(60000, settings.job_lock_ttl_ms), nx=True)
        return bool(result)

    async def release(self, job_id: str, token: str) -> None:
        await self.client.eval(RELEASE_SCRIPT, 1, self.key(job_id), token)

    async def is_locked(self, job_id: str) -> bool:
        return bool(await self.client.exists(self.key(job_id)))

    async def close(self) -> None:
        await self.client.aclose()
