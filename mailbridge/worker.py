import logging

from arq.connections import RedisSettings

from mailbridge.config import settings
from mailbridge.container import lock_service, membership_source, processor_service
from mailbridge.db import engine
from mailbridge.models import Base


logging.basicConfig(level=logging.INFO, format="[worker] %(asctime)s %(levelname)s %(name)s %(message)s", force=True)


async def startup(ctx):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def shutdown(ctx):
    await membership_source.close()
    await lock_service.close()


async def process_bulk_job(ctx, payload: dict):
    return await processor_service.process(payload)


class WorkerSettings:
    functions = [process_bulk_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    max_jobs = max(1, settings.job_concurrency)
    job_timeout = max(60, settings.worker_job_timeout_seconds)
    poll_delay = 5.0
