import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError

from mailbridge.config import settings
from mailbridge.db import db_session
from mailbridge.models import TenantRateLimit
from mailbridge.utils import minute_window_start, utcnow


DAILY_LIMIT_REASON = "daily limit reached"
MINUTE_LIMIT_REASON = "rate limit exceeded, wait"

WINDOW = timedelta(seconds=60)


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: str | None = None
    retry_after_seconds: float | None = None

    @property
    def is_daily_limit(self) -> bool:
        return self.reason == DAILY_LIMIT_REASON


class RateLimiterService:
    """Per-tenant send ceilings backed by ``tenant_rate_limits``.

    The per-minute ceiling is a sliding-window counter: the previous
    minute's count is weighted by how much of it still overlaps the
    trailing 60 seconds. The daily counter resets lazily on the first
    check or send after the date changes.
    """

    def __init__(
        self,
        session_scope=db_session,
        per_minute: int | None = None,
        per_day: int | None = None,
        clock=utcnow,
    ):
        self.logger = logging.getLogger("rate_limiter_service")
        self.session_scope = session_scope
        self.per_minute = per_minute if per_minute is not None else settings.rate_limit_per_minute
        self.per_day = per_day if per_day is not None else settings.rate_limit_per_day
        self.clock = clock

    @staticmethod
    def window_counts(state: TenantRateLimit, now: datetime) -> tuple[int, int]:
        """(this minute, previous minute) as seen at ``now``."""
        this_window = minute_window_start(now)
        if state.window_started_at == this_window:
            return state.current_window_count or 0, state.previous_window_count or 0
        if state.window_started_at == this_window - WINDOW:
            return 0, state.current_window_count or 0
        return 0, 0

    @classmethod
    def window_estimate(cls, state: TenantRateLimit, now: datetime) -> float:
        current, previous = cls.window_counts(state, now)
        overlap = 1 - (now - minute_window_start(now)).total_seconds() / WINDOW.total_seconds()
        return current + previous * overlap

    def retry_after(self, state: TenantRateLimit, now: datetime, count: int) -> float:
        """Seconds until ``count`` more sends fit under the per-minute ceiling."""
        current, previous = self.window_counts(state, now)
        elapsed = (now - minute_window_start(now)).total_seconds()
        room = self.per_minute - count - current
        if previous > 0 and room >= 0:
            # previous minute's weight falls off linearly across this one
            wait = WINDOW.total_seconds() * (1 - room / previous) - elapsed
        else:
            wait = WINDOW.total_seconds() - elapsed
        return max(1.0, wait)

    async def _ensure_state(self, tenant_id: str, now: datetime) -> TenantRateLimit:
        async with self.session_scope() as db:
            state = await db.get(TenantRateLimit, tenant_id)
            if state is not None:
                return state
        try:
            async with self.session_scope() as db:
                state = TenantRateLimit(
                    tenant_id=tenant_id,
                    batch_count=0,
                    current_window_count=0,
                    previous_window_count=0,
                    messages_sent_today=0,
                    last_reset_date=now.date(),
                )
                db.add(state)
            self.logger.info("created rate limit state tenant=%s", tenant_id)
            return state
        except IntegrityError:
            async with self.session_scope() as db:
                return await db.get(TenantRateLimit, tenant_id)

    async def _reset_daily_if_needed(self, db, tenant_id: str, now: datetime) -> None:
        await db.execute(
            update(TenantRateLimit)
            .where(
                TenantRateLimit.tenant_id == tenant_id,
                TenantRateLimit.last_reset_date != now.date(),
            )
            .values(messages_sent_today=0, last_reset_date=now.date(), updated_at=now)
        )

    async def _load_state(self, tenant_id: str, now: datetime) -> TenantRateLimit:
        await self._ensure_state(tenant_id, now)
        async with self.session_scope() as db:
            await self._reset_daily_if_needed(db, tenant_id, now)
        async with self.session_scope() as db:
            return await db.get(TenantRateLimit, tenant_id)

    def _daily_denial(self, state: TenantRateLimit, tenant_id: str, count: int) -> RateLimitDecision | None:
        if state.messages_sent_today + count <= self.per_day:
            return None
        self.logger.warning(
            "daily limit tenant=%s sent_today=%s requested=%s limit=%s",
            tenant_id,
            state.messages_sent_today,
            count,
            self.per_day,
        )
        return RateLimitDecision(allowed=False, reason=DAILY_LIMIT_REASON)

    async def can_send(self, tenant_id: str, count: int = 1) -> RateLimitDecision:
        now = self.clock()
        state = await self._load_state(tenant_id, now)
        denial = self._daily_denial(state, tenant_id, count)
        if denial is not None:
            return denial

        if self.window_estimate(state, now) + count > self.per_minute:
            return RateLimitDecision(
                allowed=False,
                reason=MINUTE_LIMIT_REASON,
                retry_after_seconds=self.retry_after(state, now, count),
            )
        return RateLimitDecision(allowed=True)

    async def can_send_today(self, tenant_id: str, count: int = 1) -> RateLimitDecision:
        """Daily ceiling only. Used when admitting a job, which is paced per minute while it runs."""
        state = await self._load_state(tenant_id, self.clock())
        return self._daily_denial(state, tenant_id, count) or RateLimitDecision(allowed=True)

    async def record_send(self, tenant_id: str, count: int) -> None:
        if count <= 0:
            return
        now = self.clock()
        this_window = minute_window_start(now)
        await self._ensure_state(tenant_id, now)
        async with self.session_scope() as db:
            await self._reset_daily_if_needed(db, tenant_id, now)
            await db.execute(
                update(TenantRateLimit)
                .where(
                    TenantRateLimit.tenant_id == tenant_id,
                    or_(
                        TenantRateLimit.window_started_at.is_(None),
                        TenantRateLimit.window_started_at < this_window,
                    ),
                )
                .values(
                    previous_window_count=case(
                        (TenantRateLimit.window_started_at == this_window - WINDOW, TenantRateLimit.current_window_count),
                        else_=0,
                    ),
                    current_window_count=0,
                    batch_count=0,
                    window_started_at=this_window,
                )
            )
            await db.execute(
                update(TenantRateLimit)
                .where(TenantRateLimit.tenant_id == tenant_id)
                .values(
                    current_window_count=TenantRateLimit.current_window_count + count,
                    messages_sent_today=TenantRateLimit.messages_sent_today + count,
                    batch_count=TenantRateLimit.batch_count + 1,
                    last_batch_time=now,
                    updated_at=now,
                )
            )


class PlatformPacer:
    """Minimum spacing between successive calls to one platform API.

    Keys that have been idle for ``idle_seconds`` are dropped, so a
    long-lived worker only tracks senders it has used recently.
    """

    def __init__(self, sleep=asyncio.sleep, clock=time.monotonic, idle_seconds: float = 300.0):
        self._sleep = sleep
        self._clock = clock
        self.idle_seconds = idle_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_call: dict[str, float] = {}
        self._last_sweep = clock()

    async def wait_turn(self, key: str, interval_ms: int) -> None:
        if interval_ms <= 0:
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            last = self._last_call.get(key)
            if last is not None:
                remaining = interval_ms / 1000 - (self._clock() - last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call[key] = self._clock()
        self._evict_idle()

    def _evict_idle(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.idle_seconds:
            return
        self._last_sweep = now
        for key, last in list(self._last_call.items()):
            lock = self._locks.get(key)
            if now - last >= self.idle_seconds and (lock is None or not lock.locked()):
                self._last_call.pop(key, None)
                self._locks.pop(key, None)

    def tracked_keys(self) -> set[str]:
        return set(self._last_call)
