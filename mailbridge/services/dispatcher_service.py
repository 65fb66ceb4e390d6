import logging
from dataclasses import dataclass

from mailbridge.models import ITEM_FAILED, ITEM_PENDING, ITEM_SENT
from mailbridge.services.job_ledger_service import JobLedgerService, JobView
from mailbridge.services.membership_service import Recipient
from mailbridge.services.rate_limiter_service import PlatformPacer
from mailbridge.services.transports import DeliveryError, DeliveryTransport
from mailbridge.utils import normalize_error_message, personalize


@dataclass
class DispatchOutcome:
    status: str
    target_id: str
    content: str = ""
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.status == ITEM_SENT


class DispatcherService:
    """Delivers one recipient and records exactly one terminal outcome.

    ``dispatch_one`` never raises for delivery or bookkeeping failures;
    every such failure comes back as a failed ``DispatchOutcome``.
    Without a job (the immediate path) nothing is written to the ledger.
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        ledger: JobLedgerService | None = None,
        pacer: PlatformPacer | None = None,
        call_interval_ms: int = 0,
        pacer_key: str | None = None,
    ):
        self.logger = logging.getLogger("dispatcher_service")
        self.transport = transport
        self.ledger = ledger
        self.pacer = pacer
        self.call_interval_ms = call_interval_ms
        self.pacer_key = pacer_key or transport.platform

    async def dispatch_one(self, job: JobView | None, recipient: Recipient, template: str) -> DispatchOutcome:
        target_id = recipient.target_id
        content = template
        try:
            content = personalize(template, recipient.display_name())
            if self.pacer is not None:
                await self.pacer.wait_turn(self.pacer_key, self.call_interval_ms)
            if job is not None and self.ledger is not None:
                await self.ledger.record_item(job.id, job.tenant_id, target_id, content, ITEM_PENDING)
            await self.transport.send_to_one(recipient, content)
        except DeliveryError as e:
            return await self._failed(job, target_id, content, normalize_error_message(e))
        except Exception as e:
            self.logger.exception("unexpected dispatch error job=%s target=%s", job.id if job else None, target_id)
            return await self._failed(job, target_id, content, normalize_error_message(e))

        await self._record(job, target_id, content, ITEM_SENT, None)
        return DispatchOutcome(status=ITEM_SENT, target_id=target_id, content=content)

    async def _failed(self, job: JobView | None, target_id: str, content: str, error: str) -> DispatchOutcome:
        self.logger.warning("delivery failed job=%s target=%s error=%s", job.id if job else None, target_id, error)
        await self._record(job, target_id, content, ITEM_FAILED, error)
        if job is not None and self.ledger is not None:
            try:
                await self.ledger.append_error(job.id, f"Failed to send to {target_id}: {error}")
            except Exception:
                self.logger.exception("could not append job error job=%s target=%s", job.id, target_id)
        return DispatchOutcome(status=ITEM_FAILED, target_id=target_id, content=content, error=error)

    async def _record(self, job: JobView | None, target_id: str, content: str, status: str, error: str | None) -> None:
        if job is None or self.ledger is None:
            return
        try:
            await self.ledger.record_item(job.id, job.tenant_id, target_id, content, status, error)
        except Exception:
            self.logger.exception("could not record outcome job=%s target=%s status=%s", job.id, target_id, status)
