from mailbridge.services.broadcast_service import BroadcastService
from mailbridge.services.bulk_job_processor import BulkJobProcessor
from mailbridge.services.job_ledger_service import JobLedgerService
from mailbridge.services.job_lock_service import JobLockService
from mailbridge.services.job_queue_service import JobQueueService
from mailbridge.services.membership_service import WhopMembershipSource
from mailbridge.services.rate_limiter_service import PlatformPacer, RateLimiterService
from mailbridge.services.sender_service import SenderService


ledger = JobLedgerService()
rate_limiter = RateLimiterService()
sender_service = SenderService()
membership_source = WhopMembershipSource()
queue_service = JobQueueService()
lock_service = JobLockService()
pacer = PlatformPacer()
processor_service = BulkJobProcessor(
    ledger,
    rate_limiter,
    sender_service,
    membership_source,
    queue_service,
    lock_service,
    pacer=pacer,
)
broadcast_service = BroadcastService(
    ledger,
    rate_limiter,
    sender_service,
    membership_source,
    queue_service,
    processor_service,
    pacer=pacer,
)
