from dataclasses import dataclass

from mailbridge.config import settings


@dataclass(frozen=True)
class PlatformLimits:
    batch_size: int
    delay_ms: int
    call_interval_ms: int = 100
    max_concurrent_batches: int = 1


# ESP contact endpoints are paced sequentially; only whop messaging fans out.
_ESP_LIMITS = {
    "mailchimp": PlatformLimits(batch_size=500, delay_ms=1000),
    "convertkit": PlatformLimits(batch_size=100, delay_ms=1500),
    "klaviyo": PlatformLimits(batch_size=100, delay_ms=1000),
    "activecampaign": PlatformLimits(batch_size=100, delay_ms=1200),
    "gohighlevel": PlatformLimits(batch_size=50, delay_ms=2000),
    "resend": PlatformLimits(batch_size=100, delay_ms=1000),
}
_DEFAULT_LIMITS = PlatformLimits(batch_size=50, delay_ms=2000)


def get_platform_limits(platform: str) -> PlatformLimits:
    key = (platform or "").strip().lower()
    if key == "whop":
        return PlatformLimits(
            batch_size=settings.broadcast_batch_size,
            delay_ms=settings.broadcast_batch_delay_ms,
            call_interval_ms=settings.broadcast_immediate_item_delay_ms,
            max_concurrent_batches=settings.broadcast_max_concurrent_batches,
        )
    return _ESP_LIMITS.get(key, _DEFAULT_LIMITS)
