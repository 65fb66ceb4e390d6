from dataclasses import dataclass, field

from sqlalchemy import select

from mailbridge.config import settings
from mailbridge.db import db_session
from mailbridge.models import TenantSender
from mailbridge.utils import PreconditionError, hash_credential


@dataclass
class SenderIdentity:
    tenant_id: str
    platform: str
    membership_credential: str
    delivery_credential: str
    destination_id: str | None = None
    agent_user_id: str | None = None
    agent_name: str | None = None
    options: dict = field(default_factory=dict)

    @property
    def credential_hash(self) -> str:
        return hash_credential(self.membership_credential)


class SenderService:
    def __init__(self, session_scope=db_session):
        self.session_scope = session_scope

    async def get_sender(self, tenant_id: str, platform: str) -> TenantSender | None:
        async with self.session_scope() as db:
            return (
                await db.execute(
                    select(TenantSender).where(
                        TenantSender.tenant_id == tenant_id,
                        TenantSender.platform == platform,
                    )
                )
            ).scalars().first()

    async def save_sender(
        self,
        tenant_id: str,
        platform: str,
        api_key: str,
        destination_id: str | None = None,
        agent_user_id: str | None = None,
        agent_name: str | None = None,
        options: dict | None = None,
    ) -> None:
        async with self.session_scope() as db:
            existing = (
                await db.execute(
                    select(TenantSender).where(
                        TenantSender.tenant_id == tenant_id,
                        TenantSender.platform == platform,
                    )
                )
            ).scalars().first()
            if existing:
                existing.api_key = api_key
                existing.destination_id = destination_id
                existing.agent_user_id = agent_user_id
                existing.agent_name = agent_name
                existing.options = options
            else:
                db.add(
                    TenantSender(
                        tenant_id=tenant_id,
                        platform=platform,
                        api_key=api_key,
                        destination_id=destination_id,
                        agent_user_id=agent_user_id,
                        agent_name=agent_name,
                        options=options,
                    )
                )

    async def resolve(self, tenant_id: str, platform: str = "whop") -> SenderIdentity:
        platform = (platform or "whop").strip().lower()
        whop = await self.get_sender(tenant_id, "whop")
        if not whop or not whop.api_key:
            raise PreconditionError("No Whop API key configured for this account.")

        if platform == "whop":
            if not whop.agent_user_id:
                raise PreconditionError("No agent configuration found. Please set up an agent first.")
            if not settings.whop_api_key:
                raise PreconditionError("App API key not configured. Messaging requires app-level permissions.")
            return SenderIdentity(
                tenant_id=tenant_id,
                platform=platform,
                membership_credential=whop.api_key,
                delivery_credential=settings.whop_api_key,
                destination_id=whop.agent_user_id,
                agent_user_id=whop.agent_user_id,
                agent_name=whop.agent_name,
            )

        esp = await self.get_sender(tenant_id, platform)
        if not esp or not esp.api_key:
            raise PreconditionError(f"No {platform} integration configured for this account.")
        if not esp.destination_id:
            raise PreconditionError(f"No {platform} list or audience selected.")
        return SenderIdentity(
            tenant_id=tenant_id,
            platform=platform,
            membership_credential=whop.api_key,
            delivery_credential=esp.api_key,
            destination_id=esp.destination_id,
            options=dict(esp.options or {}),
        )
