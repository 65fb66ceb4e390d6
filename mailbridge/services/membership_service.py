import asyncio
import logging
from dataclasses import asdict, dataclass, field

import httpx

from mailbridge.config import settings
from mailbridge.utils import dedupe_by, normalize_error_message, partition, resolve_display_name


@dataclass
class Recipient:
    member_id: str
    user_id: str | None = None
    email: str | None = None
    username: str | None = None
    name: str | None = None

    @property
    def target_id(self) -> str:
        if self.user_id:
            return self.user_id
        if self.email:
            return self.email.strip().lower()
        return self.member_id

    def display_name(self) -> str:
        return resolve_display_name(self.name, self.username, self.email)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Recipient":
        return cls(
            member_id=str(data.get("member_id") or data.get("user_id") or data.get("email") or ""),
            user_id=data.get("user_id"),
            email=data.get("email"),
            username=data.get("username"),
            name=data.get("name"),
        )

    @classmethod
    def from_member(cls, member: dict) -> "Recipient":
        """Build a recipient from a whop membership payload.

        ``user`` may be an expanded object or a bare id. The secondary
        username (discord) wins over the whop username when present.
        """
        user = member.get("user") or {}
        if isinstance(user, str):
            user = {"id": user}
        discord = member.get("discord") or {}
        username = discord.get("username") or member.get("username") or user.get("username")
        return cls(
            member_id=str(member.get("id") or user.get("id") or ""),
            user_id=user.get("id"),
            email=member.get("email") or user.get("email"),
            username=username,
            name=member.get("name") or user.get("name"),
        )


@dataclass
class MembershipFetchResult:
    success: bool
    members: list[Recipient] = field(default_factory=list)
    error: str | None = None


def dedupe_recipients(recipients: list[Recipient]) -> list[Recipient]:
    return dedupe_by(recipients, key=lambda r: r.target_id)


class WhopMembershipSource:
    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None, sleep=asyncio.sleep):
        self.logger = logging.getLogger("membership_service")
        self.base_url = (base_url or settings.whop_api_base_url).rstrip("/")
        self._client = client
        self._sleep = sleep

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_all_members(self, credential: str) -> MembershipFetchResult:
        headers = {"Authorization": f"Bearer {credential}"}
        members: list[Recipient] = []
        page = 1
        try:
            while True:
                response = await self._http().get(
                    f"{self.base_url}/api/v2/memberships",
                    headers=headers,
                    params={"valid": "true", "page": page, "per": settings.member_page_size, "expand[]": "user"},
                )
                if response.status_code != 200:
                    return MembershipFetchResult(
                        success=False,
                        members=members,
                        error=f"Failed to fetch members: {response.status_code} {response.text[:200]}",
                    )
                body = response.json()
                for raw in body.get("data", []):
                    members.append(Recipient.from_member(raw))

                pagination = body.get("pagination") or {}
                total_pages = int(pagination.get("total_page") or pagination.get("total_pages") or 1)
                if page >= total_pages:
                    break
                page += 1
        except httpx.HTTPError as e:
            self.logger.warning("fetch_all_members failed page=%s error=%s", page, str(e))
            return MembershipFetchResult(success=False, members=members, error=normalize_error_message(e))

        return MembershipFetchResult(success=True, members=members)

    async def fetch_member(self, credential: str, user_id: str) -> Recipient:
        try:
            response = await self._http().get(
                f"{self.base_url}/api/v2/users/{user_id}",
                headers={"Authorization": f"Bearer {credential}"},
            )
            if response.status_code == 200:
                user = response.json()
                return Recipient(
                    member_id=f"temp_{user_id}",
                    user_id=user_id,
                    email=user.get("email"),
                    username=user.get("username"),
                    name=user.get("name"),
                )
            self.logger.warning("user lookup failed user_id=%s status=%s", user_id, response.status_code)
        except httpx.HTTPError as e:
            self.logger.warning("user lookup failed user_id=%s error=%s", user_id, str(e))
        return Recipient(member_id=f"temp_{user_id}", user_id=user_id)

    async def fetch_members(
        self,
        credential: str,
        user_ids: list[str] | None = None,
        budget=None,
    ) -> MembershipFetchResult:
        """Resolve recipients for every member or for explicit user ids.

        Explicit ids are looked up in chunks with a pause between chunks;
        ``budget`` is checked before each chunk and may raise
        ``BudgetExceeded``.
        """
        if user_ids is None:
            return await self.fetch_all_members(credential)
        members: list[Recipient] = []
        chunks = partition(user_ids, max(1, settings.member_detail_chunk_size))
        for index, chunk in enumerate(chunks):
            if budget is not None:
                budget.check()
            if index > 0 and settings.member_detail_chunk_delay_ms > 0:
                await self._sleep(settings.member_detail_chunk_delay_ms / 1000)
            members.extend(await asyncio.gather(*(self.fetch_member(credential, uid) for uid in chunk)))
        return MembershipFetchResult(success=True, members=members)
