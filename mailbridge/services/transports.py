import base64
from typing import Protocol

import httpx

from mailbridge.config import settings
from mailbridge.services.membership_service import Recipient
from mailbridge.utils import PreconditionError


class DeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryTransport(Protocol):
    platform: str

    async def send_to_one(self, recipient: Recipient, content: str) -> None: ...


def _split_name(name: str | None) -> tuple[str, str]:
    parts = (name or "").split(" ")
    return parts[0], " ".join(parts[1:])


def _safe_json(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class HttpTransport:
    """Shared request plumbing for platform transports.

    Subclasses implement ``send_to_one`` and decide, via
    ``is_already_present``, which non-2xx responses mean the contact
    already exists. Those responses count as delivered.
    """

    platform = ""

    def __init__(
        self,
        credential: str,
        destination_id: str | None = None,
        options: dict | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.credential = credential
        self.destination_id = destination_id
        self.options = options or {}
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._http().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{self.platform} request failed: {e}") from e

    def is_already_present(self, response: httpx.Response, body: dict) -> bool:
        return False

    def error_message(self, response: httpx.Response, body: dict) -> str:
        detail = body.get("message") or body.get("detail") or body.get("error")
        if isinstance(detail, dict):
            detail = detail.get("message")
        return str(detail or f"{self.platform} responded {response.status_code}")

    def check(self, response: httpx.Response) -> dict:
        body = _safe_json(response)
        if response.is_success or self.is_already_present(response, body):
            return body
        raise DeliveryError(self.error_message(response, body), status_code=response.status_code)

    def require_email(self, recipient: Recipient) -> str:
        if not recipient.email or not recipient.email.strip():
            raise DeliveryError(f"No email address for {recipient.target_id}")
        return recipient.email.strip()


class WhopMessageTransport(HttpTransport):
    platform = "whop"
    mutation = (
        "mutation sendDirectMessageToUser($input: SendDirectMessageToUserInput!) "
        "{ sendDirectMessageToUser(input: $input) }"
    )

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        if not recipient.user_id:
            raise DeliveryError(f"No user ID found for member {recipient.member_id}")
        headers = {
            "Authorization": f"Bearer {self.credential}",
            "x-on-behalf-of": self.destination_id or "",
        }
        if settings.whop_app_id:
            headers["x-whop-app-id"] = settings.whop_app_id
        response = await self._request(
            "POST",
            f"{settings.whop_api_base_url.rstrip('/')}/public-graphql",
            headers=headers,
            json={
                "query": self.mutation,
                "variables": {"input": {"toUserIdOrUsername": recipient.user_id, "message": content}},
            },
        )
        body = self.check(response)
        errors = body.get("errors") or []
        if errors:
            raise DeliveryError(str(errors[0].get("message") or errors[0]))


class ResendContactTransport(HttpTransport):
    platform = "resend"

    def is_already_present(self, response, body):
        return response.status_code == 409

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        first, last = _split_name(recipient.name)
        response = await self._request(
            "POST",
            f"https://api.resend.com/audiences/{self.destination_id}/contacts",
            headers={"Authorization": f"Bearer {self.credential}"},
            json={
                "email": self.require_email(recipient),
                "first_name": first,
                "last_name": last,
                "unsubscribed": False,
            },
        )
        self.check(response)


class MailchimpTransport(HttpTransport):
    platform = "mailchimp"

    @property
    def datacenter(self) -> str:
        if "-" not in self.credential:
            raise PreconditionError("Mailchimp API key must end with the datacenter suffix")
        return self.credential.rsplit("-", 1)[1]

    def is_already_present(self, response, body):
        return response.status_code == 400 and body.get("title") == "Member Exists"

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        first, last = _split_name(recipient.name)
        token = base64.b64encode(f"anystring:{self.credential}".encode()).decode()
        response = await self._request(
            "POST",
            f"https://{self.datacenter}.api.mailchimp.com/3.0/lists/{self.destination_id}/members",
            headers={"Authorization": f"Basic {token}"},
            json={
                "email_address": self.require_email(recipient),
                "status": "subscribed",
                "merge_fields": {"FNAME": first, "LNAME": last, "USERNAME": recipient.username or ""},
                "tags": ["Whop Member"],
            },
        )
        self.check(response)


class KlaviyoTransport(HttpTransport):
    platform = "klaviyo"
    revision = "2025-07-15"

    def _headers(self) -> dict:
        return {"Authorization": f"Klaviyo-API-Key {self.credential}", "revision": self.revision}

    def is_already_present(self, response, body):
        if response.status_code != 409:
            return False
        errors = body.get("errors") or []
        # list relationship conflicts carry no code; profile conflicts must be duplicate_profile
        return not errors or errors[0].get("code") in (None, "duplicate_profile")

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        first, last = _split_name(recipient.name)
        response = await self._request(
            "POST",
            "https://a.klaviyo.com/api/profiles",
            headers=self._headers(),
            json={
                "data": {
                    "type": "profile",
                    "attributes": {
                        "email": self.require_email(recipient),
                        "first_name": first,
                        "last_name": last,
                        "properties": {"username": recipient.username or ""},
                    },
                }
            },
        )
        body = self.check(response)
        if response.status_code == 409:
            profile_id = ((body.get("errors") or [{}])[0].get("meta") or {}).get("duplicate_profile_id")
        else:
            profile_id = (body.get("data") or {}).get("id")
        if not profile_id or not self.destination_id:
            return

        response = await self._request(
            "POST",
            f"https://a.klaviyo.com/api/lists/{self.destination_id}/relationships/profiles",
            headers=self._headers(),
            json={"data": [{"type": "profile", "id": profile_id}]},
        )
        self.check(response)


class ConvertKitTransport(HttpTransport):
    platform = "convertkit"

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        first, last = _split_name(recipient.name)
        response = await self._request(
            "POST",
            f"https://api.convertkit.com/v3/forms/{self.destination_id}/subscribe",
            json={
                "api_key": self.credential,
                "email": self.require_email(recipient),
                "first_name": first,
                "fields": {"last_name": last, "username": recipient.username or ""},
                "tags": self.options.get("tag_ids", []),
            },
        )
        self.check(response)


class ActiveCampaignTransport(HttpTransport):
    platform = "activecampaign"

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        api_url = str(self.options.get("api_url") or "").rstrip("/")
        if not api_url:
            raise PreconditionError("ActiveCampaign requires an api_url option")
        first, last = _split_name(recipient.name)
        headers = {"Api-Token": self.credential}
        response = await self._request(
            "POST",
            f"{api_url}/api/3/contact/sync",
            headers=headers,
            json={"contact": {"email": self.require_email(recipient), "firstName": first, "lastName": last}},
        )
        body = self.check(response)
        contact_id = (body.get("contact") or {}).get("id")
        if not contact_id:
            raise DeliveryError("ActiveCampaign returned no contact id")

        response = await self._request(
            "POST",
            f"{api_url}/api/3/contactLists",
            headers=headers,
            json={"contactList": {"list": self.destination_id, "contact": contact_id, "status": 1}},
        )
        self.check(response)


class GoHighLevelTransport(HttpTransport):
    platform = "gohighlevel"
    base_url = "https://services.leadconnectorhq.com"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.credential}",
            "Version": "2021-07-28",
            "locationId": str(self.options.get("location_id") or ""),
        }

    def is_already_present(self, response, body):
        if response.status_code not in (400, 409):
            return False
        return "duplicate" in str(body.get("message") or "").lower()

    async def send_to_one(self, recipient: Recipient, content: str) -> None:
        first, last = _split_name(recipient.name)
        response = await self._request(
            "POST",
            f"{self.base_url}/contacts/upsert",
            headers=self._headers(),
            json={
                "email": self.require_email(recipient),
                "firstName": first,
                "lastName": last,
                "locationId": self.options.get("location_id"),
                "source": "Whop Email Bridge",
            },
        )
        body = self.check(response)
        contact_id = (body.get("contact") or {}).get("id") or (body.get("meta") or {}).get("contactId")
        if not contact_id or not self.destination_id:
            return

        response = await self._request(
            "POST",
            f"{self.base_url}/contacts/lists/{self.destination_id}/contacts",
            headers=self._headers(),
            json={"contactIds": [contact_id]},
        )
        self.check(response)


TRANSPORTS: dict[str, type[HttpTransport]] = {
    cls.platform: cls
    for cls in (
        WhopMessageTransport,
        ResendContactTransport,
        MailchimpTransport,
        KlaviyoTransport,
        ConvertKitTransport,
        ActiveCampaignTransport,
        GoHighLevelTransport,
    )
}


def build_transport(
    platform: str,
    credential: str,
    destination_id: str | None = None,
    options: dict | None = None,
    client: httpx.AsyncClient | None = None,
) -> HttpTransport:
    cls = TRANSPORTS.get((platform or "").strip().lower())
    if cls is None:
        raise PreconditionError(f"Unsupported platform: {platform}")
    return cls(credential, destination_id=destination_id, options=options, client=client)
