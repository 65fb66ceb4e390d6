import httpx
import pytest

from conftest import RecordingSleep
from mailbridge.config import settings
from mailbridge.services.membership_service import WhopMembershipSource


@pytest.mark.asyncio
async def test_fetch_all_members_follows_pages():
    pages = {
        "1": {"data": [{"id": "mem_1", "user": {"id": "user_1", "name": "Ann"}}], "pagination": {"total_page": 2}},
        "2": {"data": [{"id": "mem_2", "user": "user_2", "email": "b@x.co"}], "pagination": {"total_page": 2}},
    }

    def handler(request):
        assert request.headers["authorization"] == "Bearer whop-key"
        return httpx.Response(200, json=pages[request.url.params["page"]])

    source = WhopMembershipSource(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await source.fetch_members("whop-key")

    assert result.success is True
    assert [m.target_id for m in result.members] == ["user_1", "user_2"]
    assert result.members[1].email == "b@x.co"


@pytest.mark.asyncio
async def test_fetch_all_members_reports_failure():
    source = WhopMembershipSource(
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401, text="unauthorized")))
    )
    result = await source.fetch_all_members("bad")
    assert result.success is False
    assert "401" in result.error


@pytest.mark.asyncio
async def test_explicit_ids_are_fetched_in_chunks(monkeypatch):
    monkeypatch.setattr(settings, "member_detail_chunk_size", 20, raising=False)
    monkeypatch.setattr(settings, "member_detail_chunk_delay_ms", 100, raising=False)

    def handler(request):
        user_id = request.url.path.rsplit("/", 1)[1]
        if user_id == "user_3":
            return httpx.Response(404, json={})
        return httpx.Response(200, json={"id": user_id, "username": f"name_{user_id}"})

    sleep = RecordingSleep()
    source = WhopMembershipSource(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=sleep)
    ids = [f"user_{i}" for i in range(45)]
    result = await source.fetch_members("whop-key", ids)

    assert result.success is True
    assert [m.user_id for m in result.members] == ids
    assert sleep.calls == [0.1, 0.1]
    missing = result.members[3]
    assert missing.member_id == "temp_user_3"
    assert missing.username is None
    assert result.members[0].username == "name_user_0"
