import pytest

from conftest import RecordingSleep, recipient
from mailbridge.platforms import PlatformLimits, get_platform_limits
from mailbridge.services.budget_guard import BudgetExceeded
from mailbridge.services.concurrency_service import process_members_in_batches
from mailbridge.services.membership_service import Recipient, dedupe_recipients
from mailbridge.utils import PreconditionError, new_job_id, partition, truncate_errors


def test_partition_keeps_order_and_last_partial_batch():
    assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert partition([], 3) == []
    assert partition([1, 2], 10) == [[1, 2]]


def test_partition_rejects_non_positive_size():
    with pytest.raises(PreconditionError):
        partition([1, 2], 0)


def test_dedupe_keeps_first_occurrence():
    members = [recipient("user_1", name="A"), recipient("user_2"), recipient("user_1", name="B")]
    unique = dedupe_recipients(members)
    assert [m.target_id for m in unique] == ["user_1", "user_2"]
    assert unique[0].name == "A"


def test_target_id_falls_back_to_email_then_member():
    assert Recipient(member_id="m1", email="Foo@Example.com").target_id == "foo@example.com"
    assert Recipient(member_id="m2").target_id == "m2"


def test_recipient_from_member_prefers_discord_username():
    member = {
        "id": "mem_1",
        "email": "a@b.co",
        "user": {"id": "user_1", "username": "whopper", "name": "Ann"},
        "discord": {"username": "ann#1"},
    }
    r = Recipient.from_member(member)
    assert r.user_id == "user_1"
    assert r.username == "ann#1"
    assert r.name == "Ann"

    bare = Recipient.from_member({"id": "mem_2", "user": "user_2"})
    assert bare.user_id == "user_2"


def test_platform_limits():
    assert get_platform_limits("mailchimp").batch_size == 500
    assert get_platform_limits("gohighlevel").delay_ms == 2000
    assert get_platform_limits("unknown") == PlatformLimits(batch_size=50, delay_ms=2000)
    whop = get_platform_limits("whop")
    assert whop.batch_size == 200
    assert whop.max_concurrent_batches == 5


def test_truncate_errors_appends_overflow_marker():
    errors = [f"e{i}" for i in range(12)]
    shown = truncate_errors(errors, 10)
    assert len(shown) == 11
    assert shown[-1] == "... and 2 more errors"
    assert truncate_errors(["a"], 10) == ["a"]


def test_new_job_id_shape():
    job_id = new_job_id("broadcast")
    prefix, millis, suffix = job_id.split("_")
    assert prefix == "broadcast"
    assert millis.isdigit()
    assert len(suffix) == 9


@pytest.mark.asyncio
async def test_process_members_in_batches_sleeps_between_batches():
    sleep = RecordingSleep()
    seen = []

    async def process_batch(batch, index):
        seen.append((index, list(batch)))

    progress = await process_members_in_batches([1, 2, 3, 4, 5], PlatformLimits(2, 1000), process_batch, sleep=sleep)
    assert progress.success is True
    assert progress.processed_count == 5
    assert [index for index, _ in seen] == [0, 1, 2]
    assert sleep.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_process_members_in_batches_reports_failure_with_progress():
    async def process_batch(batch, index):
        if index == 1:
            raise RuntimeError("provider down")

    progress = await process_members_in_batches([1, 2, 3, 4], PlatformLimits(2, 0), process_batch, sleep=RecordingSleep())
    assert progress.success is False
    assert progress.processed_count == 2
    assert progress.error == "provider down"


@pytest.mark.asyncio
async def test_process_members_in_batches_lets_budget_signal_through():
    async def process_batch(batch, index):
        raise BudgetExceeded(9000, remaining=batch)

    with pytest.raises(BudgetExceeded):
        await process_members_in_batches([1, 2], PlatformLimits(2, 0), process_batch, sleep=RecordingSleep())
