"""
Shared activation transition: idempotent replays, period computation,
cancellation and the guard against reactivating a canceled subscription.
"""
from datetime import datetime, timedelta, timezone

import pytest

from fakes import make_user
from models import PaymentProviderName
from utils.errors import BadRequest, PaymentProviderError


async def _subscribe_and_activate(billing, fake_db, plan="premium", subscription_ref=None):
    fake_db.users.seed(make_user("user-a"))
    checkout = await billing.subscribe("user-a", plan, "pm_1")
    await billing.activate_subscription(
        "user-a", plan, checkout["tx_ref"],
        provider=PaymentProviderName.FLUTTERWAVE,
        subscription_ref=subscription_ref,
    )
    return checkout


@pytest.mark.asyncio
async def test_activation_sets_period_and_user_snapshot(fake_db, billing):
    before = datetime.now(timezone.utc)
    checkout = await _subscribe_and_activate(billing, fake_db)

    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["status"] == "active"
    assert record["provider_tx_ref"] == checkout["tx_ref"]
    assert record["start_date"] >= before
    assert record["due_date"] - record["start_date"] == timedelta(days=30)

    user = await fake_db.users.find_one({"user_id": "user-a"})
    assert user["plan"] == "premium"
    assert user["is_sub_active"] is True
    assert user["subscription_ref"] == record["subscription_id"]


@pytest.mark.asyncio
async def test_replayed_activation_is_idempotent(fake_db, billing):
    checkout = await _subscribe_and_activate(billing, fake_db)
    first = await fake_db.subscriptions.find_one({"user_id": "user-a"})

    for _ in range(3):
        result = await billing.activate_subscription("user-a", "premium", checkout["tx_ref"])
        assert result == {"activated": False, "reason": "already_applied"}

    records = await fake_db.subscriptions.find({"user_id": "user-a"}).to_list(None)
    assert len(records) == 1
    assert records[0]["status"] == "active"
    assert records[0]["start_date"] == first["start_date"]
    assert records[0]["due_date"] == first["due_date"]


@pytest.mark.asyncio
async def test_activation_without_pending_record_upserts(fake_db, billing):
    fake_db.users.seed(make_user("user-b"))

    result = await billing.activate_subscription("user-b", "enterprise", "SM_external_1")

    assert result["activated"] is True
    record = await fake_db.subscriptions.find_one({"user_id": "user-b"})
    assert record["status"] == "active"
    assert record["plan_id"] == "enterprise"
    assert record["subscription_id"].startswith("SUB-")


@pytest.mark.asyncio
async def test_renewal_extends_period(fake_db, billing):
    await _subscribe_and_activate(billing, fake_db)
    first = await fake_db.subscriptions.find_one({"user_id": "user-a"})

    result = await billing.activate_subscription("user-a", "premium", "in_renewal_2")

    assert result["activated"] is True
    renewed = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert renewed["subscription_id"] == first["subscription_id"]
    assert renewed["provider_tx_ref"] == "in_renewal_2"
    assert renewed["due_date"] >= first["due_date"]


@pytest.mark.asyncio
async def test_cancel_is_immediate(fake_db, billing, provider):
    await _subscribe_and_activate(billing, fake_db, subscription_ref="sub_flw_9")

    result = await billing.cancel_subscription("user-a")

    assert result["status"] == "canceled"
    assert provider.cancellations == ["sub_flw_9"]
    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["status"] == "canceled"
    assert record["canceled_at"] is not None
    user = await fake_db.users.find_one({"user_id": "user-a"})
    assert user["plan"] == "free"
    assert user["is_sub_active"] is False
    assert user["subscription_ref"] is None


@pytest.mark.asyncio
async def test_cancel_looks_up_missing_provider_subscription(fake_db, billing, provider):
    await _subscribe_and_activate(billing, fake_db)
    provider.subscription_lookup["user-a@example.com"] = "4242"

    await billing.cancel_subscription("user-a")

    assert provider.lookups == ["user-a@example.com"]
    assert provider.cancellations == ["4242"]
    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["provider_subscription_ref"] == "4242"
    assert record["status"] == "canceled"


@pytest.mark.asyncio
async def test_cancel_without_provider_subscription_is_local_only(fake_db, billing, provider):
    await _subscribe_and_activate(billing, fake_db)

    await billing.cancel_subscription("user-a")

    assert provider.lookups == ["user-a@example.com"]
    assert provider.cancellations == []
    assert (await fake_db.subscriptions.find_one({"user_id": "user-a"}))["status"] == "canceled"


@pytest.mark.asyncio
async def test_canceled_subscription_is_not_reactivated(fake_db, billing):
    checkout = await _subscribe_and_activate(billing, fake_db, subscription_ref="sub_flw_9")
    await billing.cancel_subscription("user-a")

    by_ref = await billing.activate_subscription("user-a", "premium", "in_late", subscription_ref="sub_flw_9")
    by_tx = await billing.activate_subscription("user-a", "premium", checkout["tx_ref"])

    assert by_ref == {"activated": False, "reason": "canceled"}
    assert by_tx == {"activated": False, "reason": "canceled"}
    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["status"] == "canceled"
    user = await fake_db.users.find_one({"user_id": "user-a"})
    assert user["plan"] == "free"


@pytest.mark.asyncio
async def test_cancel_without_active_subscription(fake_db, billing):
    fake_db.users.seed(make_user("user-a"))
    await billing.subscribe("user-a", "premium")

    with pytest.raises(BadRequest) as exc_info:
        await billing.cancel_subscription("user-a")
    assert exc_info.value.code == "NO_ACTIVE_SUBSCRIPTION"


@pytest.mark.asyncio
async def test_provider_cancel_failure_keeps_local_state(fake_db, billing, provider):
    await _subscribe_and_activate(billing, fake_db, subscription_ref="sub_flw_9")
    provider.fail_cancel = True

    with pytest.raises(PaymentProviderError):
        await billing.cancel_subscription("user-a")

    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["status"] == "active"


@pytest.mark.asyncio
async def test_provider_initiated_cancel_is_idempotent(fake_db, billing):
    await _subscribe_and_activate(billing, fake_db, subscription_ref="sub_flw_9")

    first = await billing.mark_canceled_by_provider("sub_flw_9")
    second = await billing.mark_canceled_by_provider("sub_flw_9")

    assert first["canceled"] is True
    assert second == {"canceled": False, "reason": "already_canceled"}
    user = await fake_db.users.find_one({"user_id": "user-a"})
    assert user["plan"] == "free"
    assert user["is_sub_active"] is False


@pytest.mark.asyncio
async def test_details_and_payment_method(fake_db, billing):
    fake_db.users.seed(make_user("user-free", plan="free"))
    details = await billing.get_subscription_details("user-free")
    assert details["plan_id"] == "free"
    assert details["status"] == "active"
    with pytest.raises(BadRequest):
        await billing.update_payment_method("user-free", "pm_2")

    await _subscribe_and_activate(billing, fake_db)
    await billing.update_payment_method("user-a", "pm_2")
    record = await fake_db.subscriptions.find_one({"user_id": "user-a"})
    assert record["payment_method_ref"] == "pm_2"

    details = await billing.get_subscription_details("user-a")
    assert details["status"] == "active"
    assert details["is_sub_active"] is True
    assert details["due_date"] is not None
