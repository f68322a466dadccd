"""
Daily sweep: lapsed trials are downgraded, unrenewed subscriptions become
overdue, provider-managed subscriptions are left to the provider.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from fakes import make_user
from job_runner import run_monthly_usage_reset, run_subscription_sweep

NOW = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_expired_trial_is_downgraded(fake_db, billing):
    fake_db.users.seed(
        make_user("trial-over", plan="premium", trial_end_date=NOW - timedelta(days=1)),
        make_user("trial-running", plan="premium", trial_end_date=NOW + timedelta(days=3)),
        make_user("provider-managed", plan="premium", trial_end_date=NOW - timedelta(days=1), subscription_ref="SUB-X"),
    )

    result = await billing.run_sweep(now=NOW)

    assert result["trials_expired"] == 1
    over = await fake_db.users.find_one({"user_id": "trial-over"})
    assert over["plan"] == "free"
    assert over["is_sub_active"] is False
    assert (await fake_db.users.find_one({"user_id": "trial-running"}))["plan"] == "premium"
    managed = await fake_db.users.find_one({"user_id": "provider-managed"})
    assert managed["plan"] == "premium"
    assert managed["is_sub_active"] is True


@pytest.mark.asyncio
async def test_lapsed_subscription_becomes_overdue_and_renewal_recovers(fake_db, billing):
    fake_db.users.seed(make_user("user-a", plan="premium", subscription_ref="SUB-A"))
    fake_db.subscriptions.seed({
        "subscription_id": "SUB-A",
        "user_id": "user-a",
        "plan_id": "premium",
        "status": "active",
        "provider_tx_ref": "SM_1",
        "start_date": NOW - timedelta(days=31),
        "due_date": NOW - timedelta(days=1),
    })

    result = await billing.run_sweep(now=NOW)

    assert result["marked_overdue"] == 1
    assert (await fake_db.subscriptions.find_one({"user_id": "user-a"}))["status"] == "overdue"
    assert (await fake_db.users.find_one({"user_id": "user-a"}))["is_sub_active"] is False

    await billing.activate_subscription("user-a", "premium", "SM_2")
    assert (await fake_db.subscriptions.find_one({"user_id": "user-a"}))["status"] == "active"
    assert (await fake_db.users.find_one({"user_id": "user-a"}))["is_sub_active"] is True


@pytest.mark.asyncio
async def test_current_subscription_is_untouched(fake_db, billing):
    fake_db.users.seed(make_user("user-a", plan="premium", subscription_ref="SUB-A"))
    fake_db.subscriptions.seed({
        "subscription_id": "SUB-A",
        "user_id": "user-a",
        "plan_id": "premium",
        "status": "active",
        "due_date": NOW + timedelta(days=5),
    })

    assert await billing.run_sweep(now=NOW) == {"trials_expired": 0, "marked_overdue": 0}


@pytest.mark.asyncio
async def test_job_runner_wraps_sweep(fake_db, billing):
    with patch("services.subscription_service.get_billing_service", return_value=billing):
        result = await run_subscription_sweep()
    assert result["count"] == 0
    assert "Subscription sweep" in result["message"]


@pytest.mark.asyncio
async def test_monthly_usage_reset(fake_db):
    fake_db.users.seed(
        make_user("busy", ai_generations_this_month=5),
        make_user("idle", ai_generations_this_month=0),
    )

    result = await run_monthly_usage_reset()

    assert result["count"] == 1
    assert (await fake_db.users.find_one({"user_id": "busy"}))["ai_generations_this_month"] == 0
