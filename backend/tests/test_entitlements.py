"""
Entitlement gate: inactive subscriptions, boolean features and count-based
ceilings. Checks never write subscription state.
"""
import pytest

from fakes import make_user
from utils.errors import BadRequest, FeatureNotAvailable, NotFound, PlanLimitReached, SubscriptionInactive


def _clients(user_id, n):
    return [{"client_id": f"{user_id}-c{i}", "user_id": user_id, "full_name": f"Client {i}"} for i in range(n)]


@pytest.mark.asyncio
async def test_free_user_at_client_ceiling_is_denied(fake_db, entitlements):
    fake_db.users.seed(make_user("free-user", plan="free"))
    fake_db.clients.seed(*_clients("free-user", 3))

    with pytest.raises(PlanLimitReached) as exc_info:
        await entitlements.check_usage_limit("free-user", "clients")

    assert exc_info.value.status_code == 403
    assert exc_info.value.errors == {"resource": "clients", "limit": 3, "current": 3}


@pytest.mark.asyncio
async def test_premium_user_with_same_count_is_allowed(fake_db, entitlements):
    fake_db.users.seed(make_user("pro-user", plan="premium"))
    fake_db.clients.seed(*_clients("pro-user", 3))

    user = await entitlements.check_usage_limit("pro-user", "clients")
    assert user["user_id"] == "pro-user"


@pytest.mark.asyncio
async def test_free_user_below_ceiling_is_allowed(fake_db, entitlements):
    fake_db.users.seed(make_user("free-user"))
    fake_db.clients.seed(*_clients("free-user", 2))
    await entitlements.check_usage_limit("free-user", "clients")


@pytest.mark.asyncio
async def test_inactive_subscription_blocks_every_check(fake_db, entitlements):
    fake_db.users.seed(make_user("pending-user", plan="enterprise", is_sub_active=False))

    with pytest.raises(SubscriptionInactive):
        await entitlements.check_feature("pending-user", "has_team_collaboration")
    with pytest.raises(SubscriptionInactive):
        await entitlements.check_usage_limit("pending-user", "projects")


@pytest.mark.asyncio
async def test_feature_matrix(fake_db, entitlements):
    fake_db.users.seed(
        make_user("premium-user", plan="premium"),
        make_user("enterprise-user", plan="enterprise"),
    )

    await entitlements.check_feature("premium-user", "has_invoice_generation")
    with pytest.raises(FeatureNotAvailable) as exc_info:
        await entitlements.check_feature("premium-user", "has_custom_branding")
    assert exc_info.value.code == "FEATURE_NOT_AVAILABLE"
    await entitlements.check_feature("enterprise-user", "has_custom_branding")


@pytest.mark.asyncio
async def test_unknown_feature_and_resource(fake_db, entitlements):
    fake_db.users.seed(make_user("user-a"))
    with pytest.raises(BadRequest):
        await entitlements.check_feature("user-a", "max_clients")
    with pytest.raises(BadRequest):
        await entitlements.check_usage_limit("user-a", "invoices")


@pytest.mark.asyncio
async def test_unknown_user(fake_db, entitlements):
    with pytest.raises(NotFound):
        await entitlements.check_feature("ghost", "has_client_portal")


@pytest.mark.asyncio
async def test_ai_generation_ceiling(fake_db, entitlements):
    fake_db.users.seed(make_user("free-user", ai_generations_this_month=4))

    assert await entitlements.record_ai_generation("free-user") == 5
    with pytest.raises(PlanLimitReached):
        await entitlements.record_ai_generation("free-user")
    assert (await fake_db.users.find_one({"user_id": "free-user"}))["ai_generations_this_month"] == 5


@pytest.mark.asyncio
async def test_gate_does_not_write_subscription_state(fake_db, entitlements):
    fake_db.users.seed(make_user("free-user"))
    fake_db.clients.seed(*_clients("free-user", 3))
    before = await fake_db.users.find_one({"user_id": "free-user"})

    with pytest.raises(PlanLimitReached):
        await entitlements.check_usage_limit("free-user", "clients")

    assert await fake_db.users.find_one({"user_id": "free-user"}) == before
    assert fake_db.subscriptions.docs == []


@pytest.mark.asyncio
async def test_entitlement_snapshot(fake_db, entitlements):
    fake_db.users.seed(make_user("free-user", ai_generations_this_month=2))
    fake_db.clients.seed(*_clients("free-user", 1))

    snapshot = await entitlements.get_entitlements("free-user")

    assert snapshot["plan_id"] == "free"
    assert snapshot["limits"] == {"clients": 3, "projects": 5, "ai_generations": 5}
    assert snapshot["usage"] == {"clients": 1, "projects": 0, "ai_generations": 2}
    assert snapshot["features"]["has_advanced_measurements"] is False
