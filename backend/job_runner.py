"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; safe to call directly from scripts.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_subscription_sweep():
    try:
        from services.subscription_service import get_billing_service
        result = await get_billing_service().run_sweep()
        count = result["trials_expired"] + result["marked_overdue"]
        logger.info(
            "Subscription sweep completed: trials_expired=%s marked_overdue=%s",
            result["trials_expired"], result["marked_overdue"],
        )
        return {
            "message": (
                f"Subscription sweep: {result['trials_expired']} trials expired, "
                f"{result['marked_overdue']} subscriptions overdue"
            ),
            "count": count,
            **result,
        }
    except Exception as e:
        logger.error(f"Subscription sweep job failed: {e}")
        raise


async def run_monthly_usage_reset():
    try:
        from database import database
        db = database.get_db()
        result = await db.users.update_many(
            {"ai_generations_this_month": {"$gt": 0}},
            {"$set": {"ai_generations_this_month": 0}},
        )
        count = result.modified_count
        logger.info(f"Monthly usage reset completed: {count} users reset")
        return {"message": f"Monthly usage reset for {count} users", "count": count}
    except Exception as e:
        logger.error(f"Monthly usage reset job failed: {e}")
        raise
