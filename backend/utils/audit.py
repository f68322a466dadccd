from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

async def create_audit_log(
    action: AuditAction,
    user_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry.

    Args:
        action: The audit action type
        user_id: ID of the affected user
        actor_id: ID of the acting user, or "SYSTEM" / provider name for automated transitions
        resource_type: Type of resource being modified (e.g., 'subscription')
        resource_id: ID of the specific resource
        metadata: Additional metadata
    """
    try:
        db = database.get_db()

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata,
        )

        doc = audit_log.model_dump()
        doc["action"] = action.value
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_logs_for_user(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Get the most recent audit logs for a user."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for user: {e}")
        return []
