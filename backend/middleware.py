from fastapi import Depends, Request
from typing import Optional, Callable
import logging
from auth import decode_access_token
from services.entitlement_service import EntitlementService, get_entitlement_service
from utils.errors import Unauthorized

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    
    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)
    
    if not payload or not payload.get("user_id"):
        return None
    
    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise Unauthorized()
    request.state.user = user
    return user

def require_feature(feature: str) -> Callable:
    """Dependency factory gating a route on a boolean plan feature.

    Usage:
        @router.post("", dependencies=[Depends(require_feature("has_advanced_measurements"))])
    """
    async def dependency(
        user: dict = Depends(require_auth),
        entitlements: EntitlementService = Depends(get_entitlement_service),
    ) -> dict:
        await entitlements.check_feature(user["user_id"], feature)
        return user
    return dependency

def require_usage_limit(resource_kind: str) -> Callable:
    """Dependency factory gating resource creation on the plan ceiling."""
    async def dependency(
        user: dict = Depends(require_auth),
        entitlements: EntitlementService = Depends(get_entitlement_service),
    ) -> dict:
        await entitlements.check_usage_limit(user["user_id"], resource_kind)
        return user
    return dependency
