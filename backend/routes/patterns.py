"""Pattern Routes - saved sewing patterns. AI-generated ones count against the monthly AI allowance."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from database import database
from middleware import require_auth
from models import Pattern
from services.entitlement_service import EntitlementService, get_entitlement_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/patterns", tags=["patterns"])


class PatternCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    pattern_type: str = Field(min_length=1, max_length=100)
    difficulty: str = "beginner"
    description: Optional[str] = None
    instructions: List[Any] = Field(default_factory=list)
    materials: List[Any] = Field(default_factory=list)
    is_ai_generated: bool = False


@router.post("", status_code=201)
async def create_pattern(
    body: PatternCreateRequest,
    user: dict = Depends(require_auth),
    entitlements: EntitlementService = Depends(get_entitlement_service),
):
    if body.is_ai_generated:
        used = await entitlements.record_ai_generation(user["user_id"])
        logger.info(f"AI generation {used} this month for user {user['user_id']}")

    pattern = Pattern(user_id=user["user_id"], **body.model_dump())
    db = database.get_db()
    await db.patterns.insert_one(pattern.model_dump())
    logger.info(f"Pattern created: {pattern.pattern_id} for user {user['user_id']}")
    return {"success": True, "data": pattern.model_dump(mode="json")}


@router.get("")
async def list_patterns(user: dict = Depends(require_auth)):
    db = database.get_db()
    patterns = await db.patterns.find(
        {"user_id": user["user_id"]},
        {"_id": 0}
    ).sort("created_at", -1).to_list(500)
    return {"success": True, "data": patterns}
