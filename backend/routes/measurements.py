"""Measurement Routes - advanced body measurements (paid feature)."""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Dict, Optional
from database import database
from middleware import require_feature
from models import Measurement
from utils.errors import NotFound
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/measurements", tags=["measurements"])

FEATURE = "has_advanced_measurements"


class MeasurementCreateRequest(BaseModel):
    client_id: str
    unit: str = Field(default="inches", pattern="^(inches|cm)$")
    values: Dict[str, float] = Field(default_factory=dict)


@router.post("", status_code=201)
async def create_measurement(
    body: MeasurementCreateRequest,
    user: dict = Depends(require_feature(FEATURE)),
):
    db = database.get_db()
    client = await db.clients.find_one({"client_id": body.client_id, "user_id": user["user_id"]})
    if not client:
        raise NotFound("Client not found", code="CLIENT_NOT_FOUND")

    measurement = Measurement(user_id=user["user_id"], **body.model_dump())
    await db.measurements.insert_one(measurement.model_dump())
    return {"success": True, "data": measurement.model_dump(mode="json")}


@router.get("")
async def list_measurements(
    client_id: Optional[str] = Query(default=None),
    user: dict = Depends(require_feature(FEATURE)),
):
    db = database.get_db()
    query = {"user_id": user["user_id"]}
    if client_id:
        query["client_id"] = client_id
    measurements = await db.measurements.find(query, {"_id": 0}).sort("created_at", -1).to_list(500)
    return {"success": True, "data": measurements}
