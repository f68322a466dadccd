"""Client Routes - the designer's customers. Creation is capped by plan."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from database import database
from middleware import require_auth, require_usage_limit
from models import Client
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/clients", tags=["clients"])


class ClientCreateRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


@router.post("", status_code=201)
async def create_client(
    body: ClientCreateRequest,
    user: dict = Depends(require_usage_limit("clients")),
):
    db = database.get_db()
    client = Client(user_id=user["user_id"], **body.model_dump())
    await db.clients.insert_one(client.model_dump())
    logger.info(f"Client created: {client.client_id} for user {user['user_id']}")
    return {"success": True, "data": client.model_dump(mode="json")}


@router.get("")
async def list_clients(user: dict = Depends(require_auth)):
    db = database.get_db()
    clients = await db.clients.find(
        {"user_id": user["user_id"]},
        {"_id": 0}
    ).sort("created_at", -1).to_list(500)
    return {"success": True, "data": clients}
