"""Project Routes - garments/orders in progress. Creation is capped by plan."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from database import database
from middleware import require_auth, require_usage_limit
from models import Project
from utils.errors import NotFound
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


class ProjectCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    client_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None


@router.post("", status_code=201)
async def create_project(
    body: ProjectCreateRequest,
    user: dict = Depends(require_usage_limit("projects")),
):
    db = database.get_db()
    if body.client_id:
        client = await db.clients.find_one({"client_id": body.client_id, "user_id": user["user_id"]})
        if not client:
            raise NotFound("Client not found", code="CLIENT_NOT_FOUND")

    project = Project(user_id=user["user_id"], **body.model_dump())
    await db.projects.insert_one(project.model_dump())
    logger.info(f"Project created: {project.project_id} for user {user['user_id']}")
    return {"success": True, "data": project.model_dump(mode="json")}


@router.get("")
async def list_projects(user: dict = Depends(require_auth)):
    db = database.get_db()
    projects = await db.projects.find(
        {"user_id": user["user_id"]},
        {"_id": 0}
    ).sort("created_at", -1).to_list(500)
    return {"success": True, "data": projects}
