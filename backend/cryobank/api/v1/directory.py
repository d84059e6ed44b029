"""Read-only lookups against the external user and patient directory."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends

from cryobank.core.deps import require_directory_client
from cryobank.services.directory import DirectoryClient

router = APIRouter(prefix="/directory", tags=["directory"])


@router.get("/users", response_model=dict)
async def list_users(
    directory: Annotated[DirectoryClient, Depends(require_directory_client)],
    role: str | None = None,
):
    """Candidate importers and witnesses, optionally filtered by role."""
    users = await directory.list_users(role=role)
    return {"success": True, "data": users}


@router.get("/users/{user_id}", response_model=dict)
async def get_user(
    user_id: uuid.UUID,
    directory: Annotated[DirectoryClient, Depends(require_directory_client)],
):
    return {"success": True, "data": await directory.get_user(user_id)}


@router.get("/patients/{patient_id}", response_model=dict)
async def get_patient(
    patient_id: uuid.UUID,
    directory: Annotated[DirectoryClient, Depends(require_directory_client)],
):
    return {"success": True, "data": await directory.get_patient(patient_id)}
