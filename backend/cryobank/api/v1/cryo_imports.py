"""Chain-of-custody endpoints: imports, moves and the export log."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.deps import (
    get_directory_client,
    get_location_tree,
    get_slot_locks,
    require_actor_id,
)
from cryobank.database import get_db
from cryobank.schemas import PaginationMeta
from cryobank.schemas.ledger import (
    CryoExportRead,
    CryoImportCreate,
    CryoImportRead,
    CryoMoveCreate,
)
from cryobank.services.allocation import AllocationCoordinator, SlotLockRegistry
from cryobank.services.directory import DirectoryClient
from cryobank.services.ledger import LedgerService
from cryobank.services.location_tree import LocationTree

router = APIRouter(tags=["cryo-imports"])


def _record(record) -> dict:
    return CryoImportRead.model_validate(record).model_dump(mode="json")


@router.post("/cryo-imports", response_model=dict, status_code=status.HTTP_201_CREATED)
async def import_sample(
    data: CryoImportCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    locks: Annotated[SlotLockRegistry, Depends(get_slot_locks)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
    directory: Annotated[DirectoryClient | None, Depends(get_directory_client)],
):
    """Place a sample into a vacant slot, witnessed by a second person."""
    if directory is not None:
        await directory.ensure_users_exist(data.imported_by, data.witnessed_by)
    coordinator = AllocationCoordinator(db, locks, tree)
    record = await coordinator.import_sample(data, actor_id)
    return {"success": True, "data": _record(record)}


@router.post(
    "/cryo-imports/move", response_model=dict, status_code=status.HTTP_201_CREATED
)
async def move_sample(
    data: CryoMoveCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    locks: Annotated[SlotLockRegistry, Depends(get_slot_locks)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
    directory: Annotated[DirectoryClient | None, Depends(get_directory_client)],
):
    """Relocate a stored sample; writes a new import record."""
    if directory is not None:
        await directory.ensure_users_exist(data.imported_by, data.witnessed_by)
    coordinator = AllocationCoordinator(db, locks, tree)
    record = await coordinator.move_sample(data, actor_id)
    return {"success": True, "data": _record(record)}


@router.get("/cryo-imports", response_model=dict)
async def list_imports(
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    slot_id: uuid.UUID | None = None,
    sample_id: uuid.UUID | None = None,
):
    records, total = await LedgerService(db).list_records(
        page=page, per_page=per_page, slot_id=slot_id, sample_id=sample_id
    )
    return {
        "success": True,
        "data": [_record(r) for r in records],
        "meta": PaginationMeta.build(page, per_page, total).model_dump(),
    }


@router.get("/cryo-imports/{record_id}", response_model=dict)
async def get_import(
    record_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    record = await LedgerService(db).get_record(record_id)
    return {"success": True, "data": _record(record)}


@router.get("/cryo-exports", response_model=dict)
async def list_exports(
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    sample_id: uuid.UUID | None = None,
):
    """Retrieval and thaw log, newest first."""
    records, total = await LedgerService(db).list_exports(
        page=page, per_page=per_page, sample_id=sample_id
    )
    return {
        "success": True,
        "data": [
            CryoExportRead.model_validate(r).model_dump(mode="json") for r in records
        ],
        "meta": PaginationMeta.build(page, per_page, total).model_dump(),
    }
