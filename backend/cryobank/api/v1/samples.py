"""Sample endpoints: registry, quality, status, lineage and retrieval."""

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
from cryobank.models.enums import SampleStatus, SampleType
from cryobank.schemas import PaginationMeta
from cryobank.schemas.ledger import CryoExportRead, CryoImportRead, CustodyRead
from cryobank.schemas.quality import QualityUpdate
from cryobank.schemas.sample import (
    EmbryoCreate,
    LineageRead,
    RetrieveRequest,
    SampleCreate,
    SampleFlagsUpdate,
    SampleRead,
    SampleStatusUpdate,
    SampleUpdate,
    StatusHistoryRead,
)
from cryobank.schemas.storage import LocationRead
from cryobank.services.allocation import AllocationCoordinator, SlotLockRegistry
from cryobank.services.directory import DirectoryClient
from cryobank.services.ledger import LedgerService
from cryobank.services.location_tree import LocationTree
from cryobank.services.quality import QualityService
from cryobank.services.sample import SampleService

router = APIRouter(prefix="/samples", tags=["samples"])


def _sample(sample) -> dict:
    return SampleRead.model_validate(sample).model_dump(mode="json")


@router.get("", response_model=dict)
async def list_samples(
    db: Annotated[AsyncSession, Depends(get_db)],
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    search: str | None = None,
    patient_id: uuid.UUID | None = None,
    treatment_cycle_id: uuid.UUID | None = None,
    sample_type: SampleType | None = None,
    sample_status: SampleStatus | None = None,
    sort: str = "created_at",
    order: str = Query("desc", pattern="^(asc|desc)$"),
):
    """List samples with pagination and filters."""
    svc = SampleService(db)
    samples, total = await svc.list_samples(
        page=page, per_page=per_page, search=search,
        patient_id=patient_id, treatment_cycle_id=treatment_cycle_id,
        sample_type=sample_type, status=sample_status, sort=sort, order=order,
    )
    return {
        "success": True,
        "data": [_sample(s) for s in samples],
        "meta": PaginationMeta.build(page, per_page, total).model_dump(),
    }


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_sample(
    data: SampleCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    directory: Annotated[DirectoryClient | None, Depends(get_directory_client)],
):
    """Register a newly collected sample."""
    if directory is not None:
        await directory.get_patient(data.patient_id)
    sample = await SampleService(db).create_sample(data, created_by=actor_id)
    return {"success": True, "data": _sample(sample)}


# Static routes MUST come before /{sample_id} so "embryos" and "lineage"
# are not parsed as a UUID path parameter.

@router.post("/embryos", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_embryo(
    data: EmbryoCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    directory: Annotated[DirectoryClient | None, Depends(get_directory_client)],
):
    """Create an embryo from explicit or resolved oocyte/sperm parents."""
    if directory is not None:
        await directory.get_patient(data.patient_id)
    embryo, lineage = await QualityService(db).create_embryo(data, actor_id)
    return {
        "success": True,
        "data": _sample(embryo),
        "meta": {
            "oocyte_from_fallback": lineage.oocyte_from_fallback,
            "sperm_from_fallback": lineage.sperm_from_fallback,
        },
    }


@router.get("/lineage", response_model=dict)
async def resolve_lineage(
    db: Annotated[AsyncSession, Depends(get_db)],
    patient_id: uuid.UUID,
    treatment_cycle_id: uuid.UUID | None = None,
):
    """Preview which oocyte and sperm an embryo for this cycle would use."""
    lineage = await QualityService(db).resolve_lineage(patient_id, treatment_cycle_id)
    return {
        "success": True,
        "data": LineageRead(
            patient_id=patient_id,
            treatment_cycle_id=treatment_cycle_id,
            oocyte_sample_id=lineage.oocyte.id if lineage.oocyte else None,
            sperm_sample_id=lineage.sperm.id if lineage.sperm else None,
            oocyte_from_fallback=lineage.oocyte_from_fallback,
            sperm_from_fallback=lineage.sperm_from_fallback,
        ).model_dump(mode="json"),
    }


@router.get("/{sample_id}", response_model=dict)
async def get_sample(
    sample_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    sample = await SampleService(db).require_sample(sample_id)
    return {"success": True, "data": _sample(sample)}


@router.patch("/{sample_id}", response_model=dict)
async def update_sample(
    sample_id: uuid.UUID,
    data: SampleUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
):
    sample = await SampleService(db).update_sample(sample_id, data, actor_id)
    return {"success": True, "data": _sample(sample)}


@router.patch("/{sample_id}/quality", response_model=dict)
async def update_quality(
    sample_id: uuid.UUID,
    data: QualityUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
):
    """Partially update the sample's quality fields.

    The body is one tagged variant; its ``sample_type`` must match the
    sample's own type.
    """
    sample = await SampleService(db).update_quality(sample_id, data.root, actor_id)
    return {"success": True, "data": _sample(sample)}


@router.patch("/{sample_id}/flags", response_model=dict)
async def update_flags(
    sample_id: uuid.UUID,
    data: SampleFlagsUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
):
    sample = await SampleService(db).update_flags(sample_id, data, actor_id)
    return {"success": True, "data": _sample(sample)}


@router.post("/{sample_id}/status", response_model=dict)
async def update_status(
    sample_id: uuid.UUID,
    data: SampleStatusUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
):
    """Move the sample along one edge of the status state machine."""
    sample = await SampleService(db).transition(
        sample_id, data.status, actor_id, notes=data.notes
    )
    return {"success": True, "data": _sample(sample)}


@router.get("/{sample_id}/history", response_model=dict)
async def get_status_history(
    sample_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    history = await SampleService(db).status_history(sample_id)
    return {
        "success": True,
        "data": [
            StatusHistoryRead.model_validate(h).model_dump(mode="json")
            for h in history
        ],
    }


@router.get("/{sample_id}/location", response_model=dict)
async def get_current_location(
    sample_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """The slot currently holding the sample, or null when not in storage."""
    await SampleService(db).require_sample(sample_id)
    slot = await LedgerService(db).current_location(sample_id)
    return {
        "success": True,
        "data": LocationRead.model_validate(slot).model_dump(mode="json")
        if slot else None,
    }


@router.get("/{sample_id}/custody", response_model=dict)
async def get_custody(
    sample_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Full import and export history of the sample, newest first."""
    await SampleService(db).require_sample(sample_id)
    ledger = LedgerService(db)
    imports = await ledger.history_for_sample(sample_id)
    exports, _ = await ledger.list_exports(sample_id=sample_id, per_page=1000)
    slot = await ledger.current_location(sample_id)
    custody = CustodyRead(
        sample_id=sample_id,
        current_slot_id=slot.id if slot else None,
        imports=[CryoImportRead.model_validate(r) for r in imports],
        exports=[CryoExportRead.model_validate(r) for r in exports],
    )
    return {"success": True, "data": custody.model_dump(mode="json")}


@router.post("/{sample_id}/retrieve", response_model=dict)
async def retrieve_sample(
    sample_id: uuid.UUID,
    data: RetrieveRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    locks: Annotated[SlotLockRegistry, Depends(get_slot_locks)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
):
    """Take the sample out of storage (thawed by default)."""
    coordinator = AllocationCoordinator(db, locks, tree)
    sample, export = await coordinator.retrieve_sample(sample_id, data, actor_id)
    return {
        "success": True,
        "data": _sample(sample),
        "meta": {
            "export": CryoExportRead.model_validate(export).model_dump(mode="json")
            if export else None,
        },
    }
