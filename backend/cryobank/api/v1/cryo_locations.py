"""Cryostorage topology endpoints: cached tree navigation and bank setup."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from cryobank.core.deps import get_location_tree, require_actor_id
from cryobank.database import get_db
from cryobank.schemas.sample import SampleRead
from cryobank.schemas.storage import DefaultBankCreate, LocationRead, LocationUpdate
from cryobank.services.ledger import LedgerService
from cryobank.services.location_tree import LocationTree
from cryobank.services.storage import StorageService

router = APIRouter(prefix="/cryo-locations", tags=["cryo-locations"])


def _nodes(nodes) -> list[dict]:
    return [n.model_dump(mode="json", exclude={"children"}) for n in nodes]


@router.get("/roots", response_model=dict)
async def list_roots(
    db: Annotated[AsyncSession, Depends(get_db)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
):
    """Top-level tanks with occupancy counts."""
    roots = await tree.get_roots(StorageService(db))
    return {"success": True, "data": _nodes(roots)}


@router.post(
    "/initialize-default-bank",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
)
async def initialize_default_bank(
    db: Annotated[AsyncSession, Depends(get_db)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
    data: DefaultBankCreate | None = None,
):
    """Create the standard Tank > Canister > Goblet > Slot layout."""
    tanks = await StorageService(db).initialize_default_bank(
        data or DefaultBankCreate(), actor_id
    )
    tree.invalidate()
    return {
        "success": True,
        "data": [LocationRead.model_validate(t).model_dump(mode="json") for t in tanks],
    }


@router.post("/cache/invalidate", response_model=dict)
async def invalidate_cache(
    tree: Annotated[LocationTree, Depends(get_location_tree)],
    node_id: uuid.UUID | None = None,
):
    """Drop cached children of one node, or the whole tree."""
    tree.invalidate(node_id)
    return {"success": True, "data": {"invalidated": str(node_id) if node_id else "all"}}


@router.get("/{location_id}", response_model=dict)
async def get_location(
    location_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    svc = StorageService(db)
    location = await svc.require_location(location_id)
    counts = await svc.subtree_counts([location])
    data = LocationRead.model_validate(location)
    data.sample_count = counts.get(location.id, 0)
    return {"success": True, "data": data.model_dump(mode="json")}


@router.get("/{location_id}/children", response_model=dict)
async def list_children(
    location_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
):
    """Children of a node, loaded lazily and cached per process."""
    svc = StorageService(db)
    if tree.get_node(location_id) is None:
        await svc.require_location(location_id)
    children = await tree.get_children(svc, location_id)
    return {
        "success": True,
        "data": _nodes(children),
        "meta": {"is_loaded": tree.is_loaded(location_id)},
    }


@router.get("/{location_id}/full-tree", response_model=dict)
async def get_full_tree(
    location_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """The whole subtree, bypassing the cache."""
    node = await StorageService(db).full_tree(location_id)
    return {"success": True, "data": node.model_dump(mode="json")}


@router.get("/{location_id}/occupant", response_model=dict)
async def get_occupant(
    location_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """The sample currently held by a slot, or null when vacant."""
    await StorageService(db).require_location(location_id)
    sample = await LedgerService(db).current_occupant(location_id)
    return {
        "success": True,
        "data": SampleRead.model_validate(sample).model_dump(mode="json")
        if sample else None,
    }


@router.put("/{location_id}", response_model=dict)
async def update_location(
    location_id: uuid.UUID,
    data: LocationUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    tree: Annotated[LocationTree, Depends(get_location_tree)],
    actor_id: Annotated[uuid.UUID, Depends(require_actor_id)],
):
    svc = StorageService(db)
    location = await svc.update_location(location_id, data, actor_id)
    if location.parent_id is not None:
        tree.invalidate(location.parent_id)
    else:
        tree.invalidate_path([])
    return {
        "success": True,
        "data": LocationRead.model_validate(location).model_dump(mode="json"),
    }
