"""FastAPI dependencies: caller identity and shared app state."""

import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from cryobank.services.allocation import SlotLockRegistry
from cryobank.services.directory import DirectoryClient
from cryobank.services.location_tree import LocationTree


async def get_actor_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> uuid.UUID | None:
    """Caller id set by the upstream gateway; None for system calls."""
    if x_user_id is None:
        return None
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-ID must be a UUID.",
        )


async def require_actor_id(
    actor_id: Annotated[uuid.UUID | None, Depends(get_actor_id)],
) -> uuid.UUID:
    """Mutations must name the acting user."""
    if actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required.",
        )
    return actor_id


def get_location_tree(request: Request) -> LocationTree:
    return request.app.state.location_tree


def get_slot_locks(request: Request) -> SlotLockRegistry:
    return request.app.state.slot_locks


def get_directory_client(request: Request) -> DirectoryClient | None:
    return getattr(request.app.state, "directory", None)



def require_directory_client(
    directory: Annotated[DirectoryClient | None, Depends(get_directory_client)],
) -> DirectoryClient:
    if directory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Directory service is not configured.",
        )
    return directory
